"""GatewayProtocolClient -- WebSocket client for a remote agent gateway.

State machine::

    connecting ──open──► awaiting_challenge ──connect.challenge──► authenticating
                                                                        │
                      closed ◄──auth failure / socket close──┐   res ok=true
                                                             │          ▼
                                                             └────── ready

During the handshake every frame other than the challenge and the matching
connect response is ignored, so server heartbeats are harmless.

Once ready, ``request`` calls are correlated to ``res`` frames purely by id;
any number may be outstanding.  A request that times out is forgotten, and
a late response for it is dropped.  When the socket closes, every pending
request fails with ``GatewayClosedError`` and listeners get ``on_close``.

Server-push events are delivered to listeners registered per ``sessionKey``
(so concurrent conversations on one connection stay separate) and to
connection-wide event listeners.

Lifecycle::

    client = GatewayProtocolClient(url, token)
    await client.connect()
    ack = await client.agent("hi", session_key="s-1", listener=channel)
    ...
    await client.close()
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from sandgate.config import GatewayConfig
from sandgate.errors import (
    GatewayAuthError,
    GatewayClosedError,
    GatewayError,
    GatewayProtocolError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from sandgate.gateway.frames import EventFrame, RequestFrame, ResponseFrame, encode_frame, parse_frame

logger = logging.getLogger(__name__)

CHALLENGE_EVENT = "connect.challenge"


class ClientState(str, enum.Enum):
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"


class FrameListener(Protocol):
    """Receives frames pushed by the reader task.  Must not block."""

    def on_frame(self, frame: ResponseFrame | EventFrame) -> None: ...

    def on_close(self, reason: str) -> None: ...


@dataclass
class AgentAck:
    """First response to an ``agent`` request."""

    request_id: str
    status: str | None
    run_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)


class GatewayProtocolClient:
    """One WebSocket connection to one gateway.  Not reusable after close."""

    def __init__(
        self,
        url: str,
        token: str | None,
        *,
        config: GatewayConfig | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._config = config or GatewayConfig(url=url)
        self._state = ClientState.CONNECTING
        self._ws: ClientConnection | None = None
        self._reader_task: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._connect_id: str | None = None
        self._handshake: asyncio.Future | None = None
        self._pending: dict[str, asyncio.Future[ResponseFrame]] = {}
        self._streams: dict[str, FrameListener] = {}
        self._session_listeners: dict[str, list[FrameListener]] = {}
        self._event_listeners: list[FrameListener] = []
        self._close_reason: str | None = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == ClientState.CLOSED

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def _next_id(self) -> str:
        return str(next(self._ids))

    # ── Handshake ─────────────────────────────────────────────────────────────

    async def connect(self, timeout_ms: int | None = None) -> dict[str, Any]:
        """Open the socket and authenticate.

        Returns:
            The server's hello payload from the connect response.

        Raises:
            GatewayAuthError: the server rejected the token.
            GatewayTimeoutError: no successful handshake within the timeout.
            GatewayClosedError: the socket could not be opened or closed early.
        """
        if self._state != ClientState.CONNECTING:
            raise GatewayError(f"connect() called in state {self._state.value}", code="invalid_state")

        loop = asyncio.get_running_loop()
        timeout = (timeout_ms or self._config.handshake_timeout_ms) / 1000
        deadline = loop.time() + timeout

        try:
            self._ws = await asyncio.wait_for(ws_connect(self._url), timeout)
        except asyncio.TimeoutError:
            self._mark_closed("open timed out")
            raise GatewayTimeoutError(f"gateway {self._url} did not open within {timeout}s") from None
        except (OSError, WebSocketException) as exc:
            self._mark_closed(f"open failed: {exc}")
            raise GatewayClosedError(f"cannot open gateway {self._url}: {exc}") from exc

        self._handshake = loop.create_future()
        self._state = ClientState.AWAITING_CHALLENGE
        self._reader_task = asyncio.create_task(self._read_loop(), name="gateway-reader")

        try:
            hello = await asyncio.wait_for(self._handshake, max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            await self.close()
            raise GatewayTimeoutError(f"gateway handshake timed out after {timeout}s") from None
        except GatewayError:
            await self.close()
            raise

        logger.info("Gateway connected: %s", self._url)
        return hello if isinstance(hello, dict) else {}

    def _connect_params(self) -> dict[str, Any]:
        cfg = self._config
        return {
            "minProtocol": cfg.min_protocol,
            "maxProtocol": cfg.max_protocol,
            "client": {
                "id": cfg.client_id,
                "version": cfg.client_version,
                "platform": "python",
                "mode": cfg.client_mode,
            },
            "auth": {"token": self._token},
        }

    async def _handle_handshake_frame(self, frame: Any) -> None:
        if (
            isinstance(frame, EventFrame)
            and frame.event == CHALLENGE_EVENT
            and self._state == ClientState.AWAITING_CHALLENGE
        ):
            self._state = ClientState.AUTHENTICATING
            self._connect_id = self._next_id()
            await self._send(
                RequestFrame(id=self._connect_id, method="connect", params=self._connect_params())
            )
            return

        if (
            isinstance(frame, ResponseFrame)
            and self._state == ClientState.AUTHENTICATING
            and frame.id == self._connect_id
        ):
            handshake = self._handshake
            if frame.ok:
                self._state = ClientState.READY
                if handshake is not None and not handshake.done():
                    handshake.set_result(frame.payload)
            else:
                logger.warning("Gateway auth rejected: %s", frame.error_message)
                if handshake is not None and not handshake.done():
                    handshake.set_exception(
                        GatewayAuthError(f"Gateway auth failed: {frame.error_message}")
                    )
            return

        logger.debug("Ignoring %s frame during handshake", frame.type)

    # ── Reader ────────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            async for message in self._ws:
                await self._dispatch(message)
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        except Exception:
            logger.exception("Gateway reader failed")
            reason = "reader failed"
        finally:
            self._mark_closed(reason)

    async def _dispatch(self, message: str | bytes) -> None:
        try:
            frame = parse_frame(message)
        except GatewayProtocolError as exc:
            logger.warning("Ignoring frame: %s", exc)
            return

        if self._state != ClientState.READY:
            await self._handle_handshake_frame(frame)
        elif isinstance(frame, ResponseFrame):
            self._handle_response(frame)
        elif isinstance(frame, EventFrame):
            self._handle_event(frame)
        else:
            logger.debug("Ignoring server request frame %s", frame.method)

    def _handle_response(self, frame: ResponseFrame) -> None:
        listener = self._streams.get(frame.id)
        if listener is not None:
            listener.on_frame(frame)
        future = self._pending.pop(frame.id, None)
        if future is not None and not future.done():
            future.set_result(frame)
        elif listener is None:
            logger.debug("Dropping response for unknown or expired id %s", frame.id)

    def _handle_event(self, frame: EventFrame) -> None:
        session_key = frame.payload_dict.get("sessionKey")
        if session_key is not None:
            for listener in list(self._session_listeners.get(session_key, ())):
                listener.on_frame(frame)
        for listener in list(self._event_listeners):
            listener.on_frame(frame)

    def _mark_closed(self, reason: str) -> None:
        if self._close_reason is not None:
            return
        self._state = ClientState.CLOSED
        self._close_reason = reason

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(GatewayClosedError(f"closed during handshake: {reason}"))

        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(GatewayClosedError(reason))

        listeners: list[FrameListener] = list(self._streams.values())
        for group in self._session_listeners.values():
            listeners.extend(group)
        listeners.extend(self._event_listeners)
        self._streams.clear()
        self._session_listeners.clear()
        self._event_listeners.clear()

        notified: set[int] = set()
        for listener in listeners:
            if id(listener) in notified:
                continue
            notified.add(id(listener))
            listener.on_close(reason)

        if pending:
            logger.warning("Gateway closed with %d pending requests: %s", len(pending), reason)
        else:
            logger.info("Gateway closed: %s", reason)

    # ── Requests ──────────────────────────────────────────────────────────────

    async def _send(self, frame: RequestFrame) -> None:
        if self._ws is None or self.closed:
            raise GatewayClosedError(self._close_reason or "not connected")
        try:
            await self._ws.send(encode_frame(frame))
        except ConnectionClosed as exc:
            raise GatewayClosedError(f"send failed: {exc}") from exc

    async def _request(
        self,
        method: str,
        params: Any,
        timeout_ms: int | None,
        listener: FrameListener | None = None,
    ) -> tuple[str, ResponseFrame]:
        if self.closed:
            raise GatewayClosedError(self._close_reason or "connection closed")
        if self._state != ClientState.READY:
            raise GatewayError(f"gateway not ready (state={self._state.value})", code="not_ready")

        timeout_ms = timeout_ms or self._config.request_timeout_ms
        request_id = self._next_id()
        future: asyncio.Future[ResponseFrame] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if listener is not None:
            self._streams[request_id] = listener

        answered = False
        try:
            await self._send(RequestFrame(id=request_id, method=method, params=params))
            frame = await asyncio.wait_for(future, timeout_ms / 1000)
            answered = True
        except asyncio.TimeoutError:
            raise GatewayTimeoutError(f"{method} timed out after {timeout_ms}ms") from None
        finally:
            # Also reached on cancellation; nothing waits on this id any more.
            if not answered:
                self._pending.pop(request_id, None)
                self._streams.pop(request_id, None)
        return request_id, frame

    async def request(self, method: str, params: Any = None, timeout_ms: int | None = None) -> Any:
        """Send one request and return the response payload.

        Raises:
            GatewayRequestError: the server answered ``ok=false``.
            GatewayTimeoutError: no response within ``timeout_ms``.
            GatewayClosedError: the connection is or became closed.
        """
        _, frame = await self._request(method, params, timeout_ms)
        if not frame.ok:
            code = frame.error.code if frame.error else "request_failed"
            raise GatewayRequestError(f"{method} failed: {frame.error_message}", code=str(code))
        return frame.payload

    async def agent(
        self,
        message: str,
        *,
        session_key: str,
        agent_id: str | None = None,
        idempotency_key: str | None = None,
        outbound_headers: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        listener: FrameListener | None = None,
    ) -> AgentAck:
        """Start one agent turn in ``session_key``.

        ``listener`` (when given) receives every later response for this
        request and every event for ``session_key`` until released with
        ``release_listener``.  Returns when the gateway acknowledges.
        """
        if not session_key:
            raise ValueError("session_key is required")

        params: dict[str, Any] = {
            "message": message,
            "agentId": agent_id or self._config.agent_id,
            "sessionKey": session_key,
            "idempotencyKey": idempotency_key or uuid.uuid4().hex,
        }
        if outbound_headers is not None:
            params["outboundHeaders"] = outbound_headers

        if listener is not None:
            self._session_listeners.setdefault(session_key, []).append(listener)
        try:
            request_id, frame = await self._request(
                "agent", params, timeout_ms or self._config.agent_timeout_ms, listener
            )
        except BaseException:
            if listener is not None:
                self.release_listener(listener)
            raise

        if not frame.ok:
            if listener is not None:
                self.release_listener(listener)
            code = frame.error.code if frame.error else "request_failed"
            raise GatewayRequestError(f"agent failed: {frame.error_message}", code=str(code))

        payload = frame.payload if isinstance(frame.payload, dict) else {}
        logger.debug(
            "Agent request %s acknowledged (session=%s status=%s)",
            request_id,
            session_key,
            payload.get("status"),
        )
        return AgentAck(
            request_id=request_id,
            status=payload.get("status"),
            run_id=payload.get("runId"),
            payload=payload,
        )

    async def sessions_patch(
        self,
        session_key: str,
        outbound_headers: dict[str, str] | None,
        timeout_ms: int | None = None,
    ) -> Any:
        """Replace (or with None, clear) a session's outbound headers."""
        return await self.request(
            "sessions.patch",
            {"key": session_key, "outboundHeaders": outbound_headers},
            timeout_ms,
        )

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_event_listener(self, listener: FrameListener) -> None:
        """Receive every event frame on this connection."""
        self._event_listeners.append(listener)

    def release_listener(self, listener: FrameListener) -> None:
        """Detach a listener from every request id and session it follows."""
        for request_id in [rid for rid, l in self._streams.items() if l is listener]:
            del self._streams[request_id]
        for session_key in list(self._session_listeners):
            group = [l for l in self._session_listeners[session_key] if l is not listener]
            if group:
                self._session_listeners[session_key] = group
            else:
                del self._session_listeners[session_key]
        self._event_listeners = [l for l in self._event_listeners if l is not listener]

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the socket; pending requests fail with GatewayClosedError."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException):
                logger.debug("Error while closing gateway socket", exc_info=True)
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            await asyncio.wait({self._reader_task}, timeout=5.0)
        self._mark_closed("closed by client")
