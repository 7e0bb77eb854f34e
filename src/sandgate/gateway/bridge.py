"""GatewayExecutionBridge -- one gateway agent invocation as an AiEvent stream.

Architecture::

    client reader task ──on_frame/on_close──► _InvocationChannel (ordered queue)
                                                     │
                                         run() async iterator
                                                     │
                          text_delta* ─► assistant_final | error ─► done

The agent's final ``res`` frame is the only source of the final answer.
Chat ``delta`` events drive incremental ``text_delta`` output for UX and are
reconciled against the previous snapshot, because the gateway resends the
accumulated text and starts over after each tool call.

Every stream ends with exactly one ``done``.  If the socket closes before a
terminal frame arrives the stream ends with ``error(ws_closed_before_terminal)``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from sandgate.errors import GatewayClosedError, GatewayError
from sandgate.events import AiEvent, AssistantFinalEvent, DoneEvent, ErrorEvent, TextDeltaEvent
from sandgate.gateway.client import AgentAck, GatewayProtocolClient
from sandgate.gateway.frames import EventFrame, ResponseFrame

logger = logging.getLogger(__name__)

WS_CLOSED_BEFORE_TERMINAL = "ws_closed_before_terminal"
CHAT_EVENT = "chat"

_FRAME = "frame"
_CLOSED = "closed"


def _is_delta(frame: ResponseFrame | EventFrame) -> bool:
    return (
        isinstance(frame, EventFrame)
        and frame.event == CHAT_EVENT
        and frame.payload_dict.get("state") == "delta"
    )


class _InvocationChannel:
    """Listener feeding one invocation's ordered queue.

    Deltas beyond ``maxsize`` queued items are dropped; terminal frames and
    the close notification are always queued.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._maxsize = maxsize
        self.dropped_deltas = 0

    def on_frame(self, frame: ResponseFrame | EventFrame) -> None:
        if _is_delta(frame) and self._queue.qsize() >= self._maxsize:
            self.dropped_deltas += 1
            if self.dropped_deltas == 1:
                logger.warning("Bridge queue full (%d); dropping stream deltas", self._maxsize)
            return
        self._queue.put_nowait((_FRAME, frame))

    def on_close(self, reason: str) -> None:
        self._queue.put_nowait((_CLOSED, reason))

    async def get(self) -> tuple[str, Any]:
        return await self._queue.get()


class DeltaReconciler:
    """Turn accumulated-text snapshots into incremental deltas.

    A snapshot that extends the previous one yields only the new suffix.  A
    snapshot that does not (a new turn after a tool call) is emitted whole
    and becomes the new baseline.
    """

    def __init__(self) -> None:
        self._baseline = ""
        self.emitted: list[str] = []

    def push(self, snapshot: str) -> str:
        if snapshot.startswith(self._baseline):
            delta = snapshot[len(self._baseline):]
        else:
            delta = snapshot
        self._baseline = snapshot
        if delta:
            self.emitted.append(delta)
        return delta

    @property
    def streamed_text(self) -> str:
        return "".join(self.emitted)


def message_text(message: Any) -> str | None:
    """Text of a chat message (``message.content[0].text``)."""
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict) and isinstance(first.get("text"), str):
            return first["text"]
    return None


def _result_model(result: dict[str, Any]) -> str:
    meta = result.get("meta") if isinstance(result.get("meta"), dict) else {}
    agent_meta = meta.get("agentMeta") if isinstance(meta.get("agentMeta"), dict) else {}
    return str(agent_meta.get("model") or "unknown")


def terminal_events(frame: ResponseFrame) -> list[AiEvent] | None:
    """Events for a response to the agent request.

    Only the ``accepted`` ACK is non-terminal (None); any status other than
    ``ok``/``error`` ends the turn with ``unexpected_status``.
    """
    if not frame.ok:
        code = str(frame.error.code) if frame.error else "agent_failed"
        return [ErrorEvent(code=code, message=frame.error_message), DoneEvent()]

    payload = frame.payload if isinstance(frame.payload, dict) else {}
    status = payload.get("status")
    if status == "accepted":
        return None
    if status == "error":
        summary = payload.get("summary") or "agent run failed"
        return [ErrorEvent(code="agent_error", message=str(summary)), DoneEvent()]
    if status == "ok":
        result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
        payloads = result.get("payloads") or []
        first = payloads[0] if payloads and isinstance(payloads[0], dict) else {}
        text = first.get("text")
        if not isinstance(text, str) or not text:
            return [
                ErrorEvent(
                    code="empty_result",
                    message=f"agent returned no output (model={_result_model(result)})",
                ),
                DoneEvent(),
            ]
        return [AssistantFinalEvent(content=text), DoneEvent()]

    logger.warning("Unexpected agent response status %r for request %s", status, frame.id)
    return [
        ErrorEvent(code="unexpected_status", message=f"unexpected gateway response status: {status}"),
        DoneEvent(),
    ]


class GatewayExecutionBridge:
    """Runs agent turns over a connected GatewayProtocolClient.

    Many invocations may share one client concurrently; each is isolated by
    its session key and (once acknowledged) its run id.
    """

    def __init__(
        self,
        client: GatewayProtocolClient,
        *,
        agent_id: str = "main",
        queue_maxsize: int = 1024,
        terminal_timeout_ms: int = 120_000,
    ) -> None:
        self._client = client
        self._agent_id = agent_id
        self._queue_maxsize = queue_maxsize
        self._terminal_timeout_ms = terminal_timeout_ms

    async def run(
        self,
        message: str,
        *,
        session_key: str,
        agent_id: str | None = None,
        outbound_headers: dict[str, str] | None = None,
        idempotency_key: str | None = None,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[AiEvent]:
        """Yield the AiEvents of one agent turn, always ending with ``done``."""
        channel = _InvocationChannel(self._queue_maxsize)
        try:
            ack = await self._client.agent(
                message,
                session_key=session_key,
                agent_id=agent_id or self._agent_id,
                idempotency_key=idempotency_key,
                outbound_headers=outbound_headers,
                listener=channel,
            )
        except GatewayClosedError as exc:
            yield ErrorEvent(code=WS_CLOSED_BEFORE_TERMINAL, message=str(exc))
            yield DoneEvent()
            return
        except GatewayError as exc:
            yield ErrorEvent(code=exc.code or "request_failed", message=str(exc))
            yield DoneEvent()
            return

        logger.info(
            "Agent turn started: session=%s request=%s run=%s", session_key, ack.request_id, ack.run_id
        )
        try:
            async for event in self._drain(channel, ack, timeout_ms or self._terminal_timeout_ms):
                yield event
        finally:
            self._client.release_listener(channel)
            if channel.dropped_deltas:
                logger.warning(
                    "Agent turn %s dropped %d deltas under backpressure",
                    ack.request_id,
                    channel.dropped_deltas,
                )

    async def _drain(
        self, channel: _InvocationChannel, ack: AgentAck, timeout_ms: int
    ) -> AsyncIterator[AiEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        reconciler = DeltaReconciler()

        while True:
            try:
                kind, item = await asyncio.wait_for(channel.get(), max(deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                logger.warning("Agent turn %s timed out after %dms", ack.request_id, timeout_ms)
                yield ErrorEvent(code="timeout", message=f"no terminal response after {timeout_ms}ms")
                yield DoneEvent()
                return

            if kind == _CLOSED:
                yield ErrorEvent(code=WS_CLOSED_BEFORE_TERMINAL, message=str(item))
                yield DoneEvent()
                return

            if isinstance(item, ResponseFrame):
                if item.id != ack.request_id:
                    continue
                events = terminal_events(item)
                if events is None:
                    continue
                final = next((e for e in events if isinstance(e, AssistantFinalEvent)), None)
                if final is not None and final.content != reconciler.streamed_text:
                    logger.debug(
                        "Final text differs from streamed deltas for %s (%d vs %d chars)",
                        ack.request_id,
                        len(final.content),
                        len(reconciler.streamed_text),
                    )
                for event in events:
                    yield event
                return

            if not isinstance(item, EventFrame) or item.event != CHAT_EVENT:
                continue
            payload = item.payload_dict
            event_run_id = payload.get("runId")
            if ack.run_id and event_run_id and event_run_id != ack.run_id:
                continue

            state = payload.get("state")
            if state == "delta":
                text = message_text(payload.get("message"))
                if text is None:
                    continue
                delta = reconciler.push(text)
                if delta:
                    yield TextDeltaEvent(delta=delta)
            elif state in ("error", "aborted"):
                reason = payload.get("errorMessage") or state
                yield ErrorEvent(code=f"agent_{state}", message=str(reason))
                yield DoneEvent()
                return
