"""In-container LLM reverse proxy with credential injection and auditing.

Runs inside the per-run proxy container started by ``LlmProxyManager``.
It accepts plain HTTP/1.1 from the sandbox on a Unix socket (shared volume,
for ``network=none`` sandboxes) and on TCP (for ``internal`` sandboxes),
and forwards each request to exactly one upstream endpoint.

For every request:
- Paths outside ``allowed_path_prefixes`` are refused with 403.
- Client auth and billing headers are stripped; the sandbox never chooses
  its own credential or billing identity.
- The upstream master key and the run's billing tags are injected.
- One record is appended to the hash-chained audit log.

The master key lives only in this process (from the container env); it is
never written to the audit log or echoed back to the sandbox.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import httpx
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from sandgate.proxy.audit import ProxyAuditLogger

logger = logging.getLogger(__name__)

BILLING_HEADER = "x-litellm-end-user-id"
METADATA_HEADER = "x-litellm-spend-logs-metadata"
RUN_ID_HEADER = "x-sandgate-run-id"

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)
_STRIPPED_PREFIXES = ("x-litellm-", "x-sandgate-")
_STRIPPED_AUTH = frozenset({"authorization", "x-api-key", "api-key", "cookie"})
# httpx decodes bodies, so the original encoding/length no longer apply.
_RESPONSE_SKIP = frozenset({"transfer-encoding", "connection", "content-length", "content-encoding"})


class ProxyServerConfig(BaseModel):
    """Settings for one proxy process, read from ``SANDGATE_PROXY_*`` env vars."""

    upstream_url: str
    master_key: str = Field(repr=False)
    billing_account_id: str
    run_id: str
    attempt: int = 0
    socket_path: str | None = "/llm-sock/llm.sock"
    listen_host: str = "0.0.0.0"
    # None disables the TCP listener.
    listen_port: int | None = 8080
    audit_dir: str = "/var/log/sandgate"
    allowed_path_prefixes: list[str] = Field(default_factory=lambda: ["/v1/"])
    upstream_timeout_sec: float = 120.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProxyServerConfig:
        env = os.environ if environ is None else environ

        def get(name: str, default: str | None = None) -> str | None:
            return env.get(f"SANDGATE_PROXY_{name}", default)

        raw: dict[str, Any] = {
            "upstream_url": get("UPSTREAM_URL"),
            "master_key": get("MASTER_KEY"),
            "billing_account_id": get("BILLING_ACCOUNT_ID"),
            "run_id": get("RUN_ID"),
            "attempt": get("ATTEMPT", "0"),
            "socket_path": get("SOCKET_PATH") or None,
            "listen_host": get("LISTEN_HOST", "0.0.0.0"),
            "listen_port": get("LISTEN_PORT") or None,
            "audit_dir": get("AUDIT_DIR", "/var/log/sandgate"),
            "upstream_timeout_sec": get("UPSTREAM_TIMEOUT_SEC", "120"),
        }
        prefixes = get("ALLOWED_PATH_PREFIXES")
        if prefixes:
            raw["allowed_path_prefixes"] = [p for p in prefixes.split(",") if p]
        missing = [k for k in ("upstream_url", "master_key", "billing_account_id", "run_id") if not raw[k]]
        if missing:
            raise ValueError(f"missing proxy settings: {', '.join(missing)}")
        return cls(**raw)


class LlmProxyServer:
    """Credential-injecting, auditing reverse proxy for one run attempt.

    Architecture::

        sandbox                       this process                upstream
        ───────                       ────────────                ────────
        HTTP ──► unix socket / TCP ──► parse request
                                       │ path allowlist
                                       │ strip client auth + billing headers
                                       │ inject master key + billing tags
                                       │ forward (httpx)
                                       │ append audit record
        ◄──────────────────────────────┘ relay response

    Lifecycle::

        server = LlmProxyServer(config, audit)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, config: ProxyServerConfig, audit: ProxyAuditLogger) -> None:
        self._config = config
        self._audit = audit
        self._servers: list[asyncio.AbstractServer] = []
        self._upstream_client: httpx.AsyncClient | None = None

    @property
    def tcp_port(self) -> int | None:
        """Bound TCP port (useful when configured with port 0)."""
        for server in self._servers:
            for sock in server.sockets:
                name = sock.getsockname()
                if isinstance(name, tuple):
                    return name[1]
        return None

    async def start(self) -> None:
        cfg = self._config
        await self._audit.start()
        self._upstream_client = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.upstream_timeout_sec, connect=30.0),
            follow_redirects=False,
        )

        if cfg.socket_path:
            socket_path = Path(cfg.socket_path)
            if socket_path.exists():
                socket_path.unlink()
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            server = await asyncio.start_unix_server(self._handle_connection, path=str(socket_path))
            # The sandbox runs as a different uid.
            os.chmod(socket_path, 0o666)
            self._servers.append(server)
            logger.info("LlmProxyServer: listening on unix:%s", socket_path)

        if cfg.listen_port is not None:
            server = await asyncio.start_server(
                self._handle_connection, host=cfg.listen_host, port=cfg.listen_port
            )
            self._servers.append(server)
            logger.info("LlmProxyServer: listening on %s:%s", cfg.listen_host, self.tcp_port)

        logger.info(
            "LlmProxyServer: run=%s attempt=%d upstream=%s",
            cfg.run_id,
            cfg.attempt,
            cfg.upstream_url,
        )

    async def stop(self) -> None:
        for server in self._servers:
            server.close()
            await server.wait_closed()
        self._servers.clear()
        if self._upstream_client:
            await self._upstream_client.aclose()
            self._upstream_client = None
        if self._config.socket_path:
            try:
                Path(self._config.socket_path).unlink()
            except FileNotFoundError:
                pass
        logger.info("LlmProxyServer: stopped")

    # ── Connection handling ───────────────────────────────────────────────────

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle one HTTP request, then close the connection."""
        try:
            request = await asyncio.wait_for(_read_http_request(reader), timeout=30.0)
            if request is None:
                return
            method, path, headers, body = request
            if "transfer-encoding" in headers:
                # Only content-length bodies are read.
                logger.warning("LlmProxyServer: refused %s %s with transfer-encoding", method, path)
                await _send_error(writer, 411, "content-length required")
                return
            status, resp_headers, resp_body = await self.handle_request(method, path, headers, body)
            await _send_response(writer, status, resp_headers, resp_body)
        except asyncio.TimeoutError:
            await _send_error(writer, 408, "Request timeout")
        except (ConnectionError, asyncio.IncompleteReadError):
            logger.debug("LlmProxyServer: client went away")
        except Exception:
            logger.exception("LlmProxyServer: error handling connection")
            await _send_error(writer, 500, "Internal proxy error")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def handle_request(
        self, method: str, path: str, headers: dict[str, str], body: bytes
    ) -> tuple[int, dict[str, str], bytes]:
        """Forward one request upstream and audit it.

        Returns (status, headers, body) to relay to the sandbox.
        """
        cfg = self._config
        started = time.monotonic()
        request_model = _json_field(body, "model")

        if not any(path.startswith(prefix) for prefix in cfg.allowed_path_prefixes):
            logger.warning("LlmProxyServer: blocked %s %s", method, path)
            await self._audit.log_call(
                billing_account_id=cfg.billing_account_id,
                request_id=uuid.uuid4().hex,
                model=request_model,
                cost_usd=None,
                duration_ms=0,
                status="blocked",
                status_code=403,
                path=path,
            )
            return 403, {"content-type": "application/json"}, b'{"error": "path not allowed"}'

        upstream_headers = self.build_upstream_headers(headers)
        url = f"{cfg.upstream_url.rstrip('/')}{path}"
        try:
            response = await self._upstream_client.request(
                method=method, url=url, headers=upstream_headers, content=body
            )
        except httpx.HTTPError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning("LlmProxyServer: upstream request failed for %s: %s", path, exc)
            await self._audit.log_call(
                billing_account_id=cfg.billing_account_id,
                request_id=uuid.uuid4().hex,
                model=request_model,
                cost_usd=None,
                duration_ms=duration_ms,
                status="error",
                status_code=None,
                path=path,
            )
            return 502, {"content-type": "application/json"}, b'{"error": "upstream unavailable"}'

        duration_ms = int((time.monotonic() - started) * 1000)
        content = response.content
        response_json = _json_object(content) if _is_json(response) else {}
        request_id = (
            response.headers.get("x-litellm-call-id")
            or response_json.get("id")
            or uuid.uuid4().hex
        )
        await self._audit.log_call(
            billing_account_id=cfg.billing_account_id,
            request_id=str(request_id),
            model=response_json.get("model") or request_model,
            cost_usd=_parse_cost(response.headers.get("x-litellm-response-cost")),
            duration_ms=duration_ms,
            status="ok" if response.is_success else "error",
            status_code=response.status_code,
            path=path,
        )
        relay_headers = {
            k: v for k, v in response.headers.items() if k.lower() not in _RESPONSE_SKIP
        }
        return response.status_code, relay_headers, content

    def build_upstream_headers(self, headers: dict[str, str]) -> dict[str, str]:
        """Replace anything auth- or billing-related the sandbox sent."""
        cfg = self._config
        result = {
            k: v
            for k, v in headers.items()
            if k not in _HOP_BY_HOP
            and k not in _STRIPPED_AUTH
            and not k.startswith(_STRIPPED_PREFIXES)
        }
        result["authorization"] = f"Bearer {cfg.master_key}"
        result[BILLING_HEADER] = cfg.billing_account_id
        result[METADATA_HEADER] = json.dumps({"run_id": cfg.run_id, "attempt": cfg.attempt})
        result[RUN_ID_HEADER] = cfg.run_id
        return result


# ── HTTP helpers ─────────────────────────────────────────────────────────────


async def _read_http_request(
    reader: asyncio.StreamReader,
) -> tuple[str, str, dict[str, str], bytes] | None:
    """Read and parse an HTTP/1.1 request.

    Returns (method, path, headers, body) or None on EOF.
    """
    request_line = await reader.readline()
    if not request_line:
        return None

    parts = request_line.decode("latin-1").strip().split(" ", 2)
    if len(parts) < 2:
        return None
    method, path = parts[0], parts[1]

    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if not line or line in (b"\r\n", b"\n"):
            break
        decoded = line.decode("latin-1").strip()
        if ":" in decoded:
            key, _, value = decoded.partition(":")
            headers[key.strip().lower()] = value.strip()

    body = b""
    content_length = headers.get("content-length")
    if content_length:
        body = await reader.readexactly(int(content_length))
    return method, path, headers, body


async def _send_response(
    writer: asyncio.StreamWriter, status: int, headers: dict[str, str], body: bytes
) -> None:
    reason = _REASONS.get(status, "OK" if status < 400 else "Error")
    writer.write(f"HTTP/1.1 {status} {reason}\r\n".encode("latin-1"))
    for key, value in headers.items():
        writer.write(f"{key}: {value}\r\n".encode("latin-1"))
    writer.write(f"content-length: {len(body)}\r\n".encode("latin-1"))
    writer.write(b"connection: close\r\n\r\n")
    writer.write(body)
    await writer.drain()


async def _send_error(writer: asyncio.StreamWriter, status: int, message: str) -> None:
    body = json.dumps({"error": message}).encode()
    try:
        await _send_response(writer, status, {"content-type": "application/json"}, body)
    except ConnectionError:
        logger.debug("LlmProxyServer: could not send %d, client gone", status)


_REASONS = {
    200: "OK",
    400: "Bad Request",
    403: "Forbidden",
    408: "Request Timeout",
    411: "Length Required",
    500: "Internal Server Error",
    502: "Bad Gateway",
}


def _is_json(response: httpx.Response) -> bool:
    return "json" in response.headers.get("content-type", "")


def _json_object(data: bytes) -> dict[str, Any]:
    try:
        value = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        return {}
    return value if isinstance(value, dict) else {}


def _json_field(data: bytes, key: str) -> str | None:
    value = _json_object(data).get(key) if data else None
    return value if isinstance(value, str) else None


def _parse_cost(raw: str | None) -> float | None:
    if raw is None or raw in ("", "-"):
        return None
    try:
        return float(raw)
    except ValueError:
        return None
