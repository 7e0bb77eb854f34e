"""Exception hierarchy for sandgate.

Setup failures (before any container exists) and gateway protocol failures
are raised.  Sandbox execution outcomes such as timeout, OOM, and nonzero
exit are never raised; they are encoded in ``SandboxRunResult``.
"""

from __future__ import annotations


class SandgateError(Exception):
    """Base class for all sandgate errors."""


# ── Sandbox ──────────────────────────────────────────────────────────────────


class SandboxSetupError(SandgateError):
    """A sandbox run could not be prepared (image, network, request, proxy)."""


class ProxySetupError(SandboxSetupError):
    """The per-run LLM proxy could not be created or never became ready."""

    def __init__(self, message: str, *, logs: str = "") -> None:
        super().__init__(message)
        self.logs = logs

    def __str__(self) -> str:
        base = super().__str__()
        if self.logs:
            return f"{base}\n--- proxy logs ---\n{self.logs}"
        return base


class ContainerEngineError(SandgateError):
    """The container engine rejected or failed an operation."""


class ContainerNotFoundError(ContainerEngineError):
    """The referenced container, network, image, or volume does not exist."""


# ── Gateway ──────────────────────────────────────────────────────────────────


class GatewayError(SandgateError):
    """A gateway call failed.  ``code`` is a stable machine-readable tag."""

    code = "gateway_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class GatewayAuthError(GatewayError):
    code = "auth_failed"


class GatewayTimeoutError(GatewayError):
    code = "timeout"


class GatewayClosedError(GatewayError):
    code = "connection_closed"


class GatewayProtocolError(GatewayError):
    code = "protocol_error"


class GatewayRequestError(GatewayError):
    """The gateway answered a request with ``ok=false``."""

    code = "request_failed"
