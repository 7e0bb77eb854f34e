"""Environment scrubbing for sandbox containers.

A sandbox container never inherits the host environment.  Its env is built
from scratch out of:
1. Caller-supplied variables (``LlmProxyRequest.env``), minus anything that
   looks like a secret.
2. Proxy wiring variables (API base URL, socket path) when an LLM proxy is
   attached.

Any variable whose value equals a forbidden secret (the upstream master
key) is dropped regardless of its name.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandgate.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

# Name fragments that mark a variable as a credential.
_SECRET_PATTERNS = frozenset(
    {
        "API_KEY",
        "SECRET",
        "PRIVATE_KEY",
        "ACCESS_TOKEN",
        "AUTH_TOKEN",
        "MASTER_KEY",
        "PASSWORD",
    }
)


def _is_secret_name(name: str, strip_set: set[str]) -> bool:
    if name in strip_set:
        return True
    upper = name.upper()
    return any(pattern in upper for pattern in _SECRET_PATTERNS)


def build_sandbox_env(
    config: SandboxConfig,
    *,
    caller_env: dict[str, str] | None = None,
    proxy_env: dict[str, str] | None = None,
    forbidden_values: list[str] | None = None,
) -> dict[str, str]:
    """Build the environment for one sandbox container.

    Args:
        config: SandboxConfig with the ``secret_env_vars`` deny list.
        caller_env: Variables requested by the caller (e.g. the model name).
        proxy_env: Proxy wiring set by the runner; trusted, applied last.
        forbidden_values: Secret values that must never appear in the env.

    Returns:
        A new dict; nothing from ``os.environ`` is copied.
    """
    strip_set = set(config.secret_env_vars)
    forbidden = {v for v in (forbidden_values or []) if v}

    env: dict[str, str] = {}
    stripped: list[str] = []
    for key, value in (caller_env or {}).items():
        if _is_secret_name(key, strip_set) or value in forbidden:
            stripped.append(key)
            continue
        env[key] = value

    for key, value in (proxy_env or {}).items():
        if value in forbidden:
            stripped.append(key)
            continue
        env[key] = value

    if stripped:
        logger.info(
            "Env scrub: stripped %d secret vars: %s",
            len(stripped),
            ", ".join(sorted(stripped)),
        )
    return env
