"""Network isolation policy for sandbox containers.

Maps a request's ``NetworkPolicy`` onto engine network settings::

    none      no interface besides loopback; DNS and all egress fail
    internal  attached only to a named network created with internal=True
              (no default route to the outside world)
    bridge    the engine's default bridge; diagnostics only

An ``internal`` network that exists but is not internal-only is refused:
attaching to it would silently grant egress.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sandgate.errors import ContainerEngineError, ContainerNotFoundError, SandboxSetupError
from sandgate.models import NetworkMode, NetworkPolicy

if TYPE_CHECKING:
    from sandgate.sandbox.engine import ContainerRuntimeClient

logger = logging.getLogger(__name__)


@dataclass
class ResolvedNetwork:
    """Engine settings for one run: ``network_mode`` or a named ``network``."""

    mode: NetworkMode
    network_mode: str | None = None
    network: str | None = None


async def resolve_network(
    engine: ContainerRuntimeClient, policy: NetworkPolicy
) -> ResolvedNetwork:
    """Validate the policy against the engine.

    Raises:
        SandboxSetupError: the named network is missing or not internal-only.
    """
    if policy.mode == NetworkMode.NONE:
        return ResolvedNetwork(mode=policy.mode, network_mode="none")

    if policy.mode == NetworkMode.BRIDGE:
        logger.warning("Sandbox run uses bridge networking; egress is unrestricted")
        return ResolvedNetwork(mode=policy.mode, network_mode="bridge")

    name = policy.network_name
    try:
        attrs = await engine.inspect_network(name)
    except ContainerNotFoundError as exc:
        raise SandboxSetupError(f"sandbox network not found: {name}") from exc
    except ContainerEngineError as exc:
        raise SandboxSetupError(f"cannot inspect sandbox network {name}: {exc}") from exc

    if not attrs.get("Internal", False):
        raise SandboxSetupError(
            f"network {name!r} is not internal-only; refusing to attach a sandbox to it"
        )
    return ResolvedNetwork(mode=policy.mode, network=name)
