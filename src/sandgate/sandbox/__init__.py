"""Sandboxed command execution.

- One ephemeral, hardened container per run (``SandboxRunner``)
- Network isolation: none / internal-only / bridge (``resolve_network``)
- Per-run LLM reverse proxy with billing attribution (``LlmProxyManager``)
- Usage facts from the proxy audit log (``ProxyBillingReader``)
- Environment scrubbing: no host secrets inside the sandbox
- Sandboxed LLM agent as an AiEvent stream (``SandboxAgentProvider``)
"""

from .agent import SANDBOX_AGENTS, SandboxAgentProvider
from .billing import ProxyBillingReader
from .config import LlmProxyConfig, SandboxConfig
from .engine import ContainerRuntimeClient, ContainerSpec
from .env_scrub import build_sandbox_env
from .llm_proxy import LlmProxyManager, ProxyHandle, cleanup_sweep
from .network import ResolvedNetwork, resolve_network
from .runner import SandboxRunner

__all__ = [
    "SANDBOX_AGENTS",
    "ContainerRuntimeClient",
    "ContainerSpec",
    "LlmProxyConfig",
    "LlmProxyManager",
    "ProxyBillingReader",
    "ProxyHandle",
    "ResolvedNetwork",
    "SandboxAgentProvider",
    "SandboxConfig",
    "SandboxRunner",
    "build_sandbox_env",
    "cleanup_sweep",
    "resolve_network",
]
