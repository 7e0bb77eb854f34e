"""Per-run LLM reverse proxy (runs inside the proxy container).

- Credential injection: the upstream master key never reaches the sandbox
- Billing attribution: every request tagged with the run's billing account
- Hash-chained append-only audit log, one record per upstream call
"""

from .audit import ProxyAuditLogger, read_audit_log, verify_chain
from .server import LlmProxyServer, ProxyServerConfig

__all__ = [
    "LlmProxyServer",
    "ProxyAuditLogger",
    "ProxyServerConfig",
    "read_audit_log",
    "verify_chain",
]
