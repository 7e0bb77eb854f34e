"""Ownership labels stamped on every container and volume sandgate creates.

Cleanup is driven by label filters against the engine, never by a
process-local registry, so sweeps survive restarts.
"""

from __future__ import annotations

ROLE_SANDBOX = "sandbox"
ROLE_LLM_PROXY = "llm-proxy"


def role_label(prefix: str) -> str:
    return f"{prefix}.role"


def run_id_label(prefix: str) -> str:
    return f"{prefix}.run_id"


def attempt_label(prefix: str) -> str:
    return f"{prefix}.attempt"


def resource_labels(prefix: str, role: str, run_id: str, **extra: str) -> dict[str, str]:
    labels = {role_label(prefix): role, run_id_label(prefix): run_id}
    for key, value in extra.items():
        labels[f"{prefix}.{key}"] = value
    return labels
