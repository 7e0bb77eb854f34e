"""Sandbox and LLM proxy configuration models."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class SandboxConfig(BaseModel):
    """Configuration for ephemeral sandbox containers."""

    default_image: str = "sandgate-sandbox-runtime:latest"
    pull_missing_images: bool = False
    workspace_path: str = "/workspace"
    # None runs as the image's default user.
    user: str | None = "sandboxer"
    pids_limit: int = 256
    read_only_rootfs: bool = True
    tmpfs: dict[str, str] = Field(
        default_factory=lambda: {
            "/tmp": "rw,noexec,nosuid,size=64m",
            "/run": "rw,size=8m",
        }
    )
    cap_drop: list[str] = Field(default_factory=lambda: ["ALL"])
    security_opt: list[str] = Field(default_factory=lambda: ["no-new-privileges"])
    # Per stream (stdout and stderr are capped independently).
    max_output_bytes: int = 2 * 1024 * 1024
    # How long to keep draining output after the container exits or is killed.
    output_grace_sec: float = 2.0
    engine_timeout_sec: int = 60
    label_prefix: str = "sandgate"
    model_env_var: str = "SANDGATE_MODEL"

    # ── Environment scrubbing ─────────────────────────────────────────────────
    # Names that must never be passed into a sandbox container, even when a
    # caller supplies them explicitly.
    secret_env_vars: list[str] = Field(
        default_factory=lambda: [
            "LITELLM_MASTER_KEY",
            "OPENAI_API_KEY",
            "ANTHROPIC_API_KEY",
            "SANDGATE_GATEWAY_TOKEN",
            "SANDGATE_PROXY_MASTER_KEY",
        ]
    )


class LlmProxyConfig(BaseModel):
    """Configuration for per-run LLM reverse-proxy containers."""

    image: str = "sandgate-llm-proxy:latest"
    upstream_url: str = "http://litellm:4000"
    # Network the upstream endpoint is reachable on.
    upstream_network: str = "sandbox-internal"
    # Internal-only network sandboxes in ``internal`` mode share with the proxy.
    internal_network: str = "sandbox-internal"
    # Host dir holding per-run state (audit logs).
    state_dir: str = "/tmp/sandgate-llm-proxy"
    listen_port: int = 8080
    socket_mount_path: str = "/llm-sock"
    socket_name: str = "llm.sock"
    audit_mount_path: str = "/var/log/sandgate"
    ready_backoff_ms: list[int] = Field(default_factory=lambda: [50, 100, 200, 400, 800])
    ready_timeout_sec: float = 2.0
    stop_timeout_sec: int = 2
    master_key_env: str = "LITELLM_MASTER_KEY"
    allowed_path_prefixes: list[str] = Field(default_factory=lambda: ["/v1/"])
    upstream_timeout_sec: float = 120.0

    @property
    def master_key(self) -> str | None:
        """Read the upstream master key from the host environment."""
        return os.environ.get(self.master_key_env)

    @property
    def socket_path(self) -> str:
        return f"{self.socket_mount_path}/{self.socket_name}"
