"""Core data models for sandgate."""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Container engines accept [a-zA-Z0-9][a-zA-Z0-9_.-]* for names; run ids are
# embedded in container, volume, and directory names.
_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")


# ── Enums ────────────────────────────────────────────────────────────────────


class NetworkMode(str, enum.Enum):
    """Egress policy attached to a sandbox run."""

    NONE = "none"
    INTERNAL = "internal"
    BRIDGE = "bridge"


class MountMode(str, enum.Enum):
    RO = "ro"
    RW = "rw"


class SandboxErrorCode(str, enum.Enum):
    """Why a sandbox run did not complete normally."""

    TIMEOUT = "timeout"
    OOM = "oom"
    SETUP_ERROR = "setup_error"
    INTERNAL = "internal"


# ── Sandbox run request ──────────────────────────────────────────────────────


class RunLimits(BaseModel):
    max_runtime_sec: float = Field(default=60.0, gt=0)
    max_memory_mb: int = Field(default=512, gt=0)


class NetworkPolicy(BaseModel):
    """``internal`` requires a network name; ``none`` and ``bridge`` ignore it."""

    mode: NetworkMode = NetworkMode.NONE
    network_name: str | None = None

    @model_validator(mode="after")
    def _internal_needs_name(self) -> NetworkPolicy:
        if self.mode == NetworkMode.INTERNAL and not self.network_name:
            raise ValueError("network mode 'internal' requires network_name")
        return self


class Mount(BaseModel):
    host_path: Path
    container_path: str
    mode: MountMode = MountMode.RO

    @field_validator("container_path")
    @classmethod
    def _absolute_container_path(cls, v: str) -> str:
        p = PurePosixPath(v)
        if not p.is_absolute():
            raise ValueError(f"container_path must be absolute, got {v!r}")
        if ".." in p.parts:
            raise ValueError(f"container_path must not contain '..': {v!r}")
        return str(p)

    def bind_spec(self) -> str:
        """Engine bind string, e.g. ``/host/dir:/repo:ro``."""
        return f"{self.host_path.resolve()}:{self.container_path}:{self.mode.value}"


class LlmProxyRequest(BaseModel):
    """Ask for a per-run LLM proxy so a network-isolated run can reach a model."""

    enabled: bool = True
    billing_account_id: str
    attempt: int = Field(default=0, ge=0)
    model: str | None = Field(
        default=None, description="Exposed to the sandbox as the model-selection variable"
    )
    env: dict[str, str] = Field(default_factory=dict, description="Extra env for the sandbox")


class SandboxRunRequest(BaseModel):
    """One command to execute in one ephemeral container."""

    run_id: str = Field(description="Unique per invocation; used in resource names and labels")
    workspace_path: Path = Field(description="Host dir mounted read-write at the workspace path")
    argv: list[str] = Field(min_length=1)
    image: str | None = Field(default=None, description="Falls back to sandbox.default_image")
    limits: RunLimits = Field(default_factory=RunLimits)
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    mounts: list[Mount] = Field(default_factory=list)
    llm_proxy: LlmProxyRequest | None = None

    @field_validator("run_id")
    @classmethod
    def _valid_run_id(cls, v: str) -> str:
        if not _RUN_ID_RE.match(v):
            raise ValueError(f"run_id must match {_RUN_ID_RE.pattern}, got {v!r}")
        return v

    @property
    def proxy_enabled(self) -> bool:
        return self.llm_proxy is not None and self.llm_proxy.enabled


# ── Sandbox run result ───────────────────────────────────────────────────────


class SandboxRunResult(BaseModel):
    """Captured outcome of one sandbox run.

    ``ok`` is False whenever ``exit_code`` is nonzero or ``error_code`` is set.
    """

    ok: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error_code: SandboxErrorCode | None = None
    output_truncated: bool = False
    duration_ms: int = 0

    @model_validator(mode="after")
    def _ok_is_consistent(self) -> SandboxRunResult:
        if self.ok and (self.exit_code != 0 or self.error_code is not None):
            raise ValueError("ok=True requires exit_code=0 and no error_code")
        return self


# ── Proxy audit + billing ────────────────────────────────────────────────────


class ProxyAuditEntry(BaseModel):
    """One upstream LLM call made through a run's proxy.

    Hash-chain bookkeeping fields (``seq``, ``prev_hash``, ``hash``) present in
    the on-disk record are ignored here.
    """

    model_config = ConfigDict(extra="ignore")

    billing_account_id: str
    request_id: str
    model: str | None = None
    cost_usd: float | None = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str = ""
    attempt: int = 0
    status: Literal["ok", "error", "blocked"] = "ok"
    status_code: int | None = None
    path: str = ""


class UsageFact(BaseModel):
    """A billing-usable usage record handed to the external billing collaborator."""

    run_id: str
    attempt: int
    billing_account_id: str
    source: str = "litellm"
    usage_unit_id: str
    model: str | None = None
    cost_usd: float | None = None
    duration_ms: int = 0
    timestamp: datetime
