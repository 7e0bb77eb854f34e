"""Tests for request/result models and the AiEvent union."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from sandgate.events import AssistantFinalEvent, DoneEvent, ErrorEvent, UsageReportEvent, ai_event_adapter
from sandgate.models import (
    Mount,
    MountMode,
    NetworkMode,
    NetworkPolicy,
    ProxyAuditEntry,
    RunLimits,
    SandboxErrorCode,
    SandboxRunRequest,
    SandboxRunResult,
    UsageFact,
)


# ── SandboxRunRequest ────────────────────────────────────────────────────────


class TestSandboxRunRequest:
    def test_defaults(self, tmp_path):
        req = SandboxRunRequest(run_id="run-1", workspace_path=tmp_path, argv=["true"])
        assert req.limits == RunLimits()
        assert req.network.mode == NetworkMode.NONE
        assert req.mounts == []
        assert req.proxy_enabled is False

    @pytest.mark.parametrize("run_id", ["", "-leading-dash", "has space", "a/b", "x" * 64])
    def test_invalid_run_ids(self, tmp_path, run_id):
        with pytest.raises(ValidationError):
            SandboxRunRequest(run_id=run_id, workspace_path=tmp_path, argv=["true"])

    def test_empty_argv_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            SandboxRunRequest(run_id="r", workspace_path=tmp_path, argv=[])

    def test_nonpositive_limits_rejected(self):
        with pytest.raises(ValidationError):
            RunLimits(max_runtime_sec=0)
        with pytest.raises(ValidationError):
            RunLimits(max_memory_mb=-1)

    def test_disabled_proxy(self, tmp_path):
        req = SandboxRunRequest(
            run_id="r",
            workspace_path=tmp_path,
            argv=["true"],
            llm_proxy={"enabled": False, "billing_account_id": "acct"},
        )
        assert req.proxy_enabled is False


class TestNetworkPolicy:
    def test_internal_requires_name(self):
        with pytest.raises(ValidationError, match="network_name"):
            NetworkPolicy(mode=NetworkMode.INTERNAL)

    def test_none_ignores_name(self):
        assert NetworkPolicy(mode=NetworkMode.NONE, network_name="x").mode == NetworkMode.NONE


class TestMount:
    def test_bind_spec_defaults_read_only(self, tmp_path):
        m = Mount(host_path=tmp_path, container_path="/repo")
        assert m.mode == MountMode.RO
        assert m.bind_spec() == f"{tmp_path.resolve()}:/repo:ro"

    @pytest.mark.parametrize("path", ["relative/dir", "/repo/../etc"])
    def test_bad_container_paths(self, tmp_path, path):
        with pytest.raises(ValidationError):
            Mount(host_path=tmp_path, container_path=path)


# ── SandboxRunResult ─────────────────────────────────────────────────────────


class TestSandboxRunResult:
    def test_ok_requires_zero_exit(self):
        with pytest.raises(ValidationError):
            SandboxRunResult(ok=True, exit_code=1)

    def test_ok_forbids_error_code(self):
        with pytest.raises(ValidationError):
            SandboxRunResult(ok=True, exit_code=0, error_code=SandboxErrorCode.TIMEOUT)

    def test_failure_shapes(self):
        r = SandboxRunResult(ok=False, exit_code=-1, error_code="timeout")
        assert r.error_code == SandboxErrorCode.TIMEOUT
        assert r.model_dump(mode="json")["error_code"] == "timeout"


# ── Audit / usage ────────────────────────────────────────────────────────────


class TestProxyAuditEntry:
    def test_chain_fields_ignored(self):
        entry = ProxyAuditEntry.model_validate(
            {
                "seq": 3,
                "prev_hash": "0" * 64,
                "hash": "f" * 64,
                "billing_account_id": "acct",
                "request_id": "req",
                "timestamp": "2026-01-01T00:00:00+00:00",
            }
        )
        assert entry.request_id == "req"
        assert entry.status == "ok"
        assert not hasattr(entry, "seq")


# ── AiEvent ──────────────────────────────────────────────────────────────────


class TestAiEvent:
    def test_discriminated_parse(self):
        assert isinstance(ai_event_adapter.validate_python({"type": "done"}), DoneEvent)
        event = ai_event_adapter.validate_python({"type": "assistant_final", "content": "hi"})
        assert isinstance(event, AssistantFinalEvent)
        assert event.content == "hi"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            ai_event_adapter.validate_python({"type": "mystery"})

    def test_usage_report_serializes_fact(self):
        fact = UsageFact(
            run_id="r",
            attempt=0,
            billing_account_id="acct",
            usage_unit_id="u1",
            timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        data = UsageReportEvent(fact=fact).model_dump(mode="json")
        assert data["type"] == "usage_report"
        assert data["fact"]["source"] == "litellm"

    def test_error_event(self):
        assert ErrorEvent(code="timeout").message == ""
