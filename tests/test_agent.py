"""Tests for SandboxAgentProvider: sandbox agent runs as AiEvent streams."""

from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from fakes import MASTER_KEY, SANDBOX_IMAGE, FakeEngine
from sandgate.errors import SandboxSetupError
from sandgate.events import (
    AssistantFinalEvent,
    DoneEvent,
    ErrorEvent,
    TextDeltaEvent,
    UsageReportEvent,
)
from sandgate.proxy.audit import ProxyAuditLogger
from sandgate.sandbox.agent import MESSAGES_DIR, MESSAGES_FILE, SandboxAgentProvider, write_messages
from sandgate.sandbox.llm_proxy import LlmProxyManager
from sandgate.sandbox.runner import SandboxRunner

MESSAGES = [{"role": "user", "content": "What is 2 + 2?"}]


@pytest.fixture
def proxy_manager(engine: FakeEngine, proxy_config) -> LlmProxyManager:
    return LlmProxyManager(engine, proxy_config, master_key=MASTER_KEY)


@pytest.fixture
def provider(engine: FakeEngine, sandbox_config, proxy_manager) -> SandboxAgentProvider:
    runner = SandboxRunner(engine, sandbox_config, proxy_manager=proxy_manager)
    return SandboxAgentProvider(runner, proxy_manager)


async def collect(provider: SandboxAgentProvider, **kwargs) -> list:
    defaults = {"model": "gpt-4o-mini", "billing_account_id": "acct-1", "run_id": "run-1"}
    defaults.update(kwargs)
    return [event async for event in provider.run(MESSAGES, **defaults)]


async def seed_audit(proxy_manager: LlmProxyManager, run_id: str, request_ids: list[str]) -> None:
    """Audit records as the run's proxy would have written them."""
    path = proxy_manager.run_dir(run_id) / "attempt-0" / "audit.ndjson"
    audit = ProxyAuditLogger(path, run_id=run_id, attempt=0)
    await audit.start()
    for request_id in request_ids:
        await audit.log_call(
            billing_account_id="acct-1",
            request_id=request_id,
            model="gpt-4o-mini",
            cost_usd=0.01,
            duration_ms=40,
            status="ok",
            status_code=200,
            path="/v1/chat/completions",
        )


def workspace_of(engine: FakeEngine) -> Path:
    spec = next(s for s in engine.created if s.image == SANDBOX_IMAGE)
    return Path(spec.binds[0].split(":")[0])


# ── write_messages ───────────────────────────────────────────────────────────


class TestWriteMessages:
    def test_writes_json(self, tmp_path):
        path = write_messages(tmp_path, MESSAGES)
        assert path == tmp_path.resolve() / MESSAGES_DIR / MESSAGES_FILE
        assert json.loads(path.read_text()) == MESSAGES

    def test_symlink_escape_refused(self, tmp_path):
        workspace = tmp_path / "ws"
        outside = tmp_path / "outside"
        workspace.mkdir()
        outside.mkdir()
        (workspace / MESSAGES_DIR).symlink_to(outside)

        with pytest.raises(SandboxSetupError, match="symlink escape"):
            write_messages(workspace, MESSAGES)
        assert list(outside.iterdir()) == []


# ── run ──────────────────────────────────────────────────────────────────────


class TestSandboxAgentProvider:
    @pytest.mark.asyncio
    async def test_success_event_order(self, engine, provider, proxy_manager):
        engine.script(SANDBOX_IMAGE, stdout=b"  4\n")
        await seed_audit(proxy_manager, "run-1", ["call-1", "call-2"])

        events = await collect(provider)

        assert [type(e) for e in events] == [
            TextDeltaEvent,
            UsageReportEvent,
            UsageReportEvent,
            AssistantFinalEvent,
            DoneEvent,
        ]
        assert events[0].delta == "4"
        assert events[3].content == "4"
        assert [e.fact.usage_unit_id for e in events[1:3]] == ["call-1", "call-2"]
        assert all(e.fact.billing_account_id == "acct-1" for e in events[1:3])

    @pytest.mark.asyncio
    async def test_workspace_readable_by_sandbox_user(self, engine, provider, monkeypatch):
        engine.script(SANDBOX_IMAGE, stdout=b"ok")
        modes: dict[str, int] = {}
        run_once = provider._runner.run_once

        async def recording_run_once(request):
            workspace = Path(request.workspace_path)
            messages_dir = workspace / MESSAGES_DIR
            modes["workspace"] = stat.S_IMODE(workspace.stat().st_mode)
            modes["dir"] = stat.S_IMODE(messages_dir.stat().st_mode)
            modes["file"] = stat.S_IMODE((messages_dir / MESSAGES_FILE).stat().st_mode)
            return await run_once(request)

        monkeypatch.setattr(provider._runner, "run_once", recording_run_once)
        await collect(provider)

        assert modes == {"workspace": 0o755, "dir": 0o755, "file": 0o644}

    @pytest.mark.asyncio
    async def test_sandbox_runs_agent_with_proxy(self, engine, provider):
        engine.script(SANDBOX_IMAGE, stdout=b"ok")
        await collect(provider)

        spec = next(s for s in engine.created if s.image == SANDBOX_IMAGE)
        assert spec.entrypoint == ["python", "/agent/run.py"]
        assert spec.environment["SANDGATE_MODEL"] == "gpt-4o-mini"
        assert MASTER_KEY not in spec.environment.values()

    @pytest.mark.asyncio
    async def test_empty_output_has_no_delta(self, engine, provider):
        events = await collect(provider)
        assert [type(e) for e in events] == [AssistantFinalEvent, DoneEvent]
        assert events[0].content == ""

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error(self, engine, provider):
        engine.script(SANDBOX_IMAGE, exit_code=2, stderr=b"Traceback")
        events = await collect(provider)

        assert [type(e) for e in events] == [ErrorEvent, DoneEvent]
        assert events[0].code == "internal"
        assert "2" in events[0].message

    @pytest.mark.asyncio
    async def test_oom_error_code(self, engine, provider):
        engine.script(SANDBOX_IMAGE, oom=True)
        events = await collect(provider)
        assert events[0].code == "oom"

    @pytest.mark.asyncio
    async def test_proxy_failure_is_setup_error(self, engine, provider):
        engine.exec_exit_codes = [1] * 10
        events = await collect(provider)

        assert [type(e) for e in events] == [ErrorEvent, DoneEvent]
        assert events[0].code == "setup_error"
        assert "--- proxy logs ---" not in events[0].message

    @pytest.mark.asyncio
    async def test_workspace_and_state_removed(self, engine, provider, proxy_manager):
        engine.script(SANDBOX_IMAGE, stdout=b"done")
        await seed_audit(proxy_manager, "run-1", ["call-1"])
        await collect(provider)

        assert not workspace_of(engine).exists()
        assert not proxy_manager.run_dir("run-1").exists()
        assert engine.live() == []

    @pytest.mark.asyncio
    async def test_workspace_removed_on_failure(self, engine, provider):
        engine.script(SANDBOX_IMAGE, exit_code=1)
        await collect(provider)
        assert not workspace_of(engine).exists()

    @pytest.mark.asyncio
    async def test_unknown_agent(self, engine, provider):
        assert not provider.can_handle("nope")
        events = await collect(provider, agent_name="nope")

        assert [type(e) for e in events] == [ErrorEvent, DoneEvent]
        assert events[0].code == "not_found"
        assert engine.created == []
