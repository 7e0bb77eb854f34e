"""Tests for LlmProxyManager and the orphan proxy sweep."""

from __future__ import annotations

import asyncio
import time

import pytest

from fakes import MASTER_KEY, PROXY_IMAGE, SANDBOX_IMAGE, FakeEngine
from sandgate.errors import ProxySetupError
from sandgate.sandbox.engine import ContainerSpec
from sandgate.sandbox.llm_proxy import LlmProxyManager, cleanup_sweep


@pytest.fixture
def manager(engine: FakeEngine, proxy_config) -> LlmProxyManager:
    return LlmProxyManager(engine, proxy_config, master_key=MASTER_KEY)


async def start_sandbox(engine: FakeEngine, run_id: str) -> str:
    """A running sandbox container marks ``run_id`` as active."""
    cid = await engine.create_container(
        ContainerSpec(
            name=f"sandgate-sandbox-{run_id}",
            image=SANDBOX_IMAGE,
            labels={"sandgate.role": "sandbox", "sandgate.run_id": run_id},
        )
    )
    engine.containers[cid].running = True
    return cid


def age(engine: FakeEngine, seconds: float) -> None:
    for c in engine.containers.values():
        c.created = time.time() - seconds


# ── ensure_proxy ─────────────────────────────────────────────────────────────


class TestEnsureProxy:
    @pytest.mark.asyncio
    async def test_creates_labeled_proxy(self, engine, manager, proxy_config):
        handle = await manager.ensure_proxy("run-1", "acct-1", attempt=2)

        assert handle.container_name == "sandgate-llm-proxy-run-1-2"
        assert handle.socket_volume == "sandgate-llm-sock-run-1-2"
        assert handle.audit_dir.is_dir()
        assert handle.audit_dir.name == "attempt-2"

        (spec,) = engine.created
        assert spec.image == PROXY_IMAGE
        assert spec.labels == {
            "sandgate.role": "llm-proxy",
            "sandgate.run_id": "run-1",
            "sandgate.attempt": "2",
        }
        assert spec.network == proxy_config.upstream_network
        assert spec.environment["SANDGATE_PROXY_BILLING_ACCOUNT_ID"] == "acct-1"
        assert spec.environment["SANDGATE_PROXY_MASTER_KEY"] == MASTER_KEY
        assert spec.environment["SANDGATE_PROXY_ATTEMPT"] == "2"
        assert spec.read_only is True
        assert spec.cap_drop == ["ALL"]
        assert engine.volumes["sandgate-llm-sock-run-1-2"]["sandgate.role"] == "llm-proxy"

    @pytest.mark.asyncio
    async def test_readiness_checks_socket(self, engine, manager):
        engine.exec_exit_codes = [1, 1, 0]
        await manager.ensure_proxy("run-1", "acct-1")

        argvs = [argv for _, argv in engine.exec_calls]
        assert argvs == [["test", "-S", "/llm-sock/llm.sock"]] * 3

    @pytest.mark.asyncio
    async def test_reuses_running_proxy(self, engine, manager):
        first = await manager.ensure_proxy("run-1", "acct-1")
        second = await manager.ensure_proxy("run-1", "acct-1")

        assert first is second
        assert len(engine.created) == 1

    @pytest.mark.asyncio
    async def test_concurrent_ensure_creates_once(self, engine, manager):
        handles = await asyncio.gather(
            manager.ensure_proxy("run-1", "acct-1"),
            manager.ensure_proxy("run-1", "acct-1"),
        )
        assert handles[0] is handles[1]
        assert len(engine.created) == 1

    @pytest.mark.asyncio
    async def test_attempts_are_separate_proxies(self, engine, manager):
        a0 = await manager.ensure_proxy("run-1", "acct-1", attempt=0)
        a1 = await manager.ensure_proxy("run-1", "acct-1", attempt=1)
        assert a0.container_id != a1.container_id

    @pytest.mark.asyncio
    async def test_recreates_dead_proxy(self, engine, manager):
        first = await manager.ensure_proxy("run-1", "acct-1")
        engine.containers[first.container_id].finish(1)

        second = await manager.ensure_proxy("run-1", "acct-1")
        assert second.container_id != first.container_id
        assert first.container_id in engine.removed

    @pytest.mark.asyncio
    async def test_not_ready_raises_with_logs_and_cleans_up(self, engine, manager):
        engine.exec_exit_codes = [1] * 10
        with pytest.raises(ProxySetupError) as exc_info:
            await manager.ensure_proxy("run-1", "acct-1")

        assert "not ready" in str(exc_info.value)
        assert "permission denied" in exc_info.value.logs
        assert engine.live() == []
        assert engine.volumes == {}

    @pytest.mark.asyncio
    async def test_missing_master_key_raises(self, engine, proxy_config, monkeypatch):
        monkeypatch.delenv("LITELLM_MASTER_KEY", raising=False)
        manager = LlmProxyManager(engine, proxy_config)
        with pytest.raises(ProxySetupError, match="master key"):
            await manager.ensure_proxy("run-1", "acct-1")
        assert engine.created == []

    @pytest.mark.asyncio
    async def test_missing_image_raises(self, engine, manager):
        engine.images.discard(PROXY_IMAGE)
        with pytest.raises(ProxySetupError, match="image"):
            await manager.ensure_proxy("run-1", "acct-1")

    @pytest.mark.asyncio
    async def test_joins_sandbox_internal_network(self, engine, proxy_config):
        proxy_config.upstream_network = "upstream-net"
        manager = LlmProxyManager(engine, proxy_config, master_key=MASTER_KEY)
        handle = await manager.ensure_proxy("run-1", "acct-1", sandbox_network="sandbox-internal")

        assert engine.containers[handle.container_id].networks == ["sandbox-internal"]


# ── stop / cleanup ───────────────────────────────────────────────────────────


class TestStopAndCleanup:
    @pytest.mark.asyncio
    async def test_stop_removes_container_and_volume_keeps_audit(self, engine, manager):
        handle = await manager.ensure_proxy("run-1", "acct-1")
        (handle.audit_dir / "audit.ndjson").write_text("{}\n")

        await manager.stop("run-1")

        assert engine.live() == []
        assert engine.volumes == {}
        assert handle.audit_path.exists()
        assert not await manager.is_running("run-1")

    @pytest.mark.asyncio
    async def test_stop_without_handle_finds_by_label(self, engine, proxy_config, manager):
        await manager.ensure_proxy("run-1", "acct-1")
        other = LlmProxyManager(engine, proxy_config, master_key=MASTER_KEY)

        await other.stop("run-1")
        assert engine.live() == []

    @pytest.mark.asyncio
    async def test_stop_twice_is_harmless(self, engine, manager):
        await manager.ensure_proxy("run-1", "acct-1")
        await manager.stop("run-1")
        await manager.stop("run-1")
        assert engine.live() == []

    @pytest.mark.asyncio
    async def test_stop_keeps_lock_held_by_ensure(self, engine, manager):
        lock = manager._locks.setdefault(("run-1", 0), asyncio.Lock())
        async with lock:
            await manager.stop("run-1")
            waiter = asyncio.create_task(manager.ensure_proxy("run-1", "acct-1"))
            await asyncio.sleep(0.05)
            assert not waiter.done()
            assert engine.created == []
        await waiter
        assert len(engine.created) == 1

    @pytest.mark.asyncio
    async def test_cleanup_removes_run_state(self, engine, manager):
        handle = await manager.ensure_proxy("run-1", "acct-1")
        await manager.stop("run-1")
        await manager.cleanup("run-1")

        assert not manager.run_dir("run-1").exists()
        assert not handle.audit_dir.exists()
        assert manager._locks == {}
        await manager.cleanup("run-1")

    @pytest.mark.asyncio
    async def test_stop_all(self, engine, manager):
        await manager.ensure_proxy("run-1", "acct-1")
        await manager.ensure_proxy("run-2", "acct-2")
        await manager.stop_all()
        assert engine.live() == []


# ── cleanup_sweep ────────────────────────────────────────────────────────────


class TestCleanupSweep:
    @pytest.mark.asyncio
    async def test_removes_orphans_only(self, engine, manager):
        await manager.ensure_proxy("orphan", "acct-1")
        await manager.ensure_proxy("active", "acct-1")
        await start_sandbox(engine, "active")
        age(engine, 3600)

        removed = await cleanup_sweep(engine)

        assert removed == 1
        names = {c.spec.name for c in engine.live()}
        assert "sandgate-llm-proxy-orphan-0" not in names
        assert "sandgate-llm-proxy-active-0" in names
        assert "sandgate-llm-sock-orphan-0" not in engine.volumes
        assert "sandgate-llm-sock-active-0" in engine.volumes

    @pytest.mark.asyncio
    async def test_young_proxies_kept(self, engine, manager):
        await manager.ensure_proxy("fresh", "acct-1")
        assert await cleanup_sweep(engine, min_age_sec=60) == 0
        assert len(engine.live()) == 1

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, manager):
        await manager.ensure_proxy("orphan", "acct-1")
        age(engine, 3600)

        assert await cleanup_sweep(engine) == 1
        assert await cleanup_sweep(engine) == 0

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_count_each_removal_once(self, engine, manager):
        for i in range(3):
            await manager.ensure_proxy(f"orphan-{i}", "acct-1")
        age(engine, 3600)

        counts = await asyncio.gather(cleanup_sweep(engine), cleanup_sweep(engine))
        assert sum(counts) == 3
        assert engine.live() == []

    @pytest.mark.asyncio
    async def test_unlabeled_resources_untouched(self, engine, manager):
        cid = await engine.create_container(ContainerSpec(name="someone-else", image=PROXY_IMAGE))
        await engine.create_volume("someone-elses-volume")
        age(engine, 3600)

        assert await cleanup_sweep(engine) == 0
        assert cid in engine.containers
        assert "someone-elses-volume" in engine.volumes

    @pytest.mark.asyncio
    async def test_manager_method_delegates(self, engine, manager):
        await manager.ensure_proxy("orphan", "acct-1")
        age(engine, 3600)
        assert await manager.cleanup_sweep(min_age_sec=0) == 1
