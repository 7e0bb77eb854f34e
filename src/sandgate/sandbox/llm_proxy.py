"""LlmProxyManager -- per-run reverse proxies giving sandboxes model access.

A sandbox with ``network=none`` cannot reach anything.  When a run needs an
LLM, the manager starts a dedicated proxy container for that run which:

- sits on the network the upstream LLM endpoint is reachable from,
- exposes a Unix socket on a per-run volume the sandbox also mounts
  (``none`` mode), and listens on TCP for ``internal`` mode sandboxes that
  share an internal-only network with it,
- injects the real upstream credential on every forwarded request and
  ignores whatever auth the sandbox sends,
- tags every request with the run's billing account and appends one
  hash-chained audit record per call to ``<state_dir>/<run_id>/attempt-N/``
  on the host.

Architecture::

    sandbox (network=none)        proxy container                      upstream
    ──────────────────────        ───────────────                      ────────
    HTTP over unix socket ─► /llm-sock/llm.sock ─► LlmProxyServer ──HTTP──► LiteLLM
                             (shared volume)       │ strip client auth
                                                   │ inject master key
                                                   │ tag billing account
                                                   ▼
                                  /var/log/sandgate/audit.ndjson  (host bind)

Every container and volume carries ``<prefix>.role=llm-proxy`` and
``<prefix>.run_id`` labels; ``cleanup_sweep`` works from those labels alone.

Lifecycle::

    manager = LlmProxyManager(engine, config)
    handle = await manager.ensure_proxy(run_id, billing_account_id, attempt)
    ...run the sandbox...
    await manager.stop(run_id, attempt)      # audit log stays on the host
    entries = ProxyBillingReader(...).read_audit_entries(run_id)
    await manager.cleanup(run_id)            # drop host state
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sandgate.errors import ContainerEngineError, ProxySetupError
from sandgate.models import NetworkMode
from sandgate.sandbox.engine import ContainerSpec, VolumeMount
from sandgate.sandbox.labels import (
    ROLE_LLM_PROXY,
    ROLE_SANDBOX,
    attempt_label,
    resource_labels,
    role_label,
    run_id_label,
)

if TYPE_CHECKING:
    from sandgate.sandbox.config import LlmProxyConfig
    from sandgate.sandbox.engine import ContainerRuntimeClient

logger = logging.getLogger(__name__)

AUDIT_FILE_NAME = "audit.ndjson"


@dataclass
class ProxyHandle:
    """A running proxy for one (run_id, attempt)."""

    run_id: str
    attempt: int
    billing_account_id: str
    container_id: str
    container_name: str
    socket_volume: str
    audit_dir: Path
    listen_port: int
    socket_mount_path: str
    socket_name: str
    created_at: float = field(default_factory=time.time)

    @property
    def audit_path(self) -> Path:
        return self.audit_dir / AUDIT_FILE_NAME

    def sandbox_wiring(self, mode: NetworkMode) -> tuple[dict[str, str], list[VolumeMount]]:
        """Env vars and volume mounts a sandbox needs to reach this proxy.

        ``internal`` sandboxes reach the proxy by name on the shared internal
        network and get the usual ``OPENAI_*`` base URLs.  Everything else
        gets the socket volume only: nothing listens on TCP inside such a
        sandbox, so clients must speak HTTP over ``SANDGATE_LLM_SOCKET`` and
        prefix request paths with ``SANDGATE_LLM_PATH``.
        """
        if mode == NetworkMode.INTERNAL:
            base = f"http://{self.container_name}:{self.listen_port}"
            return {"OPENAI_API_BASE": f"{base}/v1", "OPENAI_BASE_URL": f"{base}/v1"}, []
        env = {
            "SANDGATE_LLM_SOCKET": f"{self.socket_mount_path}/{self.socket_name}",
            "SANDGATE_LLM_PATH": "/v1",
        }
        return env, [VolumeMount(self.socket_volume, self.socket_mount_path)]


def proxy_container_name(run_id: str, attempt: int) -> str:
    return f"sandgate-llm-proxy-{run_id}-{attempt}"


def socket_volume_name(run_id: str, attempt: int) -> str:
    return f"sandgate-llm-sock-{run_id}-{attempt}"


class LlmProxyManager:
    """Creates, reuses, and tears down per-run LLM proxy containers."""

    def __init__(
        self,
        engine: ContainerRuntimeClient,
        config: LlmProxyConfig,
        *,
        label_prefix: str = "sandgate",
        master_key: str | None = None,
        pull_missing_images: bool = False,
    ) -> None:
        self._engine = engine
        self._config = config
        self._prefix = label_prefix
        self._master_key = master_key if master_key is not None else config.master_key
        self._pull = pull_missing_images
        self._handles: dict[tuple[str, int], ProxyHandle] = {}
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}

    @property
    def master_key(self) -> str | None:
        return self._master_key

    @property
    def state_dir(self) -> Path:
        return Path(self._config.state_dir)

    def run_dir(self, run_id: str) -> Path:
        """Host directory holding all audit logs for one run."""
        return self.state_dir / run_id

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def ensure_proxy(
        self,
        run_id: str,
        billing_account_id: str,
        attempt: int = 0,
        *,
        sandbox_network: str | None = None,
    ) -> ProxyHandle:
        """Return a ready proxy for (run_id, attempt), creating it if needed.

        Args:
            sandbox_network: Internal network the sandbox will join, when the
                sandbox runs in ``internal`` mode.  The proxy is attached to it.

        Raises:
            ProxySetupError: the proxy could not be created or never became ready.
        """
        key = (run_id, attempt)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            handle = self._handles.get(key)
            if handle is not None:
                if await self.is_running(run_id, attempt):
                    logger.debug("Reusing LLM proxy %s", handle.container_name)
                    return handle
                logger.warning("LLM proxy %s is gone; recreating", handle.container_name)
                await self.stop(run_id, attempt)
            handle = await self._create(run_id, billing_account_id, attempt, sandbox_network)
            self._handles[key] = handle
            return handle

    async def _create(
        self,
        run_id: str,
        billing_account_id: str,
        attempt: int,
        sandbox_network: str | None,
    ) -> ProxyHandle:
        cfg = self._config
        if not self._master_key:
            raise ProxySetupError(f"upstream master key is not set (env {cfg.master_key_env})")

        name = proxy_container_name(run_id, attempt)
        volume = socket_volume_name(run_id, attempt)
        audit_dir = self.run_dir(run_id) / f"attempt-{attempt}"
        labels = resource_labels(self._prefix, ROLE_LLM_PROXY, run_id, attempt=str(attempt))

        await asyncio.to_thread(audit_dir.mkdir, mode=0o700, parents=True, exist_ok=True)

        try:
            await self._engine.ensure_image(cfg.image, pull=self._pull)
        except ContainerEngineError as exc:
            raise ProxySetupError(f"LLM proxy image unavailable: {cfg.image}: {exc}") from exc

        env = {
            "SANDGATE_PROXY_UPSTREAM_URL": cfg.upstream_url,
            "SANDGATE_PROXY_MASTER_KEY": self._master_key,
            "SANDGATE_PROXY_BILLING_ACCOUNT_ID": billing_account_id,
            "SANDGATE_PROXY_RUN_ID": run_id,
            "SANDGATE_PROXY_ATTEMPT": str(attempt),
            "SANDGATE_PROXY_SOCKET_PATH": cfg.socket_path,
            "SANDGATE_PROXY_LISTEN_PORT": str(cfg.listen_port),
            "SANDGATE_PROXY_AUDIT_DIR": cfg.audit_mount_path,
            "SANDGATE_PROXY_ALLOWED_PATH_PREFIXES": ",".join(cfg.allowed_path_prefixes),
            "SANDGATE_PROXY_UPSTREAM_TIMEOUT_SEC": str(cfg.upstream_timeout_sec),
        }
        spec = ContainerSpec(
            name=name,
            image=cfg.image,
            labels=labels,
            environment=env,
            network=cfg.upstream_network,
            binds=[f"{audit_dir.resolve()}:{cfg.audit_mount_path}:rw"],
            volume_mounts=[VolumeMount(volume, cfg.socket_mount_path)],
            # Same uid as the host owner of the audit dir.
            user=f"{os.getuid()}:{os.getgid()}" if hasattr(os, "getuid") else None,
            read_only=True,
            tmpfs={"/tmp": "rw,noexec,nosuid,size=16m"},
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
            pids_limit=64,
        )

        container_id: str | None = None
        try:
            await self._engine.create_volume(volume, labels=labels)
            container_id = await self._engine.create_container(spec)
            if sandbox_network and sandbox_network != cfg.upstream_network:
                await self._engine.connect_network(sandbox_network, container_id)
            await self._engine.start(container_id)
            await self._wait_ready(container_id, name)
        except ProxySetupError:
            await self._discard(container_id, volume)
            raise
        except ContainerEngineError as exc:
            await self._discard(container_id, volume)
            raise ProxySetupError(f"failed to start LLM proxy {name}: {exc}") from exc

        logger.info(
            "LLM proxy ready: %s (run=%s attempt=%d billing=%s)",
            name,
            run_id,
            attempt,
            billing_account_id,
        )
        return ProxyHandle(
            run_id=run_id,
            attempt=attempt,
            billing_account_id=billing_account_id,
            container_id=container_id,
            container_name=name,
            socket_volume=volume,
            audit_dir=audit_dir,
            listen_port=cfg.listen_port,
            socket_mount_path=cfg.socket_mount_path,
            socket_name=cfg.socket_name,
        )

    async def _wait_ready(self, container_id: str, name: str) -> None:
        """Probe for the proxy socket with exponential backoff."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.ready_timeout_sec
        for delay_ms in [0, *self._config.ready_backoff_ms]:
            if delay_ms:
                await asyncio.sleep(delay_ms / 1000)
            result = await self._engine.exec(container_id, ["test", "-S", self._config.socket_path])
            if result.exit_code == 0:
                return
            if loop.time() >= deadline:
                break

        logs = ""
        try:
            logs = await self._engine.logs_tail(container_id)
        except ContainerEngineError:
            logger.debug("Could not read logs of failed proxy %s", name)
        raise ProxySetupError(
            f"LLM proxy {name} socket not ready after {self._config.ready_timeout_sec}s",
            logs=logs,
        )

    async def _discard(self, container_id: str | None, volume: str) -> None:
        if container_id:
            try:
                await self._engine.remove(container_id, force=True)
            except ContainerEngineError:
                logger.exception("Failed to remove half-created proxy %s", container_id)
        try:
            await self._engine.remove_volume(volume)
        except ContainerEngineError:
            logger.exception("Failed to remove proxy volume %s", volume)

    async def stop(self, run_id: str, attempt: int = 0) -> None:
        """Remove the proxy container and socket volume for (run_id, attempt).

        The host-side audit log is kept for the billing reader.  Failures are
        logged, never raised; ``cleanup_sweep`` is the backstop.
        """
        # The per-key lock stays: ensure_proxy calls stop while holding it.
        handle = self._handles.pop((run_id, attempt), None)

        container_ids: list[str] = []
        if handle is not None:
            container_ids.append(handle.container_id)
        else:
            try:
                found = await self._engine.list_containers(
                    {
                        role_label(self._prefix): ROLE_LLM_PROXY,
                        run_id_label(self._prefix): run_id,
                        attempt_label(self._prefix): str(attempt),
                    }
                )
                container_ids.extend(c.id for c in found)
            except ContainerEngineError:
                logger.warning("Could not list proxies for run %s", run_id, exc_info=True)

        for container_id in container_ids:
            try:
                await self._engine.stop(container_id, timeout=self._config.stop_timeout_sec)
            except ContainerEngineError:
                logger.debug("Proxy %s did not stop cleanly; forcing removal", container_id)
            try:
                await self._engine.remove(container_id, force=True)
            except ContainerEngineError:
                logger.warning("Failed to remove LLM proxy %s", container_id, exc_info=True)

        volume = socket_volume_name(run_id, attempt)
        try:
            await self._engine.remove_volume(volume)
        except ContainerEngineError:
            logger.warning("Failed to remove proxy volume %s", volume, exc_info=True)

        logger.info("LLM proxy stopped: run=%s attempt=%d", run_id, attempt)

    async def cleanup(self, run_id: str) -> None:
        """Delete host-side state (audit logs) for a run after billing has read it."""
        for key in [k for k, lock in self._locks.items() if k[0] == run_id and not lock.locked()]:
            del self._locks[key]
        run_dir = self.run_dir(run_id)
        try:
            await asyncio.to_thread(shutil.rmtree, run_dir)
        except FileNotFoundError:
            return
        except OSError:
            logger.warning("Failed to remove proxy state %s", run_dir, exc_info=True)

    async def is_running(self, run_id: str, attempt: int = 0) -> bool:
        try:
            running = await self._engine.list_containers(
                {
                    role_label(self._prefix): ROLE_LLM_PROXY,
                    run_id_label(self._prefix): run_id,
                    attempt_label(self._prefix): str(attempt),
                },
                running_only=True,
            )
        except ContainerEngineError:
            logger.warning("Could not check proxy state for run %s", run_id, exc_info=True)
            return False
        return bool(running)

    async def stop_all(self) -> None:
        for run_id, attempt in list(self._handles):
            await self.stop(run_id, attempt)

    async def cleanup_sweep(self, *, min_age_sec: float = 60.0) -> int:
        return await cleanup_sweep(self._engine, label_prefix=self._prefix, min_age_sec=min_age_sec)


async def cleanup_sweep(
    engine: ContainerRuntimeClient,
    *,
    label_prefix: str = "sandgate",
    min_age_sec: float = 60.0,
) -> int:
    """Remove labeled proxy containers whose parent run is no longer active.

    A run is active while a running sandbox container carries its run id.
    Proxies younger than ``min_age_sec`` are kept so a proxy created just
    before its sandbox is not swept.  Unlabeled resources are never touched.
    Safe to call repeatedly and concurrently: removal of an already-removed
    container is not counted and not an error.

    Returns:
        Number of proxy containers this call removed.
    """
    role_key = role_label(label_prefix)
    run_key = run_id_label(label_prefix)

    proxies = await engine.list_containers({role_key: ROLE_LLM_PROXY})
    sandboxes = await engine.list_containers({role_key: ROLE_SANDBOX}, running_only=True)
    active_runs = {c.labels.get(run_key) for c in sandboxes}

    now = time.time()
    removed = 0
    kept_runs: set[str | None] = set()
    for proxy in proxies:
        run_id = proxy.labels.get(run_key)
        if run_id in active_runs or now - proxy.created < min_age_sec:
            kept_runs.add(run_id)
            continue
        try:
            if await engine.remove(proxy.id, force=True):
                removed += 1
                logger.info("Swept orphan LLM proxy %s (run=%s)", proxy.name, run_id)
        except ContainerEngineError:
            logger.warning("Sweep could not remove proxy %s", proxy.name, exc_info=True)
            kept_runs.add(run_id)

    volumes = await engine.list_volumes({role_key: ROLE_LLM_PROXY})
    for volume_name, labels in volumes.items():
        run_id = labels.get(run_key)
        if run_id in active_runs or run_id in kept_runs:
            continue
        try:
            await engine.remove_volume(volume_name)
        except ContainerEngineError:
            # Still mounted by a container; the next sweep gets it.
            logger.debug("Sweep skipped busy volume %s", volume_name)

    if removed:
        logger.info("Proxy sweep removed %d orphan proxies", removed)
    return removed
