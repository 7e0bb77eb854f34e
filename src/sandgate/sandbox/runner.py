"""SandboxRunner -- one command, one ephemeral container, one captured result.

Flow for ``run_once``:
1. Validate host paths, resolve the network policy, and make sure the image
   exists.  Failures here raise ``SandboxSetupError``; no container exists yet.
2. Optionally bring up the run's LLM proxy (``ProxySetupError`` on failure).
3. Create the hardened container, attach its multiplexed output, start it.
4. Race the container's exit against ``max_runtime_sec``; on the deadline
   kill it and report ``timeout``.
5. Inspect for OOM kills.
6. Always remove the container and stop the proxy, whichever branch ran.

Timeouts, OOM kills, and nonzero exits are encoded in ``SandboxRunResult``;
they are never raised.  No retries: callers retry with a new ``run_id``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sandgate.errors import ContainerEngineError, SandboxSetupError
from sandgate.models import NetworkMode, SandboxErrorCode, SandboxRunRequest, SandboxRunResult
from sandgate.sandbox.engine import STDERR, ContainerSpec
from sandgate.sandbox.env_scrub import build_sandbox_env
from sandgate.sandbox.labels import ROLE_SANDBOX, resource_labels
from sandgate.sandbox.network import ResolvedNetwork, resolve_network

if TYPE_CHECKING:
    from sandgate.sandbox.config import SandboxConfig
    from sandgate.sandbox.engine import ContainerRuntimeClient, OutputStream
    from sandgate.sandbox.llm_proxy import LlmProxyManager, ProxyHandle

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[OUTPUT TRUNCATED - exceeded max bytes]"
TIMEOUT_MESSAGE = "Command timed out"
OOM_MESSAGE = "Container killed: out of memory"


def sandbox_container_name(run_id: str) -> str:
    return f"sandgate-sandbox-{run_id}"


class _OutputCapture:
    """Bounded per-stream capture of demultiplexed container output."""

    def __init__(self, max_bytes: int) -> None:
        self._max = max_bytes
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._truncated = {"stdout": False, "stderr": False}

    def add(self, stream_id: int, payload: bytes) -> None:
        name = "stderr" if stream_id == STDERR else "stdout"
        buf = self._stderr if name == "stderr" else self._stdout
        room = self._max - len(buf)
        if len(payload) > room:
            buf.extend(payload[: max(room, 0)])
            self._truncated[name] = True
        else:
            buf.extend(payload)

    def _text(self, name: str) -> str:
        buf = self._stderr if name == "stderr" else self._stdout
        text = buf.decode("utf-8", errors="replace")
        if self._truncated[name]:
            text += TRUNCATION_MARKER
        return text

    @property
    def stdout(self) -> str:
        return self._text("stdout")

    @property
    def stderr(self) -> str:
        return self._text("stderr")

    @property
    def truncated(self) -> bool:
        return any(self._truncated.values())


class SandboxRunner:
    """Executes ``SandboxRunRequest``s against an explicitly provided engine.

    Lifecycle::

        runner = SandboxRunner(engine, config.sandbox, proxy_manager=manager)
        result = await runner.run_once(request)
    """

    def __init__(
        self,
        engine: ContainerRuntimeClient,
        config: SandboxConfig,
        *,
        proxy_manager: LlmProxyManager | None = None,
    ) -> None:
        self._engine = engine
        self._config = config
        self._proxy_manager = proxy_manager

    async def run_once(self, request: SandboxRunRequest) -> SandboxRunResult:
        """Run one command in one fresh container.

        Raises:
            SandboxSetupError: before any container exists (bad paths, missing
                image or network, proxy creation failure).
        """
        image = request.image or self._config.default_image
        self._validate_paths(request)
        network = await resolve_network(self._engine, request.network)
        try:
            await self._engine.ensure_image(image, pull=self._config.pull_missing_images)
        except ContainerEngineError as exc:
            raise SandboxSetupError(f"sandbox image unavailable: {image}: {exc}") from exc

        proxy: ProxyHandle | None = None
        container_id: str | None = None
        try:
            if request.proxy_enabled:
                proxy = await self._start_proxy(request, network)
            spec = self._build_spec(request, image, network, proxy)
            try:
                container_id = await self._engine.create_container(spec)
            except ContainerEngineError as exc:
                raise SandboxSetupError(f"failed to create sandbox container: {exc}") from exc
            logger.info(
                "Sandbox %s created (image=%s network=%s proxy=%s)",
                spec.name,
                image,
                network.mode.value,
                proxy.container_name if proxy else "none",
            )
            return await self._execute(request, container_id)
        finally:
            if container_id is not None:
                await asyncio.shield(self._remove_container(container_id))
            if proxy is not None:
                await asyncio.shield(self._stop_proxy(proxy))

    # ── Setup ─────────────────────────────────────────────────────────────────

    def _validate_paths(self, request: SandboxRunRequest) -> None:
        if not request.workspace_path.is_dir():
            raise SandboxSetupError(f"workspace is not a directory: {request.workspace_path}")
        for mount in request.mounts:
            if not mount.host_path.exists():
                raise SandboxSetupError(f"mount source does not exist: {mount.host_path}")
            if mount.container_path == self._config.workspace_path:
                raise SandboxSetupError(
                    f"mount target {mount.container_path} collides with the workspace"
                )

    async def _start_proxy(
        self, request: SandboxRunRequest, network: ResolvedNetwork
    ) -> ProxyHandle:
        if self._proxy_manager is None:
            raise SandboxSetupError("llm_proxy requested but no LlmProxyManager is configured")
        proxy_req = request.llm_proxy
        return await self._proxy_manager.ensure_proxy(
            request.run_id,
            proxy_req.billing_account_id,
            proxy_req.attempt,
            sandbox_network=network.network if network.mode == NetworkMode.INTERNAL else None,
        )

    def _build_spec(
        self,
        request: SandboxRunRequest,
        image: str,
        network: ResolvedNetwork,
        proxy: ProxyHandle | None,
    ) -> ContainerSpec:
        cfg = self._config
        binds = [f"{request.workspace_path.resolve()}:{cfg.workspace_path}:rw"]
        binds.extend(m.bind_spec() for m in request.mounts)

        caller_env: dict[str, str] = {}
        proxy_env: dict[str, str] = {}
        volume_mounts = []
        forbidden: list[str] = []
        if request.llm_proxy is not None:
            caller_env.update(request.llm_proxy.env)
        if proxy is not None:
            proxy_env, volume_mounts = proxy.sandbox_wiring(network.mode)
            if request.llm_proxy.model:
                proxy_env[cfg.model_env_var] = request.llm_proxy.model
        if self._proxy_manager is not None and self._proxy_manager.master_key:
            forbidden.append(self._proxy_manager.master_key)

        return ContainerSpec(
            name=sandbox_container_name(request.run_id),
            image=image,
            entrypoint=list(request.argv),
            labels=resource_labels(cfg.label_prefix, ROLE_SANDBOX, request.run_id),
            environment=build_sandbox_env(
                cfg, caller_env=caller_env, proxy_env=proxy_env, forbidden_values=forbidden
            ),
            working_dir=cfg.workspace_path,
            user=cfg.user,
            network_mode=network.network_mode,
            network=network.network,
            binds=binds,
            volume_mounts=volume_mounts,
            memory_bytes=request.limits.max_memory_mb * 1024 * 1024,
            read_only=cfg.read_only_rootfs,
            tmpfs=dict(cfg.tmpfs),
            cap_drop=list(cfg.cap_drop),
            security_opt=list(cfg.security_opt),
            pids_limit=cfg.pids_limit,
        )

    # ── Execution ─────────────────────────────────────────────────────────────

    async def _execute(self, request: SandboxRunRequest, container_id: str) -> SandboxRunResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        capture = _OutputCapture(self._config.max_output_bytes)

        def elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        try:
            output = await self._engine.attach_output(container_id)
        except ContainerEngineError as exc:
            logger.warning("Sandbox %s: attach failed: %s", request.run_id, exc)
            return _failure(SandboxErrorCode.SETUP_ERROR, f"attach failed: {exc}", capture, 0)

        collector = asyncio.create_task(_collect(output, capture))
        timed_out = False
        exit_code = -1
        try:
            try:
                await self._engine.start(container_id)
            except ContainerEngineError as exc:
                logger.warning("Sandbox %s: start failed: %s", request.run_id, exc)
                return _failure(
                    SandboxErrorCode.SETUP_ERROR, f"start failed: {exc}", capture, elapsed_ms()
                )

            try:
                exit_code = await asyncio.wait_for(
                    self._engine.wait(container_id), timeout=request.limits.max_runtime_sec
                )
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    "Sandbox %s exceeded %.1fs; killing",
                    request.run_id,
                    request.limits.max_runtime_sec,
                )
                await self._kill(container_id)
            except ContainerEngineError as exc:
                logger.error("Sandbox %s: engine failed while waiting: %s", request.run_id, exc)
                return _failure(SandboxErrorCode.INTERNAL, str(exc), capture, elapsed_ms())

            # Output keeps flowing until the attach socket hits EOF.
            await asyncio.wait({collector}, timeout=self._config.output_grace_sec)
        finally:
            await output.aclose()
            if not collector.done():
                collector.cancel()
            await asyncio.gather(collector, return_exceptions=True)

        if timed_out:
            return SandboxRunResult(
                ok=False,
                exit_code=-1,
                stdout=capture.stdout,
                stderr=capture.stderr or TIMEOUT_MESSAGE,
                error_code=SandboxErrorCode.TIMEOUT,
                output_truncated=capture.truncated,
                duration_ms=elapsed_ms(),
            )

        if await self._oom_killed(container_id):
            logger.warning("Sandbox %s was OOM-killed", request.run_id)
            return SandboxRunResult(
                ok=False,
                exit_code=exit_code,
                stdout=capture.stdout,
                stderr=capture.stderr or OOM_MESSAGE,
                error_code=SandboxErrorCode.OOM,
                output_truncated=capture.truncated,
                duration_ms=elapsed_ms(),
            )

        logger.info("Sandbox %s exited with %d", request.run_id, exit_code)
        return SandboxRunResult(
            ok=exit_code == 0,
            exit_code=exit_code,
            stdout=capture.stdout,
            stderr=capture.stderr,
            output_truncated=capture.truncated,
            duration_ms=elapsed_ms(),
        )

    async def _kill(self, container_id: str) -> None:
        try:
            await self._engine.kill(container_id)
        except ContainerEngineError:
            # Already exited between the deadline and the kill.
            logger.debug("Kill of %s failed", container_id, exc_info=True)

    async def _oom_killed(self, container_id: str) -> bool:
        try:
            attrs = await self._engine.inspect(container_id)
        except ContainerEngineError:
            logger.warning("Could not inspect %s for OOM state", container_id, exc_info=True)
            return False
        return bool(attrs.get("State", {}).get("OOMKilled", False))

    # ── Cleanup ───────────────────────────────────────────────────────────────

    async def _remove_container(self, container_id: str) -> None:
        try:
            await self._engine.remove(container_id, force=True)
        except ContainerEngineError:
            logger.exception("Failed to remove sandbox container %s", container_id)

    async def _stop_proxy(self, proxy: ProxyHandle) -> None:
        try:
            await self._proxy_manager.stop(proxy.run_id, proxy.attempt)
        except Exception:
            logger.exception("Failed to stop LLM proxy for run %s", proxy.run_id)


async def _collect(output: OutputStream, capture: _OutputCapture) -> None:
    async for stream_id, payload in output:
        capture.add(stream_id, payload)


def _failure(
    code: SandboxErrorCode, message: str, capture: _OutputCapture, duration_ms: int
) -> SandboxRunResult:
    stderr = capture.stderr
    stderr = f"{stderr}\n{message}" if stderr else message
    return SandboxRunResult(
        ok=False,
        exit_code=-1,
        stdout=capture.stdout,
        stderr=stderr,
        error_code=code,
        output_truncated=capture.truncated,
        duration_ms=duration_ms,
    )
