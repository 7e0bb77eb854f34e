"""Thin async wrapper over the Docker Engine API.

Every blocking docker-py call runs in a worker thread via
``asyncio.to_thread``.  docker-py exceptions are translated into
``ContainerEngineError`` / ``ContainerNotFoundError`` at this boundary so
callers (and test fakes) never depend on docker-py types.

Container output is read from the raw attach socket.  For non-TTY
containers the engine multiplexes stdout and stderr on that socket with an
8-byte header per frame::

    byte 0      stream type (0 stdin, 1 stdout, 2 stderr)
    bytes 1-3   zero padding
    bytes 4-7   payload size, big-endian uint32

``StreamDemuxer`` splits on that header; it never assumes line framing.

Lifecycle::

    engine = ContainerRuntimeClient.from_env()
    cid = await engine.create_container(spec)
    output = await engine.attach_output(cid)
    await engine.start(cid)
    async for stream_id, payload in output:
        ...
    await engine.remove(cid)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import socket
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import docker
import docker.errors
import docker.types

from sandgate.errors import ContainerEngineError, ContainerNotFoundError

logger = logging.getLogger(__name__)

STDIN = 0
STDOUT = 1
STDERR = 2

_FRAME_HEADER = struct.Struct(">BxxxL")
_READ_CHUNK = 64 * 1024
_EOF = object()


# ── Frame demultiplexing ─────────────────────────────────────────────────────


class StreamDemuxer:
    """Incremental splitter for the engine's multiplexed stream framing.

    ``feed`` accepts arbitrary chunks (a frame may span several chunks, a
    chunk may hold several frames) and returns every frame completed so far.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes) -> list[tuple[int, bytes]]:
        self._buf.extend(data)
        frames: list[tuple[int, bytes]] = []
        while len(self._buf) >= _FRAME_HEADER.size:
            stream_id, size = _FRAME_HEADER.unpack_from(self._buf)
            end = _FRAME_HEADER.size + size
            if len(self._buf) < end:
                break
            frames.append((stream_id, bytes(self._buf[_FRAME_HEADER.size : end])))
            del self._buf[:end]
        return frames

    @property
    def pending(self) -> int:
        """Bytes buffered for an incomplete frame."""
        return len(self._buf)


def demux_output(data: bytes) -> tuple[bytes, bytes]:
    """Split one complete multiplexed buffer into (stdout, stderr)."""
    stdout = bytearray()
    stderr = bytearray()
    demuxer = StreamDemuxer()
    for stream_id, payload in demuxer.feed(data):
        if stream_id == STDERR:
            stderr.extend(payload)
        else:
            stdout.extend(payload)
    if demuxer.pending:
        logger.debug("demux_output: dropped %d bytes of incomplete frame", demuxer.pending)
    return bytes(stdout), bytes(stderr)


# ── Output stream (push → pull) ──────────────────────────────────────────────


def _read_chunk(sock: Any) -> bytes:
    recv = getattr(sock, "recv", None)
    if recv is not None:
        return recv(_READ_CHUNK)
    return sock.read(_READ_CHUNK)


def _disable_timeout(sock: Any) -> None:
    for s in (sock, getattr(sock, "_sock", None)):
        if s is not None and hasattr(s, "settimeout"):
            s.settimeout(None)


def _shutdown(sock: Any) -> None:
    for s in (sock, getattr(sock, "_sock", None)):
        if s is not None and hasattr(s, "shutdown"):
            try:
                s.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
    try:
        sock.close()
    except OSError:
        pass


class OutputStream:
    """Async iterator of ``(stream_id, payload)`` frames from an attach socket.

    A worker thread reads the blocking socket, demultiplexes it, and pushes
    frames into a bounded ``asyncio.Queue``; consumers pull with
    ``async for``.  When the queue is full the reader thread blocks, so a
    slow consumer applies backpressure instead of growing memory.
    """

    def __init__(self, sock: Any, *, maxsize: int = 256) -> None:
        self._sock = sock
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._loop = asyncio.get_running_loop()
        self._closed = threading.Event()
        self._pump_task = asyncio.ensure_future(asyncio.to_thread(self._pump))

    def __aiter__(self) -> OutputStream:
        return self

    async def __anext__(self) -> tuple[int, bytes]:
        item = await self._queue.get()
        if item is _EOF:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Stop reading and release the socket.  Safe to call twice."""
        if self._closed.is_set():
            return
        self._closed.set()
        _shutdown(self._sock)
        # Unblock a reader thread waiting on a full queue.
        while not self._queue.empty():
            self._queue.get_nowait()
        try:
            await asyncio.wait_for(self._pump_task, timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning("OutputStream: reader thread did not stop within 1s")

    def _pump(self) -> None:
        demuxer = StreamDemuxer()
        try:
            while not self._closed.is_set():
                try:
                    chunk = _read_chunk(self._sock)
                except OSError as exc:
                    if not self._closed.is_set():
                        logger.debug("OutputStream: socket read ended: %s", exc)
                    break
                if not chunk:
                    break
                for frame in demuxer.feed(chunk):
                    if not self._put(frame):
                        return
        finally:
            self._put(_EOF)

    def _put(self, item: Any) -> bool:
        if self._closed.is_set():
            return False
        try:
            asyncio.run_coroutine_threadsafe(self._queue.put(item), self._loop).result()
        except (RuntimeError, concurrent.futures.CancelledError):
            # Event loop closed or shutting down.
            return False
        return True


# ── Container / volume descriptors ───────────────────────────────────────────


@dataclass
class VolumeMount:
    """A named engine volume mounted into a container."""

    volume: str
    target: str
    read_only: bool = False


@dataclass
class ContainerSpec:
    """Everything needed to create one container."""

    name: str
    image: str
    entrypoint: list[str] | None = None
    command: list[str] | None = None
    labels: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    user: str | None = None
    # Exactly one of network_mode ("none", "bridge") or network (a named network).
    network_mode: str | None = None
    network: str | None = None
    binds: list[str] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)
    memory_bytes: int | None = None
    read_only: bool = False
    tmpfs: dict[str, str] = field(default_factory=dict)
    cap_drop: list[str] = field(default_factory=list)
    security_opt: list[str] = field(default_factory=list)
    pids_limit: int | None = None

    def to_create_kwargs(self) -> dict[str, Any]:
        """Translate into ``docker.DockerClient.containers.create`` kwargs."""
        kwargs: dict[str, Any] = {
            "name": self.name,
            "labels": self.labels,
            "environment": self.environment,
            "volumes": self.binds,
            "read_only": self.read_only,
            "stdin_open": False,
            "tty": False,
        }
        if self.entrypoint is not None:
            kwargs["entrypoint"] = self.entrypoint
        if self.command is not None:
            kwargs["command"] = self.command
        if self.working_dir:
            kwargs["working_dir"] = self.working_dir
        if self.user:
            kwargs["user"] = self.user
        if self.network:
            kwargs["network"] = self.network
        elif self.network_mode:
            kwargs["network_mode"] = self.network_mode
        if self.volume_mounts:
            kwargs["mounts"] = [
                docker.types.Mount(
                    target=m.target, source=m.volume, type="volume", read_only=m.read_only
                )
                for m in self.volume_mounts
            ]
        if self.memory_bytes is not None:
            # Swap equal to memory means no swap on top of the memory limit.
            kwargs["mem_limit"] = self.memory_bytes
            kwargs["memswap_limit"] = self.memory_bytes
        if self.tmpfs:
            kwargs["tmpfs"] = self.tmpfs
        if self.cap_drop:
            kwargs["cap_drop"] = self.cap_drop
        if self.security_opt:
            kwargs["security_opt"] = self.security_opt
        if self.pids_limit is not None:
            kwargs["pids_limit"] = self.pids_limit
        return kwargs


@dataclass
class ContainerSummary:
    id: str
    name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    # Unix timestamp.
    created: float = 0.0


@dataclass
class ExecResult:
    exit_code: int
    stdout: bytes
    stderr: bytes


def _label_filters(labels: dict[str, str]) -> dict[str, list[str]]:
    return {"label": [f"{k}={v}" if v else k for k, v in labels.items()]}


# ── Client ───────────────────────────────────────────────────────────────────


class ContainerRuntimeClient:
    """Owns one docker-py client; every method is a coroutine."""

    def __init__(self, client: docker.DockerClient) -> None:
        self._client = client

    @classmethod
    def from_env(cls, timeout: int = 60) -> ContainerRuntimeClient:
        try:
            return cls(docker.from_env(timeout=timeout))
        except docker.errors.DockerException as exc:
            raise ContainerEngineError(f"cannot connect to container engine: {exc}") from exc

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except docker.errors.NotFound as exc:
            raise ContainerNotFoundError(str(exc)) from exc
        except docker.errors.DockerException as exc:
            raise ContainerEngineError(str(exc)) from exc

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)

    async def ping(self) -> bool:
        return bool(await self._call(self._client.ping))

    # ── Images ────────────────────────────────────────────────────────────────

    async def ensure_image(self, image: str, *, pull: bool = False) -> None:
        """Make sure ``image`` exists locally, pulling it when allowed.

        Raises:
            ContainerNotFoundError: image missing and ``pull`` is False.
        """

        def _ensure() -> None:
            try:
                self._client.images.get(image)
                return
            except docker.errors.ImageNotFound:
                if not pull:
                    raise
            logger.info("Pulling image %s", image)
            self._client.images.pull(image)

        await self._call(_ensure)

    # ── Networks ──────────────────────────────────────────────────────────────

    async def inspect_network(self, name: str) -> dict[str, Any]:
        network = await self._call(self._client.networks.get, name)
        return network.attrs

    async def ensure_network(
        self, name: str, *, internal: bool, labels: dict[str, str] | None = None
    ) -> dict[str, Any]:
        def _ensure() -> dict[str, Any]:
            try:
                return self._client.networks.get(name).attrs
            except docker.errors.NotFound:
                logger.info("Creating network %s (internal=%s)", name, internal)
                network = self._client.networks.create(
                    name, driver="bridge", internal=internal, labels=labels or {}
                )
                return network.attrs

        return await self._call(_ensure)

    async def connect_network(
        self, network: str, container_id: str, *, aliases: list[str] | None = None
    ) -> None:
        def _connect() -> None:
            self._client.networks.get(network).connect(container_id, aliases=aliases or None)

        await self._call(_connect)

    # ── Containers ────────────────────────────────────────────────────────────

    async def create_container(self, spec: ContainerSpec) -> str:
        container = await self._call(
            self._client.containers.create, spec.image, **spec.to_create_kwargs()
        )
        return container.id

    async def attach_output(self, container_id: str, *, maxsize: int = 256) -> OutputStream:
        """Attach to stdout/stderr.  Call before ``start`` so no output is missed."""

        def _attach() -> Any:
            sock = self._client.api.attach_socket(
                container_id, params={"stdout": 1, "stderr": 1, "stream": 1, "logs": 1}
            )
            _disable_timeout(sock)
            return sock

        sock = await self._call(_attach)
        return OutputStream(sock, maxsize=maxsize)

    async def start(self, container_id: str) -> None:
        await self._call(lambda: self._client.containers.get(container_id).start())

    async def wait(self, container_id: str) -> int:
        """Block until the container exits; returns its exit status."""
        result = await self._call(lambda: self._client.containers.get(container_id).wait())
        return int(result.get("StatusCode", -1))

    async def kill(self, container_id: str) -> None:
        await self._call(lambda: self._client.containers.get(container_id).kill())

    async def stop(self, container_id: str, *, timeout: int = 10) -> None:
        await self._call(lambda: self._client.containers.get(container_id).stop(timeout=timeout))

    async def inspect(self, container_id: str) -> dict[str, Any]:
        container = await self._call(self._client.containers.get, container_id)
        return container.attrs

    async def remove(self, container_id: str, *, force: bool = True) -> bool:
        """Remove a container.  Returns False if it was already gone."""
        try:
            await self._call(
                lambda: self._client.containers.get(container_id).remove(force=force, v=False)
            )
        except ContainerNotFoundError:
            return False
        return True

    async def exec(self, container_id: str, argv: list[str]) -> ExecResult:
        def _exec() -> ExecResult:
            container = self._client.containers.get(container_id)
            result = container.exec_run(argv, stdout=True, stderr=True, demux=True)
            out, err = result.output if result.output else (None, None)
            return ExecResult(
                exit_code=result.exit_code if result.exit_code is not None else -1,
                stdout=out or b"",
                stderr=err or b"",
            )

        return await self._call(_exec)

    async def logs_tail(self, container_id: str, lines: int = 50) -> str:
        raw = await self._call(
            lambda: self._client.containers.get(container_id).logs(tail=lines)
        )
        return raw.decode("utf-8", errors="replace")

    async def list_containers(
        self, labels: dict[str, str], *, running_only: bool = False
    ) -> list[ContainerSummary]:
        """List containers matching every ``key=value`` label (empty value = key exists)."""

        def _list() -> list[ContainerSummary]:
            # sparse=True avoids a per-container inspect that races concurrent removals.
            containers = self._client.containers.list(
                all=not running_only, filters=_label_filters(labels), sparse=True
            )
            summaries = []
            for c in containers:
                names = c.attrs.get("Names") or [""]
                summaries.append(
                    ContainerSummary(
                        id=c.id,
                        name=names[0].lstrip("/"),
                        status=c.attrs.get("State", ""),
                        labels=c.attrs.get("Labels") or {},
                        created=float(c.attrs.get("Created") or 0),
                    )
                )
            return summaries

        return await self._call(_list)

    # ── Volumes ───────────────────────────────────────────────────────────────

    async def create_volume(self, name: str, *, labels: dict[str, str] | None = None) -> None:
        await self._call(self._client.volumes.create, name=name, labels=labels or {})

    async def remove_volume(self, name: str) -> bool:
        """Remove a volume.  Returns False if it was already gone."""
        try:
            await self._call(lambda: self._client.volumes.get(name).remove(force=True))
        except ContainerNotFoundError:
            return False
        return True

    async def list_volumes(self, labels: dict[str, str]) -> dict[str, dict[str, str]]:
        """Map volume name → labels for volumes matching every label."""

        def _list() -> dict[str, dict[str, str]]:
            volumes = self._client.volumes.list(filters=_label_filters(labels))
            return {v.name: (v.attrs.get("Labels") or {}) for v in volumes}

        return await self._call(_list)
