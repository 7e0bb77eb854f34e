"""Shared fixtures for E2E sandbox tests against a real container engine.

Provides:
- A ContainerRuntimeClient connected to the local engine (skips if none)
- A small public image (``SANDGATE_E2E_IMAGE``, default busybox) pulled once
- A world-writable workspace, since the sandbox runs as an unprivileged uid
- An internal-only network (``SANDGATE_E2E_INTERNAL_NETWORK``), created on
  first use; tests needing it skip when the engine cannot provide one
- The locally built proxy image (``SANDGATE_E2E_PROXY_IMAGE``); proxy tests
  skip when it has not been built
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import pytest_asyncio

from sandgate.errors import ContainerEngineError
from sandgate.sandbox.config import SandboxConfig
from sandgate.sandbox.engine import ContainerRuntimeClient

E2E_IMAGE = os.environ.get("SANDGATE_E2E_IMAGE", "busybox:1.36")
E2E_INTERNAL_NETWORK = os.environ.get("SANDGATE_E2E_INTERNAL_NETWORK", "sandgate-e2e-internal")
E2E_PROXY_IMAGE = os.environ.get("SANDGATE_E2E_PROXY_IMAGE", "sandgate-llm-proxy:latest")


@pytest_asyncio.fixture
async def docker_engine():
    try:
        engine = ContainerRuntimeClient.from_env()
        await engine.ping()
    except ContainerEngineError as exc:
        pytest.skip(f"No container engine available: {exc}")
    try:
        await engine.ensure_image(E2E_IMAGE, pull=True)
    except ContainerEngineError as exc:
        await engine.close()
        pytest.skip(f"Cannot pull {E2E_IMAGE}: {exc}")
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def internal_network(docker_engine) -> str:
    try:
        attrs = await docker_engine.ensure_network(
            E2E_INTERNAL_NETWORK, internal=True, labels={"sandgate.role": "e2e"}
        )
    except ContainerEngineError as exc:
        pytest.skip(f"Internal network {E2E_INTERNAL_NETWORK} unavailable: {exc}")
    if not attrs.get("Internal", False):
        pytest.skip(f"Network {E2E_INTERNAL_NETWORK} exists but is not internal-only")
    return E2E_INTERNAL_NETWORK


@pytest_asyncio.fixture
async def proxy_image(docker_engine) -> str:
    try:
        await docker_engine.ensure_image(E2E_PROXY_IMAGE)
    except ContainerEngineError:
        pytest.skip(f"Proxy image {E2E_PROXY_IMAGE} not built (docker/Dockerfile.llm-proxy)")
    return E2E_PROXY_IMAGE


@pytest.fixture
def e2e_config() -> SandboxConfig:
    # busybox has no "sandboxer" account; run as nobody.
    return SandboxConfig(default_image=E2E_IMAGE, user="65534:65534")


@pytest.fixture
def e2e_workspace(tmp_path: Path) -> Path:
    d = tmp_path / "workspace"
    d.mkdir()
    d.chmod(0o777)
    return d
