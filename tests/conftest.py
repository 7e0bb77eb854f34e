"""Shared fixtures: the fake engine and gateway plus default configs."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve

from fakes import GATEWAY_TOKEN, FakeEngine, FakeGateway
from sandgate.config import GatewayConfig
from sandgate.gateway.client import GatewayProtocolClient
from sandgate.sandbox.config import LlmProxyConfig, SandboxConfig


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    return SandboxConfig(output_grace_sec=0.5)


@pytest.fixture
def proxy_config(tmp_path: Path) -> LlmProxyConfig:
    return LlmProxyConfig(
        state_dir=str(tmp_path / "proxy-state"),
        ready_backoff_ms=[1, 1, 1],
        ready_timeout_sec=0.5,
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    d = tmp_path / "workspace"
    d.mkdir()
    return d


@pytest_asyncio.fixture
async def gateway():
    fake = FakeGateway()
    async with serve(fake.handle, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        fake.url = f"ws://127.0.0.1:{port}"
        yield fake


@pytest.fixture
def gateway_config(gateway: FakeGateway) -> GatewayConfig:
    return GatewayConfig(
        url=gateway.url,
        handshake_timeout_ms=2_000,
        request_timeout_ms=2_000,
        agent_timeout_ms=2_000,
    )


@pytest_asyncio.fixture
async def gateway_client(gateway: FakeGateway, gateway_config: GatewayConfig):
    client = GatewayProtocolClient(gateway.url, GATEWAY_TOKEN, config=gateway_config)
    await client.connect()
    yield client
    await client.close()
