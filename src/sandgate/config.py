"""Configuration loading for sandgate.

Reads an optional YAML file (``sandgate.yaml`` by default) into a validated
``SandgateConfig`` and applies ``SANDGATE_*`` environment overrides.
Secrets (the upstream master key, the gateway token) are never stored in
the file; the config only names the environment variables holding them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

from sandgate.sandbox.config import LlmProxyConfig, SandboxConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("sandgate.yaml")


class GatewayConfig(BaseModel):
    """Remote agent gateway connection settings."""

    url: str = "ws://127.0.0.1:18789"
    token_env: str = "SANDGATE_GATEWAY_TOKEN"
    handshake_timeout_ms: int = 10_000
    request_timeout_ms: int = 30_000
    agent_timeout_ms: int = 120_000
    agent_id: str = "main"
    queue_maxsize: int = 1024
    min_protocol: int = 3
    max_protocol: int = 3
    client_id: str = "gateway-client"
    client_version: str = "1.0.0"
    client_mode: str = "backend"

    @property
    def token(self) -> str | None:
        """Read the gateway auth token from the environment."""
        return os.environ.get(self.token_env)


class SandgateConfig(BaseModel):
    """Top-level config."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    proxy: LlmProxyConfig = Field(default_factory=LlmProxyConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)


# Environment variable → (section, field)
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "SANDGATE_LOG_LEVEL": (None, "log_level"),
    "SANDGATE_SANDBOX_IMAGE": ("sandbox", "default_image"),
    "SANDGATE_PROXY_IMAGE": ("proxy", "image"),
    "SANDGATE_PROXY_UPSTREAM_URL": ("proxy", "upstream_url"),
    "SANDGATE_PROXY_STATE_DIR": ("proxy", "state_dir"),
    "SANDGATE_GATEWAY_URL": ("gateway", "url"),
}


def load_config(config_path: Path | None = None) -> SandgateConfig:
    """Load sandgate configuration.

    Args:
        config_path: YAML file to read.  When None, ``sandgate.yaml`` in the
            current directory is used if it exists; otherwise defaults apply.

    Returns:
        Validated SandgateConfig.

    Raises:
        FileNotFoundError: If an explicit config_path doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    raw: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"sandgate config not found: {config_path}")
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    elif DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    # Environment variable overrides for deployment
    for env_var, (section, field) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        if section is None:
            raw[field] = value
        else:
            section_raw = raw.get(section) or {}
            section_raw[field] = value
            raw[section] = section_raw

    config = SandgateConfig(**raw)
    logger.info(
        "Loaded sandgate config: source=%s sandbox_image=%s gateway=%s",
        config_path or "defaults",
        config.sandbox.default_image,
        config.gateway.url,
    )
    return config
