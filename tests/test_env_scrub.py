"""Tests for sandbox environment scrubbing."""

from __future__ import annotations

from sandgate.sandbox.config import SandboxConfig
from sandgate.sandbox.env_scrub import build_sandbox_env


class TestBuildSandboxEnv:
    def test_never_copies_host_env(self, monkeypatch):
        monkeypatch.setenv("PATH_LIKE_THING", "/usr/bin")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-host")
        assert build_sandbox_env(SandboxConfig()) == {}

    def test_caller_vars_kept(self):
        env = build_sandbox_env(SandboxConfig(), caller_env={"FOO": "bar", "LANG": "C.UTF-8"})
        assert env == {"FOO": "bar", "LANG": "C.UTF-8"}

    def test_secret_names_stripped(self):
        env = build_sandbox_env(
            SandboxConfig(),
            caller_env={
                "ANTHROPIC_API_KEY": "x",
                "my_secret": "x",
                "DB_PASSWORD": "x",
                "GITHUB_ACCESS_TOKEN": "x",
                "LITELLM_MASTER_KEY": "x",
                "SAFE": "ok",
            },
        )
        assert env == {"SAFE": "ok"}

    def test_configured_deny_list(self):
        cfg = SandboxConfig(secret_env_vars=["CUSTOM_CRED"])
        env = build_sandbox_env(cfg, caller_env={"CUSTOM_CRED": "x", "OTHER": "y"})
        assert env == {"OTHER": "y"}

    def test_forbidden_values_stripped_under_any_name(self):
        env = build_sandbox_env(
            SandboxConfig(),
            caller_env={"INNOCENT": "sk-master", "FINE": "value"},
            proxy_env={"OPENAI_BASE_URL": "http://localhost:8080/v1", "SNEAKY": "sk-master"},
            forbidden_values=["sk-master"],
        )
        assert env == {"FINE": "value", "OPENAI_BASE_URL": "http://localhost:8080/v1"}

    def test_proxy_env_overrides_caller(self):
        env = build_sandbox_env(
            SandboxConfig(),
            caller_env={"OPENAI_BASE_URL": "http://evil.example/v1"},
            proxy_env={"OPENAI_BASE_URL": "http://localhost:8080/v1"},
        )
        assert env["OPENAI_BASE_URL"] == "http://localhost:8080/v1"
