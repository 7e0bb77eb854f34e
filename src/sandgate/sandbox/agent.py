"""SandboxAgentProvider -- run an LLM agent inside a sandbox as an AiEvent stream.

Flow for one invocation:
1. Create a throwaway workspace and write the conversation to
   ``.sandgate/messages.json`` (refusing to follow a symlink out of it).
2. Run the agent image with the LLM proxy enabled.  The sandbox only ever
   sees the messages, the model name, and the proxy address.
3. Agent stdout becomes the reply.  Usage facts come from the proxy's audit
   log, never from anything the agent prints.
4. The workspace and the run's proxy state are always removed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sandgate.errors import SandboxSetupError
from sandgate.events import (
    AiEvent,
    AssistantFinalEvent,
    DoneEvent,
    ErrorEvent,
    TextDeltaEvent,
    UsageReportEvent,
)
from sandgate.models import LlmProxyRequest, RunLimits, SandboxRunRequest
from sandgate.sandbox.billing import ProxyBillingReader
from sandgate.sandbox.llm_proxy import LlmProxyManager
from sandgate.sandbox.runner import SandboxRunner

logger = logging.getLogger(__name__)

MESSAGES_DIR = ".sandgate"
MESSAGES_FILE = "messages.json"
WORKSPACE_MODE = 0o755
MESSAGES_FILE_MODE = 0o644


@dataclass(frozen=True)
class SandboxAgent:
    name: str
    description: str
    argv: tuple[str, ...]


SANDBOX_AGENTS: dict[str, SandboxAgent] = {
    "agent": SandboxAgent(
        name="Sandbox Agent",
        description="LLM agent in an isolated container (network none, LLM via proxy)",
        argv=("python", "/agent/run.py"),
    ),
}


def write_messages(workspace: Path, messages: list[dict[str, Any]]) -> Path:
    """Write the conversation into the workspace and return the file path.

    Raises:
        SandboxSetupError: the messages directory resolves outside the workspace.
    """
    real_workspace = workspace.resolve()
    messages_dir = real_workspace / MESSAGES_DIR
    messages_dir.mkdir(parents=True, exist_ok=True)
    real_dir = messages_dir.resolve()
    if not real_dir.is_relative_to(real_workspace):
        raise SandboxSetupError(f"symlink escape: {real_dir} is outside {real_workspace}")
    # The sandbox user is not the host user; it only needs to read.
    real_dir.chmod(WORKSPACE_MODE)
    path = real_dir / MESSAGES_FILE
    path.write_text(json.dumps(messages, indent=2))
    path.chmod(MESSAGES_FILE_MODE)
    return path


class SandboxAgentProvider:
    """Executes registered sandbox agents through a SandboxRunner."""

    def __init__(
        self,
        runner: SandboxRunner,
        proxy_manager: LlmProxyManager,
        *,
        limits: RunLimits | None = None,
        agents: dict[str, SandboxAgent] | None = None,
    ) -> None:
        self._runner = runner
        self._proxy_manager = proxy_manager
        self._billing = ProxyBillingReader(proxy_manager.state_dir)
        self._limits = limits or RunLimits(max_runtime_sec=120, max_memory_mb=512)
        self._agents = agents if agents is not None else SANDBOX_AGENTS

    def can_handle(self, agent_name: str) -> bool:
        return agent_name in self._agents

    async def run(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        billing_account_id: str,
        run_id: str,
        agent_name: str = "agent",
        attempt: int = 0,
    ) -> AsyncIterator[AiEvent]:
        """Yield the AiEvents of one sandboxed agent run, ending with ``done``."""
        agent = self._agents.get(agent_name)
        if agent is None:
            logger.error("Unknown sandbox agent %r (run %s)", agent_name, run_id)
            yield ErrorEvent(code="not_found", message=f"unknown sandbox agent: {agent_name}")
            yield DoneEvent()
            return

        workspace = Path(tempfile.mkdtemp(prefix=f"sandgate-{run_id}-"))
        try:
            # mkdtemp creates 0700; the sandbox runs as a different uid.
            workspace.chmod(WORKSPACE_MODE)
            write_messages(workspace, messages)
            logger.debug("Workspace %s prepared for run %s", workspace, run_id)

            request = SandboxRunRequest(
                run_id=run_id,
                workspace_path=workspace,
                argv=list(agent.argv),
                limits=self._limits,
                llm_proxy=LlmProxyRequest(
                    billing_account_id=billing_account_id,
                    attempt=attempt,
                    model=model,
                ),
            )
            try:
                result = await self._runner.run_once(request)
            except SandboxSetupError as exc:
                logger.error("Sandbox agent setup failed for run %s: %s", run_id, exc)
                yield ErrorEvent(code="setup_error", message=str(exc).splitlines()[0])
                yield DoneEvent()
                return

            if not result.ok:
                logger.error(
                    "Sandbox agent failed: run=%s exit=%d error=%s stderr=%s",
                    run_id,
                    result.exit_code,
                    result.error_code.value if result.error_code else None,
                    result.stderr[:500],
                )
                code = result.error_code.value if result.error_code else "internal"
                yield ErrorEvent(code=code, message=f"agent exited with {result.exit_code}")
                yield DoneEvent()
                return

            content = result.stdout.strip()
            if content:
                yield TextDeltaEvent(delta=content)
            for fact in await asyncio.to_thread(self._billing.usage_facts, run_id):
                yield UsageReportEvent(fact=fact)
            yield AssistantFinalEvent(content=content)
            yield DoneEvent()
        finally:
            await asyncio.to_thread(shutil.rmtree, workspace, True)
            await self._proxy_manager.cleanup(run_id)
