"""sandgate CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from pydantic import ValidationError

from sandgate import __version__
from sandgate.config import SandgateConfig, load_config
from sandgate.errors import GatewayError, SandboxSetupError
from sandgate.models import (
    LlmProxyRequest,
    Mount,
    MountMode,
    NetworkMode,
    NetworkPolicy,
    RunLimits,
    SandboxRunRequest,
)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_mount(value: str) -> Mount:
    """``HOST:CONTAINER[:ro|rw]``"""
    parts = value.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"mount must be HOST:CONTAINER[:ro|rw], got {value!r}")
    mode = MountMode(parts[2]) if len(parts) == 3 else MountMode.RO
    try:
        return Mount(host_path=Path(parts[0]), container_path=parts[1], mode=mode)
    except ValidationError as exc:
        raise argparse.ArgumentTypeError(str(exc.errors()[0]["msg"])) from exc


def _engine(config: SandgateConfig):
    from sandgate.sandbox.engine import ContainerRuntimeClient

    return ContainerRuntimeClient.from_env(timeout=config.sandbox.engine_timeout_sec)


def _proxy_manager(engine, config: SandgateConfig):
    from sandgate.sandbox.llm_proxy import LlmProxyManager

    return LlmProxyManager(
        engine,
        config.proxy,
        label_prefix=config.sandbox.label_prefix,
        pull_missing_images=config.sandbox.pull_missing_images,
    )


# ── Commands ─────────────────────────────────────────────────────────────────


async def _cmd_run(args, config: SandgateConfig) -> int:
    from sandgate.sandbox.runner import SandboxRunner

    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        print("Error: no command given (use: sandgate run ... -- CMD ARGS)", file=sys.stderr)
        return 2

    llm_proxy = None
    if args.billing_account:
        llm_proxy = LlmProxyRequest(
            billing_account_id=args.billing_account,
            attempt=args.attempt,
            model=args.model,
        )
    try:
        request = SandboxRunRequest(
            run_id=args.run_id or uuid.uuid4().hex[:16],
            workspace_path=args.workspace,
            argv=argv,
            image=args.image,
            limits=RunLimits(max_runtime_sec=args.timeout, max_memory_mb=args.memory_mb),
            network=NetworkPolicy(mode=NetworkMode(args.network), network_name=args.network_name),
            mounts=args.mount or [],
            llm_proxy=llm_proxy,
        )
    except ValidationError as exc:
        print(f"Error: invalid run request:\n{exc}", file=sys.stderr)
        return 2

    engine = _engine(config)
    try:
        manager = _proxy_manager(engine, config) if llm_proxy else None
        runner = SandboxRunner(engine, config.sandbox, proxy_manager=manager)
        try:
            result = await runner.run_once(request)
        except SandboxSetupError as exc:
            print(f"Error: sandbox setup failed: {exc}", file=sys.stderr)
            return 2
        _print_json({"run_id": request.run_id, **result.model_dump(mode="json")})
        return 0 if result.ok else 1
    finally:
        await engine.close()


async def _cmd_sweep(args, config: SandgateConfig) -> int:
    from sandgate.sandbox.llm_proxy import cleanup_sweep

    engine = _engine(config)
    try:
        removed = await cleanup_sweep(
            engine, label_prefix=config.sandbox.label_prefix, min_age_sec=args.min_age
        )
    finally:
        await engine.close()
    _print_json({"removed": removed})
    return 0


async def _cmd_billing(args, config: SandgateConfig) -> int:
    from sandgate.sandbox.billing import ProxyBillingReader

    reader = ProxyBillingReader(Path(config.proxy.state_dir))
    facts = await asyncio.to_thread(reader.usage_facts, args.run_id)
    _print_json([fact.model_dump(mode="json") for fact in facts])
    return 0


async def _cmd_agent_gateway(args, config: SandgateConfig) -> int:
    from sandgate.gateway import GatewayExecutionBridge, GatewayProtocolClient

    gw = config.gateway
    client = GatewayProtocolClient(args.url or gw.url, gw.token, config=gw)
    try:
        await client.connect()
    except GatewayError as exc:
        print(f"Error: gateway connect failed ({exc.code}): {exc}", file=sys.stderr)
        return 2

    ok = True
    try:
        bridge = GatewayExecutionBridge(
            client,
            agent_id=args.agent_id or gw.agent_id,
            queue_maxsize=gw.queue_maxsize,
            terminal_timeout_ms=gw.agent_timeout_ms,
        )
        async for event in bridge.run(
            args.message, session_key=args.session_key or f"sandgate-{uuid.uuid4().hex[:8]}"
        ):
            print(event.model_dump_json(), flush=True)
            if event.type == "error":
                ok = False
    finally:
        await client.close()
    return 0 if ok else 1


async def _cmd_agent_sandbox(args, config: SandgateConfig) -> int:
    from sandgate.sandbox.agent import SandboxAgentProvider
    from sandgate.sandbox.runner import SandboxRunner

    if not args.billing_account or not args.model:
        print("Error: --sandbox requires --billing-account and --model", file=sys.stderr)
        return 2

    engine = _engine(config)
    ok = True
    try:
        manager = _proxy_manager(engine, config)
        provider = SandboxAgentProvider(
            SandboxRunner(engine, config.sandbox, proxy_manager=manager), manager
        )
        async for event in provider.run(
            [{"role": "user", "content": args.message}],
            model=args.model,
            billing_account_id=args.billing_account,
            run_id=args.run_id or uuid.uuid4().hex[:16],
        ):
            print(event.model_dump_json(), flush=True)
            if event.type == "error":
                ok = False
    finally:
        await engine.close()
    return 0 if ok else 1


async def _cmd_agent(args, config: SandgateConfig) -> int:
    if args.sandbox:
        return await _cmd_agent_sandbox(args, config)
    return await _cmd_agent_gateway(args, config)


# ── Parser ───────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sandgate",
        description="sandgate: sandboxed command execution and remote agent gateway bridging",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to sandgate.yaml (default: ./sandgate.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config, INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # sandgate run
    run_parser = subparsers.add_parser("run", help="Run one command in a sandbox container")
    run_parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Host directory mounted read-write as the workspace (default: current directory)",
    )
    run_parser.add_argument("--run-id", help="Run id (default: random)")
    run_parser.add_argument("--image", help="Container image (default: sandbox.default_image)")
    run_parser.add_argument(
        "--timeout", type=float, default=60.0, help="Max runtime in seconds (default: 60)"
    )
    run_parser.add_argument(
        "--memory-mb", type=int, default=512, help="Memory limit in MiB (default: 512)"
    )
    run_parser.add_argument(
        "--network",
        default="none",
        choices=[m.value for m in NetworkMode],
        help="Network mode (default: none)",
    )
    run_parser.add_argument("--network-name", help="Internal network name for --network internal")
    run_parser.add_argument(
        "--mount",
        type=_parse_mount,
        action="append",
        help="Extra mount HOST:CONTAINER[:ro|rw] (repeatable, default mode ro)",
    )
    run_parser.add_argument(
        "--billing-account", help="Enable the LLM proxy, billing to this account"
    )
    run_parser.add_argument("--attempt", type=int, default=0, help="Proxy attempt (default: 0)")
    run_parser.add_argument("--model", help="Model name exposed to the sandbox")
    run_parser.add_argument("argv", nargs=argparse.REMAINDER, help="-- CMD ARGS")

    # sandgate sweep
    sweep_parser = subparsers.add_parser("sweep", help="Remove orphaned LLM proxy containers")
    sweep_parser.add_argument(
        "--min-age",
        type=float,
        default=60.0,
        help="Keep proxies younger than this many seconds (default: 60)",
    )

    # sandgate billing
    billing_parser = subparsers.add_parser("billing", help="Print usage facts for a run")
    billing_parser.add_argument("run_id", help="Run id")

    # sandgate agent
    agent_parser = subparsers.add_parser("agent", help="Run one agent turn and stream its events")
    agent_parser.add_argument("message", help="User message")
    agent_parser.add_argument(
        "--sandbox",
        action="store_true",
        help="Run the sandboxed agent instead of the remote gateway agent",
    )
    agent_parser.add_argument("--url", help="Gateway URL (default: gateway.url)")
    agent_parser.add_argument("--session-key", help="Gateway session key (default: random)")
    agent_parser.add_argument("--agent-id", help="Gateway agent id (default: gateway.agent_id)")
    agent_parser.add_argument("--billing-account", help="Billing account (sandbox agent)")
    agent_parser.add_argument("--model", help="Model name (sandbox agent)")
    agent_parser.add_argument("--run-id", help="Run id (sandbox agent, default: random)")

    return parser


_COMMANDS = {
    "run": _cmd_run,
    "sweep": _cmd_sweep,
    "billing": _cmd_billing,
    "agent": _cmd_agent,
}


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except ValidationError as exc:
        print(f"Error: invalid config:\n{exc}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    sys.exit(asyncio.run(_COMMANDS[args.command](args, config)))


if __name__ == "__main__":
    main()
