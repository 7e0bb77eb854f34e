"""Proxy container entry point: ``python -m sandgate.proxy``.

Reads ``SANDGATE_PROXY_*`` settings from the environment, serves until
SIGTERM/SIGINT, then shuts down cleanly so the audit log is complete.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from sandgate.proxy.audit import ProxyAuditLogger
from sandgate.proxy.server import LlmProxyServer, ProxyServerConfig
from sandgate.sandbox.llm_proxy import AUDIT_FILE_NAME

logger = logging.getLogger("sandgate.proxy")


async def _serve(config: ProxyServerConfig) -> None:
    audit = ProxyAuditLogger(
        Path(config.audit_dir) / AUDIT_FILE_NAME, run_id=config.run_id, attempt=config.attempt
    )
    server = LlmProxyServer(config, audit)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("SANDGATE_PROXY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        config = ProxyServerConfig.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
