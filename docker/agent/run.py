"""Minimal sandboxed agent: one chat completion through the run's LLM proxy.

Reads ``/workspace/.sandgate/messages.json``, sends it to the proxy, and
prints the assistant reply on stdout.  With ``SANDGATE_LLM_SOCKET`` set the
proxy is only reachable over that unix socket (the host part of the URL is
ignored); otherwise ``OPENAI_BASE_URL`` names it on the internal network.
"""

import json
import os
import sys
from pathlib import Path

import httpx

MESSAGES_PATH = Path("/workspace/.sandgate/messages.json")


def main() -> int:
    messages = json.loads(MESSAGES_PATH.read_text())
    model = os.environ.get("SANDGATE_MODEL", "")
    socket_path = os.environ.get("SANDGATE_LLM_SOCKET")

    if socket_path:
        transport = httpx.HTTPTransport(uds=socket_path)
        base_url = "http://llm-proxy" + os.environ.get("SANDGATE_LLM_PATH", "/v1")
    else:
        transport = None
        base_url = os.environ.get("OPENAI_BASE_URL")
        if not base_url:
            print("No LLM proxy configured", file=sys.stderr)
            return 1

    with httpx.Client(transport=transport, timeout=110.0) as client:
        response = client.post(
            f"{base_url}/chat/completions",
            json={"model": model, "messages": messages},
        )
    if response.status_code != 200:
        print(f"LLM call failed: {response.status_code} {response.text[:500]}", file=sys.stderr)
        return 1

    choices = response.json().get("choices") or []
    if not choices:
        print("LLM returned no choices", file=sys.stderr)
        return 1
    print(choices[0].get("message", {}).get("content") or "")
    return 0


if __name__ == "__main__":
    sys.exit(main())
