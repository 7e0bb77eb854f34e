"""Hash-chained append-only audit log of upstream LLM calls.

Written by the in-container proxy, one record per forwarded (or blocked)
request.  Every record is SHA-256 hashed and chained to the previous one,
so editing or deleting a line breaks the chain.

Log format (one JSON object per line)::

    {
        "seq": <int>,                  // monotonic sequence number
        "timestamp": "<iso8601>",      // UTC
        "run_id": "<str>",
        "attempt": <int>,
        "billing_account_id": "<str>",
        "request_id": "<str>",         // upstream call id (or generated)
        "model": "<str>" | null,
        "cost_usd": <float> | null,
        "duration_ms": <int>,
        "status": "ok" | "error" | "blocked",
        "status_code": <int> | null,
        "path": "<str>",
        "prev_hash": "<hex>",
        "hash": "<hex>"                // SHA-256 of the record without "hash"
    }

Records never contain request/response bodies or any header value, so the
upstream master credential cannot leak into the log.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _entry_hash(record: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of ``record`` minus its own ``hash``."""
    body = {k: v for k, v in record.items() if k != "hash"}
    return _sha256_hex(json.dumps(body, sort_keys=True))


class ProxyAuditLogger:
    """Append-only, hash-chained audit log for one proxy (one run attempt).

    Task safe: an asyncio.Lock serialises writes.  The file is opened in
    append mode for every record so a crash never truncates earlier lines.
    """

    def __init__(self, log_path: Path, *, run_id: str, attempt: int) -> None:
        self._log_path = log_path
        self._run_id = run_id
        self._attempt = attempt
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = GENESIS_HASH

    @property
    def log_path(self) -> Path:
        return self._log_path

    async def start(self) -> None:
        """Create the log directory and resume the chain from an existing log."""
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        if self._log_path.exists():
            self._resume()

    def _resume(self) -> None:
        last_line: str | None = None
        try:
            with open(self._log_path) as fh:
                for line in fh:
                    line = line.strip()
                    if line:
                        last_line = line
            if last_line:
                entry = json.loads(last_line)
                self._seq = entry.get("seq", 0)
                self._prev_hash = entry.get("hash", GENESIS_HASH)
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not resume audit log from %s; starting fresh", self._log_path)

    async def log_call(
        self,
        *,
        billing_account_id: str,
        request_id: str,
        model: str | None,
        cost_usd: float | None,
        duration_ms: int,
        status: Literal["ok", "error", "blocked"],
        status_code: int | None,
        path: str,
    ) -> dict[str, Any]:
        """Append one record and return it."""
        async with self._lock:
            self._seq += 1
            entry: dict[str, Any] = {
                "seq": self._seq,
                "timestamp": _now_iso(),
                "run_id": self._run_id,
                "attempt": self._attempt,
                "billing_account_id": billing_account_id,
                "request_id": request_id,
                "model": model,
                "cost_usd": cost_usd,
                "duration_ms": duration_ms,
                "status": status,
                "status_code": status_code,
                "path": path,
                "prev_hash": self._prev_hash,
            }
            entry["hash"] = self._prev_hash = _entry_hash(entry)

            try:
                with open(self._log_path, "a") as fh:
                    fh.write(json.dumps(entry, sort_keys=True) + "\n")
            except OSError:
                logger.error("Failed to write audit record %s for %s", request_id, path)
            return entry


def read_audit_log(log_path: Path) -> list[dict[str, Any]]:
    """Parse every well-formed record; malformed lines are skipped.

    Raises:
        OSError: the file cannot be read.
    """
    records: list[dict[str, Any]] = []
    with open(log_path) as fh:
        for lineno, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("%s:%d: skipping malformed audit line", log_path, lineno)
                continue
            if isinstance(record, dict):
                records.append(record)
    return records


def verify_chain(log_path: Path) -> tuple[bool, str]:
    """Walk ``log_path`` and check every record against its predecessor.

    Returns ``(ok, message)``.  A missing file counts as an intact, empty
    chain.  The first bad record is reported by its 1-based line number.
    """
    if not log_path.exists():
        return True, "no log file"

    expected_prev = GENESIS_HASH
    count = 0
    try:
        lines = log_path.read_text().splitlines()
        for lineno, raw in enumerate(lines, 1):
            if not raw.strip():
                continue
            record = json.loads(raw)
            if not isinstance(record, dict):
                return False, f"line {lineno}: not a JSON object"
            problem = _check_record(record, expected_prev, count + 1)
            if problem:
                return False, f"line {lineno}: {problem}"
            expected_prev = record["hash"]
            count += 1
    except (json.JSONDecodeError, OSError) as exc:
        return False, f"read error: {exc}"

    return True, f"chain intact ({count} entries)"


def _check_record(record: dict[str, Any], expected_prev: str, expected_seq: int) -> str | None:
    stored = record.get("hash", "")
    actual = _entry_hash(record)
    if stored != actual:
        return f"hash mismatch (recorded {stored[:12]}, recomputed {actual[:12]})"
    if record.get("prev_hash") != expected_prev:
        return "chain broken (prev_hash does not match preceding record)"
    if record.get("seq") != expected_seq:
        return f"sequence gap (wanted seq {expected_seq}, found {record.get('seq')})"
    return None
