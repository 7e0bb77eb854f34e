"""ProxyBillingReader -- turn a run's proxy audit log into usage facts.

Best effort by contract: the read happens after the run and its proxy are
gone, and any failure (missing log, unreadable file, broken chain) is
logged and reported as "no usage observed".  Nothing here raises into the
user-visible request path, and nothing here modifies the log.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from sandgate.models import ProxyAuditEntry, UsageFact
from sandgate.proxy.audit import read_audit_log, verify_chain
from sandgate.sandbox.llm_proxy import AUDIT_FILE_NAME

logger = logging.getLogger(__name__)


class ProxyBillingReader:
    """Reads ``<state_dir>/<run_id>/attempt-*/audit.ndjson``."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    def _log_files(self, run_id: str) -> list[Path]:
        run_dir = self._state_dir / run_id
        return sorted(run_dir.glob(f"attempt-*/{AUDIT_FILE_NAME}"))

    def read_audit_entries(self, run_id: str) -> list[ProxyAuditEntry]:
        """All audit entries for a run, across attempts.  [] on any failure."""
        try:
            log_files = self._log_files(run_id)
        except OSError:
            logger.warning("Billing read failed for run %s: state dir unreadable", run_id)
            return []
        if not log_files:
            logger.warning("Billing read for run %s: no audit log found", run_id)
            return []

        entries: list[ProxyAuditEntry] = []
        for log_file in log_files:
            ok, message = verify_chain(log_file)
            if not ok:
                logger.warning("Audit chain check failed for %s: %s", log_file, message)
            try:
                records = read_audit_log(log_file)
            except OSError:
                logger.warning("Billing read failed for %s", log_file, exc_info=True)
                continue
            for record in records:
                try:
                    entries.append(ProxyAuditEntry.model_validate(record))
                except ValidationError:
                    logger.debug("Skipping invalid audit record in %s", log_file)
        return entries

    def usage_facts(self, run_id: str) -> list[UsageFact]:
        """Usage facts for every successful upstream call of a run."""
        facts = [
            UsageFact(
                run_id=entry.run_id or run_id,
                attempt=entry.attempt,
                billing_account_id=entry.billing_account_id,
                usage_unit_id=entry.request_id,
                model=entry.model,
                cost_usd=entry.cost_usd,
                duration_ms=entry.duration_ms,
                timestamp=entry.timestamp,
            )
            for entry in self.read_audit_entries(run_id)
            if entry.status == "ok"
        ]
        logger.info("Billing: run %s produced %d usage facts", run_id, len(facts))
        return facts
