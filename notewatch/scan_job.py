"""Periodic scan: list incomplete notes and fan out one check job per eligible encounter."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

import structlog

from notewatch.fingerprint import DedupLedger
from notewatch.gateway import INCOMPLETE_NOTES_PAGE_SIZE, Encounter, EncounterGateway
from notewatch.payloads import CHECK_QUEUE, CheckPayload, ScanPayload
from notewatch.queue import Job, QueueRuntime
from notewatch.time_utils import Clock, utc_now
from notewatch.tokens import TokenManager

logger = structlog.get_logger(__name__)

NOTE_CHECK_STATUSES = ("PENDING_COSIGN", "CHECKED_OUT", "WITH_PROVIDER")


def check_job_id(encounter_id: str) -> str:
    return f"check:{encounter_id}"


def note_skip_reason(
    encounter: Encounter,
    now: datetime,
    min_age: timedelta,
    statuses: Sequence[str] = NOTE_CHECK_STATUSES,
) -> Optional[str]:
    """Return why ``encounter`` is not eligible for a note check, or ``None``."""

    if encounter.status not in statuses:
        return f"status {encounter.status or 'unknown'}"
    service_time = encounter.service_time
    if service_time is None:
        return "unparseable date of service"
    if now - service_time <= min_age:
        return "seen too recently"
    return None


def stagger_delay(index: int, step_seconds: float, cap_seconds: float) -> float:
    return min(index * step_seconds, cap_seconds)


class ScanJob:
    """Handler for the scan queue."""

    def __init__(
        self,
        *,
        tokens: TokenManager,
        gateway: EncounterGateway,
        ledger: DedupLedger,
        runtime: QueueRuntime,
        min_age: timedelta = timedelta(hours=2),
        statuses: Sequence[str] = NOTE_CHECK_STATUSES,
        page_size: int = INCOMPLETE_NOTES_PAGE_SIZE,
        stagger_seconds: float = 2,
        stagger_cap_seconds: float = 120,
        clock: Clock = utc_now,
    ) -> None:
        self.tokens = tokens
        self.gateway = gateway
        self.ledger = ledger
        self.runtime = runtime
        self.min_age = min_age
        self.statuses = tuple(statuses)
        self.page_size = page_size
        self.stagger_seconds = stagger_seconds
        self.stagger_cap_seconds = stagger_cap_seconds
        self.clock = clock

    def run(self, payload: ScanPayload) -> Dict[str, Any]:
        # Token or listing failures abort the whole scan; the runtime retries it.
        self.tokens.get_valid_token()
        now = self.clock()
        summary = {"listed": 0, "eligible": 0, "enqueued": 0, "up_to_date": 0, "enqueue_failed": 0}

        for encounter in self.gateway.iter_incomplete_notes(self.page_size):
            summary["listed"] += 1
            reason = note_skip_reason(encounter, now, self.min_age, self.statuses)
            if reason is not None:
                logger.debug("encounter_not_eligible", encounter_id=encounter.id, reason=reason)
                continue
            summary["eligible"] += 1
            if not self.ledger.should_check(encounter.id, None, payload.force):
                summary["up_to_date"] += 1
                continue

            delay = stagger_delay(summary["enqueued"], self.stagger_seconds, self.stagger_cap_seconds)
            try:
                self.runtime.enqueue(
                    CHECK_QUEUE,
                    CheckPayload(
                        encounter_id=encounter.id,
                        patient_id=encounter.patient_id or None,
                        patient_name=encounter.patient_name or None,
                        chief_complaint=encounter.chief_complaint or None,
                        date_of_service=encounter.date_of_service,
                        status=encounter.status or None,
                        force=payload.force,
                        triggered_by="scan",
                    ),
                    job_id=check_job_id(encounter.id),
                    delay_seconds=delay,
                )
            except Exception:
                summary["enqueue_failed"] += 1
                logger.exception("check_enqueue_failed", encounter_id=encounter.id)
                continue
            summary["enqueued"] += 1

        logger.info("scan_completed", **summary)
        return summary

    def __call__(self, payload: ScanPayload, job: Optional[Job] = None) -> Dict[str, Any]:
        return self.run(payload)


__all__ = ["ScanJob", "NOTE_CHECK_STATUSES", "check_job_id", "note_skip_reason", "stagger_delay"]
