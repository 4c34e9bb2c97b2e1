"""Per-encounter note check: fetch, fingerprint, analyse, persist, remediate."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from notewatch.analysis import AnalysisResult, Analyzer, Issue, combine_results
from notewatch.db.models import NoteCheckStatus
from notewatch.errors import NotewatchError
from notewatch.fingerprint import DedupLedger, compute_fingerprint, format_note_for_analysis
from notewatch.gateway import Encounter, EncounterGateway
from notewatch.observability import NOTE_ANALYSES, REMEDIATION_TASKS
from notewatch.payloads import CheckPayload
from notewatch.queue import Job
from notewatch.remediation import build_task
from notewatch.store import NoteCheckRecord, RecordStore, RemediationTaskRecord
from notewatch.time_utils import Clock, parse_timestamp, utc_now
from notewatch.tokens import TokenManager

logger = structlog.get_logger(__name__)

LocalCheck = Callable[[Sequence[Mapping[str, Any]]], AnalysisResult]


class NoIssuesError(ValueError):
    """Raised when a remediation task is requested for a check without issues."""


class CheckJob:
    """Handler for the check queue.

    A run walks ``fetching-note -> analyzing -> persisting``.  Any failure on
    the way is written to the encounter's record as ``error`` and re-raised
    so the queue runtime can decide whether to retry.
    """

    def __init__(
        self,
        *,
        tokens: TokenManager,
        gateway: EncounterGateway,
        records: RecordStore,
        ledger: DedupLedger,
        analyzer: Analyzer,
        checked_by: str = "notewatch",
        fingerprint_algorithm: str = "sha256",
        time_zone: str = "America/Detroit",
        local_checks: Sequence[LocalCheck] = (),
        clock: Clock = utc_now,
    ) -> None:
        self.tokens = tokens
        self.gateway = gateway
        self.records = records
        self.ledger = ledger
        self.analyzer = analyzer
        self.checked_by = checked_by
        self.fingerprint_algorithm = fingerprint_algorithm
        self.time_zone = time_zone
        self.local_checks = tuple(local_checks)
        self.clock = clock

    def run(self, payload: CheckPayload) -> Dict[str, Any]:
        encounter_id = payload.encounter_id
        existing = self.records.get_note_check(encounter_id)
        patient_id = payload.patient_id or (existing.patient_id if existing else None)
        log = logger.bind(encounter_id=encounter_id)
        try:
            self.tokens.get_valid_token()
            note = self.gateway.get_note(encounter_id, patient_id)
            text = format_note_for_analysis(note.sections)
            fingerprint = compute_fingerprint(text, self.fingerprint_algorithm)

            if not self.ledger.should_check(encounter_id, fingerprint, payload.force):
                NOTE_ANALYSES.labels(outcome="skipped").inc()
                log.info("note_unchanged")
                return {"encounter_id": encounter_id, "status": "skipped", "fingerprint": fingerprint}

            result = self.analyzer(text)
            if self.local_checks:
                result = combine_results([result, *(check(note.sections) for check in self.local_checks)])
            NOTE_ANALYSES.labels(outcome="analyzed").inc()

            record = self.records.save_note_check(
                encounter_id,
                status=NoteCheckStatus.COMPLETED,
                checked_by=self.checked_by,
                fingerprint=fingerprint,
                analysis_result=result.to_record(),
                issues_found=result.issues_found,
                note_content=text,
                patient_id=patient_id,
                patient_name=payload.patient_name,
                chief_complaint=payload.chief_complaint,
                date_of_service=parse_timestamp(payload.date_of_service),
            )
            log.info("note_checked", issues_found=result.issues_found, issues=len(result.issues))

            task_id: Optional[str] = None
            if result.issues_found and not self.records.has_remediation_task(encounter_id):
                task_id, _ = self._file_task(record, result.issues, payload)
        except Exception as exc:
            NOTE_ANALYSES.labels(outcome="error").inc()
            self.records.save_note_check(
                encounter_id,
                status=NoteCheckStatus.ERROR,
                checked_by=self.checked_by,
                error_message=f"{type(exc).__name__}: {exc}",
                patient_id=patient_id,
                patient_name=payload.patient_name,
                chief_complaint=payload.chief_complaint,
                date_of_service=parse_timestamp(payload.date_of_service),
            )
            raise

        return {
            "encounter_id": encounter_id,
            "status": "completed",
            "fingerprint": fingerprint,
            "issues_found": result.issues_found,
            "task_id": task_id,
        }

    def __call__(self, payload: CheckPayload, job: Optional[Job] = None) -> Dict[str, Any]:
        return self.run(payload)

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def _encounter_details(self, encounter_id: str, patient_id: Optional[str]) -> Encounter:
        return Encounter.from_filter_payload(self.gateway.get_encounter(encounter_id, patient_id))

    def _file_task(
        self,
        record: NoteCheckRecord,
        issues: Sequence[Issue],
        payload: Optional[CheckPayload] = None,
        *,
        created_by: Optional[str] = None,
    ) -> Tuple[str, Optional[RemediationTaskRecord]]:
        """File the ToDo upstream, then record it locally.

        Once the upstream call succeeds the task exists, so a failure to
        record it is logged and ``None`` returned in place of the record; a
        retried check must not file the same ToDo twice.
        """

        details = self._encounter_details(record.encounter_id, record.patient_id)
        patient_id = record.patient_id or details.patient_id
        patient_name = record.patient_name or details.patient_name
        date_of_service = (payload.date_of_service if payload else None) or details.date_of_service
        request = build_task(
            patient_id=patient_id,
            patient_name=patient_name,
            date_of_service=date_of_service,
            issues=issues,
            care_team=details.care_team,
            time_zone=self.time_zone,
            fallback_date=record.date_of_service,
        )
        external_id = self.gateway.create_task(request.to_payload(), patient_id)
        REMEDIATION_TASKS.inc()
        logger.info("remediation_task_created", encounter_id=record.encounter_id, task_id=external_id)
        try:
            saved = self.records.save_remediation_task(
                record.encounter_id,
                external_id,
                subject=request.subject,
                created_by=created_by or self.checked_by,
                description=request.description,
                assignee=request.assignee,
                watchers=request.watchers,
                issues_count=len(issues),
                patient_id=patient_id,
            )
        except SQLAlchemyError:
            logger.exception("remediation_task_unrecorded", encounter_id=record.encounter_id, task_id=external_id)
            return external_id, None
        return external_id, saved

    def create_remediation_task(
        self, encounter_id: str, *, force: bool = False, created_by: Optional[str] = None
    ) -> RemediationTaskRecord:
        """File a task for the latest check of ``encounter_id``.

        Issues an operator marked invalid or resolved are left out.  Without
        ``force`` an existing task is returned instead of filing another.
        """

        record = self.records.get_note_check(encounter_id)
        if record is None:
            raise KeyError(f"No note check for encounter {encounter_id!r}")
        if not force:
            existing = self.records.list_remediation_tasks(encounter_id)
            if existing:
                return existing[0]

        annotated = {
            mark.issue_index
            for mark in self.records.list_invalid_issues(encounter_id) + self.records.list_resolved_issues(encounter_id)
            if mark.check_id == record.id
        }
        issues = [
            Issue.model_validate(raw) for index, raw in enumerate(record.issues) if index not in annotated
        ]
        if not record.issues_found or not issues:
            raise NoIssuesError(f"Encounter {encounter_id!r} has no open issues")
        self.tokens.get_valid_token()
        external_id, task = self._file_task(record, issues, created_by=created_by)
        if task is None:
            raise NotewatchError(f"Task {external_id} was filed upstream but could not be recorded")
        return task


__all__ = ["CheckJob", "NoIssuesError"]
