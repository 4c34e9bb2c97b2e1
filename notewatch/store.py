"""Keyed record store backing the jobs.

Two facades share one engine:

* :class:`CredentialStore` owns the single active EMR identity and its token
  pair.  The token lifecycle manager is the only writer of tokens.
* :class:`RecordStore` persists note check records, issue annotations,
  remediation tasks and the vital-signs idempotency ledger.

Both return plain dataclass snapshots so callers never hold ORM instances
across session boundaries.  Uniqueness constraints live in the schema; the
upserts here rely on them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type, Union

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from notewatch.db.models import (
    EmrCredential,
    InvalidIssue,
    NoteCheck,
    NoteCheckStatus,
    ProcessedVitalSigns,
    RemediationTask,
    ResolvedIssue,
)
from notewatch.db.session import session_scope
from notewatch.time_utils import Clock, ensure_utc, utc_now


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo.
    return ensure_utc(value) if value is not None else None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Credentials:
    username: str
    password: str
    server_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_issued_at: Optional[datetime] = None


@dataclass(slots=True)
class NoteCheckRecord:
    id: int
    encounter_id: str
    status: str
    content_fingerprint: Optional[str] = None
    previous_content_fingerprint: Optional[str] = None
    analysis_result: Optional[Dict[str, Any]] = None
    issues_found: bool = False
    checked_at: Optional[datetime] = None
    checked_by: Optional[str] = None
    error_message: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    chief_complaint: Optional[str] = None
    date_of_service: Optional[datetime] = None
    triggered_by_update: bool = False

    @property
    def issues(self) -> List[Dict[str, Any]]:
        if not self.analysis_result:
            return []
        issues = self.analysis_result.get("issues") or []
        return [issue for issue in issues if isinstance(issue, dict)]


@dataclass(slots=True)
class IssueMark:
    encounter_id: str
    check_id: int
    issue_index: int
    marked_by: str
    marked_at: datetime
    reason: Optional[str] = None
    issue_type: Optional[str] = None
    assessment: Optional[str] = None


@dataclass(slots=True)
class RemediationTaskRecord:
    encounter_id: str
    external_task_id: str
    subject: str
    assignee: Optional[str]
    issues_count: int
    created_by: str
    created_at: datetime
    watchers: List[str] = field(default_factory=list)


@dataclass(slots=True)
class VitalsRecord:
    encounter_id: str
    success: bool
    processed_at: datetime
    source_encounter_id: Optional[str] = None
    height_value: Optional[float] = None
    weight_value: Optional[float] = None
    height_unit: Optional[str] = None
    weight_unit: Optional[str] = None
    error_message: Optional[str] = None


def _credentials_from_row(row: EmrCredential) -> Credentials:
    return Credentials(
        username=row.username,
        password=row.password,
        server_url=row.server_url,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_issued_at=_utc(row.token_issued_at),
    )


def _note_check_from_row(row: NoteCheck) -> NoteCheckRecord:
    return NoteCheckRecord(
        id=row.id,
        encounter_id=row.encounter_id,
        status=row.status,
        content_fingerprint=row.content_fingerprint,
        previous_content_fingerprint=row.previous_content_fingerprint,
        analysis_result=row.analysis_result,
        issues_found=bool(row.issues_found),
        checked_at=_utc(row.checked_at),
        checked_by=row.checked_by,
        error_message=row.error_message,
        patient_id=row.patient_id,
        patient_name=row.patient_name,
        chief_complaint=row.chief_complaint,
        date_of_service=_utc(row.date_of_service),
        triggered_by_update=bool(row.triggered_by_update),
    )


def _mark_from_row(row: Union[InvalidIssue, ResolvedIssue]) -> IssueMark:
    return IssueMark(
        encounter_id=row.encounter_id,
        check_id=row.check_id,
        issue_index=row.issue_index,
        marked_by=row.marked_by,
        marked_at=_utc(row.marked_at),
        reason=row.reason,
        issue_type=row.issue_type,
        assessment=row.assessment,
    )


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Persists EMR identities; exactly one of them is active at a time."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def save_credentials(self, username: str, password: str, server_url: Optional[str] = None) -> Credentials:
        """Store ``username``/``password`` and make it the active identity."""

        with session_scope(self.engine) as session:
            session.execute(
                sa.update(EmrCredential)
                .where(EmrCredential.username != username)
                .values(is_active=False)
            )
            row = session.execute(
                sa.select(EmrCredential).where(EmrCredential.username == username)
            ).scalar_one_or_none()
            if row is None:
                row = EmrCredential(username=username, password=password, server_url=server_url)
                session.add(row)
            else:
                if row.password != password:
                    # Tokens minted for the old password are not trusted.
                    row.access_token = None
                    row.refresh_token = None
                    row.token_issued_at = None
                row.password = password
                if server_url:
                    row.server_url = server_url
            row.is_active = True
            session.flush()
            return _credentials_from_row(row)

    def get(self, username: str) -> Optional[Credentials]:
        with session_scope(self.engine) as session:
            row = session.execute(
                sa.select(EmrCredential).where(EmrCredential.username == username)
            ).scalar_one_or_none()
            return _credentials_from_row(row) if row is not None else None

    def get_active(self) -> Optional[Credentials]:
        with session_scope(self.engine) as session:
            row = session.execute(
                sa.select(EmrCredential)
                .where(EmrCredential.is_active.is_(True))
                .order_by(EmrCredential.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _credentials_from_row(row) if row is not None else None

    def store_tokens(
        self,
        username: str,
        access_token: str,
        refresh_token: Optional[str],
        server_url: Optional[str] = None,
    ) -> Credentials:
        """Replace the token pair of ``username`` stamped with the current clock."""

        with session_scope(self.engine) as session:
            row = session.execute(
                sa.select(EmrCredential).where(EmrCredential.username == username)
            ).scalar_one_or_none()
            if row is None:
                raise KeyError(f"No stored credentials for {username!r}")
            row.access_token = access_token
            row.refresh_token = refresh_token
            if server_url:
                row.server_url = server_url
            row.token_issued_at = self.clock()
            session.flush()
            return _credentials_from_row(row)

    def clear_tokens(self, username: str) -> None:
        with session_scope(self.engine) as session:
            session.execute(
                sa.update(EmrCredential)
                .where(EmrCredential.username == username)
                .values(access_token=None, refresh_token=None, token_issued_at=None)
            )


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


class RecordStore:
    """Record-level persistence for the note check and vitals workflows."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    # -- note checks -------------------------------------------------------

    def get_note_check(self, encounter_id: str) -> Optional[NoteCheckRecord]:
        with session_scope(self.engine) as session:
            row = self._note_check_row(session, encounter_id)
            return _note_check_from_row(row) if row is not None else None

    def list_note_checks(self, limit: int = 50, offset: int = 0) -> List[NoteCheckRecord]:
        with session_scope(self.engine) as session:
            rows = session.execute(
                sa.select(NoteCheck)
                .order_by(NoteCheck.checked_at.desc(), NoteCheck.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars()
            return [_note_check_from_row(row) for row in rows]

    def save_note_check(
        self,
        encounter_id: str,
        *,
        status: NoteCheckStatus,
        checked_by: str,
        fingerprint: Optional[str] = None,
        analysis_result: Optional[Dict[str, Any]] = None,
        issues_found: bool = False,
        error_message: Optional[str] = None,
        note_content: Optional[str] = None,
        patient_id: Optional[str] = None,
        patient_name: Optional[str] = None,
        chief_complaint: Optional[str] = None,
        date_of_service: Optional[datetime] = None,
    ) -> NoteCheckRecord:
        """Upsert the single record kept for ``encounter_id``.

        A completed check replaces fingerprint and analysis, remembering the
        prior fingerprint.  An error keeps the last good analysis and
        fingerprint and only records the failure.
        """

        now = self.clock()
        with session_scope(self.engine) as session:
            row = self._note_check_row(session, encounter_id)
            if row is None:
                row = NoteCheck(encounter_id=encounter_id)
                session.add(row)
            if status is NoteCheckStatus.COMPLETED:
                previous = row.content_fingerprint
                row.triggered_by_update = bool(previous) and previous != fingerprint
                if row.triggered_by_update:
                    row.previous_content_fingerprint = previous
                row.content_fingerprint = fingerprint
                row.analysis_result = analysis_result
                row.issues_found = issues_found
                row.error_message = None
                if note_content is not None:
                    row.note_content = note_content
            else:
                row.error_message = error_message
                if fingerprint and not row.content_fingerprint:
                    row.content_fingerprint = fingerprint
            row.status = status.value
            row.checked_by = checked_by
            row.checked_at = now
            for name, value in (
                ("patient_id", patient_id),
                ("patient_name", patient_name),
                ("chief_complaint", chief_complaint),
                ("date_of_service", date_of_service),
            ):
                if value is not None:
                    setattr(row, name, value)
            session.flush()
            return _note_check_from_row(row)

    def cleanup_note_checks(self, days_old: int = 30) -> int:
        """Delete check records last touched more than ``days_old`` days ago."""

        cutoff = self.clock() - timedelta(days=days_old)
        with session_scope(self.engine) as session:
            result = session.execute(sa.delete(NoteCheck).where(NoteCheck.checked_at < cutoff))
            return int(result.rowcount or 0)

    @staticmethod
    def _note_check_row(session: Session, encounter_id: str) -> Optional[NoteCheck]:
        return session.execute(
            sa.select(NoteCheck).where(NoteCheck.encounter_id == encounter_id)
        ).scalar_one_or_none()

    # -- issue annotations --------------------------------------------------

    def _mark(
        self,
        model: Type[Union[InvalidIssue, ResolvedIssue]],
        encounter_id: str,
        check_id: int,
        issue_index: int,
        marked_by: str,
        reason: Optional[str],
    ) -> IssueMark:
        with session_scope(self.engine) as session:
            check = session.get(NoteCheck, check_id)
            if check is None or check.encounter_id != encounter_id:
                raise KeyError(f"No note check {check_id} for encounter {encounter_id}")
            issues = (check.analysis_result or {}).get("issues") or []
            if not 0 <= issue_index < len(issues):
                raise IndexError(f"Issue index {issue_index} out of range for check {check_id}")
            issue = issues[issue_index] if isinstance(issues[issue_index], dict) else {}
            row = session.execute(
                sa.select(model).where(
                    model.encounter_id == encounter_id,
                    model.check_id == check_id,
                    model.issue_index == issue_index,
                )
            ).scalar_one_or_none()
            if row is None:
                row = model(encounter_id=encounter_id, check_id=check_id, issue_index=issue_index)
                session.add(row)
            row.marked_by = marked_by
            row.marked_at = self.clock()
            row.reason = reason
            row.issue_type = issue.get("issue")
            row.assessment = issue.get("assessment")
            session.flush()
            return _mark_from_row(row)

    def _unmark(
        self,
        model: Type[Union[InvalidIssue, ResolvedIssue]],
        encounter_id: str,
        check_id: int,
        issue_index: int,
    ) -> bool:
        with session_scope(self.engine) as session:
            result = session.execute(
                sa.delete(model).where(
                    model.encounter_id == encounter_id,
                    model.check_id == check_id,
                    model.issue_index == issue_index,
                )
            )
            return bool(result.rowcount)

    def _list_marks(
        self, model: Type[Union[InvalidIssue, ResolvedIssue]], encounter_id: str
    ) -> List[IssueMark]:
        with session_scope(self.engine) as session:
            rows = session.execute(
                sa.select(model)
                .where(model.encounter_id == encounter_id)
                .order_by(model.check_id, model.issue_index)
            ).scalars()
            return [_mark_from_row(row) for row in rows]

    def mark_issue_invalid(
        self, encounter_id: str, check_id: int, issue_index: int, marked_by: str, reason: Optional[str] = None
    ) -> IssueMark:
        return self._mark(InvalidIssue, encounter_id, check_id, issue_index, marked_by, reason)

    def unmark_issue_invalid(self, encounter_id: str, check_id: int, issue_index: int) -> bool:
        return self._unmark(InvalidIssue, encounter_id, check_id, issue_index)

    def list_invalid_issues(self, encounter_id: str) -> List[IssueMark]:
        return self._list_marks(InvalidIssue, encounter_id)

    def mark_issue_resolved(
        self, encounter_id: str, check_id: int, issue_index: int, marked_by: str, reason: Optional[str] = None
    ) -> IssueMark:
        return self._mark(ResolvedIssue, encounter_id, check_id, issue_index, marked_by, reason)

    def unmark_issue_resolved(self, encounter_id: str, check_id: int, issue_index: int) -> bool:
        return self._unmark(ResolvedIssue, encounter_id, check_id, issue_index)

    def list_resolved_issues(self, encounter_id: str) -> List[IssueMark]:
        return self._list_marks(ResolvedIssue, encounter_id)

    def has_valid_issues(self, encounter_id: str) -> bool:
        """Return ``True`` when the latest check has issues nobody annotated away."""

        record = self.get_note_check(encounter_id)
        if record is None or not record.issues_found:
            return False
        annotated = {
            mark.issue_index
            for mark in self.list_invalid_issues(encounter_id) + self.list_resolved_issues(encounter_id)
            if mark.check_id == record.id
        }
        return any(index not in annotated for index in range(len(record.issues)))

    # -- remediation tasks -------------------------------------------------

    def list_remediation_tasks(self, encounter_id: str) -> List[RemediationTaskRecord]:
        with session_scope(self.engine) as session:
            rows = session.execute(
                sa.select(RemediationTask)
                .where(RemediationTask.encounter_id == encounter_id)
                .order_by(RemediationTask.created_at.desc())
            ).scalars()
            return [
                RemediationTaskRecord(
                    encounter_id=row.encounter_id,
                    external_task_id=row.external_task_id,
                    subject=row.subject,
                    assignee=row.assignee,
                    issues_count=row.issues_count,
                    created_by=row.created_by,
                    created_at=_utc(row.created_at),
                    watchers=list(row.watchers or []),
                )
                for row in rows
            ]

    def has_remediation_task(self, encounter_id: str) -> bool:
        with session_scope(self.engine) as session:
            count = session.execute(
                sa.select(sa.func.count())
                .select_from(RemediationTask)
                .where(RemediationTask.encounter_id == encounter_id)
            ).scalar_one()
            return count > 0

    def save_remediation_task(
        self,
        encounter_id: str,
        external_task_id: str,
        *,
        subject: str,
        created_by: str,
        description: Optional[str] = None,
        assignee: Optional[str] = None,
        watchers: Optional[List[str]] = None,
        issues_count: int = 0,
        patient_id: Optional[str] = None,
    ) -> RemediationTaskRecord:
        with session_scope(self.engine) as session:
            row = RemediationTask(
                encounter_id=encounter_id,
                external_task_id=external_task_id,
                subject=subject,
                description=description,
                assignee=assignee,
                watchers=list(watchers or []),
                issues_count=issues_count,
                created_by=created_by,
                patient_id=patient_id,
                created_at=self.clock(),
            )
            session.add(row)
            session.flush()
            return RemediationTaskRecord(
                encounter_id=encounter_id,
                external_task_id=external_task_id,
                subject=subject,
                assignee=assignee,
                issues_count=issues_count,
                created_by=created_by,
                created_at=_utc(row.created_at),
                watchers=list(watchers or []),
            )

    # -- vital signs ledger ------------------------------------------------

    def has_processed_vitals(self, encounter_id: str) -> bool:
        with session_scope(self.engine) as session:
            count = session.execute(
                sa.select(sa.func.count())
                .select_from(ProcessedVitalSigns)
                .where(ProcessedVitalSigns.encounter_id == encounter_id)
            ).scalar_one()
            return count > 0

    def get_processed_vitals(self, encounter_id: str) -> Optional[VitalsRecord]:
        with session_scope(self.engine) as session:
            row = session.execute(
                sa.select(ProcessedVitalSigns).where(ProcessedVitalSigns.encounter_id == encounter_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return VitalsRecord(
                encounter_id=row.encounter_id,
                success=bool(row.success),
                processed_at=_utc(row.processed_at),
                source_encounter_id=row.source_encounter_id,
                height_value=row.height_value,
                weight_value=row.weight_value,
                height_unit=row.height_unit,
                weight_unit=row.weight_unit,
                error_message=row.error_message,
            )

    def mark_vitals_processed(
        self,
        encounter_id: str,
        patient_id: Optional[str],
        *,
        success: bool,
        source_encounter_id: Optional[str] = None,
        height_value: Optional[float] = None,
        weight_value: Optional[float] = None,
        height_unit: Optional[str] = None,
        weight_unit: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with session_scope(self.engine) as session:
            row = session.execute(
                sa.select(ProcessedVitalSigns).where(ProcessedVitalSigns.encounter_id == encounter_id)
            ).scalar_one_or_none()
            if row is None:
                row = ProcessedVitalSigns(encounter_id=encounter_id)
                session.add(row)
            row.patient_id = patient_id
            row.success = success
            row.source_encounter_id = source_encounter_id
            row.height_value = height_value
            row.weight_value = weight_value
            row.height_unit = height_unit
            row.weight_unit = weight_unit
            row.error_message = error_message
            row.processed_at = self.clock()

    def vitals_stats(self) -> Dict[str, int]:
        with session_scope(self.engine) as session:
            total, successful = session.execute(
                sa.select(
                    sa.func.count(),
                    sa.func.coalesce(
                        sa.func.sum(sa.case((ProcessedVitalSigns.success.is_(True), 1), else_=0)), 0
                    ),
                ).select_from(ProcessedVitalSigns)
            ).one()
            return {"total": int(total), "successful": int(successful), "failed": int(total) - int(successful)}


__all__ = [
    "Credentials",
    "NoteCheckRecord",
    "IssueMark",
    "RemediationTaskRecord",
    "VitalsRecord",
    "CredentialStore",
    "RecordStore",
]
