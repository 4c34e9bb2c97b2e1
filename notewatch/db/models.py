"""SQLAlchemy models for credentials, check records and the job queue."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class NoteCheckStatus(str, enum.Enum):
    """Lifecycle of a note check record."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class JobState(str, enum.Enum):
    """States a queued job moves through."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class EmrCredential(Base):
    __tablename__ = "emr_credentials"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    password = sa.Column(String, nullable=False)
    server_url = sa.Column(String, nullable=True)
    access_token = sa.Column(Text, nullable=True)
    refresh_token = sa.Column(Text, nullable=True)
    token_issued_at = sa.Column(DateTime(timezone=True), nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class NoteCheck(Base):
    __tablename__ = "note_checks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False, unique=True)
    patient_id = sa.Column(String, nullable=True)
    patient_name = sa.Column(String, nullable=True)
    chief_complaint = sa.Column(String, nullable=True)
    date_of_service = sa.Column(DateTime(timezone=True), nullable=True)
    status = sa.Column(String, nullable=False, default=NoteCheckStatus.PENDING.value)
    content_fingerprint = sa.Column(String, nullable=True, index=True)
    previous_content_fingerprint = sa.Column(String, nullable=True)
    triggered_by_update = sa.Column(Boolean, nullable=False, default=False)
    analysis_result = sa.Column(sa.JSON, nullable=True)
    issues_found = sa.Column(Boolean, nullable=False, default=False)
    note_content = sa.Column(Text, nullable=True)
    checked_at = sa.Column(DateTime(timezone=True), nullable=True)
    checked_by = sa.Column(String, nullable=True)
    error_message = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (sa.Index("idx_note_checks_checked_at", "checked_at"),)


class InvalidIssue(Base):
    __tablename__ = "invalid_issues"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False)
    check_id = sa.Column(Integer, sa.ForeignKey("note_checks.id", ondelete="CASCADE"), nullable=False)
    issue_index = sa.Column(Integer, nullable=False)
    issue_type = sa.Column(String, nullable=True)
    assessment = sa.Column(Text, nullable=True)
    marked_by = sa.Column(String, nullable=False)
    marked_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = sa.Column(Text, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "check_id", "issue_index", name="uq_invalid_issue"),
    )


class ResolvedIssue(Base):
    __tablename__ = "resolved_issues"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False)
    check_id = sa.Column(Integer, sa.ForeignKey("note_checks.id", ondelete="CASCADE"), nullable=False)
    issue_index = sa.Column(Integer, nullable=False)
    issue_type = sa.Column(String, nullable=True)
    assessment = sa.Column(Text, nullable=True)
    marked_by = sa.Column(String, nullable=False)
    marked_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = sa.Column(Text, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "check_id", "issue_index", name="uq_resolved_issue"),
    )


class RemediationTask(Base):
    __tablename__ = "remediation_tasks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False, index=True)
    patient_id = sa.Column(String, nullable=True)
    external_task_id = sa.Column(String, nullable=False)
    subject = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    assignee = sa.Column(String, nullable=True)
    watchers = sa.Column(sa.JSON, nullable=True)
    issues_count = sa.Column(Integer, nullable=False, default=0)
    created_by = sa.Column(String, nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "external_task_id", name="uq_remediation_task"),
    )


class ProcessedVitalSigns(Base):
    __tablename__ = "processed_vital_signs"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False, unique=True)
    patient_id = sa.Column(String, nullable=True)
    source_encounter_id = sa.Column(String, nullable=True)
    height_value = sa.Column(Float, nullable=True)
    weight_value = sa.Column(Float, nullable=True)
    height_unit = sa.Column(String, nullable=True)
    weight_unit = sa.Column(String, nullable=True)
    success = sa.Column(Boolean, nullable=False, default=True)
    error_message = sa.Column(Text, nullable=True)
    processed_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id = sa.Column(String, primary_key=True)
    queue_name = sa.Column(String, nullable=False)
    name = sa.Column(String, nullable=False)
    payload = sa.Column(sa.JSON, nullable=False, default=dict)
    state = sa.Column(String, nullable=False, default=JobState.WAITING.value)
    attempt = sa.Column(Integer, nullable=False, default=0)
    max_attempts = sa.Column(Integer, nullable=False, default=3)
    backoff_seconds = sa.Column(Float, nullable=False, default=5.0)
    scheduled_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = sa.Column(DateTime(timezone=True), nullable=True)
    finished_at = sa.Column(DateTime(timezone=True), nullable=True)
    last_error = sa.Column(Text, nullable=True)
    result = sa.Column(sa.JSON, nullable=True)

    __table_args__ = (
        sa.Index("idx_queue_jobs_claim", "queue_name", "state", "scheduled_at"),
    )


class QueueSchedule(Base):
    __tablename__ = "queue_schedules"

    name = sa.Column(String, primary_key=True)
    queue_name = sa.Column(String, nullable=False, index=True)
    payload = sa.Column(sa.JSON, nullable=False, default=dict)
    every_seconds = sa.Column(Float, nullable=False)
    next_run_at = sa.Column(DateTime(timezone=True), nullable=False)


__all__ = [
    "Base",
    "NoteCheckStatus",
    "JobState",
    "EmrCredential",
    "NoteCheck",
    "InvalidIssue",
    "ResolvedIssue",
    "RemediationTask",
    "ProcessedVitalSigns",
    "QueueJob",
    "QueueSchedule",
]
