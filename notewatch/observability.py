"""Logging configuration and Prometheus metrics for the job system."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

import structlog
from prometheus_client import Counter, Gauge

JOBS_PROCESSED = Counter(
    "notewatch_jobs_processed_total",
    "Job attempts finished by the worker pool",
    ["queue", "outcome"],
)
TOKEN_RENEWALS = Counter(
    "notewatch_token_renewals_total",
    "Token refresh and re-login attempts",
    ["method", "outcome"],
)
NOTE_ANALYSES = Counter(
    "notewatch_note_analyses_total",
    "Check jobs that ran the analysis or were skipped by the ledger",
    ["outcome"],
)
REMEDIATION_TASKS = Counter(
    "notewatch_remediation_tasks_total",
    "Remediation tasks filed upstream",
)
VITALS_CARRIED_FORWARD = Counter(
    "notewatch_vitals_carryforward_total",
    "Vital-signs carryforward attempts",
    ["outcome"],
)
QUEUE_DEPTH = Gauge(
    "notewatch_queue_jobs",
    "Jobs per queue and state",
    ["queue", "state"],
)

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog for JSON output."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    log_level = (level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def collect_queue_metrics(stats: Mapping[str, Mapping[str, int]]) -> None:
    """Publish ``{queue: {state: count}}`` into the queue depth gauge."""

    for queue, counts in stats.items():
        for state, count in counts.items():
            QUEUE_DEPTH.labels(queue=queue, state=state).set(count)


__all__ = [
    "JOBS_PROCESSED",
    "TOKEN_RENEWALS",
    "NOTE_ANALYSES",
    "REMEDIATION_TASKS",
    "VITALS_CARRIED_FORWARD",
    "QUEUE_DEPTH",
    "configure_logging",
    "collect_queue_metrics",
]
