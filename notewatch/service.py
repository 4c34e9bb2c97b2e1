"""Wires the stores, token manager, gateway, jobs and worker pool together."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional

import requests
import structlog
from sqlalchemy.engine import Engine

from notewatch.analysis import Analyzer, OpenAIAnalyzer, check_vital_signs
from notewatch.check_job import CheckJob
from notewatch.config import Settings, get_settings
from notewatch.db.session import create_engine_from_settings, init_schema
from notewatch.fingerprint import DedupLedger
from notewatch.gateway import AuthClient, EncounterGateway
from notewatch.payloads import (
    CHECK_QUEUE,
    QUEUE_NAMES,
    SCAN_QUEUE,
    VITALS_QUEUE,
    CheckPayload,
    ScanPayload,
    VitalsPayload,
)
from notewatch.queue import Job, QueueRuntime
from notewatch.scan_job import ScanJob, check_job_id, stagger_delay
from notewatch.store import CredentialStore, RecordStore
from notewatch.time_utils import Clock, utc_now
from notewatch.tokens import TokenManager
from notewatch.vitals_job import VitalsCarryforwardJob
from notewatch.worker import WorkerPool

logger = structlog.get_logger(__name__)

SCAN_SCHEDULE = "note-scan-trigger"
VITALS_SCHEDULE = "vital-signs-carryforward"
MAX_BULK_CHECKS = 100


@dataclass
class Services:
    settings: Settings
    engine: Engine
    credentials: CredentialStore
    records: RecordStore
    tokens: TokenManager
    gateway: EncounterGateway
    ledger: DedupLedger
    runtime: QueueRuntime
    scan_job: ScanJob
    check_job: CheckJob
    vitals_job: VitalsCarryforwardJob
    pool: WorkerPool


def build_services(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    analyzer: Optional[Analyzer] = None,
    http: Optional[requests.Session] = None,
    clock: Clock = utc_now,
) -> Services:
    """Construct every component from ``settings``.

    Tests pass an in-memory ``engine``, a fake ``analyzer`` and a mocked
    ``http`` session; production uses the configured database and OpenAI.
    """

    settings = settings or get_settings()
    engine = engine or create_engine_from_settings(settings)
    http = http or requests.Session()

    credentials = CredentialStore(engine, clock=clock)
    records = RecordStore(engine, clock=clock)
    auth = AuthClient(
        settings.login_url,
        settings.refresh_url,
        http=http,
        timeout=settings.http_timeout_seconds,
        time_zone=settings.emr_timezone,
    )
    tokens = TokenManager(credentials, auth, ttl=timedelta(seconds=settings.token_ttl_seconds), clock=clock)
    gateway = EncounterGateway(tokens, api_base=settings.api_base, http=http, timeout=settings.http_timeout_seconds)
    ledger = DedupLedger(records, staleness=timedelta(hours=settings.staleness_hours), clock=clock)
    runtime = QueueRuntime(
        engine,
        clock=clock,
        default_attempts=settings.job_attempts,
        default_backoff_seconds=settings.job_backoff_seconds,
    )

    scan_job = ScanJob(
        tokens=tokens,
        gateway=gateway,
        ledger=ledger,
        runtime=runtime,
        min_age=timedelta(hours=settings.note_min_age_hours),
        stagger_seconds=settings.check_stagger_seconds,
        stagger_cap_seconds=settings.check_stagger_cap_seconds,
        clock=clock,
    )
    check_job = CheckJob(
        tokens=tokens,
        gateway=gateway,
        records=records,
        ledger=ledger,
        analyzer=analyzer or OpenAIAnalyzer(settings.openai_model),
        checked_by=settings.checked_by,
        fingerprint_algorithm=settings.fingerprint_algorithm,
        time_zone=settings.emr_timezone,
        local_checks=(check_vital_signs,) if analyzer is None else (),
        clock=clock,
    )
    vitals_job = VitalsCarryforwardJob(
        tokens=tokens,
        gateway=gateway,
        records=records,
        clinic_id=settings.clinic_id,
        practice_id=settings.practice_id,
        time_zone=settings.emr_timezone,
        clock=clock,
    )
    pool = WorkerPool(
        runtime,
        {SCAN_QUEUE: scan_job, CHECK_QUEUE: check_job, VITALS_QUEUE: vitals_job},
        concurrency={SCAN_QUEUE: 1, CHECK_QUEUE: settings.check_concurrency, VITALS_QUEUE: 1},
    )
    return Services(
        settings=settings,
        engine=engine,
        credentials=credentials,
        records=records,
        tokens=tokens,
        gateway=gateway,
        ledger=ledger,
        runtime=runtime,
        scan_job=scan_job,
        check_job=check_job,
        vitals_job=vitals_job,
        pool=pool,
    )


def bootstrap(services: Services) -> None:
    """Prepare a fresh start: schema, seeded identity, empty queues, triggers."""

    settings = services.settings
    init_schema(services.engine)
    if settings.has_service_credentials:
        services.credentials.save_credentials(settings.emr_username, settings.emr_password)
        logger.info("credentials_seeded", username=settings.emr_username)
    for queue in QUEUE_NAMES:
        services.runtime.obliterate(queue)
    services.runtime.add_schedule(SCAN_SCHEDULE, SCAN_QUEUE, ScanPayload(), settings.scan_interval_seconds)
    services.runtime.add_schedule(
        VITALS_SCHEDULE, VITALS_QUEUE, VitalsPayload(), settings.vitals_interval_seconds
    )


# ---------------------------------------------------------------------------
# Operator triggers
# ---------------------------------------------------------------------------


def trigger_scan(services: Services, *, force: bool = False) -> Job:
    return services.runtime.enqueue(
        SCAN_QUEUE, ScanPayload(force=force, triggered_by="operator"), job_id="scan:manual"
    )


def request_check(services: Services, encounter_id: str, *, force: bool = True, delay_seconds: float = 0) -> Job:
    """Queue a check for one encounter, reusing a pending job for it."""

    return services.runtime.enqueue(
        CHECK_QUEUE,
        CheckPayload(encounter_id=encounter_id, force=force, triggered_by="operator"),
        job_id=check_job_id(encounter_id),
        delay_seconds=delay_seconds,
    )


def request_bulk_check(services: Services, encounter_ids: Iterable[str], *, force: bool = True) -> List[Job]:
    unique = list(dict.fromkeys(encounter_ids))
    if len(unique) > MAX_BULK_CHECKS:
        raise ValueError(f"At most {MAX_BULK_CHECKS} encounters per request")
    settings = services.settings
    return [
        request_check(
            services,
            encounter_id,
            force=force,
            delay_seconds=stagger_delay(index, settings.check_stagger_seconds, settings.check_stagger_cap_seconds),
        )
        for index, encounter_id in enumerate(unique)
    ]


__all__ = [
    "Services",
    "build_services",
    "bootstrap",
    "trigger_scan",
    "request_check",
    "request_bulk_check",
    "SCAN_SCHEDULE",
    "VITALS_SCHEDULE",
    "MAX_BULK_CHECKS",
]
