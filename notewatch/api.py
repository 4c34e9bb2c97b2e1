"""Operator controls over HTTP.

Every trigger reduces to an enqueue on the same queues the schedulers feed.
The app optionally runs the worker pool inside its lifespan.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from notewatch.check_job import NoIssuesError
from notewatch.errors import GatewayError, NotewatchError
from notewatch.observability import collect_queue_metrics
from notewatch.payloads import QUEUE_NAMES
from notewatch.queue import Job
from notewatch.service import (
    MAX_BULK_CHECKS,
    Services,
    bootstrap,
    request_bulk_check,
    request_check,
    trigger_scan,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class ScanRequest(BaseModel):
    force: bool = False


class CheckRequest(BaseModel):
    force: bool = True


class BulkCheckRequest(BaseModel):
    encounter_ids: List[str] = Field(min_length=1, max_length=MAX_BULK_CHECKS)
    force: bool = True


class TodoRequest(BaseModel):
    force: bool = False
    created_by: Optional[str] = None


class IssueMarkRequest(BaseModel):
    marked_by: str = Field(min_length=1)
    reason: Optional[str] = None


class JobModel(BaseModel):
    id: str
    queue: str
    state: str
    attempt: int
    scheduled_at: str

    @classmethod
    def from_job(cls, job: Job) -> "JobModel":
        return cls(
            id=job.id,
            queue=job.queue_name,
            state=job.state,
            attempt=job.attempt,
            scheduled_at=job.scheduled_at.isoformat(),
        )


def _services(request: Request) -> Services:
    return request.app.state.services


def _jsonable(value: Any) -> Dict[str, Any]:
    data = asdict(value)
    return {key: item.isoformat() if hasattr(item, "isoformat") else item for key, item in data.items()}


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@router.post("/jobs/scan", status_code=202)
def scan_now(request: Request, body: Optional[ScanRequest] = None) -> JobModel:
    job = trigger_scan(_services(request), force=(body or ScanRequest()).force)
    return JobModel.from_job(job)


@router.get("/jobs/stats")
def job_stats(request: Request) -> Dict[str, Dict[str, int]]:
    stats = _services(request).runtime.all_stats(QUEUE_NAMES)
    collect_queue_metrics(stats)
    return stats


@router.post("/encounters/check", status_code=202)
def bulk_check(request: Request, body: BulkCheckRequest) -> List[JobModel]:
    jobs = request_bulk_check(_services(request), body.encounter_ids, force=body.force)
    return [JobModel.from_job(job) for job in jobs]


@router.post("/encounters/{encounter_id}/check", status_code=202)
def check_encounter(request: Request, encounter_id: str, body: Optional[CheckRequest] = None) -> JobModel:
    job = request_check(_services(request), encounter_id, force=(body or CheckRequest()).force)
    return JobModel.from_job(job)


@router.get("/encounters/checks")
def list_checks(request: Request, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    records = _services(request).records.list_note_checks(limit=min(limit, 200), offset=offset)
    return [_jsonable(record) for record in records]


@router.get("/encounters/{encounter_id}/check")
def get_check(request: Request, encounter_id: str) -> Dict[str, Any]:
    services = _services(request)
    record = services.records.get_note_check(encounter_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No note check for this encounter")
    data = _jsonable(record)
    data["invalid_issues"] = [_jsonable(mark) for mark in services.records.list_invalid_issues(encounter_id)]
    data["resolved_issues"] = [_jsonable(mark) for mark in services.records.list_resolved_issues(encounter_id)]
    data["tasks"] = [_jsonable(task) for task in services.records.list_remediation_tasks(encounter_id)]
    return data


# ---------------------------------------------------------------------------
# Remediation tasks and issue annotations
# ---------------------------------------------------------------------------


@router.post("/encounters/{encounter_id}/todo", status_code=201)
def create_todo(request: Request, encounter_id: str, body: Optional[TodoRequest] = None) -> Dict[str, Any]:
    body = body or TodoRequest()
    try:
        task = _services(request).check_job.create_remediation_task(
            encounter_id, force=body.force, created_by=body.created_by
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found") from exc
    except NoIssuesError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GatewayError as exc:
        logger.warning("todo_creation_failed", encounter_id=encounter_id, error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except NotewatchError as exc:
        logger.error("todo_not_recorded", encounter_id=encounter_id, error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _jsonable(task)


_MARKERS = {
    "invalid": ("mark_issue_invalid", "unmark_issue_invalid"),
    "resolved": ("mark_issue_resolved", "unmark_issue_resolved"),
}


@router.post("/encounters/{encounter_id}/issues/{check_id}/{issue_index}/{mark}")
def mark_issue(
    request: Request,
    encounter_id: str,
    check_id: int,
    issue_index: int,
    mark: Literal["invalid", "resolved"],
    body: IssueMarkRequest,
) -> Dict[str, Any]:
    records = _services(request).records
    method = getattr(records, _MARKERS[mark][0])
    try:
        result = method(encounter_id, check_id, issue_index, body.marked_by, body.reason)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found") from exc
    except IndexError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _jsonable(result)


@router.delete("/encounters/{encounter_id}/issues/{check_id}/{issue_index}/{mark}", status_code=204)
def unmark_issue(
    request: Request,
    encounter_id: str,
    check_id: int,
    issue_index: int,
    mark: Literal["invalid", "resolved"],
) -> Response:
    records = _services(request).records
    if not getattr(records, _MARKERS[mark][1])(encounter_id, check_id, issue_index):
        raise HTTPException(status_code=404, detail="Issue is not marked")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Vital signs
# ---------------------------------------------------------------------------


@router.post("/encounters/{encounter_id}/vitals")
def process_vitals(request: Request, encounter_id: str, patient_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        outcome = _services(request).vitals_job.process_encounter(encounter_id, patient_id)
    except NotewatchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return asdict(outcome)


@router.get("/vitals/stats")
def vitals_stats(request: Request) -> Dict[str, int]:
    return _services(request).records.vitals_stats()


@router.get("/metrics", response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(services: Services, *, run_workers: bool = False) -> FastAPI:
    """Build the operator API around ``services``.

    With ``run_workers`` the app bootstraps the queues on startup and runs the
    worker pool until shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # pragma: no cover - exercised by the server process
        if run_workers:
            bootstrap(services)
            await services.pool.start()
        logger.info("lifespan_startup", run_workers=run_workers)
        try:
            yield
        finally:
            if run_workers:
                await services.pool.stop()
            logger.info("lifespan_shutdown_complete")

    app = FastAPI(title="Notewatch", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    return app


__all__ = ["router", "create_app"]
