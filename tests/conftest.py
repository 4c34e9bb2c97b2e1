import os
import sys
from collections import Counter
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import pytest

# Ensure the repository root is on sys.path so tests can import the notewatch package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from notewatch.analysis import AnalysisResult, Issue, IssueDetails
from notewatch.db.session import create_memory_engine
from notewatch.errors import NotFound
from notewatch.fingerprint import DedupLedger
from notewatch.gateway import Encounter, ProgressNote, TokenGrant, VitalSigns
from notewatch.queue import QueueRuntime
from notewatch.store import CredentialStore, RecordStore
from notewatch.tokens import TokenManager

# 12:00 in America/Detroit
START = datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for ``utc_now``."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAuth:
    """Authenticator double counting login and refresh calls."""

    def __init__(self) -> None:
        self.logins = 0
        self.refreshes = 0
        self.login_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None

    def login(self, username: str, password: str) -> TokenGrant:
        self.logins += 1
        if self.login_error is not None:
            raise self.login_error
        return TokenGrant(f"login-token-{self.logins}", f"login-refresh-{self.logins}")

    def refresh(self, refresh_token: str) -> TokenGrant:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(f"refreshed-token-{self.refreshes}", f"next-refresh-{self.refreshes}")


class FakeAnalyzer:
    def __init__(self, result: Any = None) -> None:
        self.calls: List[str] = []
        self.result = result if result is not None else AnalysisResult(status="ok", reason="Looks complete")

    def __call__(self, text: str) -> AnalysisResult:
        self.calls.append(text)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeGateway:
    """In-memory stand-in for :class:`notewatch.gateway.EncounterGateway`."""

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.incomplete: List[Encounter] = []
        self.day_encounters: List[Encounter] = []
        self.notes: Dict[str, List[Dict[str, Any]]] = {}
        self.encounters: Dict[str, Dict[str, Any]] = {}
        self.history: Dict[str, List[Encounter]] = {}
        self.vitals: Dict[str, VitalSigns] = {}
        self.errors: Dict[str, Exception] = {}
        self.tasks: List[Dict[str, Any]] = []
        self.updated_vitals: List[VitalSigns] = []

    def _record(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.errors:
            raise self.errors[operation]

    def iter_incomplete_notes(self, page_size: int = 50) -> Iterator[Encounter]:
        self._record("iter_incomplete_notes")
        yield from self.incomplete

    def list_encounters(self, encounter_filter: Any) -> List[Encounter]:
        self._record("list_encounters")
        return list(self.day_encounters)

    def get_note(self, encounter_id: str, patient_id: Optional[str] = None) -> ProgressNote:
        self._record("get_note")
        if encounter_id not in self.notes:
            raise NotFound("no such note", status_code=404, operation="get_note")
        return ProgressNote(encounter_id=encounter_id, sections=deepcopy(self.notes[encounter_id]))

    def get_encounter(self, encounter_id: str, patient_id: Optional[str] = None) -> Dict[str, Any]:
        self._record("get_encounter")
        if encounter_id not in self.encounters:
            raise NotFound("no such encounter", status_code=404, operation="get_encounter")
        return deepcopy(self.encounters[encounter_id])

    def get_historical_encounters(self, patient_id: str, exclude_encounter_id: Optional[str] = None) -> List[Encounter]:
        self._record("get_historical_encounters")
        return [enc for enc in self.history.get(patient_id, []) if enc.id != exclude_encounter_id]

    def get_vital_signs(self, encounter_id: str, patient_id: Optional[str] = None) -> Optional[VitalSigns]:
        self._record("get_vital_signs")
        vitals = self.vitals.get(encounter_id)
        return replace(vitals) if vitals is not None else None

    def update_vital_signs(self, vitals: VitalSigns, patient_id: Optional[str]) -> None:
        self._record("update_vital_signs")
        self.updated_vitals.append(vitals)

    def create_task(self, task: Dict[str, Any], patient_id: Optional[str] = None) -> str:
        self._record("create_task")
        self.tasks.append(task)
        return f"task-{len(self.tasks)}"


def make_sections(
    hpi: str = "Patient presents with an itchy rash.\n\nOnset two weeks ago.",
    assessment: str = "Atopic dermatitis, chronic",
    vitals: str = "Height 70 in, Weight 180 lbs",
) -> List[Dict[str, Any]]:
    return [
        {
            "sectionType": "SUBJECTIVE",
            "items": [{"elementType": "HISTORY_OF_PRESENT_ILLNESS", "text": hpi, "note": "Worse at night"}],
        },
        {
            "sectionType": "OBJECTIVE",
            "items": [{"elementType": "VITAL_SIGNS", "text": vitals}],
        },
        {
            "sectionType": "ASSESSMENT_AND_PLAN",
            "items": [{"elementType": "ASSESSMENT", "text": assessment, "note": "Triamcinolone 0.1% BID"}],
        },
    ]


def make_encounter(
    encounter_id: str,
    *,
    status: str = "PENDING_COSIGN",
    hours_ago: float = 3,
    patient_id: str = "p1",
    established: bool = True,
    date_of_birth: Optional[str] = "1980-01-15",
    now: datetime = START,
) -> Encounter:
    return Encounter(
        id=encounter_id,
        patient_id=patient_id,
        patient_name="Pat Doe",
        chief_complaint="Rash",
        date_of_service=(now - timedelta(hours=hours_ago)).isoformat(),
        status=status,
        established_patient=established,
        date_of_birth=date_of_birth,
    )


def encounter_payload(encounter_id: str, patient_id: str = "p1", **extra: Any) -> Dict[str, Any]:
    payload = {
        "id": encounter_id,
        "status": "PENDING_COSIGN",
        "dateOfService": "2024-05-01T09:30:00-0400",
        "chiefComplaintName": "Rash",
        "establishedPatient": True,
        "patientInfo": {"id": patient_id, "firstName": "Pat", "lastName": "Doe", "dateOfBirth": "1980-01-15"},
        "encounterRoleInfoList": [
            {"providerId": "dr-1", "encounterRoleType": "PROVIDER", "active": True},
            {"providerId": "ma-1", "encounterRoleType": "STAFF", "active": True},
        ],
    }
    payload.update(extra)
    return payload


ISSUES_RESULT = AnalysisResult(
    status="corrections_needed",
    summary="Found 2 issues",
    issues=[
        Issue(
            assessment="Atopic dermatitis",
            issue="chronicity_mismatch",
            details=IssueDetails(hpi="two weeks", assessment_and_plan="chronic", correction="Document as acute"),
        ),
        Issue(
            assessment="Seborrheic keratosis",
            issue="no_explicit_plan",
            details=IssueDetails(assessment_and_plan="SK noted", correction="Add a plan"),
        ),
    ],
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_memory_engine()
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def credentials(engine, clock) -> CredentialStore:
    return CredentialStore(engine, clock=clock)


@pytest.fixture
def records(engine, clock) -> RecordStore:
    return RecordStore(engine, clock=clock)


@pytest.fixture
def runtime(engine, clock) -> QueueRuntime:
    return QueueRuntime(engine, clock=clock, default_attempts=3, default_backoff_seconds=5)


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def tokens(credentials, auth, clock) -> TokenManager:
    credentials.save_credentials("svc-user", "s3cret")
    credentials.store_tokens("svc-user", "seed-token", "seed-refresh")
    return TokenManager(credentials, auth, clock=clock)


@pytest.fixture
def ledger(records, clock) -> DedupLedger:
    return DedupLedger(records, clock=clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()
