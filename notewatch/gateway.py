"""Thin client for the remote EMR service.

The module is split in two:

* :class:`AuthClient` talks to the login host (``login`` / ``refresh``).
* :class:`EncounterGateway` wraps the clinical API.  Every call pulls a
  bearer token from the token lifecycle manager; an ``Unauthorized`` answer
  triggers exactly one renewal and one retry of the same request.

Neither class retries on its own beyond that.  Failures are classified into
:mod:`notewatch.errors` types and the queue runtime owns the retry policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

import requests
import structlog

from notewatch.errors import Fatal, GatewayError, NotFound, Transient, Unauthorized
from notewatch.time_utils import parse_timestamp

logger = structlog.get_logger(__name__)

APPLICATION = "EZDERM"
CLIENT_VERSION = "4.28.0"
USER_AGENT = "ezDerm/4.28.1 (build:133.1; macOS(Catalyst) 15.6.0)"

INCOMPLETE_NOTES_PAGE_SIZE = 50
INCOMPLETE_NOTES_PATIENT_LIMIT = 1000

_REST = "ezderm-webservice/rest"


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TokenGrant:
    """Tokens handed out by a login or refresh call."""

    access_token: str
    refresh_token: Optional[str]
    server_url: Optional[str] = None


@dataclass(slots=True)
class Encounter:
    """Snapshot of an upstream encounter used for a single job run."""

    id: str
    patient_id: str
    patient_name: str
    chief_complaint: str
    date_of_service: Optional[str]
    status: str
    established_patient: bool = False
    date_of_birth: Optional[str] = None
    care_team: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def service_time(self) -> Optional[datetime]:
        return parse_timestamp(self.date_of_service)

    @classmethod
    def from_filter_payload(cls, data: Mapping[str, Any]) -> "Encounter":
        """Build from an ``encounter/getByFilter`` entry."""

        patient = data.get("patientInfo") or {}
        name = " ".join(
            part for part in (patient.get("firstName"), patient.get("lastName")) if part
        )
        return cls(
            id=str(data.get("id") or ""),
            patient_id=str(patient.get("id") or ""),
            patient_name=name,
            chief_complaint=str(data.get("chiefComplaintName") or ""),
            date_of_service=data.get("dateOfService"),
            status=str(data.get("status") or ""),
            established_patient=bool(data.get("establishedPatient")),
            date_of_birth=patient.get("dateOfBirth"),
            care_team=list(data.get("encounterRoleInfoList") or []),
        )

    @classmethod
    def from_incomplete_payload(
        cls, patient: Mapping[str, Any], encounter: Mapping[str, Any]
    ) -> "Encounter":
        """Build from one ``inbox/getIncompleteNotes`` patient/encounter pair."""

        name = " ".join(part for part in (patient.get("firstName"), patient.get("lastName")) if part)
        return cls(
            id=str(encounter.get("id") or ""),
            patient_id=str(patient.get("id") or ""),
            patient_name=name,
            chief_complaint=str(encounter.get("chiefComplaintName") or ""),
            date_of_service=encounter.get("dateOfService"),
            status=str(encounter.get("status") or ""),
            established_patient=bool(encounter.get("establishedPatient", True)),
            date_of_birth=patient.get("dateOfBirth"),
            care_team=list(encounter.get("encounterRoleInfoList") or []),
        )


@dataclass(slots=True)
class ProgressNote:
    """Progress note sections as returned by the EMR."""

    encounter_id: str
    sections: List[Dict[str, Any]]
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, encounter_id: str, data: Any) -> "ProgressNote":
        if not isinstance(data, Mapping):
            raise Fatal("progress note payload is not an object", operation="get_note")
        sections = data.get("progressNotes")
        if not isinstance(sections, list):
            raise Fatal("progress note payload has no sections", operation="get_note")
        return cls(
            encounter_id=encounter_id,
            sections=[section for section in sections if isinstance(section, dict)],
            raw=dict(data),
        )


_VITAL_FIELDS = (
    ("id", "id"),
    ("height1", "height1"),
    ("height2", "height2"),
    ("heightUnit", "height_unit"),
    ("weight1", "weight1"),
    ("weight2", "weight2"),
    ("weightUnit", "weight_unit"),
    ("bmi", "bmi"),
    ("temperature", "temperature"),
    ("temperatureUnit", "temperature_unit"),
    ("bloodPressureSystolic", "blood_pressure_systolic"),
    ("bloodPressureDiastolic", "blood_pressure_diastolic"),
    ("pulse", "pulse"),
    ("respirations", "respirations"),
    ("headCircumference", "head_circumference"),
)


@dataclass(slots=True)
class VitalSigns:
    encounter_id: str
    id: Optional[str] = None
    height1: Optional[float] = None
    height2: Optional[float] = None
    height_unit: Optional[str] = None
    weight1: Optional[float] = None
    weight2: Optional[float] = None
    weight_unit: Optional[str] = None
    bmi: Optional[float] = None
    temperature: Optional[float] = None
    temperature_unit: Optional[str] = None
    blood_pressure_systolic: Optional[float] = None
    blood_pressure_diastolic: Optional[float] = None
    pulse: Optional[float] = None
    respirations: Optional[float] = None
    head_circumference: Optional[float] = None

    @property
    def height(self) -> Optional[float]:
        return self.height1 or self.height2

    @property
    def weight(self) -> Optional[float]:
        return self.weight1 or self.weight2

    def has_height_and_weight(self) -> bool:
        has_height = any(value is not None and value > 0 for value in (self.height1, self.height2))
        has_weight = any(value is not None and value > 0 for value in (self.weight1, self.weight2))
        return has_height and has_weight

    @classmethod
    def from_encounter_payload(cls, data: Mapping[str, Any]) -> Optional["VitalSigns"]:
        info = data.get("vitalSignsInfo")
        if not isinstance(info, Mapping):
            return None
        values = {attr: info.get(key) for key, attr in _VITAL_FIELDS}
        return cls(encounter_id=str(data.get("id") or ""), **values)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"encounterId": self.encounter_id}
        for key, attr in _VITAL_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload


class TokenProvider(Protocol):
    """What the gateway needs from the token lifecycle manager."""

    def get_valid_token(self) -> Any:  # pragma: no cover - protocol
        ...

    def renew_after_rejection(self, rejected: Any) -> Any:  # pragma: no cover - protocol
        ...


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def _detail(response: requests.Response) -> str:
    text = (response.text or "").strip()
    return text[:200] if text else response.reason or "no response body"


def classify_response(operation: str, response: requests.Response) -> GatewayError:
    """Map an unsuccessful HTTP response onto the gateway error taxonomy."""

    status = response.status_code
    detail = _detail(response)
    if status in (401, 403):
        return Unauthorized(detail, status_code=status, operation=operation)
    if status == 404:
        return NotFound(detail, status_code=status, operation=operation)
    if status == 429 or status >= 500:
        return Transient(detail, status_code=status, operation=operation)
    return Fatal(detail, status_code=status, operation=operation)


def _decode(operation: str, response: requests.Response) -> Any:
    if not response.ok:
        raise classify_response(operation, response)
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise Fatal("response body is not valid JSON", status_code=response.status_code, operation=operation) from exc


def _send(
    http: requests.Session,
    operation: str,
    method: str,
    url: str,
    *,
    timeout: float,
    headers: Mapping[str, str],
    json: Any = None,
) -> requests.Response:
    try:
        return http.request(method, url, json=json, headers=dict(headers), timeout=timeout)
    except requests.Timeout as exc:
        raise Transient(f"timed out after {timeout}s", operation=operation) from exc
    except requests.ConnectionError as exc:
        raise Transient(f"connection failed: {exc}", operation=operation) from exc
    except requests.RequestException as exc:
        raise Transient(str(exc), operation=operation) from exc


def _base_headers() -> Dict[str, str]:
    return {
        "accept": "application/json",
        "content-type": "application/json",
        "user-agent": USER_AGENT,
        "accept-language": "en-US;q=1.0",
    }


# ---------------------------------------------------------------------------
# Authentication host
# ---------------------------------------------------------------------------


class AuthClient:
    """Login and refresh calls against the EMR authentication host."""

    def __init__(
        self,
        login_url: str,
        refresh_url: str,
        *,
        http: Optional[requests.Session] = None,
        timeout: float = 10,
        time_zone: str = "America/Detroit",
    ) -> None:
        self.login_url = login_url
        self.refresh_url = refresh_url
        self.http = http or requests.Session()
        self.timeout = timeout
        self.time_zone = time_zone

    def login(self, username: str, password: str) -> TokenGrant:
        payload = {
            "username": username,
            "password": password,
            "application": APPLICATION,
            "timeZoneId": self.time_zone,
            "clientVersion": CLIENT_VERSION,
        }
        response = _send(
            self.http, "login", "POST", self.login_url, timeout=self.timeout, headers=_base_headers(), json=payload
        )
        return self._grant("login", _decode("login", response))

    def refresh(self, refresh_token: str) -> TokenGrant:
        payload = {
            "refreshToken": refresh_token,
            "application": APPLICATION,
            "clientVersion": CLIENT_VERSION,
        }
        response = _send(
            self.http, "refresh", "POST", self.refresh_url, timeout=self.timeout, headers=_base_headers(), json=payload
        )
        return self._grant("refresh", _decode("refresh", response))

    @staticmethod
    def _grant(operation: str, data: Any) -> TokenGrant:
        if not isinstance(data, Mapping) or not data.get("accessToken"):
            raise Fatal("token response missing accessToken", operation=operation)
        servers = data.get("servers") if isinstance(data.get("servers"), Mapping) else {}
        return TokenGrant(
            access_token=str(data["accessToken"]),
            refresh_token=data.get("refreshToken"),
            server_url=servers.get("app"),
        )


# ---------------------------------------------------------------------------
# Clinical API
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class EncounterFilter:
    """Date range and scope for ``encounter/getByFilter``."""

    range_low: str
    range_high: str
    clinic_id: str
    practice_id: str
    provider_ids: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "dateOfServiceRangeLow": self.range_low,
            "dateOfServiceRangeHigh": self.range_high,
            "clinicId": self.clinic_id,
            "practiceId": self.practice_id,
            "providerIds": list(self.provider_ids),
            "lightBean": True,
            "dateSelection": "SPECIFY_RANGE",
        }


def _format_bound(day: date, moment: time, zone: ZoneInfo) -> str:
    return datetime.combine(day, moment, tzinfo=zone).strftime("%Y-%m-%dT%H:%M:%S%z")


def day_filter(day: date, *, clinic_id: str, practice_id: str, time_zone: str) -> EncounterFilter:
    """Return a filter covering ``day`` in the clinic's local time zone."""

    zone = ZoneInfo(time_zone)
    return EncounterFilter(
        range_low=_format_bound(day, time(0, 0, 0), zone),
        range_high=_format_bound(day, time(23, 59, 59), zone),
        clinic_id=clinic_id,
        practice_id=practice_id,
    )


class EncounterGateway:
    """Per-operation wrappers around the EMR clinical endpoints."""

    def __init__(
        self,
        tokens: TokenProvider,
        *,
        api_base: str,
        http: Optional[requests.Session] = None,
        timeout: float = 10,
    ) -> None:
        self.tokens = tokens
        self.api_base = api_base
        self.http = http or requests.Session()
        self.timeout = timeout

    def _url(self, token: Any, path: str) -> str:
        base = getattr(token, "server_url", None) or self.api_base
        return f"{base.rstrip('/')}/{_REST}/{path.lstrip('/')}"

    def _headers(self, token: Any, patient_id: Optional[str], encounter_id: Optional[str]) -> Dict[str, str]:
        headers = _base_headers()
        headers["authorization"] = f"Bearer {token.value}"
        if patient_id:
            headers["patientid"] = patient_id
        if encounter_id:
            headers["encounterid"] = encounter_id
        return headers

    def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        patient_id: Optional[str] = None,
        encounter_id: Optional[str] = None,
    ) -> Any:
        token = self.tokens.get_valid_token()
        response = _send(
            self.http,
            operation,
            method,
            self._url(token, path),
            timeout=self.timeout,
            headers=self._headers(token, patient_id, encounter_id),
            json=json,
        )
        if response.status_code in (401, 403):
            logger.info("gateway_token_rejected", operation=operation, status=response.status_code)
            token = self.tokens.renew_after_rejection(token)
            response = _send(
                self.http,
                operation,
                method,
                self._url(token, path),
                timeout=self.timeout,
                headers=self._headers(token, patient_id, encounter_id),
                json=json,
            )
        return _decode(operation, response)

    # -- encounters --------------------------------------------------------

    def list_encounters(self, encounter_filter: EncounterFilter) -> List[Encounter]:
        data = self._call("list_encounters", "POST", "encounter/getByFilter", json=encounter_filter.to_payload())
        if not isinstance(data, list):
            raise Fatal("encounter list is not an array", operation="list_encounters")
        return [Encounter.from_filter_payload(item) for item in data if isinstance(item, Mapping)]

    def get_encounter(self, encounter_id: str, patient_id: Optional[str] = None) -> Dict[str, Any]:
        data = self._call(
            "get_encounter",
            "GET",
            f"encounter/getById/_rid/{encounter_id}",
            patient_id=patient_id,
            encounter_id=encounter_id,
        )
        if not isinstance(data, Mapping):
            raise NotFound(f"encounter {encounter_id} returned no body", operation="get_encounter")
        return dict(data)

    def get_historical_encounters(self, patient_id: str, exclude_encounter_id: Optional[str] = None) -> List[Encounter]:
        """Return the patient's other encounters, newest service date first."""

        data = self._call(
            "get_historical_encounters",
            "POST",
            "encounter/getByFilter",
            json={"lightBean": True, "patientId": patient_id, "includeVirtualEncounters": True},
            patient_id=patient_id,
        )
        if not isinstance(data, list):
            raise Fatal("historical encounter list is not an array", operation="get_historical_encounters")
        encounters = [
            Encounter.from_filter_payload(item)
            for item in data
            if isinstance(item, Mapping) and str(item.get("id")) != str(exclude_encounter_id)
        ]
        encounters.sort(key=lambda enc: enc.service_time or datetime.min.replace(tzinfo=ZoneInfo("UTC")), reverse=True)
        return encounters

    def list_incomplete_notes(self, fetch_from: int = 0, size: int = INCOMPLETE_NOTES_PAGE_SIZE) -> List[Dict[str, Any]]:
        """Return one page of patients with incomplete notes."""

        data = self._call(
            "list_incomplete_notes",
            "POST",
            "inbox/getIncompleteNotes",
            json={"fetchFrom": fetch_from, "size": size},
        )
        if not isinstance(data, list):
            raise Fatal("incomplete notes response is not an array", operation="list_incomplete_notes")
        if not data or not isinstance(data[0], Mapping):
            return []
        patients = data[0].get("incompletePatientEncounters") or []
        return [patient for patient in patients if isinstance(patient, Mapping)]

    def iter_incomplete_notes(
        self,
        page_size: int = INCOMPLETE_NOTES_PAGE_SIZE,
        patient_limit: int = INCOMPLETE_NOTES_PATIENT_LIMIT,
    ) -> Iterator[Encounter]:
        """Page through the incomplete-notes inbox, yielding every encounter."""

        fetch_from = 0
        seen_patients = 0
        while True:
            patients = self.list_incomplete_notes(fetch_from, page_size)
            if not patients:
                return
            for patient in patients:
                for encounter in patient.get("incompleteEncounters") or []:
                    if isinstance(encounter, Mapping):
                        yield Encounter.from_incomplete_payload(patient, encounter)
            seen_patients += len(patients)
            if seen_patients > patient_limit:
                logger.warning("incomplete_notes_limit_reached", patients=seen_patients)
                return
            fetch_from += page_size

    # -- notes -------------------------------------------------------------

    def get_note(self, encounter_id: str, patient_id: Optional[str] = None) -> ProgressNote:
        data = self._call(
            "get_note",
            "POST",
            "progressnote/getProgressNoteInfo",
            json={"encounterId": encounter_id},
            patient_id=patient_id,
            encounter_id=encounter_id,
        )
        return ProgressNote.from_payload(encounter_id, data)

    def update_note(self, encounter_id: str, patient_id: Optional[str], progress_note: Mapping[str, Any]) -> Any:
        payload = dict(progress_note)
        payload.setdefault("encounterId", encounter_id)
        return self._call(
            "update_note",
            "POST",
            "progressnote/updateProgressNoteInfo",
            json=payload,
            patient_id=patient_id,
            encounter_id=encounter_id,
        )

    # -- vital signs -------------------------------------------------------

    def get_vital_signs(self, encounter_id: str, patient_id: Optional[str] = None) -> Optional[VitalSigns]:
        return VitalSigns.from_encounter_payload(self.get_encounter(encounter_id, patient_id))

    def update_vital_signs(self, vitals: VitalSigns, patient_id: Optional[str]) -> None:
        payload = vitals.to_payload()
        payload["changeStatus"] = "UPDATED"
        self._call(
            "update_vital_signs",
            "POST",
            "vitalSigns/updateVitalSigns",
            json=payload,
            patient_id=patient_id,
            encounter_id=vitals.encounter_id,
        )

    # -- tasks -------------------------------------------------------------

    def create_task(self, task: Mapping[str, Any], patient_id: Optional[str] = None) -> str:
        """File a ToDo upstream and return its external id."""

        data = self._call("create_task", "POST", "task/add", json=dict(task), patient_id=patient_id)
        task_id = data.get("id") if isinstance(data, Mapping) else None
        if not task_id:
            raise Fatal("task response missing id", operation="create_task")
        return str(task_id)


__all__ = [
    "TokenGrant",
    "Encounter",
    "ProgressNote",
    "VitalSigns",
    "EncounterFilter",
    "AuthClient",
    "EncounterGateway",
    "classify_response",
    "day_filter",
]
