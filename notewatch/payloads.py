"""Tagged job payloads, one variant per queue."""

from __future__ import annotations

from typing import Any, Dict, Literal, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from notewatch.errors import PayloadError

SCAN_QUEUE = "note-scan"
CHECK_QUEUE = "note-check"
VITALS_QUEUE = "vital-signs"

QUEUE_NAMES = (SCAN_QUEUE, CHECK_QUEUE, VITALS_QUEUE)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ScanPayload(_Payload):
    kind: Literal["scan"] = "scan"
    force: bool = False
    triggered_by: str = "schedule"


class CheckPayload(_Payload):
    kind: Literal["check"] = "check"
    encounter_id: str = Field(min_length=1)
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    chief_complaint: Optional[str] = None
    date_of_service: Optional[str] = None
    status: Optional[str] = None
    force: bool = False
    triggered_by: str = "scan"


class VitalsPayload(_Payload):
    kind: Literal["vitals"] = "vitals"
    triggered_by: str = "schedule"


JobPayload = Union[ScanPayload, CheckPayload, VitalsPayload]

PAYLOAD_TYPES: Dict[str, Type[_Payload]] = {
    SCAN_QUEUE: ScanPayload,
    CHECK_QUEUE: CheckPayload,
    VITALS_QUEUE: VitalsPayload,
}


def payload_type(queue: str) -> Type[_Payload]:
    try:
        return PAYLOAD_TYPES[queue]
    except KeyError:
        raise PayloadError(f"Unknown queue {queue!r}") from None


def validate_payload(queue: str, payload: Any) -> JobPayload:
    """Return ``payload`` as the tagged type of ``queue`` or raise :class:`PayloadError`."""

    expected = payload_type(queue)
    if isinstance(payload, _Payload):
        if not isinstance(payload, expected):
            raise PayloadError(f"{type(payload).__name__} cannot be enqueued on {queue!r}")
        return payload  # type: ignore[return-value]
    if not isinstance(payload, Mapping):
        raise PayloadError(f"Payload for {queue!r} must be a mapping")
    try:
        return expected.model_validate(dict(payload))  # type: ignore[return-value]
    except ValidationError as exc:
        raise PayloadError(f"Invalid payload for {queue!r}: {exc.errors()}") from exc


__all__ = [
    "SCAN_QUEUE",
    "CHECK_QUEUE",
    "VITALS_QUEUE",
    "QUEUE_NAMES",
    "ScanPayload",
    "CheckPayload",
    "VitalsPayload",
    "JobPayload",
    "payload_type",
    "validate_payload",
]
