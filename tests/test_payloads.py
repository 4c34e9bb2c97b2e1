import pytest
from pydantic import ValidationError

from notewatch.errors import PayloadError
from notewatch.payloads import (
    CHECK_QUEUE,
    SCAN_QUEUE,
    VITALS_QUEUE,
    CheckPayload,
    ScanPayload,
    VitalsPayload,
    validate_payload,
)


def test_mapping_is_parsed_into_queue_type():
    payload = validate_payload(CHECK_QUEUE, {"encounter_id": "enc-1", "force": True})
    assert isinstance(payload, CheckPayload)
    assert payload.kind == "check"
    assert payload.force is True


def test_typed_payload_passes_through():
    payload = ScanPayload(force=True)
    assert validate_payload(SCAN_QUEUE, payload) is payload


def test_payload_for_wrong_queue_is_rejected():
    with pytest.raises(PayloadError):
        validate_payload(VITALS_QUEUE, ScanPayload())


def test_unknown_fields_are_rejected():
    with pytest.raises(PayloadError):
        validate_payload(SCAN_QUEUE, {"force": True, "encounterId": "enc-1"})


def test_check_payload_requires_encounter():
    with pytest.raises(PayloadError):
        validate_payload(CHECK_QUEUE, {"encounter_id": ""})


def test_unknown_queue_is_rejected():
    with pytest.raises(PayloadError):
        validate_payload("reports", {})


def test_non_mapping_is_rejected():
    with pytest.raises(PayloadError):
        validate_payload(SCAN_QUEUE, ["force"])


def test_payloads_are_immutable():
    payload = VitalsPayload()
    with pytest.raises(ValidationError):
        payload.triggered_by = "operator"
