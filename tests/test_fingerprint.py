import pytest

from notewatch.db.models import NoteCheckStatus
from notewatch.fingerprint import compute_fingerprint, format_note_for_analysis

SECTIONS = [
    {
        "sectionType": "SUBJECTIVE",
        "items": [
            {
                "elementType": "HISTORY_OF_PRESENT_ILLNESS",
                "text": "Intro para\n\nSecond para",
                "note": "Itchy rash",
            }
        ],
    },
    {
        "sectionType": "ASSESSMENT_AND_PLAN",
        "items": [
            {"elementType": "ASSESSMENT", "text": "Eczema", "note": "Continue cream"},
            {"elementType": "PLAN", "text": "   ", "note": "ignored"},
        ],
    },
]


def test_note_text_is_canonical():
    assert format_note_for_analysis(SECTIONS) == (
        "--- SUBJECTIVE ---\n"
        "\nHISTORY_OF_PRESENT_ILLNESS:\nIntro para\nItchy rash\n"
        "\n\n--- ASSESSMENT_AND_PLAN ---\n"
        "\nASSESSMENT:\nEczema\nNote: Continue cream"
    )


def test_empty_note_formats_to_empty_text():
    assert format_note_for_analysis([]) == ""


def test_sha256_fingerprint_is_prefixed():
    assert compute_fingerprint("") == (
        "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )


@pytest.mark.parametrize(
    "text, expected",
    [("", "rolling32:00000000"), ("a", "rolling32:00000061"), ("ab", "rolling32:00000c21")],
)
def test_rolling_fingerprint(text, expected):
    assert compute_fingerprint(text, "rolling32") == expected


def test_fingerprint_is_deterministic_and_content_sensitive():
    text = format_note_for_analysis(SECTIONS)
    assert compute_fingerprint(text) == compute_fingerprint(format_note_for_analysis(SECTIONS))
    assert compute_fingerprint(text) != compute_fingerprint(text + " ")


def test_unknown_algorithm_rejected():
    with pytest.raises(ValueError):
        compute_fingerprint("x", "md5")


def _complete(records, encounter_id="enc-1", fingerprint="sha256:abc"):
    return records.save_note_check(
        encounter_id, status=NoteCheckStatus.COMPLETED, checked_by="test", fingerprint=fingerprint
    )


def test_unknown_encounter_needs_check(ledger):
    assert ledger.should_check("enc-1", "sha256:abc")


def test_unchanged_note_is_not_rechecked(ledger, records):
    _complete(records)
    assert not ledger.should_check("enc-1", "sha256:abc")
    assert not ledger.should_check("enc-1", "sha256:abc")


def test_changed_note_is_rechecked(ledger, records):
    _complete(records)
    assert ledger.should_check("enc-1", "sha256:def")


def test_force_always_checks(ledger, records):
    _complete(records)
    assert ledger.should_check("enc-1", "sha256:abc", force=True)


def test_errored_check_is_retried(ledger, records):
    _complete(records)
    records.save_note_check("enc-1", status=NoteCheckStatus.ERROR, checked_by="test", error_message="boom")
    assert ledger.should_check("enc-1", "sha256:abc")


def test_stale_check_is_repeated(ledger, records, clock):
    _complete(records)
    clock.advance(hours=5, minutes=59)
    assert not ledger.should_check("enc-1", "sha256:abc")
    clock.advance(minutes=2)
    assert ledger.should_check("enc-1", "sha256:abc")


def test_fingerprint_from_other_algorithm_forces_check(ledger, records):
    _complete(records, fingerprint=compute_fingerprint("note", "rolling32"))
    assert ledger.should_check("enc-1", compute_fingerprint("note", "sha256"))


def test_prefilter_without_fingerprint_uses_record_state(ledger, records, clock):
    assert ledger.should_check("enc-1", None)
    _complete(records)
    assert not ledger.should_check("enc-1", None)
    clock.advance(hours=7)
    assert ledger.should_check("enc-1", None)
