import pytest

from notewatch.db.models import NoteCheckStatus

ANALYSIS = {
    "status": "corrections_needed",
    "issues": [
        {"assessment": "Eczema", "issue": "chronicity_mismatch", "details": {}},
        {"assessment": "Acne", "issue": "no_explicit_plan", "details": {}},
    ],
    "issuesFound": True,
}


def _complete(records, fingerprint="sha256:one", analysis=ANALYSIS):
    return records.save_note_check(
        "enc-1",
        status=NoteCheckStatus.COMPLETED,
        checked_by="test",
        fingerprint=fingerprint,
        analysis_result=analysis,
        issues_found=bool(analysis and analysis.get("issuesFound")),
        patient_id="p1",
    )


def test_only_one_identity_is_active(credentials):
    credentials.save_credentials("first", "pw")
    credentials.save_credentials("second", "pw")
    assert credentials.get_active().username == "second"
    credentials.save_credentials("first", "pw")
    assert credentials.get_active().username == "first"


def test_password_change_drops_tokens(credentials):
    credentials.save_credentials("svc", "old")
    credentials.store_tokens("svc", "access", "refresh")
    credentials.save_credentials("svc", "new")
    stored = credentials.get("svc")
    assert stored.password == "new"
    assert stored.access_token is None
    assert stored.refresh_token is None


def test_store_tokens_for_unknown_identity(credentials):
    with pytest.raises(KeyError):
        credentials.store_tokens("ghost", "a", "r")


def test_completed_check_tracks_previous_fingerprint(records):
    first = _complete(records)
    assert not first.triggered_by_update
    second = _complete(records, fingerprint="sha256:two")
    assert second.id == first.id
    assert second.content_fingerprint == "sha256:two"
    assert second.previous_content_fingerprint == "sha256:one"
    assert second.triggered_by_update


def test_error_keeps_last_good_analysis(records, clock):
    _complete(records)
    clock.advance(minutes=5)
    errored = records.save_note_check(
        "enc-1", status=NoteCheckStatus.ERROR, checked_by="test", error_message="Transient: timed out"
    )
    assert errored.status == "error"
    assert errored.error_message == "Transient: timed out"
    assert errored.content_fingerprint == "sha256:one"
    assert errored.issues_found
    assert errored.checked_at == clock()
    assert errored.patient_id == "p1"


def test_issue_marks_validate_target(records):
    record = _complete(records)
    with pytest.raises(KeyError):
        records.mark_issue_invalid("enc-1", record.id + 1, 0, "reviewer")
    with pytest.raises(IndexError):
        records.mark_issue_invalid("enc-1", record.id, 5, "reviewer")


def test_marks_clear_valid_issues(records):
    record = _complete(records)
    assert records.has_valid_issues("enc-1")

    mark = records.mark_issue_invalid("enc-1", record.id, 0, "reviewer", "not applicable")
    assert mark.issue_type == "chronicity_mismatch"
    assert mark.assessment == "Eczema"
    assert records.has_valid_issues("enc-1")

    records.mark_issue_resolved("enc-1", record.id, 1, "reviewer")
    assert not records.has_valid_issues("enc-1")

    assert records.unmark_issue_resolved("enc-1", record.id, 1)
    assert not records.unmark_issue_resolved("enc-1", record.id, 1)
    assert records.has_valid_issues("enc-1")


def test_marking_twice_updates_the_same_row(records):
    record = _complete(records)
    records.mark_issue_invalid("enc-1", record.id, 0, "first")
    records.mark_issue_invalid("enc-1", record.id, 0, "second", "dup")
    marks = records.list_invalid_issues("enc-1")
    assert [(m.marked_by, m.reason) for m in marks] == [("second", "dup")]


def test_remediation_tasks(records):
    assert not records.has_remediation_task("enc-1")
    records.save_remediation_task(
        "enc-1", "task-1", subject="Note Deficiencies", created_by="test", watchers=["dr-1"], issues_count=2
    )
    assert records.has_remediation_task("enc-1")
    task = records.list_remediation_tasks("enc-1")[0]
    assert task.external_task_id == "task-1"
    assert task.watchers == ["dr-1"]


def test_vitals_ledger_and_stats(records):
    assert not records.has_processed_vitals("enc-1")
    records.mark_vitals_processed("enc-1", "p1", success=True, height_value=70, weight_value=180)
    records.mark_vitals_processed("enc-2", "p2", success=False, error_message="No historical encounters found")
    assert records.has_processed_vitals("enc-1")
    assert records.get_processed_vitals("enc-2").error_message == "No historical encounters found"
    assert records.vitals_stats() == {"total": 2, "successful": 1, "failed": 1}


def test_cleanup_removes_old_checks(records, clock):
    _complete(records)
    clock.advance(days=31)
    assert records.cleanup_note_checks(days_old=30) == 1
    assert records.get_note_check("enc-1") is None
