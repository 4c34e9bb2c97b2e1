from datetime import timedelta

import pytest

from conftest import START, make_encounter
from notewatch.db.models import NoteCheckStatus
from notewatch.errors import AuthError, Transient
from notewatch.payloads import CHECK_QUEUE, ScanPayload
from notewatch.scan_job import ScanJob, note_skip_reason, stagger_delay
from notewatch.store import CredentialStore
from notewatch.tokens import TokenManager


@pytest.fixture
def scan_job(tokens, gateway, ledger, runtime, clock):
    return ScanJob(
        tokens=tokens,
        gateway=gateway,
        ledger=ledger,
        runtime=runtime,
        min_age=timedelta(hours=2),
        stagger_seconds=2,
        stagger_cap_seconds=120,
        clock=clock,
    )


def test_only_old_enough_notes_are_fanned_out(scan_job, gateway, runtime):
    gateway.incomplete = [
        make_encounter("enc-1", status="PENDING_COSIGN", hours_ago=3),
        make_encounter("enc-2", status="WITH_PROVIDER", hours_ago=1),
        make_encounter("enc-3", status="CHECKED_OUT", hours_ago=5),
    ]

    summary = scan_job.run(ScanPayload())

    assert summary["enqueued"] == 2
    jobs = runtime.list_jobs(CHECK_QUEUE)
    assert sorted(job.id for job in jobs) == ["check:enc-1", "check:enc-3"]
    payload = runtime.get_job("check:enc-1").typed_payload()
    assert payload.patient_id == "p1"
    assert payload.triggered_by == "scan"
    assert payload.force is False


def test_enqueues_are_staggered(scan_job, gateway, runtime):
    gateway.incomplete = [make_encounter(f"enc-{index}") for index in range(3)]

    scan_job.run(ScanPayload())

    delays = [runtime.get_job(f"check:enc-{index}").scheduled_at - START for index in range(3)]
    assert delays == [timedelta(0), timedelta(seconds=2), timedelta(seconds=4)]


def test_stagger_is_capped():
    assert stagger_delay(3, 2, 120) == 6
    assert stagger_delay(500, 2, 120) == 120


def test_other_statuses_are_ignored(scan_job, gateway, runtime):
    gateway.incomplete = [
        make_encounter("enc-1", status="READY_FOR_STAFF", hours_ago=5),
        make_encounter("enc-2", status="SIGNED", hours_ago=5),
    ]
    summary = scan_job.run(ScanPayload())
    assert summary == {"listed": 2, "eligible": 0, "enqueued": 0, "up_to_date": 0, "enqueue_failed": 0}
    assert runtime.list_jobs(CHECK_QUEUE) == []


def test_unparseable_service_date_is_skipped():
    encounter = make_encounter("enc-1")
    encounter.date_of_service = "sometime"
    assert note_skip_reason(encounter, START, timedelta(hours=2)) == "unparseable date of service"


def test_recently_checked_notes_are_not_requeued(scan_job, gateway, runtime, records):
    records.save_note_check("enc-1", status=NoteCheckStatus.COMPLETED, checked_by="test", fingerprint="sha256:x")
    gateway.incomplete = [make_encounter("enc-1"), make_encounter("enc-2")]

    summary = scan_job.run(ScanPayload())

    assert summary["up_to_date"] == 1
    assert [job.id for job in runtime.list_jobs(CHECK_QUEUE)] == ["check:enc-2"]


def test_force_requeues_checked_notes(scan_job, gateway, runtime, records):
    records.save_note_check("enc-1", status=NoteCheckStatus.COMPLETED, checked_by="test", fingerprint="sha256:x")
    gateway.incomplete = [make_encounter("enc-1")]

    scan_job.run(ScanPayload(force=True))

    assert runtime.get_job("check:enc-1").typed_payload().force is True


def test_rescan_does_not_duplicate_pending_checks(scan_job, gateway, runtime):
    gateway.incomplete = [make_encounter("enc-1")]
    scan_job.run(ScanPayload())
    scan_job.run(ScanPayload())
    assert len(runtime.list_jobs(CHECK_QUEUE)) == 1


def test_one_failed_enqueue_does_not_stop_fan_out(scan_job, gateway, runtime, monkeypatch):
    gateway.incomplete = [make_encounter("enc-1"), make_encounter("enc-2"), make_encounter("enc-3")]
    original = runtime.enqueue

    def flaky_enqueue(queue, payload, **kwargs):
        if payload.encounter_id == "enc-2":
            raise RuntimeError("database is locked")
        return original(queue, payload, **kwargs)

    monkeypatch.setattr(runtime, "enqueue", flaky_enqueue)

    summary = scan_job.run(ScanPayload())

    assert summary["enqueued"] == 2
    assert summary["enqueue_failed"] == 1
    assert sorted(job.id for job in runtime.list_jobs(CHECK_QUEUE)) == ["check:enc-1", "check:enc-3"]


def test_listing_failure_fails_whole_scan(scan_job, gateway):
    gateway.errors["iter_incomplete_notes"] = Transient("upstream 502", status_code=502)
    with pytest.raises(Transient):
        scan_job.run(ScanPayload())


def test_missing_identity_fails_scan(engine, auth, gateway, ledger, runtime, clock):
    tokens = TokenManager(CredentialStore(engine, clock=clock), auth, clock=clock)
    job = ScanJob(tokens=tokens, gateway=gateway, ledger=ledger, runtime=runtime, clock=clock)
    with pytest.raises(AuthError):
        job.run(ScanPayload())
    assert gateway.calls["iter_incomplete_notes"] == 0
