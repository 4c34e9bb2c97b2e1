import json
from datetime import datetime, timedelta, timezone

import pytest

from notewatch import cli, config
from notewatch.db.models import NoteCheckStatus
from notewatch.db.session import create_engine_from_settings, init_schema
from notewatch.store import RecordStore

NOW = datetime.now(timezone.utc)


@pytest.fixture(autouse=True)
def _isolated_database(monkeypatch, tmp_path):
    monkeypatch.setenv("NOTEWATCH_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.delenv("NOTEWATCH_EMR_USERNAME", raising=False)
    monkeypatch.delenv("NOTEWATCH_EMR_PASSWORD", raising=False)
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


def _last_json(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_scan_now_queues_scan(capsys):
    assert cli.main(["scan-now", "--force"]) == 0
    assert _last_json(capsys) == {"job_id": "scan:manual", "state": "waiting"}


def test_check_queues_encounter(capsys):
    assert cli.main(["check", "enc-42"]) == 0
    assert _last_json(capsys)["job_id"] == "check:enc-42"


def test_stats_reports_queues_and_vitals(capsys):
    cli.main(["check", "enc-42"])
    capsys.readouterr()

    assert cli.main(["stats"]) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["note-check"]["waiting"] == 1
    assert stats["vitals"] == {"total": 0, "successful": 0, "failed": 0}


def test_inline_check_without_identity_fails(capsys):
    assert cli.main(["check", "enc-42", "--run"]) == 1


def test_cleanup_checks_removes_old_records(capsys):
    engine = create_engine_from_settings(config.get_settings())
    init_schema(engine)
    for encounter_id, checked_at in (("old", NOW - timedelta(days=45)), ("recent", NOW)):
        records = RecordStore(engine, clock=lambda checked_at=checked_at: checked_at)
        records.save_note_check(encounter_id, status=NoteCheckStatus.COMPLETED, checked_by="notewatch")
    engine.dispose()

    assert cli.main(["cleanup-checks", "--days", "30"]) == 0

    assert _last_json(capsys) == {"deleted": 1}


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.main([])
