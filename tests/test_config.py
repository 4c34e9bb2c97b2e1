import pytest

from notewatch import config


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch, tmp_path):
    for name in (
        "DATABASE_URL",
        "NOTEWATCH_DATABASE_URL",
        "NOTEWATCH_FINGERPRINT_ALGORITHM",
        "NOTEWATCH_CHECK_CONCURRENCY",
        "NOTEWATCH_EMR_USERNAME",
        "NOTEWATCH_EMR_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NOTEWATCH_DATA_DIR", str(tmp_path))
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


def test_defaults_use_sqlite_in_data_dir(tmp_path):
    settings = config.get_settings()
    assert settings.is_sqlite
    assert settings.database_url == f"sqlite:///{tmp_path / 'notewatch.db'}"
    assert settings.check_concurrency == 3
    assert settings.staleness_hours == 6
    assert settings.token_ttl_seconds == 600
    assert not settings.has_service_credentials


def test_postgres_urls_use_psycopg_driver(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db/notewatch")
    settings = config.get_settings()
    assert settings.database_url == "postgresql+psycopg://user:pw@db/notewatch"
    assert not settings.is_sqlite


def test_integer_overrides_are_validated(monkeypatch):
    monkeypatch.setenv("NOTEWATCH_CHECK_CONCURRENCY", "five")
    with pytest.raises(ValueError, match="NOTEWATCH_CHECK_CONCURRENCY"):
        config.get_settings()


def test_unknown_fingerprint_algorithm_is_rejected(monkeypatch):
    monkeypatch.setenv("NOTEWATCH_FINGERPRINT_ALGORITHM", "md5")
    with pytest.raises(ValueError, match="md5"):
        config.get_settings()


def test_service_credentials_detected(monkeypatch):
    monkeypatch.setenv("NOTEWATCH_EMR_USERNAME", "svc")
    monkeypatch.setenv("NOTEWATCH_EMR_PASSWORD", "pw")
    assert config.get_settings().has_service_credentials
