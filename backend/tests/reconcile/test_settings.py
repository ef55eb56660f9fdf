import pytest

from clinic_recon.core.settings import Settings, validate_settings


def test_empty_capacity_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("SLOT_CAPACITY", "")
    monkeypatch.setenv("REDIS_URL", "  ")

    settings = Settings(_env_file=None)

    assert settings.slot_capacity == 1
    assert settings.redis_url is None


def test_development_only_warns(caplog):
    settings = Settings(_env_file=None, app_env="development", NOTIFY_ENABLED=True)

    validate_settings(settings)

    assert "LINE_CHANNEL_ACCESS_TOKEN is missing" in caplog.text


def test_production_rejects_default_password_and_missing_token():
    settings = Settings(_env_file=None, app_env="production", NOTIFY_ENABLED=True)

    with pytest.raises(RuntimeError) as excinfo:
        validate_settings(settings)

    assert "DATABASE_URL" in str(excinfo.value)
    assert "LINE_CHANNEL_ACCESS_TOKEN" in str(excinfo.value)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("APP_ENV", "DATABASE_URL", "LINE_CHANNEL_ACCESS_TOKEN", "NOTIFY_ENABLED"):
        monkeypatch.delenv(name, raising=False)
