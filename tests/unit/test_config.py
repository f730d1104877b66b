import pytest

from luxlife_worker.config import (
    DEFAULT_DASHBOARD_URL,
    DEFAULT_FROM_EMAIL,
    Settings,
    get_settings,
    reset_settings,
)

pytestmark = pytest.mark.unit


def test_from_env_defaults(monkeypatch):
    for name in ("RESEND_FROM_EMAIL", "APP_DASHBOARD_URL", "REDIS_URL", "R2_BUCKET_NAME"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.resend_from_email == DEFAULT_FROM_EMAIL
    assert settings.dashboard_url == DEFAULT_DASHBOARD_URL
    assert settings.redis_url is None
    assert settings.r2_bucket_name == "assets"


def test_get_settings_is_cached_until_reset(monkeypatch):
    monkeypatch.setenv("APP_DASHBOARD_URL", "https://one.test")
    reset_settings()
    first = get_settings()
    monkeypatch.setenv("APP_DASHBOARD_URL", "https://two.test")
    assert get_settings() is first

    reset_settings()
    assert get_settings().dashboard_url == "https://two.test"
    reset_settings()


@pytest.mark.parametrize(
    "blank, code",
    [
        ("replicate_api_token", "generation_config_missing"),
        ("replicate_model_version", "generation_config_missing"),
        ("did_api_key", "generation_animation_config_missing"),
        ("google_api_key", "generation_voice_config_missing"),
        ("r2_secret_access_key", "generation_storage_config_missing"),
        ("r2_bucket_name", "generation_storage_config_missing"),
        ("r2_public_url", "generation_storage_config_missing"),
    ],
)
def test_missing_generation_config(settings, blank, code):
    assert settings.missing_generation_config() is None
    setattr(settings, blank, "")
    assert settings.missing_generation_config()[0] == code
