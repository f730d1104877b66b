"""
Environment configuration for the order worker.

All settings come from the process environment (a local `.env` is loaded
first).  Provider credentials are optional at startup: the workflow checks
them per order and reports a config error on the order instead of crashing.
"""

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

DEFAULT_FROM_EMAIL = "LuxLife <notifications@luxlifemvp.com>"
DEFAULT_DASHBOARD_URL = "https://luxlifemvp.com/dashboard"


class Settings(BaseModel):
    environment: str = "development"
    log_level: str = "INFO"

    # ── Document store ───────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # ── Providers ────────────────────────────────────────────────────────
    replicate_api_token: str = ""
    replicate_model_version: str = ""
    did_api_key: str = ""
    google_api_key: str = ""

    # ── Email ────────────────────────────────────────────────────────────
    resend_api_key: str = ""
    resend_from_email: str = DEFAULT_FROM_EMAIL
    dashboard_url: str = DEFAULT_DASHBOARD_URL

    # ── Object storage (Cloudflare R2) ───────────────────────────────────
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "assets"
    r2_public_url: str = ""

    # ── Worker ───────────────────────────────────────────────────────────
    redis_url: Optional[str] = None
    worker_shared_secret: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN", ""),
            replicate_model_version=os.getenv("REPLICATE_MODEL_VERSION", ""),
            did_api_key=os.getenv("DID_API_KEY", ""),
            google_api_key=os.getenv("GOOGLE_API_KEY", ""),
            resend_api_key=os.getenv("RESEND_API_KEY", ""),
            resend_from_email=os.getenv("RESEND_FROM_EMAIL") or DEFAULT_FROM_EMAIL,
            dashboard_url=os.getenv("APP_DASHBOARD_URL") or DEFAULT_DASHBOARD_URL,
            r2_account_id=os.getenv("R2_ACCOUNT_ID", ""),
            r2_access_key_id=os.getenv("R2_ACCESS_KEY_ID", ""),
            r2_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", ""),
            r2_bucket_name=os.getenv("R2_BUCKET_NAME", "assets"),
            r2_public_url=os.getenv("R2_PUBLIC_URL", ""),
            redis_url=os.getenv("REDIS_URL") or None,
            worker_shared_secret=os.getenv("WORKER_SHARED_SECRET", ""),
        )

    def missing_generation_config(self) -> Optional[tuple[str, str]]:
        """
        Return (error_code, message) for the first missing credential group
        the generation stage needs, or None when everything is configured.
        """
        if not self.replicate_api_token or not self.replicate_model_version:
            return (
                "generation_config_missing",
                "Replicate configuration missing. Please set API token and model version.",
            )
        if not self.did_api_key:
            return (
                "generation_animation_config_missing",
                "D-ID API key missing. Configure DID_API_KEY to enable animation.",
            )
        if not self.google_api_key:
            return (
                "generation_voice_config_missing",
                "Text-to-speech key missing. Configure GOOGLE_API_KEY to enable voice-over.",
            )
        if not (
            self.r2_account_id
            and self.r2_access_key_id
            and self.r2_secret_access_key
            and self.r2_bucket_name
            and self.r2_public_url
        ):
            return (
                "generation_storage_config_missing",
                "Object storage configuration missing. Configure the R2_* variables, including R2_PUBLIC_URL.",
            )
        return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def reset_settings():
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
