"""
Collab Onboarding - Configuration and settings.

All tunables for retry policy, timeouts and local persistence live here so
components can be constructed with explicit settings in tests.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class OnboardingSettings(BaseSettings):
    """
    Onboarding settings.

    Supabase credentials are optional so the flow can run fully offline
    (guest mode); the Supabase backend refuses to start without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Supabase
    supabase_url: str | None = None
    supabase_anon_key: str | None = None

    # Guest mode: start a local-only identity when no session exists
    allow_local_identity: bool = True

    # Local durable storage (JSON file)
    storage_path: Path = Path.home() / ".collab_onboarding" / "storage.json"

    # Remote calls
    network_timeout_seconds: float = 10.0

    # Retry policy (database-class errors)
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 10.0

    # Diagnostics retention
    error_log_limit: int = 50
    synced_queue_retention: int = 20
    analytics_event_limit: int = 200

    # Reference data (interests, skills) cache
    reference_cache_hours: int = 24

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)


@lru_cache
def get_settings() -> OnboardingSettings:
    """Get cached settings instance."""
    return OnboardingSettings()


class _SettingsProxy:
    """Lazy proxy for settings to avoid loading .env at import time."""

    _instance: OnboardingSettings | None = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = get_settings()
        return getattr(self._instance, name)


settings = _SettingsProxy()
