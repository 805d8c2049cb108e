"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class SyncConfig(BaseModel):
    """Engine tunables passed explicitly to the reconciler and job runner.

    Built from Settings in production (Settings.sync_config()) or directly in
    tests. Nothing in the sync engine reads environment variables itself.
    """

    model_config = ConfigDict(frozen=True)

    disabled: bool = False

    # Queue retry policy
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = 60.0
    rate_limit_delay: float = 30.0
    conflict_delay: float = 5.0
    backoff_multiplier: float = 2.0
    max_retry_delay: float = 600.0

    # Duplicate-creation race windows (best effort, see DESIGN.md)
    race_recheck_delay: float = 0.1
    conflict_recheck_delay: float = 0.2

    # Company resolution
    company_match_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    company_kinds: dict[str, str] = Field(default_factory=dict)
    default_company_kind: str = "company"
    contact_company_association_type: int = 1

    def company_kind_for(self, contact_kind: str) -> str:
        """Local company kind related to a contact kind (explicit mapping only)."""
        return self.company_kinds.get(contact_kind, self.default_company_kind)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # HubSpot API
    HUBSPOT_DISABLED: bool = False
    HUBSPOT_TOKEN: str = ""
    HUBSPOT_BASE_URL: str = "https://api.hubapi.com"
    HUBSPOT_HTTP_TIMEOUT: float = 30.0
    HUBSPOT_LOG_REQUESTS: bool = False

    # Property schema
    HUBSPOT_PROPERTY_GROUP: str = "app_user_profile"
    HUBSPOT_PROPERTY_GROUP_LABEL: str = "App User Profile"

    # Queue retry policy
    HUBSPOT_QUEUE_RETRY_ATTEMPTS: int = 3
    HUBSPOT_QUEUE_RETRY_DELAY: float = 60.0
    HUBSPOT_RATE_LIMIT_DELAY: float = 30.0
    HUBSPOT_CONFLICT_DELAY: float = 5.0

    # Race handling
    HUBSPOT_RACE_RECHECK_DELAY: float = 0.1
    HUBSPOT_CONFLICT_RECHECK_DELAY: float = 0.2

    # Company matching
    HUBSPOT_COMPANY_MATCH_THRESHOLD: float = 80.0
    HUBSPOT_DEFAULT_COMPANY_KIND: str = "company"

    def sync_config(self, company_kinds: dict[str, str] | None = None) -> SyncConfig:
        """Build the engine configuration struct from these settings.

        Args:
            company_kinds: Mapping of local contact kind to local company kind,
                supplied by the owning application.
        """
        return SyncConfig(
            disabled=self.HUBSPOT_DISABLED,
            retry_attempts=self.HUBSPOT_QUEUE_RETRY_ATTEMPTS,
            retry_delay=self.HUBSPOT_QUEUE_RETRY_DELAY,
            rate_limit_delay=self.HUBSPOT_RATE_LIMIT_DELAY,
            conflict_delay=self.HUBSPOT_CONFLICT_DELAY,
            race_recheck_delay=self.HUBSPOT_RACE_RECHECK_DELAY,
            conflict_recheck_delay=self.HUBSPOT_CONFLICT_RECHECK_DELAY,
            company_match_threshold=self.HUBSPOT_COMPANY_MATCH_THRESHOLD,
            company_kinds=company_kinds or {},
            default_company_kind=self.HUBSPOT_DEFAULT_COMPANY_KIND,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
