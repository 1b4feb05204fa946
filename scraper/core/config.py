"""
Service Configuration

Environment-driven settings for the schedule orchestration service.
Secrets that guard inbound webhooks and the job platform token are required:
a missing value fails at startup instead of silently disabling a check.
"""
import logging
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scraper.integrations.constants import ACTOR_IDS, parse_job_kind, parse_target_type

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    log_level: str = "INFO"
    use_json_logging: bool = False
    service_name: str = "review-scraper"

    # Persistence
    database_url: str = "sqlite:///./scraper.db"

    # Job platform (required)
    job_platform_token: str
    job_platform_webhook_secret: str
    webhook_base_url: str
    job_platform_timeout_secs: int = Field(default=30, gt=0)
    job_platform_max_retries: int = Field(default=2, ge=0, le=5)
    job_run_timeout_secs: int = 3600
    job_run_memory_mbytes: int = 4096
    # A pending callback claim older than this is considered abandoned
    job_webhook_claim_lease_secs: int = Field(default=900, gt=0)

    # Inbound API tokens (required)
    internal_api_token: str
    admin_api_token: str

    # Billing
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Operator alerts
    alert_webhook_url: Optional[str] = None
    alert_throttle_seconds: int = 900

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: Optional[str] = None
    reconcile_interval_minutes: int = 15
    consolidate_threshold: float = Field(default=0.3, gt=0, lt=1)

    # Batch sizing per target type
    max_batch_size_google: int = Field(default=50, gt=0)
    max_batch_size_facebook: int = Field(default=30, gt=0)
    max_batch_size_tripadvisor: int = Field(default=30, gt=0)
    max_batch_size_booking: int = Field(default=30, gt=0)

    # Items requested per recurring run
    max_items_per_run: int = Field(default=100, gt=0)

    # Actor per target type and job kind, e.g. {"google:reviews": "user/actor"}
    actor_id_overrides: Dict[str, str] = Field(default_factory=dict)

    @field_validator(
        "job_platform_token",
        "job_platform_webhook_secret",
        "webhook_base_url",
        "internal_api_token",
        "admin_api_token",
    )
    @classmethod
    def _require_non_empty(cls, value: str, info) -> str:
        if not value or not value.strip():
            raise ValueError(f"{info.field_name.upper()} must be set")
        return value.strip()

    @field_validator("webhook_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("actor_id_overrides")
    @classmethod
    def _normalize_actor_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        normalized = {}
        for key, actor_id in value.items():
            target_type, _, job_kind = key.partition(":")
            normalized[f"{parse_target_type(target_type).value}:{parse_job_kind(job_kind).value}"] = actor_id
        return normalized

    def max_batch_sizes(self) -> Dict[str, int]:
        """Max subscribers per schedule entry keyed by target type value."""
        return {
            "google": self.max_batch_size_google,
            "facebook": self.max_batch_size_facebook,
            "tripadvisor": self.max_batch_size_tripadvisor,
            "booking": self.max_batch_size_booking,
        }

    def actor_id(self, target_type, job_kind) -> str:
        target_type = parse_target_type(target_type)
        job_kind = parse_job_kind(job_kind)
        return self.actor_id_overrides.get(f"{target_type.value}:{job_kind.value}") or ACTOR_IDS[(target_type, job_kind)]

    def get_celery_broker_url(self) -> str:
        return self.celery_broker_url

    def get_celery_result_backend(self) -> str:
        return self.celery_result_backend or self.celery_broker_url

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
