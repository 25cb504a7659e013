from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read from ``VERDICT_*`` environment variables
    or a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="VERDICT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"
    # Demo accounts and reviewers loaded into the in-memory store at startup
    seed_demo_data: bool = True

    # Credit ledger
    max_single_adjustment_credits: int = Field(default=1000, gt=0)
    min_adjustment_reason_length: int = Field(default=10, ge=1)

    # Data store and payment provider
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    provider_timeout_seconds: float = Field(default=10.0, gt=0)
    provider_max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # Batch jobs
    max_batch_size: int = Field(default=50, gt=0)
    max_reconciliation_hours: int = Field(default=720, gt=0)
    max_reconciliation_charges: int = Field(default=100, gt=0)

    # Routing
    mixed_expert_share: float = Field(default=0.5, ge=0, le=1)
    default_response_time_minutes: int = Field(default=30, gt=0)
    pool_preview_limit: int = Field(default=20, gt=0)

    stripe_api_key: str = ""

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).upper() if v else "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
