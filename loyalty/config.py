from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Tier
from .tiers import DEFAULT_TIER_THRESHOLDS, TierPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOYALTY_", env_file=".env", extra="ignore")

    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL; in-memory store when unset")
    store_timeout_seconds: float = Field(default=30.0, gt=0)

    tier_thresholds: dict[Tier, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_THRESHOLDS))
    default_expiry_days: Optional[int] = Field(default=None, gt=0)
    expiry_warning_days: int = Field(default=30, ge=0)

    sweep_enabled: bool = False
    sweep_interval_minutes: int = Field(default=60, gt=0)
    sweep_max_workers: int = Field(default=1, ge=1)

    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("tier_thresholds")
    @classmethod
    def _thresholds_increase(cls, value: dict[Tier, int]) -> dict[Tier, int]:
        TierPolicy(value)
        return value

    def tier_policy(self) -> TierPolicy:
        return TierPolicy(self.tier_thresholds)


@lru_cache
def get_settings() -> Settings:
    return Settings()
