from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./punchcard.db"
    database_echo: bool = False

    # Internal API security
    intake_api_key: str = ""

    # POS discount automation
    pos_api_base_url: str = "https://connect.squareup.com/v2"
    pos_api_access_token: str = ""
    pos_api_version: str = "2025-01-16"
    pos_api_timeout_seconds: float = 10.0

    # Redemption detection
    # Share of the expected reward value a spread discount must reach to count as a redemption.
    discount_match_ratio: float = 0.95

    # Order intake
    intake_sources: list[str] = Field(default_factory=lambda: ["webhook", "catchup", "backfill", "audit"])

    @field_validator("intake_sources", mode="before")
    @classmethod
    def _parse_source_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    @field_validator("discount_match_ratio")
    @classmethod
    def _bound_match_ratio(cls, value: float) -> float:
        if value <= 0 or value > 1:
            raise ValueError("discount_match_ratio must be within (0, 1]")
        return value

    # Loyalty job scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"
    reward_sync_reconcile_fix_issues: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
