from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./groomhub.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Internal API security
    admin_api_key: str = ""

    # Loyalty program defaults (overridden by the persisted loyalty_settings row)
    loyalty_program_enabled: bool = True
    loyalty_punch_threshold: int = 9
    loyalty_first_visit_bonus: int = 0
    loyalty_minimum_spend: float = 0.0
    loyalty_qualifying_service_ids: list[str] = Field(default_factory=list)
    loyalty_eligible_service_ids: list[str] = Field(default_factory=list)
    loyalty_reward_expiration_days: int = 0
    loyalty_reward_max_value: float | None = None

    # Referral program
    referral_program_enabled: bool = True
    referral_referrer_bonus_punches: int = 1
    referral_referee_bonus_punches: int = 1
    referral_code_max_uses: int | None = None

    @field_validator("loyalty_qualifying_service_ids", "loyalty_eligible_service_ids", mode="before")
    @classmethod
    def _parse_service_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Reward expiration sweep
    loyalty_expiration_worker_enabled: bool = False
    loyalty_expiration_interval_seconds: int = 6 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
