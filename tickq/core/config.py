from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TICKQ_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "tickq"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"
    json_logs: bool = True

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    job_default_priority: int = 50
    job_default_max_attempts: PositiveInt = 3
    job_default_timeout_seconds: PositiveInt = 120
    job_retry_base_seconds: PositiveInt = 30
    job_retry_max_seconds: PositiveInt = 3600
    job_retry_jitter_ratio: float = Field(default=0.25, ge=0.0, le=0.33)

    stale_after_minutes: PositiveInt = 15

    run_default_limit: PositiveInt = 10
    run_max_limit: PositiveInt = 50
    schedule_default_limit: PositiveInt = 20
    schedule_max_limit: PositiveInt = 50

    trigger_token: str | None = None
    validate_handlers_on_startup: bool = True

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = str(value).strip().upper()
        if normalized not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        return normalized

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        if self.database_url is None:
            self.state_root.mkdir(parents=True, exist_ok=True)

        if self.job_retry_max_seconds < self.job_retry_base_seconds:
            raise ValueError("job_retry_max_seconds must be greater than or equal to job_retry_base_seconds")

        # Recovery is the backstop for hung handlers, so it must not fire before the default deadline.
        if self.stale_after_minutes * 60 <= self.job_default_timeout_seconds:
            raise ValueError("stale_after_minutes must exceed job_default_timeout_seconds")

        if self.run_max_limit < self.run_default_limit:
            raise ValueError("run_max_limit must be greater than or equal to run_default_limit")
        if self.schedule_max_limit < self.schedule_default_limit:
            raise ValueError("schedule_max_limit must be greater than or equal to schedule_default_limit")
        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.trigger_token is not None and not self.trigger_token.strip():
            self.trigger_token = None

        return self

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "tickq.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
