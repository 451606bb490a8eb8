from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"debug", "info", "warning", "error"}
SUPPORTED_LOG_FORMATS = {"text", "json"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PGFORK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "pgfork"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    log_level: str = "INFO"
    log_format: str = "text"

    state_dir: Path = Field(default=Path("/tmp/pgfork"))
    state_database_url: str | None = None

    max_connections: PositiveInt = 4
    chunk_size: PositiveInt = 1000
    timeout_seconds: PositiveFloat = 1800.0

    retry_attempts: PositiveInt = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0

    progress_interval_seconds: PositiveFloat = 2.0
    metrics_file: Path | None = None
    job_retention_hours: PositiveInt = 168

    source_uri: str | None = None
    source_host: str | None = None
    source_port: int | None = None
    source_user: str | None = None
    source_password: str | None = None
    source_database: str | None = None
    source_sslmode: str | None = None

    dest_uri: str | None = None
    dest_host: str | None = None
    dest_port: int | None = None
    dest_user: str | None = None
    dest_password: str | None = None
    dest_sslmode: str | None = None

    target_database: str | None = None

    @field_validator("state_dir", mode="before")
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

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_dir = self.state_dir.resolve(strict=False)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        normalized_level = self.log_level.lower().strip()
        if normalized_level == "warn":
            normalized_level = "warning"
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level.upper()

        normalized_format = self.log_format.lower().strip()
        if normalized_format not in SUPPORTED_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {sorted(SUPPORTED_LOG_FORMATS)}")
        self.log_format = normalized_format

        if self.retry_initial_delay_seconds < 0:
            raise ValueError("retry_initial_delay_seconds must be >= 0")
        if self.retry_max_delay_seconds < self.retry_initial_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be greater than or equal to retry_initial_delay_seconds")

        return self

    @property
    def effective_state_database_url(self) -> str:
        if self.state_database_url:
            return self.state_database_url
        db_path = self.state_dir / "pgfork.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
