"""Application configuration managed via environment variables."""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "StudyPilot Backend"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "postgresql+psycopg2://studypilot@localhost:5432/studypilot"
    opik_enabled: bool = False
    opik_api_key: str | None = None
    opik_project: str = "studypilot"
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    llm_models: List[str] = ["gpt-4o-mini", "gpt-4o"]
    llm_max_tokens: int = 500
    llm_max_retries: int = 3
    llm_retry_delay_ms: int = 1000
    llm_temperature: float = 0.7
    default_hours_per_day: float = 4.0
    default_buffer_percent: float = 20.0
    scheduler_enabled: bool = False
    scheduler_timezone: str = "UTC"
    reflection_job_hour: int = 21
    reflection_job_minute: int = 0
    overdue_sweep_minutes: int = 60
    jobs_run_on_startup: bool = False


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()


settings = get_settings()
