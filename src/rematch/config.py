from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Rematch"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/rematch.db"
    data_dir: Path = Path("./data")

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_parser: str = "gpt-5-mini"
    openai_model_analyzer: str = "gpt-5-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_timeout_sec: int = 60

    local_llm_enabled: bool = False
    local_llm_base_url: str = "http://localhost:11434/v1"
    local_llm_api_key: str = "local"
    local_llm_model: str = "qwen2.5:14b-instruct"
    local_llm_embedding_model: str = "nomic-embed-text"
    local_llm_timeout_sec: int = 90

    embedding_dimensions: int = 768
    embedding_batch_size: int = 100
    cv_parse_max_attempts: int = 3
    cv_parse_retry_wait_sec: float = 1.0

    match_threshold: float = 0.72
    match_count: int = 10
    consolidated_limit: int = 10
    analysis_top_n: int = 5

    workflow_concurrency: int = 2
    indexing_concurrency: int = 1
    queue_max_attempts: int = 3
    queue_backoff_ms: int = 2000
    queue_rate_limit_max: int = 10
    queue_rate_limit_window_sec: float = 60.0
    queue_keep_completed: int = 100
    queue_keep_completed_age_sec: int = 3600 * 24 * 7
    queue_keep_failed: int = 500
    queue_poll_interval_sec: float = 1.0
    queue_stalled_after_sec: float = 600.0
    api_run_workers: bool = False

    cors_origins: str = "http://127.0.0.1:8788"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("match_threshold")
    @classmethod
    def validate_threshold(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("match_threshold must be between 0 and 1")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def llm_available(self) -> bool:
        return bool(self.openai_api_key) or self.local_llm_enabled


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
