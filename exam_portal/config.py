"""Runtime configuration loaded from the environment and an optional .env file."""

from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # REST backend that owns exams, questions and results
    api_url: str = "http://localhost:5000/api"

    # Local store for per-user cached results and completion markers
    database_url: str = "sqlite:///./exam_portal.db"

    # Session cookie signing key
    secret_key: str = "CHANGE_ME_TO_A_RANDOM_SECRET"

    request_timeout_seconds: float = 12.0
    get_cache_ttl_seconds: float = 60.0
    timer_tick_seconds: float = 1.0

    # Browser sessions unused this long lose their stored values
    session_idle_seconds: float = 24 * 60 * 60
    # Finished attempts kept for their result page before being dropped
    finished_attempt_ttl_seconds: float = 10 * 60

    host: str = "127.0.0.1"
    port: int = 8000

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
