from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ─────────────────────────────────────
    APP_NAME: str = "A11y Crawler"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"

    # ── Database ────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./a11y_crawler.db"

    # ── Celery / Redis ──────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_SERIALIZER: str = "json"
    CELERY_RESULT_SERIALIZER: str = "json"
    CELERY_ACCEPT_CONTENT: str = "json"
    CELERY_TASK_TRACK_STARTED: bool = True
    CELERY_TASK_TIME_LIMIT: int = 3600  # 1 hour max per scan

    # Progress events are published here (pub/sub channel per scan)
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── Logging ─────────────────────────────────
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    # ── Browser ─────────────────────────────────
    CHROMEDRIVER_PATH: Optional[str] = None
    BROWSER_HEADLESS: bool = True
    BROWSER_USER_AGENT: str = "A11yCrawler/1.0 (WCAG Accessibility Scanner)"
    AXE_SCRIPT_PATH: str = "axe.min.js"

    # ── Per-page budgets (seconds) ──────────────
    NAVIGATION_TIMEOUT_SECONDS: float = 30.0
    SETTLE_DELAY_SECONDS: float = 1.0
    EVALUATION_TIMEOUT_SECONDS: float = 60.0
    FINGERPRINT_TIMEOUT_SECONDS: float = 10.0
    WAIT_FOR_SELECTOR_TIMEOUT_SECONDS: float = 5.0

    # ── Deduplication / crawl policy ────────────
    DEDUP_THRESHOLD: float = 0.5
    DEDUP_MIN_SHARED_PAGES: int = 2
    MAX_PAGES_PER_PATTERN: int = 3

    class Config:
        env_file = str(Path(__file__).parent.parent.parent / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
