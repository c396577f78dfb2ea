import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cursor_secret: str,
        feed_page_limit: int,
        feed_max_limit: int,
        tag_summary_limit: int,
        reconcile_interval_hours: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cursor_secret = cursor_secret
        self.feed_page_limit = feed_page_limit
        self.feed_max_limit = feed_max_limit
        self.tag_summary_limit = tag_summary_limit
        self.reconcile_interval_hours = reconcile_interval_hours
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CIRCLES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "circles.db"
    database_url = os.getenv("CIRCLES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CIRCLES_TIMEZONE", "Asia/Tokyo")
    cursor_secret = os.getenv(
        "CIRCLES_CURSOR_SECRET",
        "5f0d3c2a9b8e4f61a7c2d9e03b6f18a4c7e2b9d05a1f3c68e4b7d2a9f06c3e81",
    )
    feed_page_limit = int(os.getenv("CIRCLES_FEED_PAGE_LIMIT", "20"))
    feed_max_limit = int(os.getenv("CIRCLES_FEED_MAX_LIMIT", "100"))
    tag_summary_limit = int(os.getenv("CIRCLES_TAG_SUMMARY_LIMIT", "20"))
    reconcile_interval_hours = int(os.getenv("CIRCLES_RECONCILE_INTERVAL_HOURS", "6"))
    scheduler_enabled = _env_flag("CIRCLES_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cursor_secret=cursor_secret,
        feed_page_limit=feed_page_limit,
        feed_max_limit=feed_max_limit,
        tag_summary_limit=tag_summary_limit,
        reconcile_interval_hours=reconcile_interval_hours,
        scheduler_enabled=scheduler_enabled,
    )
