"""Configuration management using pydantic-settings."""
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Cache freshness
    default_ttl_seconds: float = 300.0
    ttl_high_priority_seconds: float = 60.0
    ttl_medium_priority_seconds: float = 300.0
    ttl_low_priority_seconds: float = 900.0

    # Background refresh
    refresh_interval_seconds: float = 300.0

    # Upper bound on a single fetch; None waits forever
    fetch_timeout_seconds: Optional[float] = 30.0

    # Key prefixes re-fetched when the app comes back to the foreground
    high_priority_prefixes: List[str] = [
        "admin_getDashboardStats",
        "teacher_getUpcomingSessions",
        "student_getUpcomingSessions",
    ]

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
