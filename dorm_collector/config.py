"""Configuration management for the dormitory balance collector."""

from datetime import time as dt_time
from pathlib import Path
from typing import Dict, List, Sequence
from zoneinfo import ZoneInfo
import os
import re

from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings


# Searched in order (working directory, container, home); the first file found wins
SECRETS_LOCATIONS = (".secrets", "/app/.secrets", "~/.secrets")


def load_secrets_file(locations: Sequence[str] = SECRETS_LOCATIONS) -> Dict[str, str]:
    """Read credentials from the first ``.secrets`` file found.

    The file uses .env syntax and is parsed with python-dotenv. Keys
    declared without a value are dropped.
    """
    for location in locations:
        path = Path(location).expanduser()
        if path.is_file():
            return {k: v for k, v in dotenv_values(path).items() if v is not None}
    return {}


def password_env_key(entity_id: str) -> str:
    """Name of the secret holding a dormitory's portal password.

    Example: "13-513" -> "DORM_PASSWORD_13_513"
    """
    return "DORM_PASSWORD_" + re.sub(r"[^A-Z0-9]", "_", entity_id.upper())


def parse_schedule_times(raw: str) -> List[dt_time]:
    """Parse "06:00,12:00,18:00" into sorted time-of-day values."""
    times = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        hour, _, minute = entry.partition(":")
        try:
            times.append(dt_time(int(hour), int(minute or 0)))
        except ValueError:
            raise ValueError(f"Invalid schedule time: {entry!r}")
    if not times:
        raise ValueError("At least one schedule time is required")
    return sorted(set(times))


class Settings(BaseSettings):
    """Collector settings loaded from environment variables."""

    # Upstream metering portal
    portal_base_url: str = Field(default="https://wpp.nnnu.edu.cn", alias="PORTAL_BASE_URL")
    portal_timeout: float = Field(default=30.0, alias="PORTAL_TIMEOUT")

    # Storage
    data_dir: str = Field(default="data", alias="DATA_DIR")
    retention_max: int = Field(default=100, ge=1, alias="RETENTION_MAX")

    # Monitored dormitories (JSON list; passwords may live in .secrets instead)
    entities_file: str = Field(default="dormitories.json", alias="ENTITIES_FILE")

    # Scheduling - fixed times of day in a fixed timezone
    schedule_times_raw: str = Field(default="06:00,12:00,18:00", alias="SCHEDULE_TIMES")
    tz: str = Field(default="Asia/Shanghai", alias="TZ")
    run_on_startup: bool = Field(default=True, alias="RUN_ON_STARTUP")

    # Delay between dormitories within one run (seconds)
    pacing_seconds: float = Field(default=5.0, ge=0, alias="PACING_SECONDS")

    # Balance under which a room counts as "low" in the summary
    low_balance_threshold: float = Field(default=20.0, alias="LOW_BALANCE_THRESHOLD")

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def schedule_times(self) -> List[dt_time]:
        """Parse schedule string into time-of-day values."""
        return parse_schedule_times(self.schedule_times_raw)

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.tz)

    @property
    def entities_path(self) -> Path:
        return Path(self.entities_file)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)


def create_settings() -> Settings:
    """Create settings instance, loading secrets from .secrets file."""
    secrets = load_secrets_file()

    # For credentials the .secrets file is authoritative
    for key, value in secrets.items():
        if key.startswith("DORM_PASSWORD_") or key.endswith("_PASSWORD"):
            os.environ[key] = value

    return Settings()


def secret_passwords() -> Dict[str, str]:
    """All dormitory password secrets currently visible in the environment."""
    return {k: v for k, v in os.environ.items() if k.startswith("DORM_PASSWORD_")}


# Global settings instance
settings = create_settings()
