from __future__ import annotations

import os
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("ROUTINEBOARD_SETTINGS", "/data/settings.yml")


# Brazilian national holidays with a fixed calendar date (MM-DD).
DEFAULT_FIXED_HOLIDAYS = [
    "01-01",
    "04-21",
    "05-01",
    "09-07",
    "10-12",
    "11-02",
    "11-15",
    "12-25",
]


class AppSettings(BaseModel):
    name: str = "Routineboard"
    timezone: str = "UTC"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8888


class DatabaseSettings(BaseModel):
    path: str = "/data/routineboard.db"
    # Full SQLAlchemy URL (e.g. postgresql+psycopg://...). Takes precedence over `path`.
    url: str = ""


class RecurrenceSettings(BaseModel):
    # Periodic schedule-mode pass run by the in-process scheduler.
    scheduler_enabled: bool = True
    interval_minutes: int = 15

    # Upper bound for a single batch pass; checked between tasks.
    batch_timeout_seconds: int = 300

    # Days before an occurrence's local start day when it may be created.
    lead_days: int = 1

    fixed_holidays: List[str] = Field(default_factory=lambda: list(DEFAULT_FIXED_HOLIDAYS))
    # Carnival, Good Friday, Easter and Corpus Christi.
    movable_holidays: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    directory: str = "/data/logs"
    retention_days: int = 30


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    recurrence: RecurrenceSettings = Field(default_factory=RecurrenceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _ensure_settings_file(path: str) -> None:
    p = Path(path)
    if p.exists():
        return

    p.parent.mkdir(parents=True, exist_ok=True)

    # Copy sample settings into place to make first-run behavior predictable.
    sample = Path(__file__).resolve().parent.parent / "settings.sample.yml"
    if sample.exists():
        shutil.copy(sample, p)
    else:
        # Minimal fallback
        p.write_text(
            "app:\n  name: 'Routineboard'\n  timezone: 'UTC'\n  host: '0.0.0.0'\n  port: 8888\n"
            "database:\n  path: '/data/routineboard.db'\n"
            "recurrence:\n  scheduler_enabled: true\n  interval_minutes: 15\n  batch_timeout_seconds: 300\n"
            "  lead_days: 1\n"
            "logging:\n  level: 'INFO'\n  directory: '/data/logs'\n  retention_days: 30\n"
        )


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("ROUTINEBOARD_SETTINGS", DEFAULT_SETTINGS_PATH)
    _ensure_settings_file(settings_path)
    raw = _load_yaml(settings_path)
    s = Settings.model_validate(raw)

    # Managed databases are usually configured through the environment.
    db_url = os.environ.get("ROUTINEBOARD_DATABASE_URL")
    if db_url:
        s.database.url = str(db_url).strip()

    # Port override is occasionally useful in container orchestration.
    port_env = os.environ.get("PORT") or os.environ.get("ROUTINEBOARD_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s
