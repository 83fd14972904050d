import os
import tempfile
from pathlib import Path

import pytest


# Settings are read when routineboard.db is first imported, so point them at a
# throwaway location before any test module imports the package.
_TMP = Path(tempfile.mkdtemp(prefix="routineboard-tests-"))

SETTINGS_TEMPLATE = """
app:
  name: "Routineboard"
  timezone: "{timezone}"
database:
  path: "{db}"
recurrence:
  scheduler_enabled: false
  interval_minutes: 15
  batch_timeout_seconds: 300
  lead_days: 1
  fixed_holidays: ["01-01", "04-21", "05-01", "09-07", "10-12", "11-02", "11-15", "12-25"]
  movable_holidays: true
logging:
  level: "INFO"
  directory: "{logs}"
  retention_days: 30
"""


def write_settings(path: Path, *, timezone: str = "UTC", db_path: Path | None = None) -> Path:
    path.write_text(
        SETTINGS_TEMPLATE.format(
            timezone=timezone,
            db=str(db_path or (_TMP / "routineboard.db")),
            logs=str(_TMP / "logs"),
        ).lstrip()
    )
    return path


os.environ["ROUTINEBOARD_SETTINGS"] = str(write_settings(_TMP / "settings.yml"))
os.environ.pop("ROUTINEBOARD_DATABASE_URL", None)


@pytest.fixture
def settings_tmp(tmp_path, monkeypatch):
    """Return a callable that swaps in per-test settings (e.g. another timezone)."""
    from routineboard.config import get_settings

    def _apply(timezone: str = "UTC"):
        path = write_settings(tmp_path / "settings.yml", timezone=timezone, db_path=tmp_path / "app.db")
        monkeypatch.setenv("ROUTINEBOARD_SETTINGS", str(path))
        get_settings.cache_clear()
        return get_settings()

    yield _apply
    get_settings.cache_clear()
