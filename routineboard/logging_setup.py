from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional, TextIO

from .utils.time_utils import now_utc, to_local_naive


LOG_PREFIX = "routineboard"

# Named loggers used across the package; their level follows the settings.
APP_LOGGERS = (
    "routineboard",
    "routineboard.engine",
    "routineboard.crud",
    "routineboard.notifications",
)

_FRAMEWORK_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler")

_LOGFILE_RE = re.compile(rf"^{re.escape(LOG_PREFIX)}-(\d{{4}}-\d{{2}}-\d{{2}})\.log$")


def _parse_level(level: str | None) -> int:
    name = str(level or "INFO").strip().upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def _local_day() -> date:
    return to_local_naive(now_utc()).date()


class DailyDateFileHandler(logging.Handler):
    """Append records to <log_dir>/routineboard-YYYY-MM-DD.log.

    Days follow the app timezone.
    """

    def __init__(self, log_dir: Path | str, *, level: int = logging.INFO):
        super().__init__(level=level)
        self.log_dir = Path(log_dir)
        self._io_lock = threading.RLock()
        self._day: Optional[date] = None
        self._stream: Optional[TextIO] = None

    def path_for(self, day: date) -> Path:
        return self.log_dir / f"{LOG_PREFIX}-{day.isoformat()}.log"

    def _roll(self, day: date) -> None:
        if self._stream is not None:
            try:
                self._stream.close()
            except OSError:
                pass
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._stream = open(self.path_for(day), "a", encoding="utf-8", buffering=1)
        self._day = day

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            with self._io_lock:
                day = _local_day()
                if self._stream is None or day != self._day:
                    self._roll(day)
                self._stream.write(line + "\n")
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        with self._io_lock:
            if self._stream is not None:
                try:
                    self._stream.close()
                except OSError:
                    pass
                self._stream = None
        super().close()


_file_handler: Optional[DailyDateFileHandler] = None


def apply_log_level(level: str) -> None:
    lvl = _parse_level(level)
    logging.getLogger().setLevel(lvl)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(lvl)
    if _file_handler is not None:
        _file_handler.setLevel(lvl)


def setup_logging(*, level: str = "INFO", log_dir: Path | str = "/data/logs") -> None:
    """Send records to stderr and to a per-day file under `log_dir`.

    Calling it again only updates levels; handlers are attached once.
    """
    global _file_handler

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if _file_handler is None:
        _file_handler = DailyDateFileHandler(log_dir)
        _file_handler.setFormatter(formatter)
        root.addHandler(_file_handler)

    for name in _FRAMEWORK_LOGGERS:
        logging.getLogger(name).propagate = True

    apply_log_level(level)


def log_file_date(path: Path) -> Optional[date]:
    m = _LOGFILE_RE.match(path.name)
    if not m:
        return None
    try:
        return date.fromisoformat(m.group(1))
    except ValueError:
        return None


def list_log_files(*, log_dir: Path | str) -> list[Path]:
    """Log files in `log_dir`, newest day first."""
    d = Path(log_dir)
    if not d.is_dir():
        return []
    dated = [(log_file_date(p), p) for p in d.iterdir() if p.is_file()]
    return [p for _, p in sorted((x for x in dated if x[0] is not None), reverse=True)]


def purge_old_logs(*, retention_days: int, log_dir: Path | str, now: datetime | None = None) -> int:
    """Delete files whose day stamp is more than `retention_days` days old.

    A retention of 0 keeps everything.
    """
    days = int(retention_days or 0)
    if days <= 0:
        return 0

    today = (now or to_local_naive(now_utc())).date()
    cutoff = today - timedelta(days=days)

    deleted = 0
    for path in list_log_files(log_dir=log_dir):
        if log_file_date(path) < cutoff:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logging.getLogger("routineboard").warning("Could not delete old log file %s", path)
                continue
            deleted += 1
    return deleted
