from __future__ import annotations

import logging
import threading
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Task, TaskEvent

logger = logging.getLogger("routineboard.notifications")

# ---- Task event types (stable API) -------------------------------------------------

EVENT_CREATED = "created"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_COMPLETED = "completed"

EVENT_TYPES = {
    EVENT_CREATED,
    EVENT_STATUS_CHANGED,
    EVENT_COMPLETED,
}


TaskEventListener = Callable[[TaskEvent], None]

_listeners: list[TaskEventListener] = []
_listeners_lock = threading.Lock()


def add_task_event_listener(listener: TaskEventListener) -> None:
    """Register an in-process consumer (e.g. a realtime push layer)."""
    with _listeners_lock:
        if listener not in _listeners:
            _listeners.append(listener)


def remove_task_event_listener(listener: TaskEventListener) -> None:
    with _listeners_lock:
        try:
            _listeners.remove(listener)
        except ValueError:
            pass


def notify_task_event(
    db: Session,
    *,
    task: Task,
    event_type: str,
    message: str | None = None,
    event_key: str | None = None,
) -> TaskEvent | None:
    """Persist a task lifecycle event and hand it to registered listeners.

    Returns None when `event_key` was already recorded.
    """
    et = str(event_type or "").strip().lower()
    if et not in EVENT_TYPES:
        raise ValueError("Invalid event_type")

    ev = TaskEvent(
        task_id=int(task.id),
        event_type=et,
        event_key=event_key,
        message=message,
    )
    db.add(ev)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("Duplicate task event %s ignored", event_key)
        return None
    db.refresh(ev)

    with _listeners_lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(ev)
        except Exception:
            logger.exception("Task event listener failed for event %s", ev.id)
    return ev


def list_task_events(db: Session, *, task_id: int, limit: int = 100) -> list[TaskEvent]:
    return (
        db.query(TaskEvent)
        .filter(TaskEvent.task_id == int(task_id))
        .order_by(TaskEvent.created_at.desc(), TaskEvent.id.desc())
        .limit(int(limit))
        .all()
    )
