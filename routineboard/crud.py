from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .engine import RecurrenceGenerationError, list_unit_children, on_task_completed
from .models import (
    MonthlyAnchor,
    RecurrenceFrequency,
    RecurrenceMode,
    Subtask,
    Task,
    TaskAssignee,
    TaskStatus,
)
from .notifications import EVENT_COMPLETED, EVENT_CREATED, EVENT_STATUS_CHANGED, notify_task_event
from .utils.time_utils import normalize_datetime_to_utc_naive


logger = logging.getLogger("routineboard.crud")

# Statuses that count as "done" when rolling children up into their parent.
DONE_STATUSES = (TaskStatus.completed, TaskStatus.not_applicable)

E = TypeVar("E", bound=enum.Enum)


def _coerce_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValueError(f"Invalid {field}: {value}") from e


def _normalize_dt(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return normalize_datetime_to_utc_naive(dt)


def _unique_ids(values: Iterable[str] | None) -> list[str]:
    out: list[str] = []
    for v in values or []:
        s = str(v or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def _validate_dates(start: datetime | None, due: datetime | None) -> None:
    if start is not None and due is not None and due < start:
        raise ValueError("due_date must not be before start_date")


# ---------------------- Tasks ----------------------


@dataclass
class TaskUpdateResult:
    task: Task
    spawned_task: Optional[Task] = None
    recurrence_error: Optional[str] = None


def create_task(
    db: Session,
    *,
    title: str,
    created_by: str | None = None,
    description: str | None = None,
    start_date: datetime | None = None,
    due_date: datetime | None = None,
    priority: int = 1,
    unit_id: str | None = None,
    sector_id: str | None = None,
    assigned_to: str | None = None,
    is_recurring: bool = False,
    recurrence_frequency: str | None = None,
    recurrence_mode: str | None = None,
    skip_weekends_holidays: bool = False,
    monthly_anchor: str = MonthlyAnchor.date.value,
    assignee_ids: Iterable[str] | None = None,
    subtasks: Iterable[Mapping[str, Any]] | None = None,
    units: Iterable[Mapping[str, Any]] | None = None,
    send_notifications: bool = True,
) -> Task:
    """Create a standalone task or a root with one child per unit.

    `units` items carry `unit_id`, `assigned_to` and `assignee_ids`. Each
    becomes a non-recurring child of the new root with the same dates.
    """
    title = str(title or "").strip()
    if not title:
        raise ValueError("title is required")

    start_utc = _normalize_dt(start_date)
    due_utc = _normalize_dt(due_date)
    _validate_dates(start_utc, due_utc)

    frequency = None
    mode = None
    if is_recurring:
        if not recurrence_frequency:
            raise ValueError("recurrence_frequency is required for recurring tasks")
        frequency = _coerce_enum(RecurrenceFrequency, recurrence_frequency, "recurrence_frequency")
        mode = _coerce_enum(RecurrenceMode, recurrence_mode or RecurrenceMode.schedule.value, "recurrence_mode")
    anchor = _coerce_enum(MonthlyAnchor, monthly_anchor or MonthlyAnchor.date.value, "monthly_anchor")

    task = Task(
        title=title[:255],
        description=description,
        start_date_utc=start_utc,
        due_date_utc=due_utc,
        priority=max(1, int(priority or 1)),
        status=TaskStatus.pending,
        unit_id=unit_id,
        sector_id=sector_id,
        assigned_to=assigned_to,
        created_by=created_by,
        parent_task_id=None,
        is_recurring=bool(is_recurring),
        recurrence_frequency=frequency,
        recurrence_mode=mode,
        skip_weekends_holidays=bool(skip_weekends_holidays),
        monthly_anchor=anchor,
    )
    task.assignees = [TaskAssignee(user_id=uid) for uid in _unique_ids(assignee_ids)]
    task.subtasks = [
        Subtask(
            title=str(s.get("title") or "").strip()[:255],
            assigned_to=s.get("assigned_to"),
            order_index=int(s["order_index"]) if s.get("order_index") is not None else idx,
        )
        for idx, s in enumerate(subtasks or [])
    ]

    db.add(task)
    db.flush()  # assign id

    for u in units or []:
        child = Task(
            title=task.title,
            description=description,
            start_date_utc=start_utc,
            due_date_utc=due_utc,
            priority=task.priority,
            status=TaskStatus.pending,
            unit_id=u.get("unit_id"),
            sector_id=sector_id,
            assigned_to=u.get("assigned_to"),
            created_by=created_by,
            parent_task_id=int(task.id),
            is_recurring=False,
        )
        child.assignees = [TaskAssignee(user_id=uid) for uid in _unique_ids(u.get("assignee_ids"))]
        db.add(child)

    db.commit()
    db.refresh(task)

    if send_notifications:
        # Events are best-effort; failures should not block task creation.
        try:
            notify_task_event(db, task=task, event_type=EVENT_CREATED)
        except Exception:
            logger.exception("Failed to emit task-created event")
    return task


def get_task(db: Session, *, task_id: int) -> Optional[Task]:
    return (
        db.query(Task)
        .options(selectinload(Task.assignees), selectinload(Task.subtasks))
        .filter(Task.id == int(task_id))
        .first()
    )


def list_child_tasks(db: Session, *, task_id: int) -> list[Task]:
    return list_unit_children(db, parent_task_id=int(task_id))


def list_lineage_tasks(db: Session, *, task: Task) -> list[Task]:
    """The lineage root followed by every generated occurrence, oldest first."""
    root_id = int(task.parent_task_id) if task.parent_task_id is not None else int(task.id)
    root = get_task(db, task_id=root_id)
    occurrences = (
        db.query(Task)
        .options(selectinload(Task.assignees), selectinload(Task.subtasks))
        .filter(Task.parent_task_id == root_id)
        .filter(Task.is_recurring.is_(True))
        .order_by(Task.start_date_utc.asc(), Task.id.asc())
        .all()
    )
    return ([root] if root is not None else []) + occurrences


def set_task_assignees(db: Session, *, task: Task, user_ids: Iterable[str]) -> Task:
    wanted = _unique_ids(user_ids)
    current = {a.user_id: a for a in (task.assignees or [])}
    task.assignees = [current.get(uid) or TaskAssignee(user_id=uid) for uid in wanted]
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def add_subtask(
    db: Session,
    *,
    task: Task,
    title: str,
    assigned_to: str | None = None,
    order_index: int | None = None,
) -> Subtask:
    title = str(title or "").strip()
    if not title:
        raise ValueError("title is required")
    if order_index is None:
        order_index = max((int(s.order_index) for s in (task.subtasks or [])), default=-1) + 1

    st = Subtask(task_id=int(task.id), title=title[:255], assigned_to=assigned_to, order_index=int(order_index))
    db.add(st)
    db.commit()
    db.refresh(st)
    return st


def get_subtask(db: Session, *, task_id: int, subtask_id: int) -> Optional[Subtask]:
    return (
        db.query(Subtask)
        .filter(Subtask.id == int(subtask_id))
        .filter(Subtask.task_id == int(task_id))
        .first()
    )


def set_subtask_completed(db: Session, *, subtask: Subtask, completed: bool, when_utc: datetime) -> Subtask:
    subtask.is_completed = bool(completed)
    subtask.completed_at_utc = when_utc if completed else None
    db.add(subtask)
    db.commit()
    db.refresh(subtask)
    return subtask


def _emit_status_event(db: Session, *, task: Task, previous: TaskStatus) -> None:
    event_type = EVENT_COMPLETED if task.status == TaskStatus.completed else EVENT_STATUS_CHANGED
    try:
        notify_task_event(
            db,
            task=task,
            event_type=event_type,
            message=f"{previous.value} -> {TaskStatus(task.status).value}",
        )
    except Exception:
        logger.exception("Failed to emit status event for task %s", task.id)


def _apply_status(task: Task, new_status: TaskStatus, *, now: datetime) -> None:
    task.status = new_status
    if new_status == TaskStatus.completed:
        task.completed_at_utc = now
    else:
        task.completed_at_utc = None


def refresh_parent_status(
    db: Session,
    *,
    parent_task_id: int,
    now: datetime,
) -> tuple[Optional[Task], Optional[Task]]:
    """Recompute a root's status from its unit children.

    All children done -> completed, some -> in_progress, none -> pending.
    Completing a recurring on-completion root generates its next occurrence,
    whose spawned root is returned as the second element.
    """
    children = list_unit_children(db, parent_task_id=int(parent_task_id))
    if not children:
        return None, None

    total = len(children)
    done = sum(1 for ch in children if ch.status in DONE_STATUSES)
    if done == total:
        new_status = TaskStatus.completed
    elif done > 0:
        new_status = TaskStatus.in_progress
    else:
        new_status = TaskStatus.pending

    parent = get_task(db, task_id=int(parent_task_id))
    if parent is None or parent.status == TaskStatus.cancelled:
        return parent, None

    previous = TaskStatus(parent.status)
    if previous == new_status:
        return parent, None

    _apply_status(parent, new_status, now=now)
    db.add(parent)
    db.commit()
    db.refresh(parent)
    logger.info("Parent task %s rolled up from %s to %s", parent.id, previous.value, new_status.value)
    _emit_status_event(db, task=parent, previous=previous)

    spawned = on_task_completed(db, task=parent, previous_status=previous, now=now)
    return parent, spawned


def update_task(
    db: Session,
    *,
    task: Task,
    now: datetime,
    title: Optional[str] = None,
    description: Optional[str] = None,
    start_date: Optional[datetime] = None,
    due_date: Optional[datetime] = None,
    priority: Optional[int] = None,
    status: Optional[str] = None,
    unit_id: Optional[str] = None,
    sector_id: Optional[str] = None,
    assigned_to: Optional[str] = None,
    is_recurring: Optional[bool] = None,
    recurrence_frequency: Optional[str] = None,
    recurrence_mode: Optional[str] = None,
    skip_weekends_holidays: Optional[bool] = None,
    monthly_anchor: Optional[str] = None,
) -> TaskUpdateResult:
    """Apply field changes and run status-transition side effects.

    The update is committed before recurrence runs; a recurrence failure is
    reported in the result and never undoes the update.
    """
    previous_status = TaskStatus(task.status)

    if title is not None:
        title = title.strip()
        if not title:
            raise ValueError("title must not be blank")
        task.title = title[:255]
    if description is not None:
        task.description = description
    if start_date is not None:
        task.start_date_utc = _normalize_dt(start_date)
    if due_date is not None:
        task.due_date_utc = _normalize_dt(due_date)
    _validate_dates(task.start_date_utc, task.due_date_utc)
    if priority is not None:
        task.priority = max(1, int(priority))
    if unit_id is not None:
        task.unit_id = unit_id or None
    if sector_id is not None:
        task.sector_id = sector_id or None
    if assigned_to is not None:
        task.assigned_to = assigned_to or None

    if is_recurring is not None:
        task.is_recurring = bool(is_recurring)
    if recurrence_frequency is not None:
        task.recurrence_frequency = _coerce_enum(RecurrenceFrequency, recurrence_frequency, "recurrence_frequency")
    if recurrence_mode is not None:
        task.recurrence_mode = _coerce_enum(RecurrenceMode, recurrence_mode, "recurrence_mode")
    if skip_weekends_holidays is not None:
        task.skip_weekends_holidays = bool(skip_weekends_holidays)
    if monthly_anchor is not None:
        task.monthly_anchor = _coerce_enum(MonthlyAnchor, monthly_anchor, "monthly_anchor")
    if task.is_recurring and not task.recurrence_frequency:
        raise ValueError("recurrence_frequency is required for recurring tasks")
    if task.is_recurring and not task.recurrence_mode:
        task.recurrence_mode = RecurrenceMode.schedule

    new_status = _coerce_enum(TaskStatus, status, "status") if status is not None else previous_status
    status_changed = new_status != previous_status
    if status_changed:
        _apply_status(task, new_status, now=now)

    db.add(task)
    db.commit()
    db.refresh(task)

    result = TaskUpdateResult(task=task)
    if not status_changed:
        return result

    _emit_status_event(db, task=task, previous=previous_status)

    if new_status == TaskStatus.completed:
        try:
            result.spawned_task = on_task_completed(db, task=task, previous_status=previous_status, now=now)
        except RecurrenceGenerationError as e:
            result.recurrence_error = str(e)

    # Unit children roll up into their root.
    if task.parent_task_id is not None and not task.is_recurring:
        try:
            _, parent_spawned = refresh_parent_status(db, parent_task_id=int(task.parent_task_id), now=now)
            if parent_spawned is not None and result.spawned_task is None:
                result.spawned_task = parent_spawned
        except RecurrenceGenerationError as e:
            result.recurrence_error = str(e)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to roll up status into parent task %s", task.parent_task_id)

    db.refresh(task)
    return result


def complete_task(db: Session, *, task: Task, now: datetime) -> TaskUpdateResult:
    return update_task(db, task=task, now=now, status=TaskStatus.completed.value)
