"""Recurrence generation for tasks.

Two triggers feed one pipeline:

- `run_schedule_pass`: periodic batch over schedule-mode tasks, creating the
  next occurrence shortly before it begins, or right away once the current
  one is completed.
- `on_task_completed`: called from the task-update pathway when an
  on-completion task moves to completed.

Both go through `generate_next_occurrence`: existence check, then the
instantiator for the new root, then the tree propagator for its unit
children. The database is the only source of truth; duplicates are prevented
by `instance_exists` (failing closed) and the unique `occurrence_key`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .config import get_settings
from .models import (
    MonthlyAnchor,
    RecurrenceMode,
    RecurrenceRun,
    RunStatus,
    Subtask,
    Task,
    TaskAssignee,
    TaskStatus,
)
from .notifications import EVENT_CREATED, notify_task_event
from .recurrence import (
    Occurrence,
    RecurrenceError,
    completion_anchor,
    creation_threshold,
    next_occurrence,
)
from .utils.business_days import BusinessCalendar, get_business_calendar
from .utils.time_utils import (
    from_local_to_utc_naive,
    iso_utc,
    local_day_bounds_utc,
    now_utc,
    to_local_naive,
)


logger = logging.getLogger("routineboard.engine")

ACTIVE_STATUSES = (TaskStatus.pending, TaskStatus.in_progress)


class RecurrenceGenerationError(RuntimeError):
    """Raised when the next occurrence of a completed task could not be generated."""

    def __init__(self, task_id: int, message: str):
        self.task_id = int(task_id)
        super().__init__(message)


class RecurrenceBatchError(RuntimeError):
    """Raised when a schedule-mode pass cannot load its working set."""


@dataclass(frozen=True)
class PlannedOccurrence:
    start_utc: datetime
    due_utc: datetime
    # None for on-completion tasks, which are not time-triggered.
    threshold_utc: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return self.threshold_utc is not None and now >= self.threshold_utc


@dataclass
class BatchSummary:
    started_at_utc: datetime
    processed: int = 0
    created: int = 0
    failed: int = 0
    timed_out: bool = False
    run_id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "failed": self.failed,
            "timestamp": iso_utc(self.started_at_utc),
        }


# ---------------------- Helpers ----------------------


def lineage_root_id(task: Task) -> int:
    """Stable key shared by every occurrence of a recurring task."""
    if task.parent_task_id is not None:
        return int(task.parent_task_id)
    return int(task.id)


def has_recurrence_dates(task: Task) -> bool:
    return bool(
        task.is_recurring
        and task.recurrence_frequency
        and task.start_date_utc is not None
        and task.due_date_utc is not None
    )


def occurrence_key(lineage_id: int, start_utc: datetime) -> str:
    return f"{int(lineage_id)}:{to_local_naive(start_utc).date().isoformat()}"


def _calendar_for(task: Task) -> Optional[BusinessCalendar]:
    if task.skip_weekends_holidays:
        return get_business_calendar()
    return None


def lineage_anchor_start(db: Session, task: Task) -> Optional[datetime]:
    """Start of the lineage root, used to correct weekday/day-of-month drift."""
    if task.parent_task_id is None:
        return task.start_date_utc
    root = db.get(Task, int(task.parent_task_id))
    if root is not None and root.start_date_utc is not None:
        return root.start_date_utc
    return task.start_date_utc


def plan_next_occurrence(task: Task, *, anchor_start_utc: Optional[datetime] = None) -> PlannedOccurrence:
    """Next occurrence of a schedule-mode task, computed from its own dates."""
    start_local = to_local_naive(task.start_date_utc)
    due_local = to_local_naive(task.due_date_utc)
    anchor_local = to_local_naive(anchor_start_utc) if anchor_start_utc is not None else None

    occ = next_occurrence(
        start_local,
        due_local,
        task.recurrence_frequency,
        anchor_start=anchor_local,
        monthly_anchor=task.monthly_anchor or MonthlyAnchor.date,
        calendar=_calendar_for(task),
    )
    threshold_local = creation_threshold(occ.start, lead_days=get_settings().recurrence.lead_days)
    return PlannedOccurrence(
        start_utc=from_local_to_utc_naive(occ.start),
        due_utc=from_local_to_utc_naive(occ.due),
        threshold_utc=from_local_to_utc_naive(threshold_local),
    )


def plan_completion_occurrence(task: Task, *, now: datetime) -> Occurrence:
    """Next occurrence of an on-completion task, counted from today."""
    anchor = completion_anchor(
        to_local_naive(now),
        to_local_naive(task.start_date_utc),
        to_local_naive(task.due_date_utc),
    )
    occ = next_occurrence(anchor.start, anchor.due, task.recurrence_frequency, calendar=_calendar_for(task))
    return Occurrence(start=from_local_to_utc_naive(occ.start), due=from_local_to_utc_naive(occ.due))


def preview_next_occurrence(db: Session, task: Task, *, now: datetime) -> PlannedOccurrence:
    if not has_recurrence_dates(task):
        raise RecurrenceError("Task is not recurring or is missing its start/due dates")
    if task.recurrence_mode == RecurrenceMode.on_completion:
        occ = plan_completion_occurrence(task, now=now)
        return PlannedOccurrence(start_utc=occ.start, due_utc=occ.due)
    return plan_next_occurrence(task, anchor_start_utc=lineage_anchor_start(db, task))


# ---------------------- Existence check ----------------------


def instance_exists(db: Session, *, lineage_id: int, candidate_start_utc: datetime) -> bool:
    """True if the lineage already has an occurrence on the candidate's local day.

    Lookup errors are reported as "exists": skipping one occurrence is
    preferred over creating duplicates.
    """
    day_start, day_end = local_day_bounds_utc(candidate_start_utc)
    try:
        row = (
            db.query(Task.id)
            .filter(Task.parent_task_id == int(lineage_id))
            .filter(Task.is_recurring.is_(True))
            .filter(Task.start_date_utc >= day_start)
            .filter(Task.start_date_utc < day_end)
            .first()
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Existence check failed for lineage %s on %s; treating as existing",
            lineage_id,
            to_local_naive(candidate_start_utc).date().isoformat(),
        )
        return True
    return row is not None


# ---------------------- Instantiation ----------------------


def copy_task_assignees(db: Session, *, source_task_id: int, target_task_id: int) -> int:
    rows = (
        db.query(TaskAssignee.user_id)
        .filter(TaskAssignee.task_id == int(source_task_id))
        .order_by(TaskAssignee.user_id.asc())
        .all()
    )
    for (user_id,) in rows:
        db.add(TaskAssignee(task_id=int(target_task_id), user_id=user_id))
    if rows:
        db.commit()
    return len(rows)


def copy_subtasks(db: Session, *, source_task_id: int, target_task_id: int) -> int:
    rows = (
        db.query(Subtask)
        .filter(Subtask.task_id == int(source_task_id))
        .order_by(Subtask.order_index.asc(), Subtask.id.asc())
        .all()
    )
    for s in rows:
        db.add(
            Subtask(
                task_id=int(target_task_id),
                title=s.title,
                assigned_to=s.assigned_to,
                order_index=int(s.order_index or 0),
                is_completed=False,
                completed_at_utc=None,
            )
        )
    if rows:
        db.commit()
    return len(rows)


def instantiate_task(
    db: Session,
    *,
    template: Task,
    next_start_utc: datetime,
    next_due_utc: datetime,
    parent_task_id: Optional[int] = None,
) -> Optional[Task]:
    """Create one new task row from `template`.

    The new row links to the template's lineage root unless `parent_task_id`
    is given (unit children link to their new root). Assignees and subtasks
    are copied afterwards on a best-effort basis.

    Returns None when another writer already created the same occurrence.
    """
    source_id = int(template.id)
    new_parent_id = int(parent_task_id) if parent_task_id is not None else lineage_root_id(template)
    is_occurrence = bool(template.is_recurring)
    key = occurrence_key(new_parent_id, next_start_utc) if is_occurrence else None

    task = Task(
        title=template.title,
        description=template.description,
        unit_id=template.unit_id,
        sector_id=template.sector_id,
        assigned_to=template.assigned_to,
        created_by=template.created_by,
        start_date_utc=next_start_utc,
        due_date_utc=next_due_utc,
        priority=int(template.priority or 1),
        status=TaskStatus.pending,
        is_recurring=is_occurrence,
        recurrence_frequency=template.recurrence_frequency,
        recurrence_mode=template.recurrence_mode,
        skip_weekends_holidays=bool(template.skip_weekends_holidays),
        monthly_anchor=template.monthly_anchor or MonthlyAnchor.date,
        parent_task_id=new_parent_id,
        occurrence_key=key,
    )
    db.add(task)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Occurrence %s already exists; not creating another from task %s", key, source_id)
        return None

    new_id = int(task.id)

    try:
        copy_task_assignees(db, source_task_id=source_id, target_task_id=new_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to copy assignees from task %s to %s", source_id, new_id)

    try:
        copy_subtasks(db, source_task_id=source_id, target_task_id=new_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to copy subtasks from task %s to %s", source_id, new_id)

    db.refresh(task)
    logger.info(
        "Created task %s from %s (parent %s, start %s)",
        new_id,
        source_id,
        new_parent_id,
        next_start_utc.isoformat(),
    )

    try:
        notify_task_event(db, task=task, event_type=EVENT_CREATED, message=f"Generated from task {source_id}")
    except Exception:
        logger.exception("Failed to emit task-created event for task %s", new_id)
    return task


def list_unit_children(db: Session, *, parent_task_id: int) -> list[Task]:
    """Per-unit children of a root. Chained occurrences share the parent
    reference but are recurring, so they are excluded."""
    return (
        db.query(Task)
        .filter(Task.parent_task_id == int(parent_task_id))
        .filter(Task.is_recurring.is_(False))
        .order_by(Task.id.asc())
        .all()
    )


def propagate_tree(
    db: Session,
    *,
    new_root: Task,
    original_root_id: int,
    next_start_utc: datetime,
    next_due_utc: datetime,
) -> list[Task]:
    """Recreate the unit children of `original_root_id` under `new_root`.

    Each child is instantiated from its current row, so a reassignment made
    since the root was created carries forward.
    """
    new_root_id = int(new_root.id)
    children = list_unit_children(db, parent_task_id=int(original_root_id))
    child_ids = [int(ch.id) for ch in children]

    created: list[Task] = []
    for child_id, child in zip(child_ids, children):
        try:
            new_child = instantiate_task(
                db,
                template=child,
                next_start_utc=next_start_utc,
                next_due_utc=next_due_utc,
                parent_task_id=new_root_id,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to propagate child task %s under new root %s", child_id, new_root_id)
            continue
        if new_child is not None:
            created.append(new_child)
    return created


def generate_next_occurrence(
    db: Session,
    *,
    task: Task,
    start_utc: datetime,
    due_utc: datetime,
) -> Optional[Task]:
    template_id = int(task.id)
    lineage_id = lineage_root_id(task)

    if instance_exists(db, lineage_id=lineage_id, candidate_start_utc=start_utc):
        logger.debug(
            "Lineage %s already has an occurrence on %s",
            lineage_id,
            to_local_naive(start_utc).date().isoformat(),
        )
        return None

    new_root = instantiate_task(db, template=task, next_start_utc=start_utc, next_due_utc=due_utc)
    if new_root is None:
        return None

    children = propagate_tree(
        db,
        new_root=new_root,
        original_root_id=template_id,
        next_start_utc=start_utc,
        next_due_utc=due_utc,
    )
    if children:
        logger.info("Propagated %s unit task(s) under %s", len(children), new_root.id)
    return new_root


# ---------------------- Schedule mode ----------------------


def list_schedule_candidates(db: Session) -> list[Task]:
    """Active schedule-mode tasks, plus completed ones that are still the
    latest occurrence of their lineage."""
    later = aliased(Task)
    has_later = (
        select(later.id)
        .where(later.parent_task_id == func.coalesce(Task.parent_task_id, Task.id))
        .where(later.is_recurring.is_(True))
        .where(later.start_date_utc > Task.start_date_utc)
        .correlate(Task)
        .exists()
    )
    return (
        db.query(Task)
        .filter(Task.is_recurring.is_(True))
        .filter(Task.recurrence_mode == RecurrenceMode.schedule)
        .filter(
            or_(
                Task.status.in_(ACTIVE_STATUSES),
                and_(Task.status == TaskStatus.completed, ~has_later),
            )
        )
        .filter(Task.start_date_utc.is_not(None))
        .filter(Task.due_date_utc.is_not(None))
        .order_by(Task.id.asc())
        .all()
    )


def process_scheduled_task(db: Session, task: Task, *, now: datetime) -> Optional[Task]:
    if not has_recurrence_dates(task):
        return None

    planned = plan_next_occurrence(task, anchor_start_utc=lineage_anchor_start(db, task))
    # A completed occurrence hands over to the next one right away.
    if task.status != TaskStatus.completed and not planned.is_due(now):
        return None
    return generate_next_occurrence(db, task=task, start_utc=planned.start_utc, due_utc=planned.due_utc)


def _start_run(db: Session, *, trigger: str, started_at: datetime) -> Optional[int]:
    run = RecurrenceRun(trigger=str(trigger)[:32], status=RunStatus.running, started_at_utc=started_at)
    db.add(run)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record start of recurrence run")
        return None
    return int(run.id)


def _finish_run(
    db: Session,
    *,
    run_id: Optional[int],
    summary: BatchSummary,
    status: RunStatus,
    error: Optional[str] = None,
) -> None:
    if run_id is None:
        return
    try:
        run = db.get(RecurrenceRun, run_id)
        if run is None:
            return
        run.status = status
        run.finished_at_utc = now_utc()
        run.processed = summary.processed
        run.created = summary.created
        run.failed = summary.failed
        run.error = error
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record end of recurrence run %s", run_id)


def run_schedule_pass(
    db: Session,
    *,
    now: datetime,
    timeout_seconds: Optional[float] = None,
    trigger: str = "api",
) -> BatchSummary:
    """Create due occurrences for every schedule-mode candidate.

    A failing task is logged and skipped. Failing to load the working set
    is fatal for the pass and raises `RecurrenceBatchError`. The timeout
    is checked between tasks only.
    """
    summary = BatchSummary(started_at_utc=now)
    summary.run_id = _start_run(db, trigger=trigger, started_at=now)

    try:
        tasks = list_schedule_candidates(db)
        task_ids = [int(t.id) for t in tasks]
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Recurrence pass aborted: could not load recurring tasks")
        _finish_run(db, run_id=summary.run_id, summary=summary, status=RunStatus.failed, error=str(e))
        raise RecurrenceBatchError(str(e)) from e

    deadline = time.monotonic() + float(timeout_seconds) if timeout_seconds is not None else None

    for task_id, task in zip(task_ids, tasks):
        if deadline is not None and time.monotonic() >= deadline:
            summary.timed_out = True
            logger.warning(
                "Recurrence pass timed out after %s of %s task(s)",
                summary.processed,
                len(task_ids),
            )
            break

        summary.processed += 1
        try:
            if process_scheduled_task(db, task, now=now) is not None:
                summary.created += 1
        except Exception:
            db.rollback()
            summary.failed += 1
            logger.exception("Recurrence pass: failed to process task %s", task_id)

    status = RunStatus.timed_out if summary.timed_out else RunStatus.succeeded
    _finish_run(db, run_id=summary.run_id, summary=summary, status=status)

    logger.info(
        "Recurrence pass finished: processed=%s created=%s failed=%s",
        summary.processed,
        summary.created,
        summary.failed,
    )
    return summary


def list_recent_runs(db: Session, *, limit: int = 20) -> list[RecurrenceRun]:
    return (
        db.query(RecurrenceRun)
        .order_by(RecurrenceRun.started_at_utc.desc(), RecurrenceRun.id.desc())
        .limit(int(limit))
        .all()
    )


# ---------------------- On-completion mode ----------------------


def on_task_completed(
    db: Session,
    *,
    task: Task,
    previous_status: TaskStatus | str | None,
    now: datetime,
) -> Optional[Task]:
    """Generate the next occurrence after an on-completion task is completed.

    Only a real transition into completed fires; re-saving an already
    completed task does nothing.
    """
    previous = TaskStatus(previous_status) if previous_status is not None else None
    if previous == TaskStatus.completed or task.status != TaskStatus.completed:
        return None
    if not task.is_recurring or task.recurrence_mode != RecurrenceMode.on_completion:
        return None
    if not has_recurrence_dates(task):
        logger.debug("Task %s is recurring but missing frequency or dates; skipping", task.id)
        return None

    task_id = int(task.id)
    try:
        occ = plan_completion_occurrence(task, now=now)
        return generate_next_occurrence(db, task=task, start_utc=occ.start, due_utc=occ.due)
    except (SQLAlchemyError, RecurrenceError) as e:
        db.rollback()
        logger.exception("Failed to generate next occurrence for completed task %s", task_id)
        raise RecurrenceGenerationError(task_id, str(e)) from e
