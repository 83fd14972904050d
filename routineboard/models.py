from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    overdue = "overdue"
    cancelled = "cancelled"
    not_applicable = "not_applicable"


class RecurrenceFrequency(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"


class RecurrenceMode(str, enum.Enum):
    schedule = "schedule"  # driven by elapsed calendar time
    on_completion = "on_completion"  # driven by marking the occurrence complete


class MonthlyAnchor(str, enum.Enum):
    date = "date"  # same day of month (e.g. the 15th)
    weekday = "weekday"  # same Nth weekday (e.g. 2nd Friday)


class RunStatus(str, enum.Enum):
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    timed_out = "timed_out"


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (UniqueConstraint("occurrence_key", name="uq_tasks_occurrence_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_date_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    due_date_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus), default=TaskStatus.pending, nullable=False, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Opaque identifiers owned by the profile/unit/sector administration.
    unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    sector_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Null: root or standalone. Otherwise the root of a unit child, or the
    # lineage root of a later occurrence.
    parent_task_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    recurrence_frequency: Mapped[RecurrenceFrequency | None] = mapped_column(
        Enum(RecurrenceFrequency), nullable=True
    )
    recurrence_mode: Mapped[RecurrenceMode | None] = mapped_column(Enum(RecurrenceMode), nullable=True)
    skip_weekends_holidays: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    monthly_anchor: Mapped[MonthlyAnchor] = mapped_column(
        Enum(MonthlyAnchor), default=MonthlyAnchor.date, nullable=False
    )

    # "<lineage id>:<local start date>" for engine-generated occurrences.
    # Multiple NULLs are allowed.
    occurrence_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    completed_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    assignees: Mapped[list["TaskAssignee"]] = relationship(
        "TaskAssignee",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    subtasks: Mapped[list["Subtask"]] = relationship(
        "Subtask",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Subtask.order_index",
    )

    def assignee_ids(self) -> list[str]:
        return sorted(a.user_id for a in (self.assignees or []))


class TaskAssignee(Base):
    __tablename__ = "task_assignees"

    task_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    task: Mapped[Task] = relationship("Task", back_populates="assignees")


class Subtask(Base):
    """Ordered checklist item of a task."""

    __tablename__ = "subtasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    task: Mapped[Task] = relationship("Task", back_populates="subtasks")


class RecurrenceRun(Base):
    """One schedule-mode batch pass.

    Failed rows are the signal for an operator (or the next scheduled
    invocation) to retry.
    """

    __tablename__ = "recurrence_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), default=RunStatus.running, nullable=False, index=True)

    started_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    finished_at_utc: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class TaskEvent(Base):
    """A task lifecycle event (created, completed, status change).

    Consumers (realtime refresh, notifications) read these instead of
    re-querying everything on every change.
    """

    __tablename__ = "task_events"
    __table_args__ = (UniqueConstraint("event_key", name="uq_task_events_event_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # Optional de-duplication key. Multiple NULLs are allowed.
    event_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False, index=True)
