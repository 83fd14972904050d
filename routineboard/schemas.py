from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import MonthlyAnchor, RecurrenceFrequency, RecurrenceMode, RunStatus, TaskStatus


class SubtaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    assigned_to: Optional[str] = Field(default=None, max_length=64)
    order_index: Optional[int] = Field(default=None, ge=0)


class SubtaskUpdate(BaseModel):
    is_completed: bool


class SubtaskOut(BaseModel):
    id: int
    task_id: int
    title: str
    assigned_to: Optional[str]
    order_index: int
    is_completed: bool
    completed_at_utc: Optional[datetime]

    class Config:
        from_attributes = True


class UnitAssignment(BaseModel):
    unit_id: str = Field(..., min_length=1, max_length=64)
    assigned_to: Optional[str] = Field(default=None, max_length=64)
    assignee_ids: List[str] = Field(default_factory=list)


class TaskAssigneeOut(BaseModel):
    user_id: str

    class Config:
        from_attributes = True


class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None

    start_date: Optional[datetime] = Field(default=None)
    due_date: Optional[datetime] = Field(default=None)
    priority: int = Field(default=1, ge=1, le=10)

    unit_id: Optional[str] = Field(default=None, max_length=64)
    sector_id: Optional[str] = Field(default=None, max_length=64)
    assigned_to: Optional[str] = Field(default=None, max_length=64)
    created_by: Optional[str] = Field(default=None, max_length=64)

    is_recurring: bool = False
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_mode: Optional[RecurrenceMode] = Field(
        default=None,
        description="schedule (time-driven) or on_completion. Defaults to schedule for recurring tasks.",
    )
    skip_weekends_holidays: bool = False
    monthly_anchor: MonthlyAnchor = Field(
        default=MonthlyAnchor.date,
        description="Monthly recurrence keeps the same day of month (date) or the same Nth weekday (weekday).",
    )


class TaskCreate(TaskBase):
    assignee_ids: List[str] = Field(default_factory=list)
    subtasks: List[SubtaskCreate] = Field(default_factory=list)
    units: List[UnitAssignment] = Field(
        default_factory=list,
        description="One child task is created per unit, each with its own assignment.",
    )


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    status: Optional[TaskStatus] = None

    unit_id: Optional[str] = Field(default=None, max_length=64)
    sector_id: Optional[str] = Field(default=None, max_length=64)
    assigned_to: Optional[str] = Field(default=None, max_length=64)

    is_recurring: Optional[bool] = None
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_mode: Optional[RecurrenceMode] = None
    skip_weekends_holidays: Optional[bool] = None
    monthly_anchor: Optional[MonthlyAnchor] = None


class AssigneesUpdate(BaseModel):
    user_ids: List[str] = Field(default_factory=list)


class TaskOut(BaseModel):
    id: int
    title: str
    description: Optional[str]
    start_date_utc: Optional[datetime]
    due_date_utc: Optional[datetime]
    status: TaskStatus
    priority: int

    unit_id: Optional[str]
    sector_id: Optional[str]
    assigned_to: Optional[str]
    created_by: Optional[str]
    parent_task_id: Optional[int]

    is_recurring: bool
    recurrence_frequency: Optional[RecurrenceFrequency]
    recurrence_mode: Optional[RecurrenceMode]
    skip_weekends_holidays: bool
    monthly_anchor: MonthlyAnchor

    completed_at_utc: Optional[datetime]

    assignees: List[TaskAssigneeOut] = []
    subtasks: List[SubtaskOut] = []

    class Config:
        from_attributes = True


class TaskUpdateResponse(BaseModel):
    task: TaskOut
    spawned_task: Optional[TaskOut] = None
    recurrence_error: Optional[str] = None


class TaskEventOut(BaseModel):
    id: int
    task_id: int
    event_type: str
    event_key: Optional[str]
    message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# ---- Recurrence ---------------------------------------------------------------------


class RecurrencePassSummary(BaseModel):
    processed: int
    created: int
    failed: int = 0
    timestamp: str


class RecurrenceRunOut(BaseModel):
    id: int
    trigger: str
    status: RunStatus
    started_at_utc: datetime
    finished_at_utc: Optional[datetime]
    processed: int
    created: int
    failed: int
    error: Optional[str]

    class Config:
        from_attributes = True


class NextOccurrenceOut(BaseModel):
    task_id: int
    start_date_utc: datetime
    due_date_utc: datetime
    creation_threshold_utc: Optional[datetime] = Field(
        default=None,
        description="When the periodic pass will create it. Null for on_completion tasks.",
    )
