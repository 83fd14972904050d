from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..crud import (
    add_subtask,
    complete_task,
    create_task,
    get_subtask,
    get_task,
    list_child_tasks,
    list_lineage_tasks,
    set_subtask_completed,
    set_task_assignees,
    update_task,
)
from ..db import get_db
from ..notifications import list_task_events
from ..schemas import (
    AssigneesUpdate,
    SubtaskCreate,
    SubtaskOut,
    SubtaskUpdate,
    TaskCreate,
    TaskEventOut,
    TaskOut,
    TaskUpdate,
    TaskUpdateResponse,
)
from ..utils.time_utils import now_utc


router = APIRouter()


def _get_task_or_404(db: Session, task_id: int):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("/", response_model=TaskOut)
def api_create_task(payload: TaskCreate, db: Session = Depends(get_db)):
    try:
        task = create_task(
            db,
            title=payload.title,
            created_by=payload.created_by,
            description=payload.description,
            start_date=payload.start_date,
            due_date=payload.due_date,
            priority=payload.priority,
            unit_id=payload.unit_id,
            sector_id=payload.sector_id,
            assigned_to=payload.assigned_to,
            is_recurring=payload.is_recurring,
            recurrence_frequency=payload.recurrence_frequency,
            recurrence_mode=payload.recurrence_mode,
            skip_weekends_holidays=payload.skip_weekends_holidays,
            monthly_anchor=payload.monthly_anchor,
            assignee_ids=payload.assignee_ids,
            subtasks=[s.model_dump() for s in payload.subtasks],
            units=[u.model_dump() for u in payload.units],
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return task


@router.get("/{task_id}", response_model=TaskOut)
def api_get_task(task_id: int, db: Session = Depends(get_db)):
    return _get_task_or_404(db, task_id)


@router.get("/{task_id}/children", response_model=list[TaskOut])
def api_list_children(task_id: int, db: Session = Depends(get_db)):
    _get_task_or_404(db, task_id)
    return list_child_tasks(db, task_id=task_id)


@router.get("/{task_id}/occurrences", response_model=list[TaskOut])
def api_list_occurrences(task_id: int, db: Session = Depends(get_db)):
    task = _get_task_or_404(db, task_id)
    return list_lineage_tasks(db, task=task)


@router.get("/{task_id}/events", response_model=list[TaskEventOut])
def api_list_events(
    task_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    _get_task_or_404(db, task_id)
    return list_task_events(db, task_id=task_id, limit=limit)


@router.put("/{task_id}", response_model=TaskUpdateResponse)
def api_update_task(task_id: int, payload: TaskUpdate, db: Session = Depends(get_db)):
    task = _get_task_or_404(db, task_id)

    try:
        result = update_task(
            db,
            task=task,
            now=now_utc(),
            title=payload.title,
            description=payload.description,
            start_date=payload.start_date,
            due_date=payload.due_date,
            priority=payload.priority,
            status=payload.status,
            unit_id=payload.unit_id,
            sector_id=payload.sector_id,
            assigned_to=payload.assigned_to,
            is_recurring=payload.is_recurring,
            recurrence_frequency=payload.recurrence_frequency,
            recurrence_mode=payload.recurrence_mode,
            skip_weekends_holidays=payload.skip_weekends_holidays,
            monthly_anchor=payload.monthly_anchor,
        )
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    return TaskUpdateResponse(
        task=result.task,
        spawned_task=result.spawned_task,
        recurrence_error=result.recurrence_error,
    )


@router.post("/{task_id}/complete", response_model=TaskUpdateResponse)
def api_complete_task(task_id: int, db: Session = Depends(get_db)):
    task = _get_task_or_404(db, task_id)
    result = complete_task(db, task=task, now=now_utc())
    return TaskUpdateResponse(
        task=result.task,
        spawned_task=result.spawned_task,
        recurrence_error=result.recurrence_error,
    )


@router.put("/{task_id}/assignees", response_model=TaskOut)
def api_set_assignees(task_id: int, payload: AssigneesUpdate, db: Session = Depends(get_db)):
    task = _get_task_or_404(db, task_id)
    return set_task_assignees(db, task=task, user_ids=payload.user_ids)


@router.post("/{task_id}/subtasks", response_model=SubtaskOut)
def api_add_subtask(task_id: int, payload: SubtaskCreate, db: Session = Depends(get_db)):
    task = _get_task_or_404(db, task_id)
    try:
        return add_subtask(
            db,
            task=task,
            title=payload.title,
            assigned_to=payload.assigned_to,
            order_index=payload.order_index,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{task_id}/subtasks/{subtask_id}", response_model=SubtaskOut)
def api_update_subtask(task_id: int, subtask_id: int, payload: SubtaskUpdate, db: Session = Depends(get_db)):
    st = get_subtask(db, task_id=task_id, subtask_id=subtask_id)
    if not st:
        raise HTTPException(status_code=404, detail="Subtask not found")
    return set_subtask_completed(db, subtask=st, completed=payload.is_completed, when_utc=now_utc())
