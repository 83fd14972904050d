from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import get_settings
from ..crud import get_task
from ..db import get_db
from ..engine import RecurrenceBatchError, list_recent_runs, preview_next_occurrence, run_schedule_pass
from ..recurrence import RecurrenceError
from ..schemas import NextOccurrenceOut, RecurrencePassSummary, RecurrenceRunOut
from ..utils.time_utils import now_utc


router = APIRouter()


@router.post("/run", response_model=RecurrencePassSummary)
def api_run_recurrence(db: Session = Depends(get_db)):
    """Run one schedule-mode pass (for external cron-style triggers)."""
    timeout = get_settings().recurrence.batch_timeout_seconds
    try:
        summary = run_schedule_pass(
            db,
            now=now_utc(),
            timeout_seconds=timeout if timeout > 0 else None,
            trigger="api",
        )
    except RecurrenceBatchError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})
    return summary.as_dict()


@router.get("/runs", response_model=list[RecurrenceRunOut])
def api_list_runs(limit: int = Query(default=20, ge=1, le=500), db: Session = Depends(get_db)):
    return list_recent_runs(db, limit=limit)


@router.get("/tasks/{task_id}/next", response_model=NextOccurrenceOut)
def api_preview_next(task_id: int, db: Session = Depends(get_db)):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        planned = preview_next_occurrence(db, task, now=now_utc())
    except RecurrenceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return NextOccurrenceOut(
        task_id=int(task.id),
        start_date_utc=planned.start_utc,
        due_date_utc=planned.due_utc,
        creation_threshold_utc=planned.threshold_utc,
    )
