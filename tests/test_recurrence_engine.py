import logging
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from routineboard import engine as recurrence_engine
from routineboard.crud import complete_task, create_task, list_child_tasks, update_task
from routineboard.db import Base
from routineboard.engine import (
    RecurrenceBatchError,
    generate_next_occurrence,
    instance_exists,
    instantiate_task,
    list_recent_runs,
    list_unit_children,
    occurrence_key,
    run_schedule_pass,
)
from routineboard.models import RecurrenceRun, RunStatus, Task, TaskStatus
from routineboard.notifications import add_task_event_listener, remove_task_event_listener


def make_engine(db_path: str):
    engine = create_engine(
        f"sqlite+pysqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def make_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return Session()


@pytest.fixture
def db(tmp_path):
    engine = make_engine(str(tmp_path / "engine.db"))
    Base.metadata.create_all(bind=engine)
    session = make_session(engine)
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_weekly(db, **kwargs):
    params = dict(
        title="Weekly check",
        start_date=utc(2026, 2, 26, 8, 0),
        due_date=utc(2026, 2, 26, 9, 0),
        is_recurring=True,
        recurrence_frequency="weekly",
        recurrence_mode="schedule",
    )
    params.update(kwargs)
    return create_task(db, **params)


def occurrences_of(db, root_id):
    return (
        db.query(Task)
        .filter(Task.parent_task_id == root_id)
        .filter(Task.is_recurring.is_(True))
        .order_by(Task.start_date_utc.asc())
        .all()
    )


# ---------------------- Schedule mode ----------------------


def test_weekly_task_creates_next_occurrence_day_before(db):
    root = make_weekly(db)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.processed == 1
    assert summary.created == 1
    assert summary.failed == 0
    assert summary.as_dict()["timestamp"] == "2026-03-04T10:00:00Z"

    occ = occurrences_of(db, root.id)
    assert len(occ) == 1
    assert occ[0].start_date_utc == datetime(2026, 3, 5, 8, 0)
    assert occ[0].due_date_utc == datetime(2026, 3, 5, 9, 0)
    assert occ[0].status == TaskStatus.pending
    assert occ[0].occurrence_key == occurrence_key(root.id, datetime(2026, 3, 5, 8, 0))


def test_schedule_pass_is_idempotent(db):
    root = make_weekly(db)

    first = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))
    second = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 15))

    assert first.created == 1
    assert second.created == 0
    assert second.processed == 2
    assert len(occurrences_of(db, root.id)) == 1


def test_nothing_created_before_threshold(db):
    root = make_weekly(db)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 3, 23, 59))

    assert summary.processed == 1
    assert summary.created == 0
    assert occurrences_of(db, root.id) == []


def test_occurrences_chain_to_lineage_root(db):
    root = make_weekly(db)

    run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))
    run_schedule_pass(db, now=datetime(2026, 3, 11, 10, 0))

    occ = occurrences_of(db, root.id)
    assert [o.start_date_utc for o in occ] == [datetime(2026, 3, 5, 8, 0), datetime(2026, 3, 12, 8, 0)]
    assert all(o.parent_task_id == root.id for o in occ)


def test_schedule_pass_ignores_other_tasks(db):
    make_weekly(db, recurrence_mode="on_completion")
    cancelled = make_weekly(db, title="Cancelled")
    update_task(db, task=cancelled, now=datetime(2026, 2, 26, 9, 0), status="cancelled")
    create_task(db, title="One-off", start_date=utc(2026, 2, 26, 8, 0), due_date=utc(2026, 2, 26, 9, 0))

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.processed == 0
    assert summary.created == 0


def test_skip_weekends_holidays_moves_occurrence(db):
    # Thursday before Good Friday 2026.
    root = create_task(
        db,
        title="Daily",
        start_date=utc(2026, 4, 2, 9, 0),
        due_date=utc(2026, 4, 2, 10, 0),
        is_recurring=True,
        recurrence_frequency="daily",
        skip_weekends_holidays=True,
    )

    run_schedule_pass(db, now=datetime(2026, 4, 5, 12, 0))

    occ = occurrences_of(db, root.id)
    assert len(occ) == 1
    assert occ[0].start_date_utc == datetime(2026, 4, 6, 9, 0)


def test_assignees_and_subtasks_are_copied(db):
    root = make_weekly(
        db,
        assignee_ids=["ana", "bruno"],
        subtasks=[{"title": "Check fridge"}, {"title": "Log temperature", "assigned_to": "ana"}],
    )
    root.subtasks[0].is_completed = True
    db.commit()

    run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    occ = occurrences_of(db, root.id)[0]
    assert occ.assignee_ids() == ["ana", "bruno"]
    assert [s.title for s in occ.subtasks] == ["Check fridge", "Log temperature"]
    assert [s.order_index for s in occ.subtasks] == [0, 1]
    assert not any(s.is_completed for s in occ.subtasks)
    assert occ.subtasks[1].assigned_to == "ana"


def test_tree_propagation_carries_reassignment(db):
    root = make_weekly(
        db,
        units=[
            {"unit_id": "unit-a", "assigned_to": "X"},
            {"unit_id": "unit-b", "assigned_to": "Y", "assignee_ids": ["Y"]},
        ],
    )
    children = list_child_tasks(db, task_id=root.id)
    assert [c.unit_id for c in children] == ["unit-a", "unit-b"]

    # Unit B is handed over to Z before the next occurrence is generated.
    update_task(db, task=children[1], now=datetime(2026, 3, 1, 12, 0), assigned_to="Z")

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))
    assert summary.created == 1

    new_root = occurrences_of(db, root.id)[0]
    new_children = list_unit_children(db, parent_task_id=new_root.id)
    assert [(c.unit_id, c.assigned_to) for c in new_children] == [("unit-a", "X"), ("unit-b", "Z")]
    assert all(c.start_date_utc == datetime(2026, 3, 5, 8, 0) for c in new_children)
    assert all(c.due_date_utc == datetime(2026, 3, 5, 9, 0) for c in new_children)
    assert all(c.status == TaskStatus.pending for c in new_children)
    assert new_children[1].assignee_ids() == ["Y"]

    # The original tree is untouched.
    assert [c.assigned_to for c in list_unit_children(db, parent_task_id=root.id)] == ["X", "Z"]


def test_unit_children_do_not_count_as_existing_occurrence(db):
    root = make_weekly(db, units=[{"unit_id": "unit-a"}])
    assert not instance_exists(db, lineage_id=root.id, candidate_start_utc=datetime(2026, 2, 26, 8, 0))


def test_existence_check_fails_closed(db, monkeypatch):
    root = make_weekly(db)

    def broken_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "query", broken_query)
    assert instance_exists(db, lineage_id=root.id, candidate_start_utc=datetime(2026, 3, 5, 8, 0)) is True


def test_existence_check_uses_local_day(db, settings_tmp):
    settings_tmp(timezone="America/Sao_Paulo")
    root = make_weekly(db)
    # 23:30 local on Mar 4 is 02:30 UTC on Mar 5.
    instantiate_task(
        db,
        template=root,
        next_start_utc=datetime(2026, 3, 5, 2, 30),
        next_due_utc=datetime(2026, 3, 5, 3, 30),
    )

    assert instance_exists(db, lineage_id=root.id, candidate_start_utc=datetime(2026, 3, 4, 11, 0))
    assert not instance_exists(db, lineage_id=root.id, candidate_start_utc=datetime(2026, 3, 5, 11, 0))


def test_skip_logs_report_local_day(db, settings_tmp, caplog, monkeypatch):
    settings_tmp(timezone="America/Sao_Paulo")
    root = make_weekly(db)
    # 23:30 local on Mar 4.
    instantiate_task(
        db,
        template=root,
        next_start_utc=datetime(2026, 3, 5, 2, 30),
        next_due_utc=datetime(2026, 3, 5, 3, 30),
    )

    caplog.clear()
    with caplog.at_level(logging.DEBUG, logger="routineboard.engine"):
        created = generate_next_occurrence(
            db,
            task=root,
            start_utc=datetime(2026, 3, 5, 2, 45),
            due_utc=datetime(2026, 3, 5, 3, 45),
        )

        def broken_query(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "query", broken_query)
        instance_exists(db, lineage_id=root.id, candidate_start_utc=datetime(2026, 3, 5, 2, 45))

    assert created is None
    messages = [r.getMessage() for r in caplog.records if r.name == "routineboard.engine"]
    assert any("already has an occurrence on 2026-03-04" in m for m in messages)
    assert any("treating as existing" in m and "2026-03-04" in m for m in messages)
    assert not any("2026-03-05" in m for m in messages)


def test_duplicate_occurrence_key_returns_none(db):
    root = make_weekly(db)
    start, due = datetime(2026, 3, 5, 8, 0), datetime(2026, 3, 5, 9, 0)

    first = instantiate_task(db, template=root, next_start_utc=start, next_due_utc=due)
    second = instantiate_task(db, template=root, next_start_utc=start, next_due_utc=due)

    assert first is not None
    assert second is None
    assert len(occurrences_of(db, root.id)) == 1


def test_assignee_copy_failure_keeps_new_task(db, monkeypatch):
    root = make_weekly(db, assignee_ids=["ana"], subtasks=[{"title": "Step"}])

    def boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(recurrence_engine, "copy_task_assignees", boom)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.created == 1
    occ = occurrences_of(db, root.id)[0]
    assert occ.assignee_ids() == []
    assert [s.title for s in occ.subtasks] == ["Step"]


def test_subtask_copy_failure_keeps_new_task(db, monkeypatch):
    root = make_weekly(db, assignee_ids=["ana"], subtasks=[{"title": "Step"}])

    def boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(recurrence_engine, "copy_subtasks", boom)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.created == 1
    assert summary.failed == 0
    occ = occurrences_of(db, root.id)[0]
    assert occ.assignee_ids() == ["ana"]
    assert occ.subtasks == []


def test_failed_child_does_not_stop_propagation(db, monkeypatch):
    root = make_weekly(
        db,
        units=[{"unit_id": "unit-a", "assigned_to": "X"}, {"unit_id": "unit-b", "assigned_to": "Y"}],
    )
    original = recurrence_engine.instantiate_task

    def flaky(session, *, template, next_start_utc, next_due_utc, parent_task_id=None):
        if parent_task_id is not None and template.unit_id == "unit-a":
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return original(
            session,
            template=template,
            next_start_utc=next_start_utc,
            next_due_utc=next_due_utc,
            parent_task_id=parent_task_id,
        )

    monkeypatch.setattr(recurrence_engine, "instantiate_task", flaky)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.created == 1
    assert summary.failed == 0
    new_root = occurrences_of(db, root.id)[0]
    new_children = list_unit_children(db, parent_task_id=new_root.id)
    assert [(c.unit_id, c.assigned_to) for c in new_children] == [("unit-b", "Y")]


def test_pass_continues_after_task_failure(db, monkeypatch):
    bad = make_weekly(db, title="Bad")
    good = make_weekly(db, title="Good")
    original = recurrence_engine.process_scheduled_task

    def flaky(session, task, *, now):
        if task.id == bad.id:
            raise RuntimeError("boom")
        return original(session, task, now=now)

    monkeypatch.setattr(recurrence_engine, "process_scheduled_task", flaky)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.processed == 2
    assert summary.created == 1
    assert summary.failed == 1
    assert len(occurrences_of(db, good.id)) == 1
    assert occurrences_of(db, bad.id) == []


def test_pass_stops_between_tasks_on_timeout(db):
    make_weekly(db)

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0), timeout_seconds=0)

    assert summary.timed_out is True
    assert summary.processed == 0
    run = db.get(RecurrenceRun, summary.run_id)
    assert run.status == RunStatus.timed_out


def test_failed_candidate_query_is_recorded(db, monkeypatch):
    def broken(session):
        raise OperationalError("SELECT", {}, Exception("no such table"))

    monkeypatch.setattr(recurrence_engine, "list_schedule_candidates", broken)

    with pytest.raises(RecurrenceBatchError):
        run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0), trigger="cli")

    runs = list_recent_runs(db)
    assert len(runs) == 1
    assert runs[0].status == RunStatus.failed
    assert runs[0].trigger == "cli"
    assert runs[0].error


def test_successful_pass_is_recorded(db):
    make_weekly(db)
    run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0), trigger="scheduler")

    run = list_recent_runs(db)[0]
    assert run.status == RunStatus.succeeded
    assert (run.processed, run.created, run.failed) == (1, 1, 0)
    assert run.finished_at_utc is not None


# ---------------------- On-completion mode ----------------------


def make_on_completion(db, **kwargs):
    params = dict(
        title="Clean filters",
        start_date=utc(2026, 3, 1, 8, 0),
        due_date=utc(2026, 3, 1, 10, 0),
        is_recurring=True,
        recurrence_frequency="daily",
        recurrence_mode="on_completion",
    )
    params.update(kwargs)
    return create_task(db, **params)


def test_completion_generates_next_from_today(db):
    task = make_on_completion(db)

    result = complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 0))

    assert result.task.status == TaskStatus.completed
    assert result.task.completed_at_utc == datetime(2026, 3, 10, 15, 0)
    assert result.recurrence_error is None
    spawned = result.spawned_task
    assert spawned is not None
    assert spawned.parent_task_id == task.id
    assert spawned.start_date_utc == datetime(2026, 3, 11, 0, 0)
    assert spawned.due_date_utc == datetime(2026, 3, 11, 2, 0)


def test_recompleting_does_not_generate_again(db):
    task = make_on_completion(db)
    complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 0))

    again = update_task(db, task=task, now=datetime(2026, 3, 10, 16, 0), status="completed")

    assert again.spawned_task is None
    assert len(occurrences_of(db, task.id)) == 1


def test_reopen_and_complete_same_day_is_deduplicated(db):
    task = make_on_completion(db)
    complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 0))
    update_task(db, task=task, now=datetime(2026, 3, 10, 15, 5), status="pending")

    result = complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 10))

    assert result.spawned_task is None
    assert len(occurrences_of(db, task.id)) == 1


def test_schedule_mode_completion_hands_over_to_next_pass(db):
    task = make_weekly(db)
    result = complete_task(db, task=task, now=datetime(2026, 2, 26, 9, 30))
    assert result.spawned_task is None

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.processed == 1
    assert summary.created == 1
    occ = occurrences_of(db, task.id)
    assert [o.start_date_utc for o in occ] == [datetime(2026, 3, 5, 8, 0)]
    assert occ[0].status == TaskStatus.pending


def test_completed_schedule_task_does_not_wait_for_threshold(db):
    task = make_weekly(db)
    complete_task(db, task=task, now=datetime(2026, 2, 26, 9, 30))

    # Six days before the next start, well ahead of the creation threshold.
    first = run_schedule_pass(db, now=datetime(2026, 2, 26, 10, 0))
    second = run_schedule_pass(db, now=datetime(2026, 2, 26, 10, 15))

    assert first.created == 1
    # The completed root is superseded; only the new occurrence is a candidate.
    assert second.processed == 1
    assert second.created == 0
    assert len(occurrences_of(db, task.id)) == 1


def test_completed_lineage_keeps_going(db):
    root = make_weekly(db)
    run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))
    first_occ = occurrences_of(db, root.id)[0]
    complete_task(db, task=root, now=datetime(2026, 3, 4, 11, 0))
    complete_task(db, task=first_occ, now=datetime(2026, 3, 5, 9, 0))

    summary = run_schedule_pass(db, now=datetime(2026, 3, 5, 10, 0))

    assert summary.created == 1
    assert [o.start_date_utc for o in occurrences_of(db, root.id)] == [
        datetime(2026, 3, 5, 8, 0),
        datetime(2026, 3, 12, 8, 0),
    ]


def test_rolled_up_schedule_root_continues(db):
    root = make_weekly(db, units=[{"unit_id": "unit-a", "assigned_to": "X"}])
    (child,) = list_child_tasks(db, task_id=root.id)

    complete_task(db, task=child, now=datetime(2026, 2, 26, 9, 30))
    db.refresh(root)
    assert root.status == TaskStatus.completed

    summary = run_schedule_pass(db, now=datetime(2026, 3, 4, 10, 0))

    assert summary.processed == 1
    assert summary.created == 1
    new_root = occurrences_of(db, root.id)[0]
    assert new_root.start_date_utc == datetime(2026, 3, 5, 8, 0)
    new_children = list_unit_children(db, parent_task_id=new_root.id)
    assert [(c.unit_id, c.assigned_to, c.status) for c in new_children] == [("unit-a", "X", TaskStatus.pending)]


def test_completion_failure_does_not_undo_update(db, monkeypatch):
    task = make_on_completion(db)

    def boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(recurrence_engine, "instantiate_task", boom)

    result = complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 0))

    assert result.spawned_task is None
    assert result.recurrence_error
    db.expire_all()
    assert db.get(Task, task.id).status == TaskStatus.completed


def test_unit_rollup_completes_parent_and_spawns_tree(db):
    root = make_on_completion(
        db,
        recurrence_frequency="weekly",
        units=[{"unit_id": "unit-a", "assigned_to": "X"}, {"unit_id": "unit-b", "assigned_to": "Y"}],
    )
    a, b = list_child_tasks(db, task_id=root.id)

    first = complete_task(db, task=a, now=datetime(2026, 3, 10, 15, 0))
    db.refresh(root)
    assert root.status == TaskStatus.in_progress
    assert first.spawned_task is None

    second = complete_task(db, task=b, now=datetime(2026, 3, 10, 16, 0))
    db.refresh(root)
    assert root.status == TaskStatus.completed

    spawned = second.spawned_task
    assert spawned is not None
    assert spawned.parent_task_id == root.id
    assert spawned.start_date_utc == datetime(2026, 3, 17, 0, 0)
    new_children = list_unit_children(db, parent_task_id=spawned.id)
    assert [(c.unit_id, c.assigned_to, c.status) for c in new_children] == [
        ("unit-a", "X", TaskStatus.pending),
        ("unit-b", "Y", TaskStatus.pending),
    ]


def test_task_events_are_emitted(db):
    seen = []
    add_task_event_listener(seen.append)
    try:
        task = make_on_completion(db)
        complete_task(db, task=task, now=datetime(2026, 3, 10, 15, 0))
    finally:
        remove_task_event_listener(seen.append)

    assert [e.event_type for e in seen] == ["created", "completed", "created"]
