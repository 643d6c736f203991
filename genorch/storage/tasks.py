"""Storage helpers for canonical generation tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, cast

from sqlalchemy import delete, select, update

from .database import session_scope
from .models import GenerationTask, TaskState


def create_task(
    *,
    task_id: str,
    user_id: str,
    provider_family: str,
    operation_type: str,
    credential_id: int,
    cost: float,
    max_attempts: int,
    payload: dict[str, Any] | None,
    created_at: datetime,
    deadline_at: datetime,
    state: TaskState = TaskState.SUBMITTED,
    error_reason: str | None = None,
    error_kind: str | None = None,
) -> GenerationTask:
    with session_scope() as session:
        task = GenerationTask(
            id=task_id,
            user_id=user_id,
            provider_family=provider_family,
            operation_type=operation_type,
            credential_id=credential_id,
            state=state.value,
            cost=cost,
            max_attempts=max_attempts,
            payload=payload,
            created_at=created_at,
            deadline_at=deadline_at,
            error_reason=error_reason,
            error_kind=error_kind,
            completed_at=created_at if state.is_terminal else None,
        )
        session.add(task)
        session.flush()
        return task


def get_task(task_id: str) -> GenerationTask | None:
    with session_scope() as session:
        return session.get(GenerationTask, task_id)


def list_tasks(user_id: str | None = None, limit: int = 50) -> list[GenerationTask]:
    """Return tasks newest first, optionally restricted to one user."""
    stmt = select(GenerationTask).order_by(GenerationTask.created_at.desc()).limit(limit)
    if user_id is not None:
        stmt = stmt.where(GenerationTask.user_id == user_id)
    with session_scope() as session:
        return cast(list[GenerationTask], session.scalars(stmt).all())


def list_tasks_in_states(states: Iterable[TaskState]) -> list[GenerationTask]:
    values = [state.value for state in states]
    with session_scope() as session:
        rows = session.scalars(
            select(GenerationTask)
            .where(GenerationTask.state.in_(values))
            .order_by(GenerationTask.created_at)
        ).all()
        return cast(list[GenerationTask], rows)


def apply_transition(
    task_id: str,
    from_states: Iterable[TaskState],
    to_state: TaskState,
    **values: Any,
) -> bool:
    """Move a task to ``to_state`` only if it is currently in ``from_states``.

    The conditional UPDATE keeps terminal tasks immutable: a transition
    requested for a task that already left ``from_states`` changes nothing.
    """
    allowed = [state.value for state in from_states]
    with session_scope() as session:
        result = session.execute(
            update(GenerationTask)
            .where(GenerationTask.id == task_id)
            .where(GenerationTask.state.in_(allowed))
            .values(state=to_state.value, **values)
        )
        return bool(result.rowcount)


def record_poll(task_id: str, attempts: int, progress: int) -> bool:
    """Persist attempt count and progress for a task that is still polling."""
    with session_scope() as session:
        result = session.execute(
            update(GenerationTask)
            .where(GenerationTask.id == task_id)
            .where(GenerationTask.state == TaskState.POLLING.value)
            .where(GenerationTask.progress <= progress)
            .values(attempts=attempts, progress=progress)
        )
        return bool(result.rowcount)


def delete_task(task_id: str) -> bool:
    with session_scope() as session:
        result = session.execute(delete(GenerationTask).where(GenerationTask.id == task_id))
        return bool(result.rowcount)
