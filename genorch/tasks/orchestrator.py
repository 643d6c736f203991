"""Canonical task lifecycle: submission, per-task poll workers and terminal handling."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from genorch.core.exceptions import (
    ProviderCredentialError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
    TaskCancelledError,
    TaskNotFoundError,
)
from genorch.logging import bind_context, unbind_context
from genorch.pool.manager import PoolManager, ReleaseOutcome
from genorch.providers.base import Failed, StillRunning, Succeeded, SubmitRequest
from genorch.providers.registry import ProviderRegistry
from genorch.storage import credentials as credential_store
from genorch.storage import tasks as store
from genorch.storage.models import GenerationTask, TaskState
from genorch.telemetry.events import record_event

from .progress import COMPLETE, next_progress

logger = logging.getLogger("genorch.tasks")

IN_FLIGHT = (TaskState.SUBMITTED, TaskState.POLLING)
TIMEOUT_REASON = "exceeded maximum wait"
INTERRUPTED_REASON = "interrupted before submission completed"
ANONYMOUS_USER = "anonymous"


@dataclass
class _Worker:
    task: asyncio.Task[None]
    cancel: asyncio.Event


@dataclass
class _Submission:
    cancel: asyncio.Event
    done: asyncio.Event


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def task_view(task: GenerationTask) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "user_id": task.user_id,
        "provider_family": task.provider_family,
        "operation_type": task.operation_type,
        "state": task.state,
        "progress_hint": task.progress,
        "result": task.result,
        "error_reason": task.error_reason,
        "error_kind": task.error_kind,
        "attempts": task.attempts,
        "cost": task.cost,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


class TaskOrchestrator:
    """Owns the task state machine and one poll worker per in-flight task.

    Workers only talk to the store through conditional transitions, so a
    task that already reached a terminal state is never touched again.
    """

    def __init__(self, pool: PoolManager, registry: ProviderRegistry) -> None:
        self._pool = pool
        self._registry = registry
        self._workers: dict[str, _Worker] = {}
        self._submitting: dict[str, _Submission] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, user_id: str | None, request: SubmitRequest) -> str:
        """Reserve a credential, start the provider job and return the task id.

        Pool errors are raised before any provider call; dedicated families
        refuse callers without a user id. A provider failure during
        submission leaves a ``Failed`` task behind and is raised as
        ``ProviderRejectedError`` carrying that task's id. A task deleted
        while the submit call was in flight raises ``TaskCancelledError``.
        """
        family = self._pool.family(request.provider_family)
        adapter = self._registry.get_adapter(family.id)
        credential = await self._pool.reserve(family.id, request.cost, user_id)

        task_id = uuid.uuid4().hex
        created_at = _utcnow()
        task = store.create_task(
            task_id=task_id,
            user_id=user_id or ANONYMOUS_USER,
            provider_family=family.id,
            operation_type=request.operation_type,
            credential_id=int(credential.id),
            cost=request.cost,
            max_attempts=family.max_attempts,
            payload=request.payload.model_dump(),
            created_at=created_at,
            deadline_at=created_at + timedelta(seconds=family.poll_interval_seconds * family.max_attempts),
        )

        submission = _Submission(cancel=asyncio.Event(), done=asyncio.Event())
        self._submitting[task_id] = submission
        try:
            provider_job_id = await adapter.submit(str(credential.api_key), request)
        except ProviderError as exc:
            outcome = (
                ReleaseOutcome.CREDENTIAL_ERROR
                if isinstance(exc, ProviderCredentialError)
                else ReleaseOutcome.FAILED
            )
            await self._finish(task, TaskState.FAILED, outcome, error_reason=exc.message, error_kind=exc.code)
            raise ProviderRejectedError(family.id, message=exc.message, task_id=task_id) from exc
        except Exception:
            await self._finish(
                task,
                TaskState.FAILED,
                ReleaseOutcome.FAILED,
                error_reason="Submission failed",
                error_kind="internal_error",
            )
            raise
        finally:
            self._submitting.pop(task_id, None)
            submission.done.set()

        # A delete that arrived during the submit call owns the release; the
        # provider job is left unpolled.
        if submission.cancel.is_set() or not store.apply_transition(
            task_id, [TaskState.SUBMITTED], TaskState.POLLING, provider_job_id=provider_job_id
        ):
            logger.warning(
                "Task cancelled during submission",
                extra={
                    "event": "task_submit_cancelled",
                    "task_id": task_id,
                    "provider_family": family.id,
                    "provider_job_id": provider_job_id,
                },
            )
            record_event(
                "task_submit_cancelled",
                "WARNING",
                provider_family=family.id,
                credential_id=credential.id,
                task_id=task_id,
                meta={"provider_job_id": provider_job_id},
            )
            raise TaskCancelledError(task_id)

        logger.info(
            "Task submitted",
            extra={
                "event": "task_submitted",
                "task_id": task_id,
                "provider_family": family.id,
                "operation_type": request.operation_type,
                "credential_id": credential.id,
                "provider_job_id": provider_job_id,
            },
        )
        record_event(
            "task_submitted",
            "INFO",
            provider_family=family.id,
            credential_id=credential.id,
            task_id=task_id,
            meta={"operation_type": request.operation_type, "cost": request.cost},
        )
        self._spawn(task_id)
        return task_id

    # ------------------------------------------------------------------
    # Poll workers
    # ------------------------------------------------------------------

    def _spawn(self, task_id: str) -> None:
        cancel = asyncio.Event()
        worker = _Worker(
            task=asyncio.create_task(self._run(task_id, cancel), name=f"poll-{task_id}"),
            cancel=cancel,
        )
        self._workers[task_id] = worker

    async def _run(self, task_id: str, cancel: asyncio.Event) -> None:
        tokens = bind_context(task_id=task_id)
        try:
            await self._poll_loop(task_id, cancel)
        except Exception:
            logger.exception("Poll worker crashed", extra={"event": "task_worker_error", "task_id": task_id})
            task = store.get_task(task_id)
            if task is not None:
                await self._finish(
                    task,
                    TaskState.FAILED,
                    ReleaseOutcome.FAILED,
                    error_reason="Internal error while polling",
                    error_kind="internal_error",
                )
        finally:
            unbind_context(tokens)
            self._workers.pop(task_id, None)

    async def _poll_loop(self, task_id: str, cancel: asyncio.Event) -> None:
        task = store.get_task(task_id)
        if task is None or task.task_state is not TaskState.POLLING:
            return

        family = self._pool.family(str(task.provider_family))
        adapter = self._registry.get_adapter(family.id)
        credential = (
            credential_store.get_credential(int(task.credential_id)) if task.credential_id is not None else None
        )
        if credential is None:
            await self._finish(
                task,
                TaskState.FAILED,
                ReleaseOutcome.FAILED,
                error_reason="Bound credential no longer exists",
                error_kind="credential_missing",
            )
            return

        api_key = str(credential.api_key)
        attempts = int(task.attempts or 0)
        progress = int(task.progress or 0)

        while True:
            if await self._sleep(cancel, family.poll_interval_seconds):
                return
            attempts += 1
            try:
                result = await adapter.poll(api_key, str(task.provider_job_id), str(task.operation_type))
            except ProviderUnavailableError as exc:
                logger.warning(
                    "Poll attempt failed; will retry",
                    extra={"event": "task_poll_retry", "task_id": task_id, "attempt": attempts, "error": exc.message},
                )
                result = StillRunning(hint=None)
            except ProviderCredentialError as exc:
                result = Failed(reason=exc.message, credential_error=True)
            except ProviderError as exc:
                result = Failed(reason=exc.message)

            # A delete that arrived during the provider call wins over its result.
            if cancel.is_set():
                return

            if isinstance(result, Succeeded):
                await self._finish(task, TaskState.COMPLETED, ReleaseOutcome.COMPLETED, result=result.result)
                return
            if isinstance(result, Failed):
                outcome = ReleaseOutcome.CREDENTIAL_ERROR if result.credential_error else ReleaseOutcome.FAILED
                await self._finish(
                    task,
                    TaskState.FAILED,
                    outcome,
                    error_reason=result.reason,
                    error_kind="credential_error" if result.credential_error else "generation_failed",
                )
                return

            progress = next_progress(progress, attempts, int(task.max_attempts), adapter.milestone_progress(result.hint))
            store.record_poll(task_id, attempts, progress)
            if attempts >= task.max_attempts:
                await self._finish(
                    task,
                    TaskState.TIMED_OUT,
                    ReleaseOutcome.TIMED_OUT,
                    error_reason=TIMEOUT_REASON,
                    error_kind="timeout",
                )
                return

    @staticmethod
    async def _sleep(cancel: asyncio.Event, seconds: float) -> bool:
        """Wait one poll interval; return True if the task was cancelled meanwhile."""
        if cancel.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return cancel.is_set()
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _finish(
        self,
        task: GenerationTask,
        state: TaskState,
        outcome: ReleaseOutcome,
        *,
        result: dict[str, Any] | None = None,
        error_reason: str | None = None,
        error_kind: str | None = None,
    ) -> bool:
        """Apply a terminal transition once and release the bound credential."""
        values: dict[str, Any] = {"completed_at": _utcnow()}
        if state is TaskState.COMPLETED:
            values["progress"] = COMPLETE
            values["result"] = result or {}
        else:
            values["error_reason"] = (error_reason or "")[:512]
            values["error_kind"] = error_kind

        if not store.apply_transition(str(task.id), IN_FLIGHT, state, **values):
            logger.info(
                "Ignoring transition for a task that is no longer in flight",
                extra={"event": "task_transition_ignored", "task_id": task.id, "state": state.value},
            )
            return False

        if task.credential_id is not None:
            await self._pool.release(
                int(task.credential_id),
                outcome,
                cost=float(task.cost) if state is TaskState.COMPLETED else 0.0,
                task_id=str(task.id),
            )

        level = "INFO" if state is TaskState.COMPLETED else "WARNING"
        logger.log(
            logging.INFO if state is TaskState.COMPLETED else logging.WARNING,
            "Task finished",
            extra={
                "event": "task_finished",
                "task_id": task.id,
                "provider_family": task.provider_family,
                "state": state.value,
                "error_kind": error_kind,
            },
        )
        record_event(
            "task_finished",
            level,
            provider_family=str(task.provider_family),
            credential_id=task.credential_id,
            task_id=str(task.id),
            message=error_reason,
            meta={"state": state.value, "outcome": outcome.value},
        )
        return True

    # ------------------------------------------------------------------
    # Caller operations
    # ------------------------------------------------------------------

    def get_status(self, task_id: str) -> dict[str, Any]:
        task = store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task_view(task)

    def list_tasks(self, user_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return [task_view(task) for task in store.list_tasks(user_id, limit)]

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task; return True if it was still in flight and got cancelled.

        A submission or poll worker still talking to the provider is asked
        to stop and is awaited, so the in-flight call returns before the
        task is released without a debit.
        """
        task = store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        submission = self._submitting.get(task_id)
        if submission is not None:
            submission.cancel.set()
            await submission.done.wait()

        cancelled = False
        worker = self._workers.get(task_id)
        if worker is not None:
            worker.cancel.set()
            await asyncio.wait({worker.task})
            cancelled = True

        if store.apply_transition(
            task_id,
            IN_FLIGHT,
            TaskState.FAILED,
            completed_at=_utcnow(),
            error_reason="cancelled",
            error_kind="cancelled",
        ):
            cancelled = True
            if task.credential_id is not None:
                await self._pool.release(int(task.credential_id), ReleaseOutcome.CANCELLED, task_id=task_id)

        store.delete_task(task_id)
        logger.info(
            "Task deleted",
            extra={"event": "task_deleted", "task_id": task_id, "cancelled": cancelled},
        )
        record_event(
            "task_deleted",
            "INFO",
            provider_family=str(task.provider_family),
            task_id=task_id,
            meta={"cancelled": cancelled},
        )
        return cancelled

    async def wait(self, task_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the task's poll worker to exit and return the task status."""
        worker = self._workers.get(task_id)
        if worker is not None:
            await asyncio.wait({worker.task}, timeout=timeout)
        return self.get_status(task_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def resume(self) -> int:
        """Re-attach workers to tasks left in flight by a previous process."""
        for task in store.list_tasks_in_states([TaskState.SUBMITTED]):
            if task.id in self._workers or task.id in self._submitting:
                continue
            await self._finish(
                task,
                TaskState.FAILED,
                ReleaseOutcome.FAILED,
                error_reason=INTERRUPTED_REASON,
                error_kind="interrupted",
            )

        resumed = 0
        for task in store.list_tasks_in_states([TaskState.POLLING]):
            if task.id in self._workers:
                continue
            self._spawn(str(task.id))
            resumed += 1
        if resumed:
            logger.info("Resumed poll workers", extra={"event": "tasks_resumed", "count": resumed})
        return resumed

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    async def shutdown(self) -> None:
        """Stop all workers; their tasks stay ``Polling`` for the next resume."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.task.cancel()
        if workers:
            await asyncio.gather(*(worker.task for worker in workers), return_exceptions=True)
        self._workers.clear()


__all__ = ["ANONYMOUS_USER", "TaskOrchestrator", "TIMEOUT_REASON", "INTERRUPTED_REASON", "task_view"]
