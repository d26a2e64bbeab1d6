"""Single-winner task claims and claim-owner transitions."""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.domain.errors import TaskConflictError, TaskNotFoundError, TaskOwnershipError
from wavefleet.domain.records import TaskState, TaskStatusRecord, Versioned, utc_now

logger = logging.getLogger(__name__)

_CLAIM_OWNED_STATES = frozenset({TaskState.CLAIMED, TaskState.RUNNING})


class ClaimProtocol:
    """Claims tasks through one conditional write on the task record.

    `atomic_claim_task` returns a plain boolean: of any number of workers
    racing for the same pending task exactly one gets `True`. A lost race is
    final and is not retried.
    """

    def __init__(self, state_store: ObjectStateStore) -> None:
        self._state_store = state_store

    async def atomic_claim_task(self, session_id: str, task_id: str, worker_id: str) -> bool:
        """Move the task from `pending` to `claimed` for `worker_id`."""

        current = await self._require_task(session_id, task_id)
        if current.record.state is not TaskState.PENDING:
            return False

        now = utc_now()
        claimed = current.record.model_copy(
            update={
                "state": TaskState.CLAIMED,
                "claimed_by": worker_id,
                "claimed_at": now,
                "updated_at": now,
            }
        )
        won = await self._state_store.put_task_if_version(claimed, current.version)
        if won:
            logger.info("Worker '%s' claimed task '%s'.", worker_id, task_id)
        else:
            logger.debug("Worker '%s' lost the claim race for task '%s'.", worker_id, task_id)
        return won

    async def claim_next_pending(self, session_id: str, worker_id: str) -> str | None:
        """Claim the oldest pending task of the session, if any can be won."""

        pending = [
            versioned.record
            for versioned in await self._state_store.list_tasks(session_id)
            if versioned.record.state is TaskState.PENDING
        ]
        pending.sort(key=lambda record: (record.created_at, record.task_id))
        for record in pending:
            if await self.atomic_claim_task(session_id, record.task_id, worker_id):
                return record.task_id
        return None

    async def mark_running(self, session_id: str, task_id: str, worker_id: str) -> TaskStatusRecord:
        """Record that the claim owner started executing."""

        now = utc_now()
        return await self._owner_transition(
            session_id,
            task_id,
            worker_id,
            allowed_from=frozenset({TaskState.CLAIMED}),
            update={"state": TaskState.RUNNING, "started_at": now, "updated_at": now},
        )

    async def mark_completed(
        self,
        session_id: str,
        task_id: str,
        worker_id: str,
        result_ref: str,
    ) -> TaskStatusRecord:
        """Record successful completion."""

        now = utc_now()
        return await self._owner_transition(
            session_id,
            task_id,
            worker_id,
            allowed_from=_CLAIM_OWNED_STATES,
            update={
                "state": TaskState.COMPLETED,
                "result_ref": result_ref,
                "completed_at": now,
                "updated_at": now,
            },
        )

    async def mark_failed(
        self,
        session_id: str,
        task_id: str,
        worker_id: str,
        error: str,
        result_ref: str | None = None,
    ) -> TaskStatusRecord:
        """Record failed execution."""

        now = utc_now()
        return await self._owner_transition(
            session_id,
            task_id,
            worker_id,
            allowed_from=_CLAIM_OWNED_STATES,
            update={
                "state": TaskState.FAILED,
                "result_ref": result_ref,
                "error": error,
                "completed_at": now,
                "updated_at": now,
            },
        )

    async def _owner_transition(
        self,
        session_id: str,
        task_id: str,
        worker_id: str,
        *,
        allowed_from: Collection[TaskState],
        update: dict[str, Any],
    ) -> TaskStatusRecord:
        current = await self._require_task(session_id, task_id)
        record = current.record
        if record.claimed_by != worker_id:
            raise TaskOwnershipError(
                f"Task '{task_id}' is claimed by '{record.claimed_by}', not '{worker_id}'."
            )
        if record.state not in allowed_from:
            raise TaskConflictError(
                f"Task '{task_id}' cannot move from '{record.state}' to '{update['state']}'."
            )

        updated = record.model_copy(update=update)
        if not await self._state_store.put_task_if_version(updated, current.version):
            raise TaskConflictError(
                f"Task '{task_id}' changed while its owner '{worker_id}' was updating it."
            )
        return updated

    async def _require_task(self, session_id: str, task_id: str) -> Versioned[TaskStatusRecord]:
        current = await self._state_store.get_task(session_id, task_id)
        if current is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found in session '{session_id}'.")
        return current


__all__ = ["ClaimProtocol"]
