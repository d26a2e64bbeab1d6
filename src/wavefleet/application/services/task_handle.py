"""Caller-side handle of one dispatched task."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.application.services.wave_scheduler import WaveScheduler
from wavefleet.domain.errors import (
    RecordValidationError,
    TaskNotFoundError,
    TaskNotResolvedError,
)
from wavefleet.domain.records import TaskFailure, TaskOutcome, TaskState

logger = logging.getLogger(__name__)

TerminalListener = Callable[["TaskHandle", TaskState], Awaitable[None]]


class TaskHandle:
    """Poll-driven view of one task.

    `resolved()` is the caller's progress driver: while the task is still
    tracked by the wave scheduler it first lets the scheduler reap finished
    tasks and admit the next wave. Once a terminal state is observed it is
    cached and the store is never queried again.
    """

    def __init__(
        self,
        session_id: str,
        task_id: str,
        state_store: ObjectStateStore,
        scheduler: WaveScheduler[TaskHandle] | None = None,
        on_terminal: TerminalListener | None = None,
    ) -> None:
        self.session_id = session_id
        self.task_id = task_id
        self._state_store = state_store
        self._scheduler = scheduler
        self._on_terminal = on_terminal
        self._observed_state = TaskState.PENDING
        self._terminal_state: TaskState | None = None
        self._terminal_error: str | None = None
        self._outcome: TaskOutcome | None = None

    @property
    def state(self) -> TaskState:
        """Return the last observed task state."""

        return self._terminal_state or self._observed_state

    @property
    def is_terminal(self) -> bool:
        """Return whether a terminal state was already observed."""

        return self._terminal_state is not None

    async def resolved(self) -> bool:
        """Drive admission and return whether the task reached a terminal state."""

        if self._terminal_state is not None:
            return True

        if self._scheduler is not None and self._scheduler.tracks(self.task_id):
            await self._scheduler.admit_ready_wave()
            if self._terminal_state is not None:
                return True
            if self._scheduler.tracks(self.task_id):
                return False

        return await self.check_terminal()

    async def check_terminal(self) -> bool:
        """Query the task record once without driving admission."""

        if self._terminal_state is not None:
            return True

        current = await self._state_store.get_task(self.session_id, self.task_id)
        if current is None:
            raise TaskNotFoundError(
                f"Task '{self.task_id}' not found in session '{self.session_id}'."
            )

        record = current.record
        self._observed_state = record.state
        if not record.is_terminal:
            return False

        self._terminal_state = record.state
        self._terminal_error = record.error
        if self._on_terminal is not None:
            await self._on_terminal(self, record.state)
        return True

    async def result(self) -> TaskOutcome:
        """Return value or failure of a resolved task.

        Failed tasks produce an outcome carrying `TaskFailure`; nothing is
        raised for them.
        """

        if self._outcome is not None:
            return self._outcome
        if self._terminal_state is None:
            raise TaskNotResolvedError(f"Task '{self.task_id}' is not resolved yet.")

        stored = await self._state_store.get_result(self.task_id)
        if self._terminal_state is TaskState.COMPLETED:
            if stored is None:
                raise RecordValidationError(
                    f"Task '{self.task_id}' completed without a result object."
                )
            if stored.error:
                outcome = TaskOutcome(
                    self.task_id,
                    failure=TaskFailure(stored.message or "Task failed", stored.traceback),
                )
            else:
                outcome = TaskOutcome(self.task_id, value=stored.value)
        elif stored is not None and stored.error:
            outcome = TaskOutcome(
                self.task_id,
                failure=TaskFailure(
                    stored.message or self._terminal_error or "Task failed",
                    stored.traceback,
                ),
            )
        else:
            outcome = TaskOutcome(
                self.task_id,
                failure=TaskFailure(self._terminal_error or "Task failed"),
            )

        self._outcome = outcome
        return outcome

    def __repr__(self) -> str:
        return (
            f"TaskHandle(session_id={self.session_id!r}, task_id={self.task_id!r}, "
            f"state={self.state.value!r})"
        )


__all__ = ["TaskHandle", "TerminalListener"]
