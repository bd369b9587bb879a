"""
Scheduled task slots for the lifecycle controller.

A TaskSlot holds at most one running asyncio task. Arming the slot cancels the
previous task and starts the next one without yielding to the event loop in
between, so two tasks of the same slot never run side by side.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Handed to each armed task; becomes cancelled when the task is superseded."""

    def __init__(self, slot_name: str, generation: int):
        self.slot_name = slot_name
        self.generation = generation
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken({self.slot_name}#{self.generation}, cancelled={self._cancelled})"


class TaskSlot:
    """
    Single-occupancy holder for a background task.

    When a task re-arms its own slot (for example a refresh firing that
    schedules the next refresh), it is not cancelled mid-flight; its token is
    marked cancelled and it is expected to return at its next check.
    """

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        self._generation = 0

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def token(self) -> Optional[CancellationToken]:
        return self._token

    @property
    def generation(self) -> int:
        """Number of times the slot has been armed."""
        return self._generation

    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, factory: Callable[[CancellationToken], Coroutine[Any, Any, Any]]) -> asyncio.Task:
        """
        Cancel the current task and start ``factory(token)`` in its place.

        Args:
            factory: Called with the new task's cancellation token, returns the coroutine to run

        Returns:
            The newly created task
        """
        self.cancel()

        self._generation += 1
        token = CancellationToken(self.name, self._generation)
        task = asyncio.get_running_loop().create_task(factory(token), name=f"{self.name}#{self._generation}")
        task.add_done_callback(self._on_task_done)

        self._token = token
        self._task = task
        logger.debug(f"Armed {self.name} (generation {self._generation})")
        return task

    def cancel(self) -> bool:
        """
        Cancel the current task, if any.

        Returns:
            True if a running task was cancelled or superseded
        """
        task, token = self._task, self._token
        self._task = None
        self._token = None

        if token:
            token.cancel()

        if task is None or task.done():
            return False

        if task is asyncio.current_task():
            logger.debug(f"{self.name} superseded from inside its own task")
        else:
            task.cancel()
            logger.debug(f"Cancelled {self.name}")
        return True

    async def cancel_and_wait(self) -> None:
        """Cancel the current task and wait until it has finished."""
        task = self._task
        self.cancel()
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"{self.name} finished with error after cancel: {e}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        # Retrieving the exception here keeps asyncio from reporting it as unobserved
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.debug(f"{task.get_name()} finished with {type(exc).__name__}: {exc}")
