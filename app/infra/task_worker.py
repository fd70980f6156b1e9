# app/infra/task_worker.py
"""
In-process async task worker with handler dispatch.

Polls the task_queue table, claims due tasks, and routes them
to registered handler functions.  Supports concurrent batch
execution with automatic retry on failure.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_task_repo_async import AsyncPostgresTaskRepository, Task

logger = get_logger(__name__)

TaskHandler = Callable[[Task], Awaitable[None]]


class TaskWorker:
    """
    In-process async worker that polls the task_queue table and executes handlers.

    Usage:
        worker = TaskWorker(repo=get_task_repo())
        worker.register("dispatch_batch", handle_dispatch_batch)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresTaskRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, TaskHandler] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    def register(self, task_type: str, handler: TaskHandler) -> None:
        """Register a handler function for a task type."""
        self._handlers[task_type] = handler

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="task_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Task worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={self.list_handlers()}",
        )

    async def stop(self) -> None:
        """Graceful shutdown: stop polling and wait for the current batch."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Task worker stopped")

    async def run_once(self) -> int:
        """Claim and execute one batch. Returns the number of tasks run."""
        tasks = await self._repo.claim_batch(self._batch_size)
        if tasks:
            await asyncio.gather(*(self._execute(task) for task in tasks), return_exceptions=True)
        return len(tasks)

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            try:
                self._loop_count += 1

                # Periodically reset stale running tasks (~every 60 loops)
                if self._loop_count % 60 == 0:
                    try:
                        await self._repo.reset_stale_running(self._stale_timeout)
                    except Exception as exc:
                        logger.warning(f"Stale task reset failed: {exc}")

                if await self.run_once():
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Task worker loop error: {exc}", exc_info=True)
                inc_counter("task_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, task: Task) -> None:
        """Execute a single task via its registered handler."""
        handler = self._handlers.get(task.task_type)
        if handler is None:
            error = f"No handler registered for task_type={task.task_type}"
            logger.error(error, extra={"task_id": task.id})
            await self._repo.fail(task.id, error, base_delay=self._base_retry_delay)
            inc_counter("tasks_unknown_type")
            return

        try:
            await handler(task)
            await self._repo.complete(task.id)
            inc_counter("tasks_completed", task_type=task.task_type)
            logger.info(
                f"Task completed: id={task.id[:8]}, type={task.task_type}, "
                f"attempt={task.attempts + 1}",
                extra={"task_id": task.id, "owner_id": task.owner_id},
            )
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(task.id, error_msg, base_delay=self._base_retry_delay)
            inc_counter("tasks_failed_attempt", task_type=task.task_type)
            logger.warning(
                f"Task failed: id={task.id[:8]}, type={task.task_type}, "
                f"attempt={task.attempts + 1}, error={error_msg[:100]}",
                extra={"task_id": task.id, "owner_id": task.owner_id},
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Task worker died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
