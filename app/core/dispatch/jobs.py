# app/core/dispatch/jobs.py
"""
Task handlers for the dispatch worker.

Registered on ``TaskWorker`` by the application lifespan.  A handler
that raises is retried by the worker with exponential backoff.
"""
from __future__ import annotations

from app.core.dispatch.services import get_dispatch_service
from app.core.domain import TaskType
from app.infra.logging_config import get_logger
from app.infra.pg_task_repo_async import Task

logger = get_logger(__name__)


async def handle_dispatch_batch(task: Task) -> None:
    """Run the next batch of a campaign."""
    outcome = await get_dispatch_service().continue_campaign(task.payload)
    if outcome.stopped_reason:
        logger.info(
            f"Campaign finished: {outcome.stopped_reason}",
            extra={"campaign_id": task.payload.get("campaign_id"), "task_id": task.id},
        )


async def handle_push_fallback_check(task: Task) -> None:
    """SMS contacts whose push delivery was not confirmed in time."""
    await get_dispatch_service().run_fallback_check(task.owner_id, task.payload)


TASK_HANDLERS = {
    TaskType.DISPATCH_BATCH.value: handle_dispatch_batch,
    TaskType.PUSH_FALLBACK_CHECK.value: handle_push_fallback_check,
}
