# app/infra/pg_task_repo_async.py
"""
Async PostgreSQL task repository (asyncpg).

DB-backed delayed task queue with claim/complete/fail semantics.
Dispatch batch continuations and push fallback checks live here, so a
process restart resumes them instead of losing them.
Uses FOR UPDATE SKIP LOCKED for safe concurrent claiming.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class Task:
    """A background task from the task_queue table."""

    id: str
    owner_id: str
    task_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_task(row) -> Task:
    """Convert an asyncpg Record to a Task dataclass."""
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Task(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        task_type=row["task_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _affected(result: str | None) -> int:
    """Row count from an asyncpg status string like 'UPDATE 3'."""
    return int(result.split()[-1]) if result else 0


class AsyncPostgresTaskRepository:
    """DB-backed task queue with claim/complete/fail semantics."""

    async def enqueue(
        self,
        owner_id: str,
        task_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """
        Insert a new pending task.

        Args:
            owner_id: Owning organisation
            task_type: 'dispatch_batch' or 'push_fallback_check'
            payload: JSON-serializable task data
            priority: Lower = higher priority (default 0)
            max_attempts: Max retry attempts before marking as failed
            delay_seconds: Delay before first execution (0 = immediate)

        Returns:
            Task ID (UUID string)
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO task_queue (owner_id, task_type, payload, priority, max_attempts, scheduled_at)
                VALUES ($1, $2, $3::jsonb, $4, $5, now() + make_interval(secs => $6))
                RETURNING id
                """,
                owner_id,
                task_type,
                json.dumps(payload),
                priority,
                max_attempts,
                float(delay_seconds),
            )
            task_id = str(row["id"])
            logger.debug(
                f"Task enqueued: id={task_id[:8]}, type={task_type}, delay={delay_seconds}s",
                extra={"task_id": task_id, "owner_id": owner_id},
            )
            inc_counter("tasks_enqueued", task_type=task_type)
            return task_id

    async def claim_batch(self, batch_size: int = 5) -> list[Task]:
        """
        Atomically claim up to batch_size pending tasks that are due.

        Returns:
            List of claimed Task objects (status changed to 'running')
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM task_queue
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, scheduled_at, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE task_queue
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
            return [_row_to_task(row) for row in rows]

    async def complete(self, task_id: str) -> None:
        """Mark a task as completed."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE task_queue
                SET status = 'completed', completed_at = now()
                WHERE id = $1
                """,
                task_id,
            )

    async def fail(
        self,
        task_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
    ) -> None:
        """
        Record a task failure.

        If attempts < max_attempts, reschedule with exponential backoff.
        Otherwise mark as 'failed' permanently.

        Backoff formula: base_delay * 2^(attempts)
        With base_delay=5: 5s, 10s, 20s, 40s, 80s
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE task_queue
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE
                    WHEN attempts + 1 < max_attempts THEN 'pending'
                    ELSE 'failed'
                  END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE
                    WHEN attempts + 1 >= max_attempts THEN now()
                    ELSE NULL
                  END
                WHERE id = $1
                """,
                task_id,
                error_message[:2000],
                base_delay,
            )

    async def cancel_pending(self, task_type: str, campaign_ids: list[str]) -> int:
        """
        Remove queued (not yet running) tasks of one type for the given campaigns.

        Returns the number of tasks removed.
        """
        if not campaign_ids:
            return 0
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM task_queue
                WHERE status = 'pending'
                  AND task_type = $1
                  AND payload->>'campaign_id' = ANY($2::text[])
                """,
                task_type,
                campaign_ids,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cancelled {count} pending {task_type} task(s)")
                inc_counter("tasks_cancelled", count, task_type=task_type)
            return count

    async def count_by_status(self, owner_id: str | None = None) -> dict[str, int]:
        """Return {status: count} for admin visibility."""
        async with safe_db_conn() as conn:
            if owner_id:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM task_queue WHERE owner_id = $1 GROUP BY status",
                    owner_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM task_queue GROUP BY status",
                )
            return {row["status"]: row["cnt"] for row in rows}

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        """Delete completed tasks older than TTL. Returns count deleted."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM task_queue
                WHERE status = 'completed'
                  AND completed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleaned up {count} completed tasks older than {ttl_days} days")
            return count

    async def cleanup_failed(self, ttl_days: int = 30) -> int:
        """Delete failed tasks older than TTL. Returns count deleted."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM task_queue
                WHERE status = 'failed'
                  AND completed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleaned up {count} failed tasks older than {ttl_days} days")
            return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """
        Safety net: reset tasks stuck in 'running' state longer than timeout.

        Handles process crashes where a task was claimed but never completed/failed.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE task_queue
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
            count = _affected(result)
            if count > 0:
                logger.warning(f"Reset {count} stale running tasks (stuck > {timeout_seconds}s)")
                inc_counter("tasks_stale_reset")
            return count


# Global singleton
_task_repo: AsyncPostgresTaskRepository | None = None


def get_task_repo() -> AsyncPostgresTaskRepository:
    """Get the global task repository instance."""
    global _task_repo
    if _task_repo is None:
        _task_repo = AsyncPostgresTaskRepository()
    return _task_repo
