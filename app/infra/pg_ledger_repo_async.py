# app/infra/pg_ledger_repo_async.py
"""
Async PostgreSQL credit ledger store (asyncpg).

Consumption and refunds run in a SERIALIZABLE transaction with the
grant rows locked FOR UPDATE.  Serialization failures and deadlocks
re-run the whole unit of work (``retry_on_transient_error``).
"""
from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

import asyncpg

from app.core.domain import CreditGrant, CreditTransaction
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _row_to_grant(row) -> CreditGrant:
    """Convert an asyncpg Record to a CreditGrant dataclass."""
    return CreditGrant(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        source_type=row["source_type"],
        source_ref=row["source_ref"],
        credits_granted=row["credits_granted"],
        credits_consumed=row["credits_consumed"],
        credits_remaining=row["credits_remaining"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _row_to_transaction(row) -> CreditTransaction:
    """Convert an asyncpg Record to a CreditTransaction dataclass."""
    message_id = row["message_id"]
    refund_of = row.get("refund_of")
    return CreditTransaction(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        grant_id=str(row["grant_id"]),
        message_id=str(message_id) if message_id is not None else None,
        delta=row["delta"],
        reason=row["reason"],
        created_at=row["created_at"],
        refund_of=str(refund_of) if refund_of is not None else None,
    )


class PostgresLedgerUnitOfWork:
    """Ledger operations bound to one open transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def lock_spendable_grants(self, owner_id: str, now: datetime) -> list[CreditGrant]:
        rows = await self._conn.fetch(
            """
            SELECT * FROM credit_grants
            WHERE owner_id = $1
              AND credits_remaining > 0
              AND (expires_at IS NULL OR expires_at > $2)
            ORDER BY expires_at ASC NULLS LAST, created_at ASC, id
            FOR UPDATE
            """,
            owner_id,
            now,
        )
        return [_row_to_grant(row) for row in rows]

    async def lock_grant(self, grant_id: str) -> Optional[CreditGrant]:
        row = await self._conn.fetchrow(
            "SELECT * FROM credit_grants WHERE id = $1 FOR UPDATE",
            grant_id,
        )
        return _row_to_grant(row) if row else None

    async def get_transactions(self, transaction_ids: list[str]) -> dict[str, CreditTransaction]:
        rows = await self._conn.fetch(
            "SELECT * FROM credit_transactions WHERE id = ANY($1::uuid[])",
            transaction_ids,
        )
        return {str(row["id"]): _row_to_transaction(row) for row in rows}

    async def refunded_transaction_ids(self, transaction_ids: list[str]) -> set[str]:
        rows = await self._conn.fetch(
            """
            SELECT refund_of FROM credit_transactions
            WHERE refund_of = ANY($1::uuid[])
            """,
            transaction_ids,
        )
        return {str(row["refund_of"]) for row in rows}

    async def save_grant_balance(self, grant: CreditGrant) -> None:
        await self._conn.execute(
            """
            UPDATE credit_grants
            SET credits_consumed = $2, credits_remaining = $3
            WHERE id = $1
            """,
            grant.id,
            grant.credits_consumed,
            grant.credits_remaining,
        )

    async def insert_transaction(
        self,
        owner_id: str,
        grant_id: str,
        delta: int,
        reason: str,
        *,
        message_id: Optional[str] = None,
        refund_of: Optional[str] = None,
    ) -> CreditTransaction:
        row = await self._conn.fetchrow(
            """
            INSERT INTO credit_transactions (owner_id, grant_id, message_id, delta, reason, refund_of)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            """,
            owner_id,
            grant_id,
            message_id,
            delta,
            reason,
            refund_of,
        )
        return _row_to_transaction(row)


class AsyncPostgresLedgerStore:
    """Credit grants and transactions in PostgreSQL."""

    @retry_on_transient_error(max_retries=5, initial_delay=0.05)
    async def run_serializable(
        self,
        work: Callable[[PostgresLedgerUnitOfWork], Awaitable[T]],
    ) -> T:
        async with safe_db_conn(autocommit=False, isolation="serializable") as conn:
            return await work(PostgresLedgerUnitOfWork(conn))

    async def insert_grant(
        self,
        owner_id: str,
        source_type: str,
        amount: int,
        source_ref: Optional[str],
        expires_at: Optional[datetime],
    ) -> CreditGrant:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO credit_grants
                  (owner_id, source_type, source_ref, credits_granted,
                   credits_consumed, credits_remaining, expires_at)
                VALUES ($1, $2, $3, $4, 0, $4, $5)
                RETURNING *
                """,
                owner_id,
                source_type,
                source_ref,
                amount,
                expires_at,
            )
            return _row_to_grant(row)

    async def list_grants(self, owner_id: str) -> list[CreditGrant]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM credit_grants
                WHERE owner_id = $1
                ORDER BY expires_at ASC NULLS LAST, created_at ASC
                """,
                owner_id,
            )
            return [_row_to_grant(row) for row in rows]

    async def list_transactions(self, owner_id: str, limit: int = 50) -> list[CreditTransaction]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM credit_transactions
                WHERE owner_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                owner_id,
                limit,
            )
            return [_row_to_transaction(row) for row in rows]


# Global singleton
_ledger_store: AsyncPostgresLedgerStore | None = None


def get_ledger_store() -> AsyncPostgresLedgerStore:
    """Get the global ledger store instance."""
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = AsyncPostgresLedgerStore()
    return _ledger_store
