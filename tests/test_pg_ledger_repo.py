# tests/test_pg_ledger_repo.py
"""
Tests for the PostgreSQL ledger store (pg_ledger_repo_async.py).

The connection is mocked; these tests pin the row mapping and the SQL
shape (locking, ordering, isolation level).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.infra.pg_ledger_repo_async import (
    AsyncPostgresLedgerStore,
    PostgresLedgerUnitOfWork,
    _row_to_grant,
    _row_to_transaction,
)

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
GRANT_ID = uuid.UUID("11111111-2222-3333-4444-555555555555")
TX_ID = uuid.UUID("99999999-8888-7777-6666-555555555555")


def _grant_row(overrides: dict | None = None) -> dict:
    """Dict standing in for an asyncpg Record from credit_grants."""
    row = {
        "id": GRANT_ID,
        "owner_id": "owner-1",
        "source_type": "trial",
        "source_ref": None,
        "credits_granted": 10,
        "credits_consumed": 4,
        "credits_remaining": 6,
        "expires_at": NOW + timedelta(days=14),
        "created_at": NOW,
    }
    if overrides:
        row.update(overrides)
    return row


def _tx_row(overrides: dict | None = None) -> dict:
    row = {
        "id": TX_ID,
        "owner_id": "owner-1",
        "grant_id": GRANT_ID,
        "message_id": None,
        "delta": -4,
        "reason": "Campaign abc",
        "created_at": NOW,
        "refund_of": None,
    }
    if overrides:
        row.update(overrides)
    return row


class TestRowMapping:
    def test_grant_ids_become_strings(self):
        grant = _row_to_grant(_grant_row())
        assert grant.id == str(GRANT_ID)
        assert grant.credits_remaining == 6
        assert grant.expires_at == NOW + timedelta(days=14)

    def test_consumption_row(self):
        tx = _row_to_transaction(_tx_row())
        assert tx.grant_id == str(GRANT_ID)
        assert tx.message_id is None
        assert tx.refund_of is None
        assert tx.is_consumption

    def test_refund_row(self):
        message_id = uuid.uuid4()
        tx = _row_to_transaction(_tx_row({"delta": 4, "message_id": message_id, "refund_of": TX_ID}))
        assert tx.refund_of == str(TX_ID)
        assert tx.message_id == str(message_id)
        assert not tx.is_consumption


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_spendable_grants_locked_in_expiry_order(self):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[_grant_row()])
        uow = PostgresLedgerUnitOfWork(conn)

        grants = await uow.lock_spendable_grants("owner-1", NOW)

        assert [g.id for g in grants] == [str(GRANT_ID)]
        sql = conn.fetch.call_args[0][0]
        assert "FOR UPDATE" in sql
        assert "ORDER BY expires_at ASC NULLS LAST, created_at ASC" in sql
        assert "credits_remaining > 0" in sql
        assert conn.fetch.call_args[0][1:] == ("owner-1", NOW)

    @pytest.mark.asyncio
    async def test_lock_grant_missing(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        assert await PostgresLedgerUnitOfWork(conn).lock_grant("nope") is None

    @pytest.mark.asyncio
    async def test_refunded_ids(self):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[{"refund_of": TX_ID}])

        refunded = await PostgresLedgerUnitOfWork(conn).refunded_transaction_ids([str(TX_ID), "other"])

        assert refunded == {str(TX_ID)}

    @pytest.mark.asyncio
    async def test_save_grant_balance(self):
        conn = AsyncMock()
        grant = _row_to_grant(_grant_row())

        await PostgresLedgerUnitOfWork(conn).save_grant_balance(grant)

        sql, *args = conn.execute.call_args[0]
        assert "UPDATE credit_grants" in sql
        assert args == [grant.id, 4, 6]

    @pytest.mark.asyncio
    async def test_insert_refund_transaction(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=_tx_row({"delta": 4, "refund_of": TX_ID}))

        tx = await PostgresLedgerUnitOfWork(conn).insert_transaction(
            "owner-1", str(GRANT_ID), 4, "Refund: x", refund_of=str(TX_ID),
        )

        assert tx.delta == 4
        args = conn.fetchrow.call_args[0]
        assert "INSERT INTO credit_transactions" in args[0]
        assert args[-1] == str(TX_ID)


class TestLedgerStore:
    @pytest.mark.asyncio
    async def test_run_serializable_opens_serializable_transaction(self):
        store = AsyncPostgresLedgerStore()
        mock_conn = AsyncMock()
        work = AsyncMock(return_value="done")

        with patch("app.infra.pg_ledger_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            result = await store.run_serializable(work)

        assert result == "done"
        mock_ctx.assert_called_once_with(autocommit=False, isolation="serializable")
        uow = work.call_args[0][0]
        assert isinstance(uow, PostgresLedgerUnitOfWork)

    @pytest.mark.asyncio
    async def test_insert_grant_starts_with_full_balance(self):
        store = AsyncPostgresLedgerStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            return_value=_grant_row({"credits_consumed": 0, "credits_remaining": 10}),
        )

        with patch("app.infra.pg_ledger_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            grant = await store.insert_grant("owner-1", "trial", 10, None, NOW + timedelta(days=14))

        assert grant.credits_remaining == 10
        sql = mock_conn.fetchrow.call_args[0][0]
        assert "VALUES ($1, $2, $3, $4, 0, $4, $5)" in sql

    @pytest.mark.asyncio
    async def test_list_transactions_newest_first(self):
        store = AsyncPostgresLedgerStore()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_tx_row()])

        with patch("app.infra.pg_ledger_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            history = await store.list_transactions("owner-1", limit=20)

        assert len(history) == 1
        sql, owner, limit = mock_conn.fetch.call_args[0]
        assert "ORDER BY created_at DESC" in sql
        assert (owner, limit) == ("owner-1", 20)
