# app/core/ledger.py
"""
Credit ledger: grants, FIFO-by-expiry consumption and refunds.

All balance mutation goes through ``CreditLedger``.  ``consume`` and
``refund`` run inside one serializable store transaction with the touched
grant rows locked, so two dispatches for the same owner can never spend the
same credit.  Per grant, ``credits_consumed + credits_remaining`` always
equals ``credits_granted`` and ``credits_remaining`` never goes negative.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.domain import CreditBreakdown, CreditGrant, CreditTransaction, SourceType
from app.core.errors import (
    AlreadyRefunded,
    InsufficientCredits,
    InvalidAmount,
    NotAConsumption,
    NotOwnedByOwner,
    TransactionNotFound,
)
from app.core.ports import AsyncLedgerStore, LedgerUnitOfWork
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fifo_key(grant: CreditGrant) -> tuple:
    # expiring grants first (soonest first), non-expiring last, then oldest first
    if grant.expires_at is None:
        return (1, grant.created_at, grant.created_at, grant.id)
    return (0, grant.expires_at, grant.created_at, grant.id)


def order_for_consumption(grants: list[CreditGrant], now: datetime) -> list[CreditGrant]:
    """Spendable grants in the order they are drawn down."""
    return sorted((g for g in grants if g.is_spendable(now)), key=_fifo_key)


def plan_consumption(
    grants: list[CreditGrant],
    amount: int,
    now: datetime,
) -> list[tuple[CreditGrant, int]]:
    """
    Decide how much to take from each grant.

    Walks the FIFO-ordered spendable grants taking
    ``min(still_needed, grant.credits_remaining)`` until ``amount`` is met.

    Raises:
        InsufficientCredits: spendable total is below ``amount``
    """
    ordered = order_for_consumption(grants, now)
    total = sum(g.credits_remaining for g in ordered)
    if total < amount:
        raise InsufficientCredits(available=total, required=amount)

    plan: list[tuple[CreditGrant, int]] = []
    still_needed = amount
    for grant in ordered:
        if still_needed <= 0:
            break
        take = min(still_needed, grant.credits_remaining)
        plan.append((grant, take))
        still_needed -= take
    return plan


class CreditLedger:
    """
    Owns CreditGrant / CreditTransaction mutation.

    Usage:
        ledger = CreditLedger(get_ledger_repo())
        await ledger.grant(owner_id, "bundle", 100)
        txs = await ledger.consume(owner_id, 5, "Campaign c1 for job j1")
    """

    def __init__(
        self,
        store: AsyncLedgerStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    async def grant(
        self,
        owner_id: str,
        source_type: str,
        amount: int,
        source_ref: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreditGrant:
        """Create a new grant. Fails with InvalidAmount unless amount > 0."""
        if amount <= 0:
            raise InvalidAmount(amount)
        source = SourceType(source_type).value

        grant = await self._store.insert_grant(owner_id, source, amount, source_ref, expires_at)

        AppMetrics.credits_granted(source, amount)
        logger.info(
            f"Credits granted: {amount} ({source}), grant={grant.id[:8]}",
            extra={"owner_id": owner_id},
        )
        return grant

    async def consume(
        self,
        owner_id: str,
        amount: int,
        reason: str,
        message_id: Optional[str] = None,
    ) -> list[CreditTransaction]:
        """
        Atomically debit ``amount`` credits, one transaction per grant touched.

        Raises:
            InvalidAmount: amount <= 0
            InsufficientCredits: not enough non-expired credit
        """
        if amount <= 0:
            raise InvalidAmount(amount)

        async def work(uow: LedgerUnitOfWork) -> list[CreditTransaction]:
            now = self._clock()
            grants = await uow.lock_spendable_grants(owner_id, now)
            plan = plan_consumption(grants, amount, now)

            transactions: list[CreditTransaction] = []
            for grant, take in plan:
                grant.credits_consumed += take
                grant.credits_remaining -= take
                await uow.save_grant_balance(grant)
                transactions.append(
                    await uow.insert_transaction(
                        owner_id, grant.id, -take, reason, message_id=message_id,
                    )
                )
            return transactions

        try:
            transactions = await self._store.run_serializable(work)
        except InsufficientCredits as exc:
            AppMetrics.insufficient_credits()
            logger.warning(
                f"Consume rejected: {exc.detail}",
                extra={"owner_id": owner_id},
            )
            raise

        AppMetrics.credits_consumed(amount)
        logger.info(
            f"Credits consumed: {amount} across {len(transactions)} grant(s), reason={reason!r}",
            extra={"owner_id": owner_id},
        )
        return transactions

    async def refund(
        self,
        owner_id: str,
        transaction_ids: list[str],
        reason: str,
    ) -> list[CreditTransaction]:
        """
        Reverse consumption transactions against their original grants.

        All ids are validated before anything is written; one bad id
        rejects the whole call.

        Raises:
            TransactionNotFound, NotOwnedByOwner, NotAConsumption, AlreadyRefunded
        """
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            return []

        async def work(uow: LedgerUnitOfWork) -> list[CreditTransaction]:
            found = await uow.get_transactions(ids)
            for tid in ids:
                tx = found.get(tid)
                if tx is None:
                    raise TransactionNotFound(tid)
                if tx.owner_id != owner_id:
                    raise NotOwnedByOwner(tid)
                if not tx.is_consumption:
                    raise NotAConsumption(tid)

            already = await uow.refunded_transaction_ids(ids)
            for tid in ids:
                if tid in already:
                    raise AlreadyRefunded(tid)

            # Lock grants in a stable order so concurrent refunds cannot deadlock
            grants: dict[str, CreditGrant] = {}
            for grant_id in sorted({found[tid].grant_id for tid in ids}):
                grant = await uow.lock_grant(grant_id)
                if grant is None:
                    raise RuntimeError(f"Grant {grant_id} referenced by a transaction is missing")
                grants[grant_id] = grant

            refunds: list[CreditTransaction] = []
            for tid in ids:
                original = found[tid]
                grant = grants[original.grant_id]
                restored = -original.delta
                grant.credits_consumed -= restored
                grant.credits_remaining += restored
                await uow.save_grant_balance(grant)
                refunds.append(
                    await uow.insert_transaction(
                        owner_id,
                        grant.id,
                        restored,
                        f"Refund: {reason}",
                        message_id=original.message_id,
                        refund_of=tid,
                    )
                )
            return refunds

        refunds = await self._store.run_serializable(work)

        total = sum(tx.delta for tx in refunds)
        AppMetrics.credits_refunded(total)
        logger.info(
            f"Credits refunded: {total} from {len(refunds)} transaction(s), reason={reason!r}",
            extra={"owner_id": owner_id},
        )
        return refunds

    async def available(self, owner_id: str) -> int:
        """Sum of credits_remaining over non-expired grants."""
        now = self._clock()
        grants = await self._store.list_grants(owner_id)
        return sum(g.credits_remaining for g in grants if g.is_spendable(now))

    async def breakdown(self, owner_id: str) -> CreditBreakdown:
        """Spendable credits per source type, plus credits lost to expiry."""
        now = self._clock()
        grants = await self._store.list_grants(owner_id)

        by_source = {source.value: 0 for source in SourceType}
        expired = 0
        for grant in grants:
            if grant.is_expired(now):
                expired += grant.credits_remaining
            elif grant.credits_remaining > 0:
                by_source[grant.source_type] = by_source.get(grant.source_type, 0) + grant.credits_remaining

        return CreditBreakdown(
            available=sum(by_source.values()),
            by_source=by_source,
            expired=expired,
        )

    async def history(self, owner_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Most recent ledger entries, newest first."""
        return await self._store.list_transactions(owner_id, limit)
