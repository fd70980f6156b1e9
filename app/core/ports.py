# app/core/ports.py
"""
Async ports used by the dispatch core.

PostgreSQL implementations live in ``app.infra.pg_*_repo_async``;
gateway implementations in ``app.infra.sms_gateway``,
``app.infra.push_providers`` and ``app.infra.distance_matrix``.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from app.core.domain import (
    Availability,
    Campaign,
    Contact,
    CreditGrant,
    CreditTransaction,
    DeviceToken,
    Job,
    Message,
    PushNotificationDelivery,
    Template,
)

T = TypeVar("T")


# ============================================================================
# CREDIT LEDGER
# ============================================================================

class LedgerUnitOfWork(Protocol):
    """Operations available inside one serializable ledger transaction."""

    async def lock_spendable_grants(self, owner_id: str, now: datetime) -> list[CreditGrant]:
        """Non-expired grants with credits left, row-locked (FOR UPDATE)."""
        ...

    async def lock_grant(self, grant_id: str) -> Optional[CreditGrant]: ...

    async def get_transactions(self, transaction_ids: list[str]) -> dict[str, CreditTransaction]: ...

    async def refunded_transaction_ids(self, transaction_ids: list[str]) -> set[str]: ...

    async def save_grant_balance(self, grant: CreditGrant) -> None: ...

    async def insert_transaction(
        self,
        owner_id: str,
        grant_id: str,
        delta: int,
        reason: str,
        *,
        message_id: Optional[str] = None,
        refund_of: Optional[str] = None,
    ) -> CreditTransaction: ...


class AsyncLedgerStore(Protocol):
    async def run_serializable(self, work: Callable[[LedgerUnitOfWork], Awaitable[T]]) -> T:
        """Run ``work`` in one SERIALIZABLE transaction, retried as a whole on conflict."""
        ...

    async def insert_grant(
        self,
        owner_id: str,
        source_type: str,
        amount: int,
        source_ref: Optional[str],
        expires_at: Optional[datetime],
    ) -> CreditGrant: ...

    async def list_grants(self, owner_id: str) -> list[CreditGrant]: ...

    async def list_transactions(self, owner_id: str, limit: int = 50) -> list[CreditTransaction]: ...


# ============================================================================
# ROSTER / CAMPAIGNS
# ============================================================================

class AsyncRosterRepository(Protocol):
    async def get_job(self, owner_id: str, job_id: str) -> Optional[Job]: ...

    async def get_template(self, owner_id: str, template_id: str) -> Optional[Template]: ...

    async def get_contacts(self, owner_id: str, contact_ids: list[str]) -> list[Contact]: ...

    async def get_contact(self, contact_id: str) -> Optional[Contact]: ...

    async def find_contacts_by_phone(self, digits: str) -> list[Contact]: ...

    async def set_opted_out(self, contact_id: str, opted_out: bool = True) -> None: ...

    async def get_confirmed_windows(
        self, contact_ids: list[str], exclude_job_id: str,
    ) -> dict[str, list[tuple[datetime, datetime]]]:
        """Time windows of other jobs each contact is confirmed for."""
        ...

    async def count_confirmed(self, job_id: str) -> int: ...

    async def ensure_availability(self, job_id: str, contact_id: str) -> bool:
        """Create a no_reply row if none exists. True if created."""
        ...

    async def update_availability(
        self, job_id: str, contact_id: str, status: str, shift_preference: Optional[str] = None,
    ) -> Availability: ...

    async def claim_contact(
        self, job_id: str, contact_id: str, campaign_id: str, ttl_seconds: int,
    ) -> bool:
        """Claim a (job, contact) pair for one campaign. False if another campaign holds it."""
        ...

    async def create_campaign(
        self,
        owner_id: str,
        job_id: str,
        template_id: Optional[str],
        custom_message: Optional[str] = None,
    ) -> Campaign: ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]: ...

    async def list_campaign_ids_for_job(self, job_id: str) -> list[str]: ...

    async def create_message(
        self,
        owner_id: str,
        contact_id: str,
        *,
        direction: str,
        channel: str,
        content: str,
        status: str,
        job_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        provider_sid: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Message: ...

    async def latest_outbound_job_id(self, contact_id: str) -> Optional[str]: ...


class AsyncDeliveryRepository(Protocol):
    async def get_device_tokens(self, contact_ids: list[str]) -> list[DeviceToken]: ...

    async def upsert_device_token(self, contact_id: str, token: str, platform: str) -> DeviceToken: ...

    async def remove_device_token(self, token: str) -> bool: ...

    async def create_push_delivery(
        self,
        contact_id: str,
        job_id: str,
        campaign_id: Optional[str],
        device_token: str,
        notification_id: str,
    ) -> PushNotificationDelivery: ...

    async def claim_due_fallbacks(
        self, campaign_id: str, older_than_seconds: int,
    ) -> list[PushNotificationDelivery]:
        """Atomically move due ``sent`` deliveries to ``sms_fallback`` and return them."""
        ...

    async def mark_fallback_result(
        self, delivery_id: str, status: str, sms_sent_at: Optional[datetime],
    ) -> None: ...

    async def confirm_delivered(
        self, notification_id: str, contact_id: str,
    ) -> Optional[PushNotificationDelivery]:
        """Move a ``sent`` delivery to ``delivered``. None if missing, foreign or already final."""
        ...

    async def get_delivery(self, notification_id: str) -> Optional[PushNotificationDelivery]: ...


# ============================================================================
# TASK QUEUE
# ============================================================================

class AsyncTaskQueue(Protocol):
    async def enqueue(
        self,
        owner_id: str,
        task_type: str,
        payload: dict,
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str: ...

    async def cancel_pending(self, task_type: str, campaign_ids: list[str]) -> int: ...


# ============================================================================
# GATEWAYS
# ============================================================================

@dataclass
class PushResult:
    delivered: bool
    invalid_token: bool = False
    error: Optional[str] = None


class SmsGateway(Protocol):
    def is_configured(self) -> bool: ...

    async def send(self, to_e164: str, body: str) -> str:
        """Send one SMS, return the provider sid. Unconfigured gateways log a dev-mode send."""
        ...


class PushGateway(Protocol):
    def is_available(self, platform: str) -> bool: ...

    async def send(
        self, platform: str, token: str, title: str, body: str, data: dict,
    ) -> PushResult: ...


class DistanceService(Protocol):
    async def batch_distances(
        self, origin: str, destinations: list[tuple[str, str]],
    ) -> dict[str, float]:
        """Map destination id -> meters. Missing ids had no usable result."""
        ...
