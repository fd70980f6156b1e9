# app/core/dispatch/services.py
"""
Dispatch orchestration.

``DispatchService`` is what the HTTP layer and the task handlers call:
it loads the job and message content, ranks the contacts, caps the list
at what the owner can afford, creates the campaign and runs the first
batch inline.  Later batches and push fallback checks arrive here again
from the task worker.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

from app.config import settings
from app.core.domain import (
    AvailabilityStatus,
    Campaign,
    DeliveryReport,
    DeviceToken,
    Job,
    Platform,
    TaskType,
)
from app.core.dispatch.ranking import CandidateRanker
from app.core.dispatch.router import DeliveryRouter
from app.core.dispatch.scheduler import BatchOutcome, DispatchScheduler
from app.core.errors import InsufficientCredits, JobOrTemplateNotFound, NotFoundError
from app.core.ledger import CreditLedger
from app.core.ports import AsyncDeliveryRepository, AsyncRosterRepository, AsyncTaskQueue
from app.core.replies import ParsedReply, ReplyOutcome, ReplyService
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

PUSH_ACTIONS = {
    "accept": AvailabilityStatus.CONFIRMED.value,
    "decline": AvailabilityStatus.DECLINED.value,
}


@dataclass
class DispatchSummary:
    campaign_id: str
    queued: int
    batch_size: int
    batch_delay_seconds: int
    pending_batches: int
    first_batch: dict[str, int] = field(default_factory=dict)
    stopped_reason: Optional[str] = None


def _batch_counts(report: DeliveryReport) -> dict[str, int]:
    return {
        "push_sent": len(report.fallback_scheduled),
        "sms_sent": len(report.billable),
        "portal": len(report.portal),
        "failed": len(report.failed),
        "skipped": len(report.skipped),
    }


class DispatchService:
    """Entry point for dispatch requests, continuations and push callbacks."""

    def __init__(
        self,
        roster: AsyncRosterRepository,
        deliveries: AsyncDeliveryRepository,
        ledger: CreditLedger,
        ranker: CandidateRanker,
        scheduler: DispatchScheduler,
        router: DeliveryRouter,
        tasks: AsyncTaskQueue,
        replies: ReplyService,
    ) -> None:
        self._roster = roster
        self._deliveries = deliveries
        self._ledger = ledger
        self._ranker = ranker
        self._scheduler = scheduler
        self._router = router
        self._tasks = tasks
        self._replies = replies

    async def _load_content(
        self,
        owner_id: str,
        template_id: Optional[str],
        custom_message: Optional[str],
    ) -> str:
        if template_id:
            template = await self._roster.get_template(owner_id, template_id)
            if template is None:
                raise JobOrTemplateNotFound(f"Template {template_id} not found")
            return template.content
        if custom_message and custom_message.strip():
            return custom_message
        raise JobOrTemplateNotFound("Either template_id or custom_message is required")

    async def _load_job(self, owner_id: str, job_id: str) -> Job:
        job = await self._roster.get_job(owner_id, job_id)
        if job is None:
            raise JobOrTemplateNotFound(f"Job {job_id} not found")
        return job

    async def dispatch(
        self,
        owner_id: str,
        job_id: str,
        contact_ids: list[str],
        *,
        template_id: Optional[str] = None,
        custom_message: Optional[str] = None,
    ) -> DispatchSummary:
        """
        Start a campaign for ``job_id`` over ``contact_ids``.

        Raises:
            JobOrTemplateNotFound: job or template missing
            InsufficientCredits: the owner has no spendable credit
        """
        job = await self._load_job(owner_id, job_id)
        content = await self._load_content(owner_id, template_id, custom_message)

        available = await self._ledger.available(owner_id)
        if available <= 0:
            raise InsufficientCredits(available=available, required=1)

        contacts = await self._roster.get_contacts(owner_id, list(dict.fromkeys(contact_ids)))
        ranked = await self._ranker.rank(contacts, job)
        eligible = [c.contact for c in ranked if not c.within_blackout]
        queued = eligible[:available]

        campaign = await self._roster.create_campaign(owner_id, job.id, template_id, custom_message)
        logger.info(
            f"Campaign created: {len(contacts)} requested, {len(ranked)} ranked, "
            f"{len(eligible)} eligible, {len(queued)} affordable",
            extra={"owner_id": owner_id, "job_id": job.id, "campaign_id": campaign.id},
        )

        outcome = await self._scheduler.run_batch(
            job, campaign, content, queued, remaining_credits=len(queued),
        )
        pending = len(outcome.remaining_contact_ids) if outcome.next_task_id else 0
        return DispatchSummary(
            campaign_id=campaign.id,
            queued=len(queued),
            batch_size=self._scheduler.batch_size,
            batch_delay_seconds=self._scheduler.batch_delay_seconds,
            pending_batches=math.ceil(pending / self._scheduler.batch_size),
            first_batch=_batch_counts(outcome.report),
            stopped_reason=outcome.stopped_reason,
        )

    async def _load_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._roster.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def continue_campaign(self, payload: dict[str, Any]) -> BatchOutcome:
        """Run the next queued batch of a campaign (``dispatch_batch`` task)."""
        campaign = await self._load_campaign(payload["campaign_id"])
        job = await self._load_job(campaign.owner_id, campaign.job_id)
        content = await self._load_content(campaign.owner_id, campaign.template_id, campaign.custom_message)

        contact_ids = list(payload.get("contact_ids") or [])
        by_id = {c.id: c for c in await self._roster.get_contacts(campaign.owner_id, contact_ids)}
        queue = [by_id[cid] for cid in contact_ids if cid in by_id]

        return await self._scheduler.run_batch(
            job,
            campaign,
            content,
            queue,
            remaining_credits=int(payload.get("remaining_credits", len(queue))),
            batch_number=int(payload.get("batch_number", 2)),
        )

    async def run_fallback_check(self, owner_id: str, payload: dict[str, Any]) -> DeliveryReport:
        """SMS contacts whose push is still unconfirmed (``push_fallback_check`` task)."""
        return await self._router.process_fallbacks(
            owner_id,
            payload["campaign_id"],
            payload["job_id"],
            dict(payload.get("sms_bodies") or {}),
        )

    async def cancel_campaign(self, campaign_id: str) -> int:
        """Drop the campaign's queued batches. Returns the number removed."""
        await self._load_campaign(campaign_id)
        cancelled = await self._tasks.cancel_pending(TaskType.DISPATCH_BATCH.value, [campaign_id])
        logger.info(f"Campaign cancelled: {cancelled} queued batch(es) removed", extra={"campaign_id": campaign_id})
        return cancelled

    # ------------------------------------------------------------------
    # Push callbacks / device tokens
    # ------------------------------------------------------------------

    async def confirm_push_delivery(self, notification_id: str, contact_id: str) -> bool:
        return await self._router.confirm_delivery(notification_id, contact_id) is not None

    async def handle_push_action(self, notification_id: str, contact_id: str, action: str) -> ReplyOutcome:
        """Accept/decline tapped on a push notification."""
        status = PUSH_ACTIONS.get(action)
        if status is None:
            raise ValueError(f"Unknown push action: {action}")

        delivery = await self._deliveries.get_delivery(notification_id)
        if delivery is None or delivery.contact_id != contact_id:
            raise NotFoundError(f"Notification {notification_id} not found for this contact")
        contact = await self._roster.get_contact(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")

        await self._router.confirm_delivery(notification_id, contact_id)
        return await self._replies.apply_response(contact, delivery.job_id, ParsedReply(status))

    async def register_device_token(self, contact_id: str, token: str, platform: str) -> DeviceToken:
        platform = Platform(platform).value
        if await self._roster.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return await self._deliveries.upsert_device_token(contact_id, token, platform)

    async def remove_device_token(self, token: str) -> bool:
        return await self._deliveries.remove_device_token(token)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

_ledger: CreditLedger | None = None
_reply_service: ReplyService | None = None
_dispatch_service: DispatchService | None = None


def get_credit_ledger() -> CreditLedger:
    global _ledger
    if _ledger is None:
        from app.infra.pg_ledger_repo_async import get_ledger_store
        _ledger = CreditLedger(get_ledger_store())
    return _ledger


def get_reply_service() -> ReplyService:
    global _reply_service
    if _reply_service is None:
        from app.infra.pg_roster_repo_async import get_roster_repo
        from app.infra.pg_task_repo_async import get_task_repo
        from app.infra.sms_gateway import get_sms_gateway
        _reply_service = ReplyService(get_roster_repo(), get_credit_ledger(), get_sms_gateway(), get_task_repo())
    return _reply_service


def get_dispatch_service() -> DispatchService:
    """Get the global dispatch service wired to PostgreSQL and the real gateways."""
    global _dispatch_service
    if _dispatch_service is None:
        from app.infra.distance_matrix import get_distance_service
        from app.infra.pg_delivery_repo_async import get_delivery_repo
        from app.infra.pg_roster_repo_async import get_roster_repo
        from app.infra.pg_task_repo_async import get_task_repo
        from app.infra.push_providers import get_push_gateway
        from app.infra.sms_gateway import get_sms_gateway

        roster = get_roster_repo()
        deliveries = get_delivery_repo()
        tasks = get_task_repo()
        ledger = get_credit_ledger()
        router = DeliveryRouter(
            roster, deliveries, ledger, get_sms_gateway(), get_push_gateway(), tasks,
            fallback_delay_seconds=settings.push_fallback_delay_seconds,
        )
        _dispatch_service = DispatchService(
            roster,
            deliveries,
            ledger,
            CandidateRanker(
                roster, get_distance_service(), threshold_meters=settings.distance_threshold_meters,
            ),
            DispatchScheduler(
                roster, ledger, router, tasks,
                batch_size=settings.dispatch_batch_size,
                batch_delay_seconds=settings.dispatch_batch_delay_seconds,
                claim_ttl_seconds=settings.dispatch_claim_ttl_seconds,
            ),
            router,
            tasks,
            get_reply_service(),
        )
    return _dispatch_service
