# app/core/dispatch/scheduler.py
"""
Dispatch scheduler: metered invitation batches.

A campaign walks its ranked contact list in batches of at most 5,
never more than the credit budget or the owner's live balance allows.
Before every batch the job's headcount is re-checked; a filled job
sends nothing further.  Each batch debits the ledger once, for the SMS
actually sent, and queues the next batch as a durable ``dispatch_batch``
task two minutes out.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from app.core.domain import Campaign, Contact, DeliveryReport, Job, Notification, TaskType
from app.core.dispatch.router import DeliveryRouter
from app.core.errors import InsufficientCredits
from app.core.ledger import CreditLedger
from app.core.ports import AsyncRosterRepository, AsyncTaskQueue
from app.core.templates import render_template
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

MESSAGE_BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 120
DISPATCH_CLAIM_TTL_SECONDS = 900


@dataclass
class BatchOutcome:
    """Result of one batch run."""
    report: DeliveryReport = field(default_factory=DeliveryReport)
    invited: list[str] = field(default_factory=list)
    remaining_contact_ids: list[str] = field(default_factory=list)
    remaining_credits: int = 0
    stopped_reason: Optional[str] = None
    next_task_id: Optional[str] = None

    @property
    def sent_count(self) -> int:
        return len(self.invited)


class DispatchScheduler:
    """
    Runs campaign batches.

    Usage:
        scheduler = DispatchScheduler(roster, ledger, router, tasks)
        outcome = await scheduler.run_batch(job, campaign, content, contacts, remaining_credits=12)
    """

    def __init__(
        self,
        roster: AsyncRosterRepository,
        ledger: CreditLedger,
        router: DeliveryRouter,
        tasks: AsyncTaskQueue,
        *,
        batch_size: int = MESSAGE_BATCH_SIZE,
        batch_delay_seconds: int = BATCH_DELAY_SECONDS,
        claim_ttl_seconds: int = DISPATCH_CLAIM_TTL_SECONDS,
    ) -> None:
        self._roster = roster
        self._ledger = ledger
        self._router = router
        self._tasks = tasks
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self._claim_ttl = claim_ttl_seconds

    async def headcount_met(self, job: Job) -> bool:
        if not job.required_headcount:
            return False
        return await self._roster.count_confirmed(job.id) >= job.required_headcount

    def build_notification(self, job: Job, campaign: Campaign, content: str, contacts: list[Contact]) -> Notification:
        return Notification(
            owner_id=campaign.owner_id,
            job_id=job.id,
            campaign_id=campaign.id,
            title=f"New job: {job.name}",
            body=render_template(content, contacts[0], job) if contacts else content,
            sms_body_by_contact={c.id: render_template(content, c, job) for c in contacts},
            data={"type": "job_invitation", "jobId": job.id, "campaignId": campaign.id},
        )

    async def _stop_reason(self, job: Job, remaining_credits: int) -> Optional[str]:
        if remaining_credits <= 0:
            return "credits_exhausted"
        if await self.headcount_met(job):
            return "headcount_met"
        return None

    async def run_batch(
        self,
        job: Job,
        campaign: Campaign,
        content: str,
        queue: list[Contact],
        *,
        remaining_credits: int,
        batch_number: int = 1,
    ) -> BatchOutcome:
        """
        Send one batch from the front of ``queue`` and schedule the next.

        Never raises for per-contact failures.  A debit that finds the
        balance already spent elsewhere stops the campaign after this batch.
        """
        log = LogContext(logger, owner_id=campaign.owner_id, job_id=job.id, campaign_id=campaign.id)
        outcome = BatchOutcome(remaining_credits=remaining_credits)

        reason = await self._stop_reason(job, remaining_credits)
        if reason is None:
            available = await self._ledger.available(campaign.owner_id)
            size = min(self.batch_size, remaining_credits, available)
            if size <= 0:
                reason = "credits_exhausted"
        if reason is not None:
            outcome.stopped_reason = reason
            outcome.remaining_contact_ids = [c.id for c in queue]
            AppMetrics.dispatch_stopped(reason)
            log.info(f"Dispatch stopped before batch {batch_number}: {reason}")
            return outcome

        batch: list[Contact] = []
        position = 0
        while position < len(queue) and len(batch) < size:
            contact = queue[position]
            position += 1
            if contact.is_opted_out:
                outcome.report.skipped.append(contact.id)
                continue
            if not await self._roster.claim_contact(job.id, contact.id, campaign.id, self._claim_ttl):
                log.bind(contact_id=contact.id).info("Contact held by another campaign, skipped")
                outcome.report.skipped.append(contact.id)
                continue
            await self._roster.ensure_availability(job.id, contact.id)
            batch.append(contact)

        rest = queue[position:]
        outcome.remaining_contact_ids = [c.id for c in rest]

        with AppMetrics.track_batch_time():
            report = await self._router.deliver(batch, self.build_notification(job, campaign, content, batch))
        outcome.report.merge(report)
        outcome.invited = [c.id for c in batch]
        outcome.remaining_credits = remaining_credits - len(batch)

        billable = len(report.billable)
        if billable:
            try:
                await self._ledger.consume(
                    campaign.owner_id, billable, f"Campaign {campaign.id} for job {job.id}",
                )
            except InsufficientCredits as exc:
                outcome.stopped_reason = "debit_shortfall"
                AppMetrics.dispatch_stopped("debit_shortfall")
                log.error(f"Post-batch debit failed, stopping campaign: {exc.detail}")

        log.info(
            f"Batch {batch_number}: invited={len(batch)}, billable={billable}, "
            f"skipped={len(outcome.report.skipped)}, queued={len(rest)}",
        )

        if outcome.stopped_reason is None and rest:
            reason = await self._stop_reason(job, outcome.remaining_credits)
            if reason is not None:
                outcome.stopped_reason = reason
                AppMetrics.dispatch_stopped(reason)
            else:
                outcome.next_task_id = await self._tasks.enqueue(
                    campaign.owner_id,
                    TaskType.DISPATCH_BATCH.value,
                    {
                        "campaign_id": campaign.id,
                        "job_id": job.id,
                        "contact_ids": outcome.remaining_contact_ids,
                        "remaining_credits": outcome.remaining_credits,
                        "batch_number": batch_number + 1,
                    },
                    delay_seconds=self.batch_delay_seconds,
                )
        return outcome
