# app/core/replies.py
"""
Inbound reply handling.

A contact answers an invitation by SMS ("Y", "no", "2", "maybe") or by
tapping a push action.  Either way the availability row for the job is
updated, an acknowledgement SMS goes out (1 credit), and once the job's
headcount is filled the queued invitation batches for it are cancelled.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.core.domain import AvailabilityStatus, Channel, Contact, Job, MessageStatus, TaskType
from app.core.errors import DispatchError, InsufficientCredits
from app.core.ledger import CreditLedger
from app.core.phone import normalize_digits, to_e164
from app.core.ports import AsyncRosterRepository, AsyncTaskQueue, SmsGateway
from app.core.templates import format_job_date, format_job_time
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

OPT_OUT_KEYWORDS = frozenset({"stop", "unsubscribe", "cancel", "end", "quit"})

SHIFT_BY_DIGIT = {"1": "AM Shift", "2": "PM Shift", "3": "Full Day"}


@dataclass
class ParsedReply:
    status: str
    shift_preference: Optional[str] = None


def parse_reply(text: str) -> ParsedReply:
    """Map free-text reply to an availability status."""
    normalized = (text or "").strip().lower()

    if normalized in ("y", "yes", "👍"):
        return ParsedReply(AvailabilityStatus.CONFIRMED.value)
    if normalized in ("n", "no", "👎"):
        return ParsedReply(AvailabilityStatus.DECLINED.value)
    if normalized in SHIFT_BY_DIGIT:
        return ParsedReply(AvailabilityStatus.CONFIRMED.value, SHIFT_BY_DIGIT[normalized])
    if normalized in ("maybe", "m"):
        return ParsedReply(AvailabilityStatus.MAYBE.value)
    return ParsedReply(AvailabilityStatus.NO_REPLY.value)


def is_opt_out(text: str) -> bool:
    return (text or "").strip().lower() in OPT_OUT_KEYWORDS


def acknowledgement_text(contact: Contact, job: Job, parsed: ParsedReply) -> Optional[str]:
    """SMS confirming what we understood. None for replies we did not understand."""
    date = format_job_date(job)
    location = job.location or "TBC"

    if parsed.status == AvailabilityStatus.CONFIRMED.value:
        shift = f" ({parsed.shift_preference})" if parsed.shift_preference else ""
        return (
            f"Thanks {contact.first_name}! You're confirmed for {job.name}{shift} "
            f"on {date} at {format_job_time(job)}. Location: {location}. See you there!"
        )
    if parsed.status == AvailabilityStatus.DECLINED.value:
        return (
            f"Thanks for letting us know, {contact.first_name}. We've noted you're unavailable "
            f"for {job.name} on {date}. We'll contact you about future opportunities."
        )
    if parsed.status == AvailabilityStatus.MAYBE.value:
        return (
            f"Thanks {contact.first_name}. We've noted your tentative availability for "
            f"{job.name} on {date}. We'll confirm closer to the date."
        )
    return None


@dataclass
class ReplyOutcome:
    """What happened to one inbound reply (returned for logging and tests)."""
    matched: bool
    opted_out: bool = False
    contact_id: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
    acknowledged: bool = False
    batches_cancelled: int = 0


class ReplyService:
    """Applies contact replies to availability and follows up."""

    def __init__(
        self,
        roster: AsyncRosterRepository,
        ledger: CreditLedger,
        sms: SmsGateway,
        tasks: AsyncTaskQueue,
    ) -> None:
        self._roster = roster
        self._ledger = ledger
        self._sms = sms
        self._tasks = tasks

    async def handle_inbound_sms(
        self,
        from_phone: str,
        body: str,
        message_sid: Optional[str] = None,
    ) -> ReplyOutcome:
        """Process one inbound SMS from the provider webhook."""
        contacts = await self._roster.find_contacts_by_phone(normalize_digits(from_phone))
        if not contacts:
            logger.info(f"Inbound SMS from unknown number {mask_phone(from_phone)}")
            inc_counter("inbound_sms_unmatched")
            return ReplyOutcome(matched=False)

        if is_opt_out(body):
            for contact in contacts:
                await self._roster.set_opted_out(contact.id, True)
            inc_counter("contacts_opted_out")
            logger.info(
                f"Opt-out received from {mask_phone(from_phone)} ({len(contacts)} contact(s))",
            )
            return ReplyOutcome(matched=True, opted_out=True, contact_id=contacts[0].id)

        contact = contacts[0]
        job_id = await self._roster.latest_outbound_job_id(contact.id)

        await self._roster.create_message(
            contact.owner_id,
            contact.id,
            direction="inbound",
            channel=Channel.SMS.value,
            content=body,
            status=MessageStatus.RECEIVED.value,
            job_id=job_id,
            provider_sid=message_sid,
        )

        if job_id is None:
            logger.info(
                "Inbound SMS with no outstanding invitation",
                extra={"contact_id": contact.id, "owner_id": contact.owner_id},
            )
            return ReplyOutcome(matched=True, contact_id=contact.id)

        parsed = parse_reply(body)
        return await self.apply_response(contact, job_id, parsed)

    async def apply_response(
        self,
        contact: Contact,
        job_id: str,
        parsed: ParsedReply,
        *,
        acknowledge: bool = True,
    ) -> ReplyOutcome:
        """Record a parsed response for (job, contact); acknowledge and check headcount."""
        outcome = ReplyOutcome(
            matched=True, contact_id=contact.id, job_id=job_id, status=parsed.status,
        )
        if parsed.status == AvailabilityStatus.NO_REPLY.value:
            logger.info(
                "Reply not understood, availability unchanged",
                extra={"contact_id": contact.id, "job_id": job_id},
            )
            return outcome

        await self._roster.update_availability(job_id, contact.id, parsed.status, parsed.shift_preference)
        inc_counter("replies_applied", status=parsed.status)
        logger.info(
            f"Availability updated: {parsed.status}",
            extra={"contact_id": contact.id, "job_id": job_id, "owner_id": contact.owner_id},
        )

        job = await self._roster.get_job(contact.owner_id, job_id)
        if job is None:
            return outcome

        if acknowledge:
            outcome.acknowledged = await self._send_acknowledgement(contact, job, parsed)

        if parsed.status == AvailabilityStatus.CONFIRMED.value:
            outcome.batches_cancelled = await self._cancel_if_filled(job)
        return outcome

    async def _send_acknowledgement(self, contact: Contact, job: Job, parsed: ParsedReply) -> bool:
        text = acknowledgement_text(contact, job, parsed)
        if text is None or contact.is_opted_out:
            return False

        if await self._ledger.available(contact.owner_id) < 1:
            logger.warning(
                "Acknowledgement skipped: no credit",
                extra={"contact_id": contact.id, "owner_id": contact.owner_id},
            )
            return False

        try:
            sid = await self._sms.send(to_e164(contact.country_code, contact.phone), text)
        except DispatchError as exc:
            logger.warning(
                f"Acknowledgement SMS failed: {exc.detail}",
                extra={"contact_id": contact.id, "job_id": job.id},
            )
            AppMetrics.message_failed(Channel.SMS.value)
            await self._roster.create_message(
                contact.owner_id, contact.id,
                direction="outbound", channel=Channel.SMS.value, content=text,
                status=MessageStatus.FAILED.value, job_id=job.id, error_message=exc.detail,
            )
            return False

        message = await self._roster.create_message(
            contact.owner_id, contact.id,
            direction="outbound", channel=Channel.SMS.value, content=text,
            status=MessageStatus.SENT.value, job_id=job.id, provider_sid=sid,
        )
        AppMetrics.message_sent(Channel.SMS.value)
        try:
            await self._ledger.consume(
                contact.owner_id, 1, f"Acknowledgement SMS for job {job.id}", message_id=message.id,
            )
        except InsufficientCredits as exc:
            # Spent concurrently between the check and the send
            AppMetrics.dispatch_stopped("acknowledgement_unbilled")
            logger.error(
                f"Acknowledgement SMS sent but not billed: {exc.detail}",
                extra={"contact_id": contact.id, "owner_id": contact.owner_id},
            )
        return True

    async def _cancel_if_filled(self, job: Job) -> int:
        if not job.required_headcount:
            return 0
        confirmed = await self._roster.count_confirmed(job.id)
        if confirmed < job.required_headcount:
            return 0

        campaign_ids = await self._roster.list_campaign_ids_for_job(job.id)
        cancelled = await self._tasks.cancel_pending(TaskType.DISPATCH_BATCH.value, campaign_ids)
        logger.info(
            f"Headcount filled ({confirmed}/{job.required_headcount}), "
            f"cancelled {cancelled} queued batch(es)",
            extra={"job_id": job.id, "owner_id": job.owner_id},
        )
        return cancelled
