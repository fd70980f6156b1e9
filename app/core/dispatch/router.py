# app/core/dispatch/router.py
"""
Delivery router: push first, SMS when push is unavailable or unconfirmed.

For each contact in a batch:
- registered device token + configured provider: push, tracked as a
  ``sent`` PushNotificationDelivery; a fallback check is queued
- portal user (``has_login``): in-app message only, never SMS
- otherwise: SMS straight away

The fallback check claims every delivery of the campaign still ``sent``
after the observation window (atomically moving it to ``sms_fallback``),
so a delivery receipt and the fallback SMS can never both happen.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Callable, Optional

from app.core.domain import (
    Channel,
    Contact,
    DeliveryReport,
    DeliveryStatus,
    DeviceToken,
    MessageStatus,
    Notification,
    PushNotificationDelivery,
    TaskType,
)
from app.core.errors import DispatchError, InsufficientCredits
from app.core.ledger import CreditLedger, utcnow
from app.core.phone import to_e164
from app.core.ports import (
    AsyncDeliveryRepository,
    AsyncRosterRepository,
    AsyncTaskQueue,
    PushGateway,
    SmsGateway,
)
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

PUSH_FALLBACK_DELAY_SECONDS = 30


class DeliveryRouter:
    """Routes one notification to a set of contacts."""

    def __init__(
        self,
        roster: AsyncRosterRepository,
        deliveries: AsyncDeliveryRepository,
        ledger: CreditLedger,
        sms: SmsGateway,
        push: PushGateway,
        tasks: AsyncTaskQueue,
        *,
        fallback_delay_seconds: int = PUSH_FALLBACK_DELAY_SECONDS,
        notification_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._roster = roster
        self._deliveries = deliveries
        self._ledger = ledger
        self._sms = sms
        self._push = push
        self._tasks = tasks
        self._fallback_delay = fallback_delay_seconds
        self._new_notification_id = notification_id_factory

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def deliver(self, contacts: list[Contact], notification: Notification) -> DeliveryReport:
        """
        Send ``notification`` to every contact; never raises for per-contact failures.

        Push and SMS sends run concurrently.  Contacts whose push was accepted
        are listed in ``fallback_scheduled`` and a fallback check is queued.
        """
        report = DeliveryReport()
        if not contacts:
            return report

        tokens: dict[str, list[DeviceToken]] = {}
        for token in await self._deliveries.get_device_tokens([c.id for c in contacts]):
            tokens.setdefault(token.contact_id, []).append(token)

        results = await asyncio.gather(
            *(self._deliver_one(c, notification, tokens.get(c.id, [])) for c in contacts)
        )
        for partial in results:
            report.merge(partial)

        if report.fallback_scheduled:
            await self._tasks.enqueue(
                notification.owner_id,
                TaskType.PUSH_FALLBACK_CHECK.value,
                {
                    "campaign_id": notification.campaign_id,
                    "job_id": notification.job_id,
                    "sms_bodies": {cid: notification.sms_body(cid) for cid in report.fallback_scheduled},
                },
                delay_seconds=self._fallback_delay,
            )

        logger.info(
            f"Batch delivered: push={len(report.fallback_scheduled)}, sms={len(report.billable)}, "
            f"portal={len(report.portal)}, failed={len(report.failed)}",
            extra={"campaign_id": notification.campaign_id, "job_id": notification.job_id},
        )
        return report

    async def _deliver_one(
        self,
        contact: Contact,
        notification: Notification,
        tokens: list[DeviceToken],
    ) -> DeliveryReport:
        report = DeliveryReport()
        log = LogContext(logger, contact_id=contact.id, campaign_id=notification.campaign_id)
        body = notification.sms_body(contact.id)
        # Devices echo notificationId back on the receipt and action callbacks
        notification_id = self._new_notification_id()
        data = {**notification.data, "contactId": contact.id, "notificationId": notification_id}

        for token in tokens:
            if not self._push.is_available(token.platform):
                continue
            result = await self._push.send(token.platform, token.token, notification.title, body, data)
            if result.delivered:
                await self._deliveries.create_push_delivery(
                    contact.id, notification.job_id, notification.campaign_id,
                    token.token, notification_id,
                )
                await self._record(contact, notification, Channel.PUSH, body, MessageStatus.SENT)
                AppMetrics.message_sent(Channel.PUSH.value)
                report.fallback_scheduled.append(contact.id)
                return report
            if result.invalid_token:
                log.warning(f"Skipping invalid {token.platform} token {token.token[:8]}...")

        if contact.has_login:
            await self._record(contact, notification, Channel.PORTAL, body, MessageStatus.SENT)
            report.portal.append(contact.id)
            report.delivered.append(contact.id)
            return report

        if await self._send_sms(contact, notification, body):
            report.delivered.append(contact.id)
            report.billable.append(contact.id)
        else:
            report.failed.append(contact.id)
        return report

    async def _send_sms(self, contact: Contact, notification: Notification, body: str) -> bool:
        try:
            sid = await self._sms.send(to_e164(contact.country_code, contact.phone), body)
        except DispatchError as exc:
            LogContext(logger, contact_id=contact.id, campaign_id=notification.campaign_id).warning(
                f"SMS send failed: {exc.detail}",
            )
            await self._record(
                contact, notification, Channel.SMS, body, MessageStatus.FAILED, error=exc.detail,
            )
            AppMetrics.message_failed(Channel.SMS.value)
            return False

        await self._record(contact, notification, Channel.SMS, body, MessageStatus.SENT, sid=sid)
        AppMetrics.message_sent(Channel.SMS.value)
        return True

    async def _record(
        self,
        contact: Contact,
        notification: Notification,
        channel: Channel,
        body: str,
        status: MessageStatus,
        *,
        sid: Optional[str] = None,
        error: Optional[str] = None,
    ):
        return await self._roster.create_message(
            notification.owner_id,
            contact.id,
            direction="outbound",
            channel=channel.value,
            content=body,
            status=status.value,
            job_id=notification.job_id,
            campaign_id=notification.campaign_id,
            provider_sid=sid,
            error_message=error,
        )

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    async def process_fallbacks(
        self,
        owner_id: str,
        campaign_id: str,
        job_id: str,
        sms_bodies: dict[str, str],
    ) -> DeliveryReport:
        """
        SMS every contact whose push for this campaign is still unconfirmed.

        Each fallback SMS costs 1 credit; without credit the delivery is
        marked ``failed`` instead.
        """
        report = DeliveryReport()
        due = await self._deliveries.claim_due_fallbacks(campaign_id, self._fallback_delay)
        if not due:
            AppMetrics.push_fallback("none_due")
            return report

        contacts = {
            c.id: c for c in await self._roster.get_contacts(owner_id, [d.contact_id for d in due])
        }
        notification = Notification(
            owner_id=owner_id, job_id=job_id, campaign_id=campaign_id,
            title="", body="", sms_body_by_contact=sms_bodies,
        )
        for delivery in due:
            await self._fallback_one(delivery, contacts.get(delivery.contact_id), notification, report)

        logger.info(
            f"Push fallback: {len(due)} unconfirmed, sms={len(report.billable)}, "
            f"portal={len(report.portal)}, failed={len(report.failed)}",
            extra={"campaign_id": campaign_id, "owner_id": owner_id},
        )
        return report

    async def _fallback_one(
        self,
        delivery: PushNotificationDelivery,
        contact: Optional[Contact],
        notification: Notification,
        report: DeliveryReport,
    ) -> None:
        if contact is None or contact.is_opted_out:
            await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.FAILED.value, None)
            report.skipped.append(delivery.contact_id)
            AppMetrics.push_fallback("skipped")
            return

        body = notification.sms_body(contact.id)
        if not body:
            await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.FAILED.value, None)
            report.failed.append(contact.id)
            AppMetrics.push_fallback("no_body")
            return

        if contact.has_login:
            # Already visible in the portal; no SMS for portal users
            await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.SMS_FALLBACK.value, None)
            report.portal.append(contact.id)
            AppMetrics.push_fallback("portal")
            return

        if await self._ledger.available(notification.owner_id) < 1:
            await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.FAILED.value, None)
            report.failed.append(contact.id)
            AppMetrics.push_fallback("no_credit")
            return

        if not await self._send_sms(contact, notification, body):
            await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.FAILED.value, None)
            report.failed.append(contact.id)
            AppMetrics.push_fallback("sms_failed")
            return

        await self._deliveries.mark_fallback_result(delivery.id, DeliveryStatus.SMS_FALLBACK.value, utcnow())
        report.delivered.append(contact.id)
        report.billable.append(contact.id)
        AppMetrics.push_fallback("sms_sent")
        try:
            await self._ledger.consume(
                notification.owner_id, 1,
                f"Push fallback SMS for campaign {notification.campaign_id}",
            )
        except InsufficientCredits as exc:
            AppMetrics.dispatch_stopped("fallback_unbilled")
            LogContext(logger, contact_id=contact.id, campaign_id=notification.campaign_id).error(
                f"Fallback SMS sent but not billed: {exc.detail}",
            )

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def confirm_delivery(
        self, notification_id: str, contact_id: str,
    ) -> Optional[PushNotificationDelivery]:
        """Record a device receipt. None when unknown, foreign, or already final."""
        delivery = await self._deliveries.confirm_delivered(notification_id, contact_id)
        if delivery is None:
            logger.info(
                f"Push receipt ignored for {notification_id[:8]} (unknown or already final)",
                extra={"contact_id": contact_id},
            )
            return None
        AppMetrics.push_fallback("receipt")
        return delivery
