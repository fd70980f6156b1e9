# tests/test_router.py
"""Delivery router: push first, SMS fallback after the observation window."""
import pytest

from app.core.domain import DeliveryStatus, MessageStatus, Notification, TaskType
from app.core.phone import to_e164
from tests.fakes import make_contact

CAMPAIGN = "camp-1"
JOB = "job-1"


def _notification(owner_id, contacts):
    return Notification(
        owner_id=owner_id,
        job_id=JOB,
        campaign_id=CAMPAIGN,
        title="New job: Stage Crew",
        body="Hi there",
        sms_body_by_contact={c.id: f"Hi {c.first_name}" for c in contacts},
        data={"type": "job_invitation", "jobId": JOB, "campaignId": CAMPAIGN},
    )


def _e164(contact):
    return to_e164(contact.country_code, contact.phone)


async def _push_to(router, deliveries, roster, owner_id, contact):
    await deliveries.upsert_device_token(contact.id, f"tok-{contact.id}", "android")
    await router.deliver([contact], _notification(owner_id, [contact]))
    [delivery] = deliveries.by_contact(contact.id)
    return delivery


async def _run_fallback(router, tasks, owner_id):
    [task] = tasks.pending(TaskType.PUSH_FALLBACK_CHECK.value)
    payload = task["payload"]
    return await router.process_fallbacks(owner_id, payload["campaign_id"], payload["job_id"], payload["sms_bodies"])


class TestDeliver:
    @pytest.mark.asyncio
    async def test_sms_when_no_device(self, router, roster, sms, tasks, owner_id):
        contact = roster.add_contact(make_contact("ann"))

        report = await router.deliver([contact], _notification(owner_id, [contact]))

        assert report.billable == [contact.id]
        assert sms.sent == [(_e164(contact), "Hi Ann")]
        [message] = roster.outbound("sms")
        assert message.status == MessageStatus.SENT.value
        assert message.provider_sid == "SM0001"
        assert message.campaign_id == CAMPAIGN
        assert tasks.pending() == []

    @pytest.mark.asyncio
    async def test_push_queues_fallback_check(self, router, roster, deliveries, push, sms, tasks, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await deliveries.upsert_device_token(contact.id, "tok-ann", "ios")

        report = await router.deliver([contact], _notification(owner_id, [contact]))

        assert report.fallback_scheduled == [contact.id]
        assert report.billable == []
        assert sms.sent == []
        assert push.sent[0]["data"]["contactId"] == contact.id
        [delivery] = deliveries.by_contact(contact.id)
        assert push.sent[0]["data"]["notificationId"] == delivery.notification_id
        assert delivery.status == DeliveryStatus.SENT.value
        [task] = tasks.pending(TaskType.PUSH_FALLBACK_CHECK.value)
        assert task["delay_seconds"] == 30
        assert task["payload"] == {
            "campaign_id": CAMPAIGN,
            "job_id": JOB,
            "sms_bodies": {contact.id: "Hi Ann"},
        }

    @pytest.mark.asyncio
    async def test_device_receipt_with_pushed_id_prevents_fallback(
        self, router, roster, deliveries, ledger, push, sms, tasks, clock, owner_id,
    ):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        await deliveries.upsert_device_token(contact.id, "tok-ann", "android")
        await router.deliver([contact], _notification(owner_id, [contact]))

        # What the device received is all it can report back
        pushed_id = push.sent[0]["data"]["notificationId"]
        confirmed = await router.confirm_delivery(pushed_id, contact.id)
        clock.advance(30)
        report = await _run_fallback(router, tasks, owner_id)

        assert confirmed is not None
        assert report.billable == []
        assert sms.sent == []
        assert await ledger.available(owner_id) == 2

    @pytest.mark.asyncio
    async def test_retried_token_carries_same_id(self, router, roster, deliveries, push, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await deliveries.upsert_device_token(contact.id, "down", "ios")
        await deliveries.upsert_device_token(contact.id, "up", "android")
        push.failing_tokens.add("down")

        await router.deliver([contact], _notification(owner_id, [contact]))

        [delivery] = deliveries.by_contact(contact.id)
        assert [p["data"]["notificationId"] for p in push.sent] == [delivery.notification_id] * 2

    @pytest.mark.asyncio
    async def test_invalid_token_then_valid_token(self, router, roster, deliveries, push, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await deliveries.upsert_device_token(contact.id, "stale", "ios")
        await deliveries.upsert_device_token(contact.id, "fresh", "android")
        push.invalid_tokens.add("stale")

        report = await router.deliver([contact], _notification(owner_id, [contact]))

        assert report.fallback_scheduled == [contact.id]
        assert [d.device_token for d in deliveries.by_contact(contact.id)] == ["fresh"]
        assert "stale" in deliveries.tokens

    @pytest.mark.asyncio
    async def test_unavailable_provider_falls_to_sms(self, router, roster, deliveries, push, sms, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await deliveries.upsert_device_token(contact.id, "tok", "ios")
        push.platforms = {"android"}

        report = await router.deliver([contact], _notification(owner_id, [contact]))

        assert report.billable == [contact.id]
        assert push.sent == []
        assert len(sms.sent) == 1

    @pytest.mark.asyncio
    async def test_portal_user_gets_no_sms(self, router, roster, sms, owner_id):
        contact = roster.add_contact(make_contact("pat", has_login=True))

        report = await router.deliver([contact], _notification(owner_id, [contact]))

        assert report.portal == [contact.id]
        assert report.billable == []
        assert sms.sent == []
        assert roster.outbound("portal")[0].content == "Hi Pat"

    @pytest.mark.asyncio
    async def test_sms_failure_recorded(self, router, roster, sms, owner_id):
        good = roster.add_contact(make_contact("ann"))
        bad = roster.add_contact(make_contact("bob"))
        sms.fail_numbers.add(_e164(bad))

        report = await router.deliver([good, bad], _notification(owner_id, [good, bad]))

        assert report.billable == [good.id]
        assert report.failed == [bad.id]
        failed = [m for m in roster.outbound("sms") if m.status == MessageStatus.FAILED.value]
        assert [m.contact_id for m in failed] == [bad.id]
        assert "rejected" in failed[0].error_message

    @pytest.mark.asyncio
    async def test_empty_batch(self, router, owner_id):
        report = await router.deliver([], _notification(owner_id, []))
        assert report.delivered == [] and report.fallback_scheduled == []


class TestFallback:
    @pytest.mark.asyncio
    async def test_unconfirmed_push_gets_sms_and_is_billed(
        self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id,
    ):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(30)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.billable == [contact.id]
        assert sms.sent == [(_e164(contact), "Hi Ann")]
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.SMS_FALLBACK.value
        assert deliveries.deliveries[delivery.id].sms_fallback_sent_at is not None
        assert await ledger.available(owner_id) == 1

    @pytest.mark.asyncio
    async def test_receipt_before_window_prevents_sms(self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)

        confirmed = await router.confirm_delivery(delivery.notification_id, contact.id)
        clock.advance(30)
        report = await _run_fallback(router, tasks, owner_id)

        assert confirmed.status == DeliveryStatus.DELIVERED.value
        assert report.billable == []
        assert sms.sent == []
        assert await ledger.available(owner_id) == 2

    @pytest.mark.asyncio
    async def test_receipt_after_fallback_ignored(self, router, roster, deliveries, ledger, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(31)
        await _run_fallback(router, tasks, owner_id)

        assert await router.confirm_delivery(delivery.notification_id, contact.id) is None
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.SMS_FALLBACK.value

    @pytest.mark.asyncio
    async def test_not_yet_due(self, router, roster, deliveries, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(10)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.delivered == [] and report.failed == []
        assert sms.sent == []

    @pytest.mark.asyncio
    async def test_no_credit_marks_failed(self, router, roster, deliveries, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(30)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.failed == [contact.id]
        assert sms.sent == []
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_fallback_sms_failure_not_billed(self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        sms.fail_numbers.add(_e164(contact))
        clock.advance(30)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.failed == [contact.id]
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.FAILED.value
        assert await ledger.available(owner_id) == 2

    @pytest.mark.asyncio
    async def test_portal_user_not_texted(self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("pat", has_login=True))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(30)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.portal == [contact.id]
        assert sms.sent == []
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.SMS_FALLBACK.value
        assert await ledger.available(owner_id) == 2

    @pytest.mark.asyncio
    async def test_opted_out_since_push_skipped(self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 2)
        delivery = await _push_to(router, deliveries, roster, owner_id, contact)
        await roster.set_opted_out(contact.id, True)
        clock.advance(30)

        report = await _run_fallback(router, tasks, owner_id)

        assert report.skipped == [contact.id]
        assert sms.sent == []
        assert deliveries.deliveries[delivery.id].status == DeliveryStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, router, roster, deliveries, ledger, sms, tasks, clock, owner_id):
        contact = roster.add_contact(make_contact("ann"))
        await ledger.grant(owner_id, "trial", 5)
        await _push_to(router, deliveries, roster, owner_id, contact)
        clock.advance(30)

        await _run_fallback(router, tasks, owner_id)
        await _run_fallback(router, tasks, owner_id)

        assert len(sms.sent) == 1
        assert await ledger.available(owner_id) == 4
