# tests/test_scheduler.py
"""Dispatch scheduler: batch sizing, stop conditions, per-batch debit, continuations."""
from unittest.mock import AsyncMock

import pytest

from app.core.domain import AvailabilityStatus, Campaign, TaskType
from app.core.errors import InsufficientCredits
from tests.fakes import make_contact, make_job

CONTENT = "Hi {FirstName}, {JobName} on {Date}. Reply Y/N"


@pytest.fixture
def setup(roster, clock, owner_id):
    job = roster.add_job(make_job())
    campaign = Campaign(id="camp-1", owner_id=owner_id, job_id=job.id, sent_at=clock(), custom_message=CONTENT)
    roster.campaigns[campaign.id] = campaign
    return job, campaign


def _contacts(roster, count, prefix="c"):
    return [roster.add_contact(make_contact(f"{prefix}{i}")) for i in range(count)]


class TestBatchSizing:
    @pytest.mark.asyncio
    async def test_first_batch_of_five_then_continuation(self, scheduler, roster, ledger, sms, tasks, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 20)
        queue = _contacts(roster, 12)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, queue, remaining_credits=12)

        assert outcome.invited == [c.id for c in queue[:5]]
        assert len(sms.sent) == 5
        assert outcome.remaining_credits == 7
        assert outcome.stopped_reason is None
        [task] = tasks.pending(TaskType.DISPATCH_BATCH.value)
        assert task["id"] == outcome.next_task_id
        assert task["delay_seconds"] == 120
        assert task["payload"] == {
            "campaign_id": campaign.id,
            "job_id": job.id,
            "contact_ids": [c.id for c in queue[5:]],
            "remaining_credits": 7,
            "batch_number": 2,
        }

    @pytest.mark.asyncio
    async def test_batch_limited_by_live_balance(self, scheduler, roster, ledger, sms, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "trial", 3)
        queue = _contacts(roster, 8)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, queue, remaining_credits=8)

        assert len(outcome.invited) == 3
        assert len(sms.sent) == 3
        assert await ledger.available(owner_id) == 0

    @pytest.mark.asyncio
    async def test_batch_limited_by_campaign_budget(self, scheduler, roster, ledger, tasks, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 50)
        queue = _contacts(roster, 6)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, queue, remaining_credits=2)

        assert len(outcome.invited) == 2
        assert outcome.remaining_credits == 0
        assert outcome.stopped_reason == "credits_exhausted"
        assert tasks.pending() == []

    @pytest.mark.asyncio
    async def test_messages_are_personalised(self, scheduler, roster, ledger, sms, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 5)
        [contact] = _contacts(roster, 1)

        await scheduler.run_batch(job, campaign, CONTENT, [contact], remaining_credits=1)

        assert sms.sent[0][1] == "Hi C0, Stage Crew on March 5, 2025. Reply Y/N"
        assert roster.availability[(job.id, contact.id)].status == AvailabilityStatus.NO_REPLY.value


class TestStops:
    @pytest.mark.asyncio
    async def test_no_credit_sends_nothing(self, scheduler, roster, sms, setup):
        job, campaign = setup
        queue = _contacts(roster, 3)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, queue, remaining_credits=3)

        assert outcome.stopped_reason == "credits_exhausted"
        assert outcome.remaining_contact_ids == [c.id for c in queue]
        assert sms.sent == []

    @pytest.mark.asyncio
    async def test_headcount_met_sends_nothing(self, scheduler, roster, ledger, sms, owner_id):
        job = roster.add_job(make_job(required_headcount=1))
        campaign = await roster.create_campaign(owner_id, job.id, None, CONTENT)
        roster.set_status(job.id, "someone", AvailabilityStatus.CONFIRMED.value)
        await ledger.grant(owner_id, "bundle", 10)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, _contacts(roster, 2), remaining_credits=2)

        assert outcome.stopped_reason == "headcount_met"
        assert sms.sent == []

    @pytest.mark.asyncio
    async def test_debit_shortfall_stops_campaign(self, scheduler, roster, ledger, sms, tasks, setup, owner_id, monkeypatch):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)
        monkeypatch.setattr(ledger, "consume", AsyncMock(side_effect=InsufficientCredits(available=0, required=5)))

        outcome = await scheduler.run_batch(job, campaign, CONTENT, _contacts(roster, 8), remaining_credits=8)

        assert len(sms.sent) == 5
        assert outcome.stopped_reason == "debit_shortfall"
        assert outcome.next_task_id is None
        assert tasks.pending() == []


class TestDebit:
    @pytest.mark.asyncio
    async def test_one_debit_per_batch(self, scheduler, roster, ledger, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)

        await scheduler.run_batch(job, campaign, CONTENT, _contacts(roster, 5), remaining_credits=5)

        [tx] = await ledger.history(owner_id)
        assert tx.delta == -5
        assert tx.reason == f"Campaign {campaign.id} for job {job.id}"

    @pytest.mark.asyncio
    async def test_push_and_failed_sms_not_billed(self, scheduler, roster, deliveries, ledger, sms, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)
        pushed, failed, texted = _contacts(roster, 3)
        await deliveries.upsert_device_token(pushed.id, "tok-1", "ios")
        sms.fail_numbers.add(f"+1{failed.phone}")

        outcome = await scheduler.run_batch(job, campaign, CONTENT, [pushed, failed, texted], remaining_credits=3)

        assert outcome.report.fallback_scheduled == [pushed.id]
        assert outcome.report.failed == [failed.id]
        assert outcome.report.billable == [texted.id]
        assert await ledger.available(owner_id) == 9

    @pytest.mark.asyncio
    async def test_nothing_billable_no_transaction(self, scheduler, roster, ledger, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)
        portal = roster.add_contact(make_contact("p", has_login=True))

        await scheduler.run_batch(job, campaign, CONTENT, [portal], remaining_credits=1)

        assert await ledger.history(owner_id) == []


class TestSkips:
    @pytest.mark.asyncio
    async def test_claimed_and_opted_out_do_not_use_slots(self, scheduler, roster, ledger, sms, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)
        queue = _contacts(roster, 7)
        queue[0].is_opted_out = True
        await roster.claim_contact(job.id, queue[1].id, "other-campaign", 900)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, queue, remaining_credits=7)

        assert outcome.report.skipped == [queue[0].id, queue[1].id]
        assert outcome.invited == [c.id for c in queue[2:7]]
        assert len(sms.sent) == 5
        assert outcome.remaining_contact_ids == []

    @pytest.mark.asyncio
    async def test_expired_claim_can_be_taken(self, scheduler, roster, ledger, clock, setup, owner_id):
        job, campaign = setup
        await ledger.grant(owner_id, "bundle", 10)
        [contact] = _contacts(roster, 1)
        await roster.claim_contact(job.id, contact.id, "other-campaign", 900)
        clock.advance(901)

        outcome = await scheduler.run_batch(job, campaign, CONTENT, [contact], remaining_credits=1)

        assert outcome.invited == [contact.id]
