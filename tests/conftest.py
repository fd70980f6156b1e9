# tests/conftest.py
"""Pytest configuration and fixtures"""
import os
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Settings are read at import time; pin a known environment before app.* loads
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("ADMIN_TOKEN", "Xk9-test-ADMIN-token-5fQ2mZ7rT1wB8nL4")
os.environ.setdefault("REQUIRE_WEBHOOK_VALIDATION", "false")
os.environ.setdefault("ENABLE_REQUEST_LOGGING", "false")
for _var in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "GOOGLE_MAPS_API_KEY", "APNS_KEY_ID", "FCM_PROJECT_ID"):
    os.environ.pop(_var, None)

from tests.fakes import (  # noqa: E402
    OWNER,
    Clock,
    FakeDeliveryRepository,
    FakeDistanceService,
    FakeLedgerStore,
    FakePushGateway,
    FakeRosterRepository,
    FakeSmsGateway,
    FakeTaskQueue,
)


@pytest.fixture
def owner_id():
    return OWNER


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ledger_store(clock):
    return FakeLedgerStore(clock)


@pytest.fixture
def ledger(ledger_store, clock):
    from app.core.ledger import CreditLedger
    return CreditLedger(ledger_store, clock=clock)


@pytest.fixture
def roster(clock):
    return FakeRosterRepository(clock)


@pytest.fixture
def deliveries(clock):
    return FakeDeliveryRepository(clock)


@pytest.fixture
def tasks():
    return FakeTaskQueue()


@pytest.fixture
def sms():
    return FakeSmsGateway()


@pytest.fixture
def push():
    return FakePushGateway()


@pytest.fixture
def distances():
    return FakeDistanceService()


@pytest.fixture
def router(roster, deliveries, ledger, sms, push, tasks):
    from app.core.dispatch.router import DeliveryRouter
    return DeliveryRouter(roster, deliveries, ledger, sms, push, tasks)


@pytest.fixture
def scheduler(roster, ledger, router, tasks):
    from app.core.dispatch.scheduler import DispatchScheduler
    return DispatchScheduler(roster, ledger, router, tasks)


@pytest.fixture
def replies(roster, ledger, sms, tasks):
    from app.core.replies import ReplyService
    return ReplyService(roster, ledger, sms, tasks)


@pytest.fixture
def dispatch_service(roster, deliveries, ledger, distances, scheduler, router, tasks, replies):
    from app.core.dispatch.ranking import CandidateRanker
    from app.core.dispatch.services import DispatchService
    return DispatchService(
        roster, deliveries, ledger, CandidateRanker(roster, distances), scheduler, router, tasks, replies,
    )


@pytest.fixture
def sample_twilio_form_data():
    """Sample inbound SMS webhook form data"""
    return {
        "From": "+15551234567",
        "To": "+15550000000",
        "Body": "Y",
        "MessageSid": "SM1234567890abcdef",
        "NumMedia": "0",
        "AccountSid": "AC1234567890abcdef",
    }
