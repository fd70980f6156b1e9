# app/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any, Dict


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, Enum):
    TRIAL = "trial"
    SUBSCRIPTION = "subscription"
    BUNDLE = "bundle"
    ADMIN = "admin"


class AvailabilityStatus(str, Enum):
    NO_REPLY = "no_reply"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    MAYBE = "maybe"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SMS_FALLBACK = "sms_fallback"


class MessageStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"


class Channel(str, Enum):
    SMS = "sms"
    PUSH = "push"
    PORTAL = "portal"  # hasLogin contacts read it in-app


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class TaskType(str, Enum):
    DISPATCH_BATCH = "dispatch_batch"
    PUSH_FALLBACK_CHECK = "push_fallback_check"


# ============================================================================
# CREDIT LEDGER
# ============================================================================

@dataclass
class CreditGrant:
    """
    A bounded pool of credits.

    Invariant: credits_consumed + credits_remaining == credits_granted,
    credits_remaining >= 0.
    """
    id: str
    owner_id: str
    source_type: str
    credits_granted: int
    credits_consumed: int
    credits_remaining: int
    created_at: datetime
    source_ref: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_spendable(self, now: datetime) -> bool:
        return self.credits_remaining > 0 and not self.is_expired(now)


@dataclass
class CreditTransaction:
    """Immutable ledger entry. delta < 0 consumption, delta > 0 refund."""
    id: str
    owner_id: str
    grant_id: str
    delta: int
    reason: str
    created_at: datetime
    message_id: Optional[str] = None
    refund_of: Optional[str] = None

    @property
    def is_consumption(self) -> bool:
        return self.delta < 0


@dataclass
class CreditBreakdown:
    available: int
    by_source: Dict[str, int] = field(default_factory=dict)
    expired: int = 0


# ============================================================================
# ROSTER / JOBS
# ============================================================================

@dataclass
class Contact:
    id: str
    owner_id: str
    first_name: str
    last_name: str
    phone: str
    country_code: str = "US"
    address: Optional[str] = None
    skills: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    blackout_periods: list[str] = field(default_factory=list)
    is_opted_out: bool = False
    has_login: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class SkillRequirement:
    skill: str
    headcount: int


@dataclass
class Job:
    id: str
    owner_id: str
    name: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    required_headcount: Optional[int] = None
    notes: Optional[str] = None
    skill_requirements: list[SkillRequirement] = field(default_factory=list)


@dataclass
class Template:
    id: str
    owner_id: str
    name: str
    content: str


@dataclass
class Campaign:
    id: str
    owner_id: str
    job_id: str
    sent_at: datetime
    template_id: Optional[str] = None
    custom_message: Optional[str] = None


@dataclass
class Availability:
    id: str
    job_id: str
    contact_id: str
    status: str
    updated_at: datetime
    shift_preference: Optional[str] = None


@dataclass
class Message:
    id: str
    owner_id: str
    contact_id: str
    direction: str  # inbound | outbound
    channel: str
    content: str
    status: str
    created_at: datetime
    job_id: Optional[str] = None
    campaign_id: Optional[str] = None
    provider_sid: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class DeviceToken:
    contact_id: str
    token: str
    platform: str


@dataclass
class PushNotificationDelivery:
    id: str
    contact_id: str
    job_id: str
    device_token: str
    notification_id: str
    status: str
    created_at: datetime
    campaign_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    sms_fallback_sent_at: Optional[datetime] = None


# ============================================================================
# TRANSIENT DISPATCH RECORDS
# ============================================================================

@dataclass
class Candidate:
    """Ranking record, recomputed per dispatch request (never persisted)."""
    contact: Contact
    priority_score: int
    meets_all_criteria: bool
    distance_meters: float
    matches_location: bool = False
    within_blackout: bool = False
    conflicts: bool = False
    skills_match: bool = False


@dataclass
class Notification:
    """What a dispatch sends: SMS body plus push title/body/data."""
    owner_id: str
    job_id: str
    campaign_id: str
    title: str
    body: str
    sms_body_by_contact: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    def sms_body(self, contact_id: str) -> str:
        return self.sms_body_by_contact.get(contact_id, self.body)


@dataclass
class DeliveryReport:
    """Outcome of handing one batch to the delivery router."""
    delivered: list[str] = field(default_factory=list)          # contact ids (SMS or portal)
    failed: list[str] = field(default_factory=list)
    fallback_scheduled: list[str] = field(default_factory=list)  # push sent, awaiting receipt
    billable: list[str] = field(default_factory=list)            # SMS actually sent
    skipped: list[str] = field(default_factory=list)
    portal: list[str] = field(default_factory=list)

    def merge(self, other: "DeliveryReport") -> None:
        self.delivered.extend(other.delivered)
        self.failed.extend(other.failed)
        self.fallback_scheduled.extend(other.fallback_scheduled)
        self.billable.extend(other.billable)
        self.skipped.extend(other.skipped)
        self.portal.extend(other.portal)
