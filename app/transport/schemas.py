# app/transport/schemas.py
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class DispatchIn(BaseModel):
    owner_id: str = Field(min_length=1, max_length=64)
    job_id: str = Field(min_length=1, max_length=64)
    contact_ids: list[str] = Field(min_length=1, max_length=1000)
    template_id: str | None = Field(default=None, max_length=64)
    custom_message: str | None = Field(default=None, max_length=1600)

    @model_validator(mode="after")
    def _content_required(self):
        if not self.template_id and not (self.custom_message and self.custom_message.strip()):
            raise ValueError("Either template_id or custom_message is required")
        return self


class BatchCounts(BaseModel):
    push_sent: int = 0
    sms_sent: int = 0
    portal: int = 0
    failed: int = 0
    skipped: int = 0


class DispatchOut(BaseModel):
    campaign_id: str
    queued: int
    batch_size: int
    batch_delay_seconds: int
    pending_batches: int
    first_batch: BatchCounts
    stopped_reason: str | None = None


class GrantIn(BaseModel):
    source_type: Literal["trial", "subscription", "bundle", "admin"]
    # Not range-checked here: the ledger rejects amount <= 0 with InvalidAmount
    amount: int
    source_ref: str | None = Field(default=None, max_length=255)
    expires_at: datetime | None = None


class GrantOut(BaseModel):
    id: str
    owner_id: str
    source_type: str
    source_ref: str | None = None
    credits_granted: int
    credits_consumed: int
    credits_remaining: int
    expires_at: datetime | None = None
    created_at: datetime


class RefundIn(BaseModel):
    transaction_ids: list[str] = Field(min_length=1, max_length=500)
    reason: str = Field(min_length=1, max_length=255)


class TransactionOut(BaseModel):
    id: str
    grant_id: str
    delta: int
    reason: str
    created_at: datetime
    message_id: str | None = None
    refund_of: str | None = None


class CreditBalanceOut(BaseModel):
    owner_id: str
    available: int
    by_source: dict[str, int]
    expired: int


class DeviceTokenIn(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    platform: Literal["ios", "android"]


class DeviceTokenOut(BaseModel):
    contact_id: str
    token: str
    platform: str


class PushReceiptIn(BaseModel):
    contact_id: str = Field(min_length=1, max_length=64)


class PushActionIn(BaseModel):
    contact_id: str = Field(min_length=1, max_length=64)
    action: Literal["accept", "decline"]


class PushActionOut(BaseModel):
    contact_id: str | None = None
    job_id: str | None = None
    status: str | None = None
    acknowledged: bool = False
