# app/infra/pg_delivery_repo_async.py
"""
Async PostgreSQL push delivery repository (asyncpg).

Device tokens and push_notification_deliveries.  Every status change
out of ``sent`` is a conditional UPDATE, so a delivery receipt and the
SMS fallback can never both win for the same notification.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.domain import DeliveryStatus, DeviceToken, PushNotificationDelivery
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_delivery(row) -> PushNotificationDelivery:
    campaign_id = row["campaign_id"]
    return PushNotificationDelivery(
        id=str(row["id"]),
        contact_id=str(row["contact_id"]),
        job_id=str(row["job_id"]),
        campaign_id=str(campaign_id) if campaign_id is not None else None,
        device_token=row["device_token"],
        notification_id=row["notification_id"],
        status=row["status"],
        created_at=row["created_at"],
        delivered_at=row["delivered_at"],
        sms_fallback_sent_at=row["sms_fallback_sent_at"],
    )


class AsyncPostgresDeliveryRepository:
    """Device tokens and push delivery tracking."""

    async def get_device_tokens(self, contact_ids: list[str]) -> list[DeviceToken]:
        if not contact_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT contact_id, token, platform FROM device_tokens
                WHERE contact_id = ANY($1::uuid[])
                ORDER BY updated_at DESC
                """,
                contact_ids,
            )
            return [
                DeviceToken(contact_id=str(r["contact_id"]), token=r["token"], platform=r["platform"])
                for r in rows
            ]

    async def upsert_device_token(self, contact_id: str, token: str, platform: str) -> DeviceToken:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO device_tokens (contact_id, token, platform)
                VALUES ($1, $2, $3)
                ON CONFLICT (token) DO UPDATE
                SET contact_id = EXCLUDED.contact_id,
                    platform = EXCLUDED.platform,
                    updated_at = now()
                """,
                contact_id,
                token,
                platform,
            )
        return DeviceToken(contact_id=contact_id, token=token, platform=platform)

    async def remove_device_token(self, token: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute("DELETE FROM device_tokens WHERE token = $1", token)
            removed = bool(result) and int(result.split()[-1]) > 0
        if removed:
            logger.info(f"Device token removed: {token[:8]}...")
        return removed

    async def create_push_delivery(
        self,
        contact_id: str,
        job_id: str,
        campaign_id: Optional[str],
        device_token: str,
        notification_id: str,
    ) -> PushNotificationDelivery:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO push_notification_deliveries
                  (contact_id, job_id, campaign_id, device_token, notification_id, status)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                contact_id,
                job_id,
                campaign_id,
                device_token,
                notification_id,
                DeliveryStatus.SENT.value,
            )
            return _row_to_delivery(row)

    async def claim_due_fallbacks(
        self, campaign_id: str, older_than_seconds: int,
    ) -> list[PushNotificationDelivery]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE push_notification_deliveries
                SET status = 'sms_fallback'
                WHERE campaign_id = $1
                  AND status = 'sent'
                  AND created_at <= now() - make_interval(secs => $2)
                RETURNING *
                """,
                campaign_id,
                float(older_than_seconds),
            )
            return [_row_to_delivery(row) for row in rows]

    async def mark_fallback_result(
        self, delivery_id: str, status: str, sms_sent_at: Optional[datetime],
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE push_notification_deliveries
                SET status = $2, sms_fallback_sent_at = $3
                WHERE id = $1
                """,
                delivery_id,
                status,
                sms_sent_at,
            )

    async def confirm_delivered(
        self, notification_id: str, contact_id: str,
    ) -> Optional[PushNotificationDelivery]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE push_notification_deliveries
                SET status = 'delivered', delivered_at = now()
                WHERE notification_id = $1
                  AND contact_id = $2
                  AND status = 'sent'
                RETURNING *
                """,
                notification_id,
                contact_id,
            )
            return _row_to_delivery(row) if row else None

    async def get_delivery(self, notification_id: str) -> Optional[PushNotificationDelivery]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM push_notification_deliveries WHERE notification_id = $1",
                notification_id,
            )
            return _row_to_delivery(row) if row else None


# Global singleton
_delivery_repo: AsyncPostgresDeliveryRepository | None = None


def get_delivery_repo() -> AsyncPostgresDeliveryRepository:
    """Get the global delivery repository instance."""
    global _delivery_repo
    if _delivery_repo is None:
        _delivery_repo = AsyncPostgresDeliveryRepository()
    return _delivery_repo
