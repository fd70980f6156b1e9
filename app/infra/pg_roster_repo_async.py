# app/infra/pg_roster_repo_async.py
"""
Async PostgreSQL roster repository (asyncpg).

Contacts, jobs, templates, campaigns, availability, dispatch claims
and the message log.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.domain import (
    Availability,
    AvailabilityStatus,
    Campaign,
    Contact,
    Job,
    Message,
    SkillRequirement,
    Template,
)
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _opt_str(value) -> Optional[str]:
    return str(value) if value is not None else None


def _row_to_contact(row) -> Contact:
    return Contact(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone=row["phone"],
        country_code=row["country_code"],
        address=row["address"],
        skills=list(row["skills"] or []),
        tags=list(row["tags"] or []),
        blackout_periods=list(row["blackout_periods"] or []),
        is_opted_out=row["is_opted_out"],
        has_login=row["has_login"],
    )


def _row_to_job(row, requirements: list[SkillRequirement]) -> Job:
    return Job(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        name=row["name"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        location=row["location"],
        required_headcount=row["required_headcount"],
        notes=row["notes"],
        skill_requirements=requirements,
    )


def _row_to_campaign(row) -> Campaign:
    return Campaign(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        job_id=str(row["job_id"]),
        sent_at=row["sent_at"],
        template_id=_opt_str(row["template_id"]),
        custom_message=row["custom_message"],
    )


def _row_to_availability(row) -> Availability:
    return Availability(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        contact_id=str(row["contact_id"]),
        status=row["status"],
        updated_at=row["updated_at"],
        shift_preference=row["shift_preference"],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        contact_id=str(row["contact_id"]),
        direction=row["direction"],
        channel=row["channel"],
        content=row["content"],
        status=row["status"],
        created_at=row["created_at"],
        job_id=_opt_str(row["job_id"]),
        campaign_id=_opt_str(row["campaign_id"]),
        provider_sid=row["provider_sid"],
        error_message=row["error_message"],
    )


class AsyncPostgresRosterRepository:
    """Roster and campaign bookkeeping in PostgreSQL."""

    # ------------------------------------------------------------------
    # Jobs / templates
    # ------------------------------------------------------------------

    async def get_job(self, owner_id: str, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM jobs WHERE id = $1 AND owner_id = $2",
                job_id,
                owner_id,
            )
            if row is None:
                return None
            req_rows = await conn.fetch(
                """
                SELECT skill, headcount FROM job_skill_requirements
                WHERE job_id = $1
                ORDER BY position, skill
                """,
                job_id,
            )
            requirements = [SkillRequirement(skill=r["skill"], headcount=r["headcount"]) for r in req_rows]
            return _row_to_job(row, requirements)

    async def get_template(self, owner_id: str, template_id: str) -> Optional[Template]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM templates WHERE id = $1 AND owner_id = $2",
                template_id,
                owner_id,
            )
            if row is None:
                return None
            return Template(
                id=str(row["id"]),
                owner_id=row["owner_id"],
                name=row["name"],
                content=row["content"],
            )

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def get_contacts(self, owner_id: str, contact_ids: list[str]) -> list[Contact]:
        if not contact_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM contacts WHERE owner_id = $1 AND id = ANY($2::uuid[])",
                owner_id,
                contact_ids,
            )
            return [_row_to_contact(row) for row in rows]

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM contacts WHERE id = $1", contact_id)
            return _row_to_contact(row) if row else None

    async def find_contacts_by_phone(self, digits: str) -> list[Contact]:
        """Contacts whose stored phone ends with the given digits (national or E.164 forms)."""
        if not digits:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM contacts
                WHERE regexp_replace(phone, '\\D', '', 'g') = $1
                   OR (length(regexp_replace(phone, '\\D', '', 'g')) >= 7
                       AND $1 LIKE '%' || regexp_replace(phone, '\\D', '', 'g'))
                ORDER BY created_at DESC
                """,
                digits,
            )
            return [_row_to_contact(row) for row in rows if row["phone"]]

    async def set_opted_out(self, contact_id: str, opted_out: bool = True) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE contacts SET is_opted_out = $2 WHERE id = $1",
                contact_id,
                opted_out,
            )
        logger.info(f"Contact opt-out set to {opted_out}", extra={"contact_id": contact_id})

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_confirmed_windows(
        self, contact_ids: list[str], exclude_job_id: str,
    ) -> dict[str, list[tuple[datetime, datetime]]]:
        if not contact_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT a.contact_id, j.start_time, j.end_time
                FROM availability a
                JOIN jobs j ON j.id = a.job_id
                WHERE a.contact_id = ANY($1::uuid[])
                  AND a.status = 'confirmed'
                  AND a.job_id <> $2
                """,
                contact_ids,
                exclude_job_id,
            )
        windows: dict[str, list[tuple[datetime, datetime]]] = {}
        for row in rows:
            windows.setdefault(str(row["contact_id"]), []).append((row["start_time"], row["end_time"]))
        return windows

    async def count_confirmed(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                "SELECT count(*)::int FROM availability WHERE job_id = $1 AND status = 'confirmed'",
                job_id,
            )
            return count or 0

    async def ensure_availability(self, job_id: str, contact_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                INSERT INTO availability (job_id, contact_id, status)
                VALUES ($1, $2, $3)
                ON CONFLICT (job_id, contact_id) DO NOTHING
                """,
                job_id,
                contact_id,
                AvailabilityStatus.NO_REPLY.value,
            )
            return bool(result) and int(result.split()[-1]) > 0

    async def update_availability(
        self,
        job_id: str,
        contact_id: str,
        status: str,
        shift_preference: Optional[str] = None,
    ) -> Availability:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO availability (job_id, contact_id, status, shift_preference)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (job_id, contact_id) DO UPDATE
                SET status = EXCLUDED.status,
                    shift_preference = COALESCE(EXCLUDED.shift_preference, availability.shift_preference),
                    updated_at = now()
                RETURNING *
                """,
                job_id,
                contact_id,
                status,
                shift_preference,
            )
            return _row_to_availability(row)

    async def claim_contact(
        self, job_id: str, contact_id: str, campaign_id: str, ttl_seconds: int,
    ) -> bool:
        """
        Take the (job, contact) invitation slot for a campaign.

        Succeeds when the slot is free, already held by this campaign, or
        held by a claim older than ``ttl_seconds``.
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO dispatch_claims (job_id, contact_id, campaign_id)
                VALUES ($1, $2, $3)
                ON CONFLICT (job_id, contact_id) DO UPDATE
                SET campaign_id = EXCLUDED.campaign_id, claimed_at = now()
                WHERE dispatch_claims.campaign_id = EXCLUDED.campaign_id
                   OR dispatch_claims.claimed_at < now() - make_interval(secs => $4)
                RETURNING campaign_id
                """,
                job_id,
                contact_id,
                campaign_id,
                float(ttl_seconds),
            )
            return row is not None

    # ------------------------------------------------------------------
    # Campaigns / messages
    # ------------------------------------------------------------------

    async def create_campaign(
        self,
        owner_id: str,
        job_id: str,
        template_id: Optional[str],
        custom_message: Optional[str] = None,
    ) -> Campaign:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO campaigns (owner_id, job_id, template_id, custom_message)
                VALUES ($1, $2, $3, $4)
                RETURNING *
                """,
                owner_id,
                job_id,
                template_id,
                custom_message,
            )
            return _row_to_campaign(row)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM campaigns WHERE id = $1", campaign_id)
            return _row_to_campaign(row) if row else None

    async def list_campaign_ids_for_job(self, job_id: str) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT id FROM campaigns WHERE job_id = $1", job_id)
            return [str(row["id"]) for row in rows]

    async def create_message(
        self,
        owner_id: str,
        contact_id: str,
        *,
        direction: str,
        channel: str,
        content: str,
        status: str,
        job_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        provider_sid: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Message:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages
                  (owner_id, contact_id, job_id, campaign_id, direction, channel,
                   content, status, provider_sid, error_message)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
                """,
                owner_id,
                contact_id,
                job_id,
                campaign_id,
                direction,
                channel,
                content,
                status,
                provider_sid,
                error_message,
            )
            return _row_to_message(row)

    async def latest_outbound_job_id(self, contact_id: str) -> Optional[str]:
        """Job of the most recent outbound invitation, used to attribute replies."""
        async with safe_db_conn() as conn:
            job_id = await conn.fetchval(
                """
                SELECT job_id FROM messages
                WHERE contact_id = $1 AND direction = 'outbound' AND job_id IS NOT NULL
                ORDER BY created_at DESC
                LIMIT 1
                """,
                contact_id,
            )
            return _opt_str(job_id)


# Global singleton
_roster_repo: AsyncPostgresRosterRepository | None = None


def get_roster_repo() -> AsyncPostgresRosterRepository:
    """Get the global roster repository instance."""
    global _roster_repo
    if _roster_repo is None:
        _roster_repo = AsyncPostgresRosterRepository()
    return _roster_repo
