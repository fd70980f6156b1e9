# app/core/dispatch/ranking.py
"""
Candidate ranking: who gets invited first.

Each contact is scored on four signals (location, blackout, schedule
conflict, skills).  Contacts meeting every criterion come first, best
score then nearest; everyone else follows, nearest first.  Jobs with
per-skill headcount quotas are then re-ordered so each quota is filled
in declaration order before the rest of the list.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from app.core.domain import Candidate, Contact, Job, SkillRequirement
from app.core.errors import DistanceLookupFailed
from app.core.ports import AsyncRosterRepository, DistanceService
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

DEFAULT_DISTANCE_THRESHOLD_METERS = 50_000

# Score weights: location and skills count most
LOCATION_WEIGHT = 3
NO_BLACKOUT_WEIGHT = 2
NO_CONFLICT_WEIGHT = 2
SKILLS_WEIGHT = 3

_MAX_FALLBACK_SKILL_LEN = 40


# ---------------------------------------------------------------------------
# Time windows
# ---------------------------------------------------------------------------

def _parse_day(text: str, tz) -> Optional[datetime]:
    parts = re.sub(r"[^0-9/]", "", text).split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(p) for p in parts)
        return datetime(year, month, day, tzinfo=tz)
    except ValueError:
        return None


def parse_blackout_range(value: str, tz=timezone.utc) -> Optional[tuple[datetime, datetime]]:
    """
    Parse ``"DD/MM/YYYY - DD/MM/YYYY"``.

    The end date is inclusive (through 23:59:59.999).  Returns None for
    anything unparsable.
    """
    pieces = [p.strip() for p in (value or "").split("-")]
    if len(pieces) < 2 or not pieces[0] or not pieces[1]:
        return None
    start = _parse_day(pieces[0], tz)
    end = _parse_day(pieces[1], tz)
    if start is None or end is None:
        return None
    return start, end + timedelta(days=1) - timedelta(milliseconds=1)


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a <= end_b and start_b <= end_a


def is_within_blackout(contact: Contact, job: Job) -> bool:
    tz = job.start_time.tzinfo
    for period in contact.blackout_periods:
        window = parse_blackout_range(period, tz)
        if window and ranges_overlap(job.start_time, job.end_time, *window):
            return True
    return False


def has_conflict(job: Job, confirmed_windows: list[tuple[datetime, datetime]]) -> bool:
    return any(ranges_overlap(job.start_time, job.end_time, s, e) for s, e in confirmed_windows)


def location_matches(contact: Contact, job: Job) -> bool:
    """Text fallback when no distance is known."""
    if not job.location:
        return True
    job_location = job.location.lower()
    address = (contact.address or "").lower()
    tags = [t.lower() for t in contact.tags if t]
    return job_location in address or any(t in job_location or job_location in t for t in tags)


# ---------------------------------------------------------------------------
# Skills
# ---------------------------------------------------------------------------

class SkillExtractor(Protocol):
    def extract(self, notes: str) -> list[str]: ...


_SKILLS_HEADER_RE = re.compile(r"^skills?:", re.IGNORECASE)
_SKILL_SPLIT_RE = re.compile(r"[,;]+")


def _split_skills(text: str) -> list[str]:
    return [t.strip().lower() for t in _SKILL_SPLIT_RE.split(text) if t.strip()]


class NotesSkillExtractor:
    """
    Best-effort skill list from free-text job notes.

    Reads a ``Skills:`` block (inline list plus following ``-`` bullets).
    Without one, every comma/newline token of up to 40 characters is
    treated as a skill.
    """

    def extract(self, notes: str) -> list[str]:
        skills: list[str] = []
        in_block = False

        for raw in notes.split("\n"):
            line = raw.strip()
            if not line:
                continue
            if _SKILLS_HEADER_RE.match(line):
                in_block = True
                skills.extend(_split_skills(_SKILLS_HEADER_RE.sub("", line, count=1)))
                continue
            if in_block:
                # A plain sentence ends the block
                if line[0].isalpha() and line[0].isascii():
                    in_block = False
                    continue
                skills.extend(_split_skills(line.lstrip("-")))

        if not skills:
            skills = [
                t.strip().lower()
                for t in re.split(r"[,\n]", notes)
                if t.strip() and len(t.strip()) <= _MAX_FALLBACK_SKILL_LEN
            ]
        return list(dict.fromkeys(skills))


def job_required_skills(job: Job, extractor: SkillExtractor) -> list[str]:
    """Skills every invitee must have. Empty when quotas drive selection instead."""
    if any((r.skill or "").strip() for r in job.skill_requirements):
        return []
    if not job.notes:
        return []
    return extractor.extract(job.notes)


def contact_has_skills(contact: Contact, required: list[str]) -> bool:
    if not required:
        return True
    have = {s.lower() for s in contact.skills}
    return bool(have) and all(r in have for r in required)


@dataclass
class SkillQuota:
    key: str
    label: str
    required: int
    remaining: int


def derive_skill_quotas(requirements: list[SkillRequirement]) -> list[SkillQuota]:
    """Merge requirements by case-insensitive skill, keeping first-seen order."""
    quotas: dict[str, SkillQuota] = {}
    for req in requirements:
        key = (req.skill or "").strip().lower()
        if not key or req.headcount <= 0:
            continue
        if key in quotas:
            quotas[key].required += req.headcount
            quotas[key].remaining += req.headcount
        else:
            quotas[key] = SkillQuota(key, req.skill.strip(), req.headcount, req.headcount)
    return list(quotas.values())


def order_by_skill_quotas(
    ranked: list[Candidate],
    requirements: list[SkillRequirement],
) -> list[Candidate]:
    """Pull forward the best candidate for each unfilled quota slot, then the rest."""
    quotas = derive_skill_quotas(requirements)
    if not quotas or not ranked:
        return ranked

    selected: list[Candidate] = []
    used: set[str] = set()
    for quota in quotas:
        for candidate in ranked:
            if quota.remaining <= 0:
                break
            if candidate.contact.id in used:
                continue
            if quota.key in {s.strip().lower() for s in candidate.contact.skills}:
                selected.append(candidate)
                used.add(candidate.contact.id)
                quota.remaining -= 1

    return selected + [c for c in ranked if c.contact.id not in used]


# ---------------------------------------------------------------------------
# Ranker
# ---------------------------------------------------------------------------

def _primary_key(c: Candidate):
    return (-c.priority_score, c.distance_meters, c.contact.id)


def _secondary_key(c: Candidate):
    return (c.distance_meters, -c.priority_score, c.contact.id)


class CandidateRanker:
    """
    Orders roster members for a job, best first.

    Usage:
        ranker = CandidateRanker(get_roster_repo(), get_distance_service())
        candidates = await ranker.rank(contacts, job)
    """

    def __init__(
        self,
        roster: AsyncRosterRepository,
        distances: Optional[DistanceService] = None,
        *,
        skill_extractor: Optional[SkillExtractor] = None,
        threshold_meters: int = DEFAULT_DISTANCE_THRESHOLD_METERS,
    ) -> None:
        self._roster = roster
        self._distances = distances
        self._skills = skill_extractor or NotesSkillExtractor()
        self._threshold = threshold_meters

    async def _fetch_distances(self, job: Job, contacts: list[Contact]) -> dict[str, float]:
        if self._distances is None or not (job.location or "").strip():
            return {}
        destinations = [(c.id, c.address.strip()) for c in contacts if (c.address or "").strip()]
        if not destinations:
            return {}
        try:
            return await self._distances.batch_distances(job.location.strip(), destinations)
        except DistanceLookupFailed as exc:
            AppMetrics.distance_lookup_failed()
            logger.warning(
                f"Distance lookup failed, using text matching: {exc.detail}",
                extra={"job_id": job.id},
            )
            return {}

    def score(
        self,
        contact: Contact,
        job: Job,
        distance: float,
        required_skills: list[str],
        confirmed_windows: list[tuple[datetime, datetime]],
    ) -> Candidate:
        matches = distance <= self._threshold if math.isfinite(distance) else location_matches(contact, job)
        blackout = is_within_blackout(contact, job)
        conflicts = has_conflict(job, confirmed_windows)
        skills = contact_has_skills(contact, required_skills)

        score = (
            (LOCATION_WEIGHT if matches else 0)
            + (NO_BLACKOUT_WEIGHT if not blackout else 0)
            + (NO_CONFLICT_WEIGHT if not conflicts else 0)
            + (SKILLS_WEIGHT if skills else 0)
        )
        return Candidate(
            contact=contact,
            priority_score=score,
            meets_all_criteria=matches and not blackout and not conflicts and skills,
            distance_meters=distance,
            matches_location=matches,
            within_blackout=blackout,
            conflicts=conflicts,
            skills_match=skills,
        )

    async def rank(self, contacts: list[Contact], job: Job) -> list[Candidate]:
        """Score and order ``contacts`` for ``job``. Opted-out contacts are dropped."""
        eligible = [c for c in contacts if not c.is_opted_out]
        if not eligible:
            return []

        required = job_required_skills(job, self._skills)
        distances = await self._fetch_distances(job, eligible)
        windows = await self._roster.get_confirmed_windows([c.id for c in eligible], job.id)

        scored = [
            self.score(c, job, distances.get(c.id, math.inf), required, windows.get(c.id, []))
            for c in eligible
        ]
        primary = sorted((c for c in scored if c.meets_all_criteria), key=_primary_key)
        secondary = sorted((c for c in scored if not c.meets_all_criteria), key=_secondary_key)
        ranked = primary + secondary

        if job.skill_requirements:
            ranked = order_by_skill_quotas(ranked, job.skill_requirements)

        logger.info(
            f"Ranked {len(ranked)} candidate(s): {len(primary)} meet all criteria, "
            f"{len(distances)} with distance",
            extra={"job_id": job.id, "owner_id": job.owner_id},
        )
        return ranked
