# app/infra/distance_matrix.py
"""
Travel distance via the Google Distance Matrix API.

``batch_distances(origin, destinations)`` returns ``{destination_id: meters}``.
Destinations are sent in chunks of 25 (the API's per-request ceiling for
one origin).  A failed chunk is logged and skipped so the rest of the
batch still gets distances; destinations without a result are simply
absent from the map and the ranker falls back to text matching.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.core.errors import DistanceLookupFailed
from app.infra.http_client import get_maps_session
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


class GoogleDistanceMatrixService:
    """DistanceService backed by Google Distance Matrix (JSON API)."""

    def __init__(
        self,
        api_key: str,
        *,
        url: str = "https://maps.googleapis.com/maps/api/distancematrix/json",
        chunk_size: int = 25,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._chunk_size = chunk_size

    async def _fetch_chunk(self, origin: str, chunk: list[tuple[str, str]]) -> dict[str, float]:
        params = {
            "origins": origin,
            "destinations": "|".join(address for _, address in chunk),
            "key": self._api_key,
        }
        try:
            async with get_maps_session().get(self._url, params=params) as resp:
                if resp.status != 200:
                    raise DistanceLookupFailed(f"HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise DistanceLookupFailed(f"{exc.__class__.__name__}: {exc}") from exc

        rows = data.get("rows") or []
        if data.get("status") != "OK" or not rows:
            raise DistanceLookupFailed(
                f"status={data.get('status')} {data.get('error_message', '')}".strip()
            )

        result: dict[str, float] = {}
        elements = rows[0].get("elements") or []
        for (dest_id, _), element in zip(chunk, elements):
            element = element or {}
            value = element.get("distance", {}).get("value")
            if element.get("status") == "OK" and isinstance(value, (int, float)):
                result[dest_id] = float(value)
        return result

    async def batch_distances(
        self,
        origin: str,
        destinations: list[tuple[str, str]],
    ) -> dict[str, float]:
        distances: dict[str, float] = {}
        for start in range(0, len(destinations), self._chunk_size):
            chunk = destinations[start:start + self._chunk_size]
            try:
                distances.update(await self._fetch_chunk(origin, chunk))
            except DistanceLookupFailed as exc:
                AppMetrics.distance_lookup_failed()
                logger.warning(
                    f"Distance Matrix chunk skipped ({len(chunk)} destinations): {exc.detail}",
                )
        return distances


_distance_service: GoogleDistanceMatrixService | None = None


def get_distance_service() -> GoogleDistanceMatrixService | None:
    """Lazy singleton. None when no Maps API key is configured."""
    global _distance_service
    if _distance_service is None:
        if not settings.google_maps_api_key:
            logger.warning("GOOGLE_MAPS_API_KEY not configured; falling back to text location matching")
            return None
        _distance_service = GoogleDistanceMatrixService(
            settings.google_maps_api_key,
            url=settings.distance_matrix_url,
            chunk_size=settings.distance_matrix_batch_size,
        )
    return _distance_service
