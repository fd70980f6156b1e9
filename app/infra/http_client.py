# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **maps**    – Google Distance Matrix  (total=15 s, connect=5 s, pool limit=10)
- **push**    – FCM token exchange/send (total=20 s, connect=5 s, pool limit=20)

APNs needs HTTP/2 and goes through its own ``httpx.AsyncClient``
(see ``app.infra.push_providers``).

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_maps_session() -> aiohttp.ClientSession:
    """Session for Distance Matrix lookups."""
    return _get_or_create(
        "maps",
        aiohttp.ClientTimeout(total=15, connect=5),
        limit=10,
    )


def get_push_session() -> aiohttp.ClientSession:
    """Session for FCM OAuth token exchange and message sends."""
    return _get_or_create(
        "push",
        aiohttp.ClientTimeout(total=20, connect=5),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
