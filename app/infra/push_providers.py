# app/infra/push_providers.py
"""
Push notification providers: APNs (iOS) and FCM HTTP v1 (Android).

Each provider is a lazily-initialised singleton.  Misconfiguration
(missing key, unreadable PEM, bad service account JSON) is logged once
and yields ``None``; ``PushGatewayService.is_available(platform)`` tells
the router whether that platform can be used at all.

Auth:
- APNs: provider JWT (ES256, .p8 key) reused for 50 minutes
- FCM:  service account JWT (RS256) exchanged for an OAuth2 access token
"""
from __future__ import annotations

import abc
import json
import time
from pathlib import Path
from typing import Any, Optional

import aiohttp
import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwt

from app.config import settings
from app.core.domain import Platform
from app.core.ports import PushResult
from app.infra.http_client import get_push_session
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

APNS_PRODUCTION_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"
APNS_TOKEN_TTL_SECONDS = 50 * 60

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _read_secret(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    if inline:
        return inline
    if path:
        return Path(path).read_text(encoding="utf-8")
    return None


class PushProvider(abc.ABC):
    """One push platform."""

    @property
    @abc.abstractmethod
    def platform(self) -> str:
        """Platform name for logging/metrics"""

    @abc.abstractmethod
    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> PushResult:
        """Send one notification. Never raises for provider-side rejections."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# APNs
# ---------------------------------------------------------------------------

class ApnsProvider(PushProvider):
    """Apple Push Notification service over HTTP/2."""

    def __init__(
        self,
        *,
        key_id: str,
        team_id: str,
        bundle_id: str,
        private_key_pem: str,
        use_sandbox: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError("APNs key must be an EC (P-256) private key")
        self._pem = private_key_pem
        self._key_id = key_id
        self._team_id = team_id
        self._bundle_id = bundle_id
        self._host = APNS_SANDBOX_HOST if use_sandbox else APNS_PRODUCTION_HOST
        self._client = client or httpx.AsyncClient(http2=True, timeout=httpx.Timeout(10.0, connect=5.0))
        self._token: Optional[str] = None
        self._token_issued_at = 0.0

    @property
    def platform(self) -> str:
        return Platform.IOS.value

    def _provider_token(self) -> str:
        now = time.time()
        if self._token is None or now - self._token_issued_at >= APNS_TOKEN_TTL_SECONDS:
            self._token = jwt.encode(
                {"iss": self._team_id, "iat": int(now)},
                self._pem,
                algorithm="ES256",
                headers={"kid": self._key_id},
            )
            self._token_issued_at = now
        return self._token

    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> PushResult:
        payload = {
            "aps": {"alert": {"title": title, "body": body}, "sound": "default"},
            **data,
        }
        headers = {
            "authorization": f"bearer {self._provider_token()}",
            "apns-topic": self._bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10",
        }
        try:
            resp = await self._client.post(f"{self._host}/3/device/{token}", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            return PushResult(delivered=False, error=f"{exc.__class__.__name__}: {exc}")

        if resp.status_code == 200:
            return PushResult(delivered=True)

        reason = ""
        try:
            reason = resp.json().get("reason", "")
        except ValueError:
            pass
        invalid = resp.status_code == 410 or reason in ("BadDeviceToken", "Unregistered")
        return PushResult(delivered=False, invalid_token=invalid, error=f"{resp.status_code} {reason}".strip())

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# FCM
# ---------------------------------------------------------------------------

class FcmProvider(PushProvider):
    """Firebase Cloud Messaging HTTP v1."""

    def __init__(self, *, project_id: str, service_account: dict[str, Any]) -> None:
        self._project_id = project_id
        self._client_email = service_account["client_email"]
        self._token_uri = service_account.get("token_uri") or GOOGLE_TOKEN_URL
        self._pem = service_account["private_key"]
        key = serialization.load_pem_private_key(self._pem.encode(), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("FCM service account key must be an RSA private key")
        self._access_token: Optional[str] = None
        self._access_token_expires_at = 0.0

    @property
    def platform(self) -> str:
        return Platform.ANDROID.value

    async def _get_access_token(self) -> str:
        now = time.time()
        if self._access_token and now < self._access_token_expires_at - 60:
            return self._access_token

        assertion = jwt.encode(
            {
                "iss": self._client_email,
                "scope": FCM_SCOPE,
                "aud": self._token_uri,
                "iat": int(now),
                "exp": int(now) + 3600,
            },
            self._pem,
            algorithm="RS256",
        )
        form = {"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion}
        async with get_push_session().post(self._token_uri, data=form) as resp:
            data = await resp.json(content_type=None)
            if resp.status != 200 or "access_token" not in data:
                raise RuntimeError(f"FCM token exchange failed: status={resp.status}")

        self._access_token = data["access_token"]
        self._access_token_expires_at = now + int(data.get("expires_in", 3600))
        return self._access_token

    async def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> PushResult:
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                # FCM data values must be strings
                "data": {k: str(v) for k, v in data.items()},
                "android": {"priority": "high"},
            }
        }
        url = f"https://fcm.googleapis.com/v1/projects/{self._project_id}/messages:send"
        try:
            access_token = await self._get_access_token()
            async with get_push_session().post(
                url, json=message, headers={"Authorization": f"Bearer {access_token}"},
            ) as resp:
                if resp.status == 200:
                    return PushResult(delivered=True)
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, RuntimeError, ValueError) as exc:
            return PushResult(delivered=False, error=f"{exc.__class__.__name__}: {exc}")

        error = (payload or {}).get("error", {})
        codes = {d.get("errorCode") for d in error.get("details", []) if isinstance(d, dict)}
        invalid = "UNREGISTERED" in codes or error.get("status") == "NOT_FOUND"
        return PushResult(
            delivered=False,
            invalid_token=invalid,
            error=f"{resp.status} {error.get('status', '')}".strip(),
        )


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

_apns_provider: ApnsProvider | None = None
_apns_init_failed = False
_fcm_provider: FcmProvider | None = None
_fcm_init_failed = False


def get_apns_provider() -> ApnsProvider | None:
    """Lazy APNs provider. None when not configured or the key cannot be loaded."""
    global _apns_provider, _apns_init_failed
    if _apns_provider is None and not _apns_init_failed:
        if not settings.apns_enabled:
            return None
        try:
            _apns_provider = ApnsProvider(
                key_id=settings.apns_key_id,
                team_id=settings.apns_team_id,
                bundle_id=settings.apns_bundle_id,
                private_key_pem=_read_secret(settings.apns_private_key, settings.apns_private_key_path),
                use_sandbox=settings.apns_use_sandbox,
            )
            logger.info(f"APNs provider initialised (sandbox={settings.apns_use_sandbox})")
        except (OSError, ValueError, TypeError) as exc:
            _apns_init_failed = True
            logger.error(f"APNs provider init failed: {exc}")
    return _apns_provider


def get_fcm_provider() -> FcmProvider | None:
    """Lazy FCM provider. None when not configured or the service account is invalid."""
    global _fcm_provider, _fcm_init_failed
    if _fcm_provider is None and not _fcm_init_failed:
        if not settings.fcm_enabled:
            return None
        try:
            raw = _read_secret(settings.fcm_service_account_json, settings.fcm_service_account_path)
            _fcm_provider = FcmProvider(
                project_id=settings.fcm_project_id,
                service_account=json.loads(raw),
            )
            logger.info(f"FCM provider initialised (project={settings.fcm_project_id})")
        except (OSError, ValueError, TypeError, KeyError) as exc:
            _fcm_init_failed = True
            logger.error(f"FCM provider init failed: {exc}")
    return _fcm_provider


class PushGatewayService:
    """PushGateway over the per-platform providers."""

    def __init__(self, providers: dict[str, PushProvider | None] | None = None) -> None:
        self._providers = providers

    def _provider(self, platform: str) -> PushProvider | None:
        if self._providers is not None:
            return self._providers.get(platform)
        if platform == Platform.IOS.value:
            return get_apns_provider()
        if platform == Platform.ANDROID.value:
            return get_fcm_provider()
        return None

    def is_available(self, platform: str) -> bool:
        return self._provider(platform) is not None

    async def send(
        self, platform: str, token: str, title: str, body: str, data: dict,
    ) -> PushResult:
        provider = self._provider(platform)
        if provider is None:
            return PushResult(delivered=False, error=f"No push provider for {platform}")

        result = await provider.send(token, title, body, data)
        AppMetrics.push_attempt(platform, result.delivered)
        if result.invalid_token:
            AppMetrics.push_invalid_token(platform)
            logger.warning(f"Push token rejected as invalid ({platform}): {token[:8]}... {result.error}")
        elif not result.delivered:
            logger.warning(f"Push send failed ({platform}): {result.error}")
        return result


_push_gateway: PushGatewayService | None = None


def get_push_gateway() -> PushGatewayService:
    global _push_gateway
    if _push_gateway is None:
        _push_gateway = PushGatewayService()
    return _push_gateway


async def close_push_providers() -> None:
    """Close provider HTTP clients. Call during app shutdown."""
    global _apns_provider, _fcm_provider
    for provider in (_apns_provider, _fcm_provider):
        if provider is not None:
            await provider.close()
    _apns_provider = None
    _fcm_provider = None
