# tests/test_gateways.py
"""
Tests for the outbound adapters:
- Twilio SMS gateway (dev mode, error mapping)
- Google Distance Matrix client
- APNs / FCM push providers and the push gateway
"""
from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwt
from twilio.base.exceptions import TwilioRestException

from app.core.dispatch.router import DeliveryRouter
from app.core.domain import Notification
from app.core.errors import SmsSendFailed
from app.core.phone import to_e164
from app.core.ports import PushResult
from app.infra.distance_matrix import GoogleDistanceMatrixService
from app.infra.push_providers import FCM_SCOPE, GOOGLE_TOKEN_URL, ApnsProvider, FcmProvider, PushGatewayService
from app.infra.sms_gateway import TwilioSmsGateway
from tests.fakes import make_contact


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _FakeResponse:
    """Minimal aiohttp response usable as ``async with session.get(...)``."""

    def __init__(self, status: int, payload: dict):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _b64url_decode(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


def _ec_pem() -> tuple[str, ec.EllipticCurvePrivateKey]:
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return pem, key


def _rsa_pem() -> tuple[str, rsa.RSAPrivateKey]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return pem, key


def _public_pem(key) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _apns(handler) -> ApnsProvider:
    pem, _ = _ec_pem()
    return ApnsProvider(
        key_id="KEY123",
        team_id="TEAM456",
        bundle_id="com.example.crew",
        private_key_pem=pem,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------

class TestTwilioSmsGateway:
    @pytest.mark.asyncio
    async def test_dev_mode_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr("app.config.settings.twilio_phone_number", None)
        gateway = TwilioSmsGateway()

        assert not gateway.is_configured()
        sid = await gateway.send("+15551234567", "Hello")

        assert sid.startswith("dev-")

    @pytest.mark.asyncio
    async def test_send_returns_sid(self):
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM0123456789")
        gateway = TwilioSmsGateway(from_number="+15550000000", client=client)

        sid = await gateway.send("+15551234567", "Hello")

        assert sid == "SM0123456789"
        client.messages.create.assert_called_once_with(body="Hello", from_="+15550000000", to="+15551234567")

    @pytest.mark.asyncio
    async def test_twilio_error_becomes_send_failed(self):
        client = MagicMock()
        client.messages.create.side_effect = TwilioRestException(
            400, "/Messages.json", msg="Invalid 'To' Phone Number", code=21211,
        )
        gateway = TwilioSmsGateway(from_number="+15550000000", client=client)

        with pytest.raises(SmsSendFailed) as exc_info:
            await gateway.send("+1555", "Hello")

        assert "21211" in exc_info.value.detail
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ConnectionResetError("reset by peer"), TimeoutError("read timed out")])
    async def test_transport_error_becomes_send_failed(self, error):
        client = MagicMock()
        client.messages.create.side_effect = error
        gateway = TwilioSmsGateway(from_number="+15550000000", client=client)

        with pytest.raises(SmsSendFailed) as exc_info:
            await gateway.send("+15551234567", "Hello")

        assert error.__class__.__name__ in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_unreachable_for_one_contact_fails_only_that_contact(
        self, roster, deliveries, ledger, push, tasks, owner_id,
    ):
        ann = roster.add_contact(make_contact("ann"))
        bob = roster.add_contact(make_contact("bob"))
        ann_number = to_e164(ann.country_code, ann.phone)

        def create(body, from_, to):
            if to == ann_number:
                raise ConnectionResetError("twilio unreachable")
            return MagicMock(sid="SM-bob")

        client = MagicMock()
        client.messages.create.side_effect = create
        gateway = TwilioSmsGateway(from_number="+15550000000", client=client)
        router = DeliveryRouter(roster, deliveries, ledger, gateway, push, tasks)
        notification = Notification(
            owner_id=owner_id, job_id="job-1", campaign_id="camp-1", title="New job", body="Hi",
            sms_body_by_contact={ann.id: "Hi Ann", bob.id: "Hi Bob"}, data={},
        )

        report = await router.deliver([ann, bob], notification)

        assert report.failed == [ann.id]
        assert report.billable == [bob.id]
        [failed] = [m for m in roster.outbound("sms") if m.status == "failed"]
        assert "ConnectionResetError" in failed.error_message


# ---------------------------------------------------------------------------
# Distance Matrix
# ---------------------------------------------------------------------------

class TestDistanceMatrix:
    @pytest.mark.asyncio
    async def test_distances_by_destination_id(self):
        payload = {
            "status": "OK",
            "rows": [{"elements": [
                {"status": "OK", "distance": {"value": 1200}},
                {"status": "ZERO_RESULTS"},
                {"status": "OK", "distance": {"value": 56000}},
            ]}],
        }
        session = MagicMock()
        session.get = MagicMock(return_value=_FakeResponse(200, payload))
        service = GoogleDistanceMatrixService("key")

        with patch("app.infra.distance_matrix.get_maps_session", return_value=session):
            result = await service.batch_distances(
                "Springfield", [("a", "1 Main St"), ("b", "Nowhere"), ("c", "Capital City")],
            )

        assert result == {"a": 1200.0, "c": 56000.0}
        params = session.get.call_args.kwargs["params"]
        assert params["origins"] == "Springfield"
        assert params["destinations"] == "1 Main St|Nowhere|Capital City"

    @pytest.mark.asyncio
    async def test_destinations_chunked_and_failed_chunk_skipped(self):
        ok = {"status": "OK", "rows": [{"elements": [{"status": "OK", "distance": {"value": 10}}] * 2}]}
        denied = {"status": "REQUEST_DENIED", "error_message": "bad key"}
        session = MagicMock()
        session.get = MagicMock(side_effect=[_FakeResponse(200, ok), _FakeResponse(200, denied)])
        service = GoogleDistanceMatrixService("key", chunk_size=2)

        with patch("app.infra.distance_matrix.get_maps_session", return_value=session):
            result = await service.batch_distances("X", [("a", "1"), ("b", "2"), ("c", "3")])

        assert result == {"a": 10.0, "b": 10.0}
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_http_error_yields_empty_map(self):
        session = MagicMock()
        session.get = MagicMock(return_value=_FakeResponse(503, {}))

        with patch("app.infra.distance_matrix.get_maps_session", return_value=session):
            result = await GoogleDistanceMatrixService("key").batch_distances("X", [("a", "1")])

        assert result == {}


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------

class TestApns:
    @pytest.mark.asyncio
    async def test_delivered(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        provider = _apns(handler)
        result = await provider.send("abc123", "New job", "Hi", {"jobId": "job-1"})

        assert result.delivered
        request = seen[0]
        assert request.url.path == "/3/device/abc123"
        assert request.headers["apns-topic"] == "com.example.crew"
        assert request.headers["authorization"].startswith("bearer ")
        assert json.loads(request.content)["jobId"] == "job-1"
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,reason,invalid",
        [(410, "Unregistered", True), (400, "BadDeviceToken", True), (500, "InternalServerError", False)],
    )
    async def test_rejections(self, status, reason, invalid):
        provider = _apns(lambda request: httpx.Response(status, json={"reason": reason}))

        result = await provider.send("abc123", "t", "b", {})

        assert not result.delivered
        assert result.invalid_token is invalid
        assert reason in result.error
        await provider.close()

    def test_provider_token_is_es256_jwt(self):
        pem, key = _ec_pem()
        provider = ApnsProvider(
            key_id="KEY123", team_id="TEAM456", bundle_id="com.example.crew", private_key_pem=pem,
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))),
        )

        token = provider._provider_token()

        header = jwt.get_unverified_header(token)
        assert header["alg"] == "ES256"
        assert header["kid"] == "KEY123"
        # P-256 JWS signatures are raw r||s, 64 bytes
        assert len(_b64url_decode(token.split(".")[2])) == 64
        claims = jwt.decode(token, _public_pem(key), algorithms=["ES256"])
        assert claims["iss"] == "TEAM456"

    def test_provider_token_reused(self):
        provider = _apns(lambda request: httpx.Response(200))
        assert provider._provider_token() == provider._provider_token()

    def test_rsa_key_rejected(self):
        pem, _ = _rsa_pem()
        with pytest.raises(ValueError):
            ApnsProvider(key_id="K", team_id="T", bundle_id="b", private_key_pem=pem)


class TestFcm:
    def _provider(self) -> FcmProvider:
        pem, _ = _rsa_pem()
        provider = FcmProvider(
            project_id="crew-app",
            service_account={"client_email": "svc@crew-app.iam.gserviceaccount.com", "private_key": pem},
        )
        provider._get_access_token = AsyncMock(return_value="ya29.token")
        return provider

    @pytest.mark.asyncio
    async def test_data_values_stringified(self):
        provider = self._provider()
        session = MagicMock()
        session.post = MagicMock(return_value=_FakeResponse(200, {"name": "projects/x/messages/1"}))

        with patch("app.infra.push_providers.get_push_session", return_value=session):
            result = await provider.send("tok", "t", "b", {"jobId": "job-1", "count": 3})

        assert result.delivered
        message = session.post.call_args.kwargs["json"]["message"]
        assert message["data"] == {"jobId": "job-1", "count": "3"}
        assert session.post.call_args.args[0].endswith("/projects/crew-app/messages:send")

    @pytest.mark.asyncio
    async def test_unregistered_token(self):
        provider = self._provider()
        body = {"error": {"status": "NOT_FOUND", "details": [{"errorCode": "UNREGISTERED"}]}}
        session = MagicMock()
        session.post = MagicMock(return_value=_FakeResponse(404, body))

        with patch("app.infra.push_providers.get_push_session", return_value=session):
            result = await provider.send("tok", "t", "b", {})

        assert result.invalid_token
        assert not result.delivered

    @pytest.mark.asyncio
    async def test_service_account_assertion_exchanged(self):
        pem, key = _rsa_pem()
        provider = FcmProvider(
            project_id="crew-app",
            service_account={"client_email": "svc@crew-app.iam.gserviceaccount.com", "private_key": pem},
        )
        session = MagicMock()
        session.post = MagicMock(return_value=_FakeResponse(200, {"access_token": "ya29.abc", "expires_in": 3600}))

        with patch("app.infra.push_providers.get_push_session", return_value=session):
            first = await provider._get_access_token()
            second = await provider._get_access_token()

        assert first == second == "ya29.abc"
        assert session.post.call_count == 1
        form = session.post.call_args.kwargs["data"]
        assert form["grant_type"] == "urn:ietf:params:oauth:grant-type:jwt-bearer"
        claims = jwt.decode(form["assertion"], _public_pem(key), algorithms=["RS256"], audience=GOOGLE_TOKEN_URL)
        assert claims["iss"] == "svc@crew-app.iam.gserviceaccount.com"
        assert claims["scope"] == FCM_SCOPE

    def test_ec_key_rejected(self):
        pem, _ = _ec_pem()
        with pytest.raises(ValueError):
            FcmProvider(project_id="p", service_account={"client_email": "e", "private_key": pem})


class TestPushGateway:
    @pytest.mark.asyncio
    async def test_missing_platform_unavailable(self):
        gateway = PushGatewayService(providers={"ios": None})

        assert not gateway.is_available("ios")
        assert not gateway.is_available("android")
        result = await gateway.send("android", "tok", "t", "b", {})
        assert result == PushResult(delivered=False, error="No push provider for android")

    @pytest.mark.asyncio
    async def test_routes_to_provider(self):
        provider = MagicMock()
        provider.send = AsyncMock(return_value=PushResult(delivered=True))
        gateway = PushGatewayService(providers={"android": provider})

        result = await gateway.send("android", "tok", "t", "b", {"k": "v"})

        assert result.delivered
        provider.send.assert_awaited_once_with("tok", "t", "b", {"k": "v"})
