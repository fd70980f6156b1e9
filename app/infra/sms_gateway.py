# app/infra/sms_gateway.py
"""
SMS gateway backed by Twilio.

The Twilio REST client is blocking, so sends run in the default thread
executor.  Without Twilio credentials the gateway runs in dev mode: the
message is logged and a ``dev-<uuid>`` sid is returned, so dispatch flows
can be exercised locally end to end.
"""
from __future__ import annotations

import asyncio
import uuid

from twilio.base.exceptions import TwilioException

from app.config import settings
from app.core.errors import GatewayUnavailable, SmsSendFailed
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

_twilio_client = None


def _get_twilio_client():
    """Get or create Twilio client."""
    global _twilio_client
    if _twilio_client is None:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            return None
        from twilio.rest import Client
        _twilio_client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
    return _twilio_client


class TwilioSmsGateway:
    """SmsGateway implementation (Twilio Programmable Messaging)."""

    def __init__(self, from_number: str | None = None, client=None) -> None:
        self._from_number = from_number or settings.twilio_phone_number
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._from_number) and (self._client is not None or settings.twilio_enabled)

    def _client_or_raise(self):
        client = self._client or _get_twilio_client()
        if client is None:
            raise GatewayUnavailable("Twilio client could not be created")
        return client

    async def send(self, to_e164: str, body: str) -> str:
        """
        Send one SMS and return the provider sid.

        Raises:
            GatewayUnavailable: credentials present but the client cannot be built
            SmsSendFailed: Twilio rejected the message or could not be reached
        """
        if not self.is_configured():
            sid = f"dev-{uuid.uuid4()}"
            logger.info(
                f"[dev mode] SMS to {mask_phone(to_e164)} not sent (Twilio not configured): {body[:60]!r}",
            )
            inc_counter("sms_dev_mode_sends")
            return sid

        client = self._client_or_raise()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: client.messages.create(body=body, from_=self._from_number, to=to_e164),
            )
        except TwilioException as exc:
            code = getattr(exc, "code", None)
            inc_counter("sms_send_errors", code=str(code))
            raise SmsSendFailed(f"Twilio error {code}: {exc}") from exc
        except Exception as exc:
            # Transport failures (connection reset, timeout) from the blocking client
            inc_counter("sms_send_errors", code=exc.__class__.__name__)
            raise SmsSendFailed(f"Twilio unreachable: {exc.__class__.__name__}: {exc}") from exc

        logger.info(f"SMS sent: sid={result.sid[:8]}***, to={mask_phone(to_e164)}")
        return result.sid


_sms_gateway: TwilioSmsGateway | None = None


def get_sms_gateway() -> TwilioSmsGateway:
    """Get the global SMS gateway instance."""
    global _sms_gateway
    if _sms_gateway is None:
        _sms_gateway = TwilioSmsGateway()
        if not _sms_gateway.is_configured():
            logger.warning("Twilio not configured: SMS will be logged only (dev mode)")
    return _sms_gateway
