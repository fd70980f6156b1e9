# app/transport/twilio_webhook.py
"""
Inbound SMS webhook (Twilio).

Security features:
- Twilio signature validation (HMAC-SHA1 via RequestValidator)
- Per-sender rate limiting

The reply is applied and acknowledged through the REST API (so the
acknowledgement is recorded and billed like any other SMS); the webhook
itself always answers with empty TwiML.
"""
import time

from fastapi import HTTPException, Request
from fastapi.responses import PlainTextResponse
from twilio.request_validator import RequestValidator

from app.config import settings
from app.core.replies import ReplyService
from app.infra.logging_config import LogContext, get_logger, mask_phone
from app.infra.metrics import AppMetrics, inc_counter
from app.infra.rate_limiter import InMemoryRateLimiter
from app.transport.middleware import EMPTY_TWIML

logger = get_logger(__name__)

_sender_rate_limiter: InMemoryRateLimiter | None = None


def _get_sender_rate_limiter() -> InMemoryRateLimiter:
    global _sender_rate_limiter
    if _sender_rate_limiter is None:
        _sender_rate_limiter = InMemoryRateLimiter(
            max_requests=settings.inbound_sms_rate_limit_per_minute,
            window_seconds=60,
        )
    return _sender_rate_limiter


def _empty_twiml() -> PlainTextResponse:
    return PlainTextResponse(content=EMPTY_TWIML, media_type="application/xml")


def _signed_url(request: Request) -> str:
    """The URL Twilio signed; behind a proxy request.url is the internal one."""
    if settings.twilio_webhook_url:
        return settings.twilio_webhook_url
    proto = request.headers.get("X-Forwarded-Proto", "https")
    host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host", "")
    return f"{proto}://{host}{request.url.path}"


async def validated_form(request: Request) -> dict[str, str]:
    """
    Read the webhook form, checking the Twilio signature when required.

    Raises:
        HTTPException: 500 when validation is on but no auth token is set,
            403 on a missing or bad signature
    """
    form = {key: str(value) for key, value in (await request.form()).items()}

    if not settings.require_webhook_validation:
        return form

    if not settings.twilio_auth_token:
        logger.error("TWILIO_AUTH_TOKEN not configured")
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=500, detail="Webhook validation not configured")

    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=403, detail="Missing signature")

    url = _signed_url(request)
    if not RequestValidator(settings.twilio_auth_token).validate(url, form, signature):
        logger.error("Invalid Twilio signature", extra={"url": url})
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=403, detail="Invalid signature")

    return form


async def twilio_sms_webhook_handler(request: Request, replies: ReplyService) -> PlainTextResponse:
    """
    Handle one inbound SMS.

    Signature failures are rejected with 403; everything after that
    answers 200 so Twilio does not redeliver a reply that was already
    (partly) applied.
    """
    start_time = time.perf_counter()
    form = await validated_form(request)

    from_phone = form.get("From", "")
    body = form.get("Body", "")
    message_sid = form.get("MessageSid")
    log_ctx = LogContext(logger, request_id=getattr(request.state, "request_id", "unknown"))

    if not from_phone:
        log_ctx.warning("Inbound SMS without From, ignored")
        return _empty_twiml()

    allowed, retry_after = _get_sender_rate_limiter().is_allowed(from_phone)
    if not allowed:
        log_ctx.warning(f"Inbound SMS rate limited for {mask_phone(from_phone)}, retry_after={retry_after}s")
        inc_counter("webhook_rate_limited", provider="twilio")
        return _empty_twiml()

    try:
        outcome = await replies.handle_inbound_sms(from_phone, body, message_sid)
    except Exception as exc:
        log_ctx.error(f"Inbound SMS processing failed: {exc.__class__.__name__}", exc_info=True)
        inc_counter("inbound_sms_errors")
        return _empty_twiml()

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    log_ctx.bind(contact_id=outcome.contact_id, job_id=outcome.job_id).info(
        f"Inbound SMS from {mask_phone(from_phone)}: matched={outcome.matched}, "
        f"opted_out={outcome.opted_out}, status={outcome.status}, elapsed={elapsed_ms:.0f}ms",
    )
    return _empty_twiml()
