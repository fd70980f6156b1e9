# app/transport/http_app.py
"""
HTTP application for the dispatch engine.

Security layers:
1. Public: liveness/readiness, the Twilio SMS webhook (signature
   validated) and push receipts/actions (rate limited)
2. Protected: dispatch, credits, campaigns, device tokens, metrics
   (require admin token)
3. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.services import (
    DispatchService,
    get_credit_ledger,
    get_dispatch_service,
    get_reply_service,
)
from app.core.errors import DispatchError
from app.core.ledger import CreditLedger
from app.core.replies import ReplyService
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import get_async_health_checker
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from app.infra.schema_validator import validate_schema_version
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.schemas import (
    CreditBalanceOut,
    DeviceTokenIn,
    DeviceTokenOut,
    DispatchIn,
    DispatchOut,
    GrantIn,
    GrantOut,
    PushActionIn,
    PushActionOut,
    PushReceiptIn,
    RefundIn,
    TransactionOut,
)
from app.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    require_admin_token,
    sanitize_error_message,
)
from app.transport.twilio_webhook import twilio_sms_webhook_handler

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

# Push receipts/actions come straight from devices
public_rate_limit = RateLimitDependency(
    InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60),
    scope="public",
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

def _build_task_worker():
    from app.core.dispatch.jobs import TASK_HANDLERS
    from app.infra.pg_task_repo_async import get_task_repo
    from app.infra.task_worker import TaskWorker

    worker = TaskWorker(
        get_task_repo(),
        poll_interval=settings.task_worker_poll_interval,
        batch_size=settings.task_worker_batch_size,
        base_retry_delay=settings.task_worker_base_retry_delay,
        stale_timeout=settings.task_worker_stale_timeout,
    )
    for task_type, handler in TASK_HANDLERS.items():
        worker.register(task_type, handler)
    return worker


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    logger.info(f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}")

    if settings.is_production:
        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")
        if not settings.require_webhook_validation:
            logger.critical("REQUIRE_WEBHOOK_VALIDATION must be true in production")
            raise RuntimeError("Webhook validation disabled in production")
    check_configured_tokens()

    await init_pool()
    logger.info("Database pool initialized")

    # Migrations run separately: python -m app.infra.migrate
    try:
        await validate_schema_version()
    except RuntimeError:
        logger.critical("Schema validation failed. Run migrations first: python -m app.infra.migrate")
        await close_pool()
        raise

    if settings.twilio_enabled and settings.twilio_webhook_url:
        logger.info(f"Twilio webhook URL: {settings.twilio_webhook_url}")

    # Only "all" and "worker" processes consume the task queue
    task_worker = None
    if settings.run_mode in ("all", "worker") and settings.task_worker_enabled:
        task_worker = _build_task_worker()
        logger.info(f"Task worker handlers={task_worker.list_handlers()}")
        await task_worker.start()
    elif settings.run_mode not in ("all", "worker"):
        logger.info(f"Task worker skipped (run_mode={settings.run_mode})")
    else:
        logger.info("Task worker skipped (task_worker_enabled=false)")
    fastapi_app.state.task_worker = task_worker

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if task_worker is not None:
        await task_worker.stop()

    from app.infra.http_client import close_all_sessions
    from app.infra.push_providers import close_push_providers
    await close_push_providers()
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Crew Dispatch",
    description="Credit-gated job invitation dispatch (push first, SMS fallback)",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__}: {exc.detail}", extra={"status_code": exc.status_code})
    else:
        logger.info(f"{exc.__class__.__name__}: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.__class__.__name__, "detail": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness check. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness check: database reachable and schema tables present."""
    result = await get_async_health_checker().run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.post("/webhooks/twilio/sms")
async def webhook_twilio_sms(request: Request, replies: ReplyService = Depends(get_reply_service)):
    """
    Inbound SMS replies - PUBLIC but VALIDATED.

    Signature validated (HMAC-SHA1), rate limited per sender, always
    answered with empty TwiML.
    """
    return await twilio_sms_webhook_handler(request, replies)


@app.post("/push/{notification_id}/delivered", dependencies=[Depends(public_rate_limit)])
async def push_delivered(
    notification_id: str,
    payload: PushReceiptIn,
    service: DispatchService = Depends(get_dispatch_service),
):
    """Device receipt for a push. Late receipts (after fallback) are ignored."""
    confirmed = await service.confirm_push_delivery(notification_id, payload.contact_id)
    return {"ok": True, "confirmed": confirmed}


@app.post("/push/{notification_id}/action", response_model=PushActionOut, dependencies=[Depends(public_rate_limit)])
async def push_action(
    notification_id: str,
    payload: PushActionIn,
    service: DispatchService = Depends(get_dispatch_service),
):
    """Accept/decline tapped on a job invitation."""
    outcome = await service.handle_push_action(notification_id, payload.contact_id, payload.action)
    return PushActionOut(
        contact_id=outcome.contact_id,
        job_id=outcome.job_id,
        status=outcome.status,
        acknowledged=outcome.acknowledged,
    )


# ============================================================================
# DISPATCH (admin token)
# ============================================================================

@app.post("/dispatch", response_model=DispatchOut, dependencies=[Depends(require_admin_token)])
async def dispatch(payload: DispatchIn, service: DispatchService = Depends(get_dispatch_service)):
    """
    Start a campaign: rank, cap at available credits, send the first batch.

    402 when the owner has no spendable credit, 404 for an unknown job or template.
    """
    summary = await service.dispatch(
        payload.owner_id,
        payload.job_id,
        payload.contact_ids,
        template_id=payload.template_id,
        custom_message=payload.custom_message,
    )
    return DispatchOut(**asdict(summary))


@app.delete("/campaigns/{campaign_id}/pending", dependencies=[Depends(require_admin_token)])
async def cancel_campaign(campaign_id: str, service: DispatchService = Depends(get_dispatch_service)):
    """Drop the campaign's queued batches."""
    cancelled = await service.cancel_campaign(campaign_id)
    return {"campaign_id": campaign_id, "cancelled": cancelled}


@app.post(
    "/contacts/{contact_id}/device-tokens",
    response_model=DeviceTokenOut,
    dependencies=[Depends(require_admin_token)],
)
async def register_device_token(
    contact_id: str,
    payload: DeviceTokenIn,
    service: DispatchService = Depends(get_dispatch_service),
):
    token = await service.register_device_token(contact_id, payload.token, payload.platform)
    return DeviceTokenOut.model_validate(token, from_attributes=True)


@app.delete("/device-tokens/{token}", dependencies=[Depends(require_admin_token)])
async def remove_device_token(token: str, service: DispatchService = Depends(get_dispatch_service)):
    removed = await service.remove_device_token(token)
    return {"ok": True, "removed": removed}


# ============================================================================
# CREDITS (admin token)
# ============================================================================

@app.get("/credits/{owner_id}", response_model=CreditBalanceOut, dependencies=[Depends(require_admin_token)])
async def credit_balance(owner_id: str, ledger: CreditLedger = Depends(get_credit_ledger)):
    breakdown = await ledger.breakdown(owner_id)
    return CreditBalanceOut(
        owner_id=owner_id,
        available=breakdown.available,
        by_source=breakdown.by_source,
        expired=breakdown.expired,
    )


@app.get(
    "/credits/{owner_id}/transactions",
    response_model=list[TransactionOut],
    dependencies=[Depends(require_admin_token)],
)
async def credit_transactions(
    owner_id: str,
    limit: int = 50,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    history = await ledger.history(owner_id, limit=max(1, min(limit, 500)))
    return [TransactionOut.model_validate(tx, from_attributes=True) for tx in history]


@app.post(
    "/credits/{owner_id}/grants",
    response_model=GrantOut,
    status_code=201,
    dependencies=[Depends(require_admin_token)],
)
async def create_grant(owner_id: str, payload: GrantIn, ledger: CreditLedger = Depends(get_credit_ledger)):
    grant = await ledger.grant(
        owner_id,
        payload.source_type,
        payload.amount,
        source_ref=payload.source_ref,
        expires_at=payload.expires_at,
    )
    return GrantOut.model_validate(grant, from_attributes=True)


@app.post(
    "/credits/{owner_id}/refunds",
    response_model=list[TransactionOut],
    dependencies=[Depends(require_admin_token)],
)
async def refund_credits(owner_id: str, payload: RefundIn, ledger: CreditLedger = Depends(get_credit_ledger)):
    refunds = await ledger.refund(owner_id, payload.transaction_ids, payload.reason)
    return [TransactionOut.model_validate(tx, from_attributes=True) for tx in refunds]


# ============================================================================
# MONITORING / ADMIN (admin token)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_admin_token)])
async def detailed_health():
    """Every check including task backlog, gateway config and schema info."""
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_admin_token)])
def metrics():
    return get_metrics_collector().get_metrics()


@app.get("/admin/tasks", dependencies=[Depends(require_admin_token)])
async def admin_task_counts(owner_id: str | None = None):
    """Task queue counts by status."""
    from app.infra.pg_task_repo_async import get_task_repo
    return {"counts": await get_task_repo().count_by_status(owner_id)}


@app.post("/admin/tasks/cleanup", dependencies=[Depends(require_admin_token)])
async def admin_task_cleanup():
    """Purge old completed/failed tasks and reset stale running ones."""
    from app.infra.pg_task_repo_async import get_task_repo

    repo = get_task_repo()
    completed = await repo.cleanup_completed(ttl_days=settings.task_cleanup_completed_ttl_days)
    failed = await repo.cleanup_failed(ttl_days=settings.task_cleanup_failed_ttl_days)
    stale = await repo.reset_stale_running(timeout_seconds=settings.task_worker_stale_timeout)
    logger.info(f"Task cleanup: completed={completed}, failed={failed}, stale_reset={stale}")
    return {"deleted_completed": completed, "deleted_failed": failed, "reset_stale": stale}


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
