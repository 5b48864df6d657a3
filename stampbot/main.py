import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stampbot import storage
from stampbot.config import Settings, get_settings, settings
from stampbot.logging_utils import RequestLoggingMiddleware, log_verification_data, setup_logging
from stampbot.metrics import get_metrics, get_metrics_content_type
from stampbot.probe import Probe, SimulatedProbe
from stampbot.proofs import HmacSigner, try_parse_proof, verify_proof
from stampbot.schemas import (
    BroadcastRequest,
    BroadcastResponse,
    ErrorResponse,
    HealthResponse,
    HelpResponse,
    MessageResponse,
    StatsResponse,
    StatusResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriberResponse,
    UnsubscribeRequest,
    UnsubscribeResponse,
    VerdictResponse,
    VerifyResponse,
)
from stampbot.service import DEMO_BODY, DEMO_SUBJECT, ComplianceService, LoggingNotifier, Notifier
from stampbot.storage import SubscriberNotFoundError, check_db_health, get_db, init_db
from stampbot.utils import ms_to_iso, now_ms
from stampbot.verification import Verdict, VerdictCategory


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 5

VERDICT_HTTP_STATUS = {
    VerdictCategory.INPUT_REJECTION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    VerdictCategory.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    VerdictCategory.POLICY: status.HTTP_429_TOO_MANY_REQUESTS,
    VerdictCategory.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# =============================================================================
# Dependencies
# =============================================================================

_probe = SimulatedProbe()


def get_probe() -> Probe:
    return _probe


def get_signer(app_settings: Settings = Depends(get_settings)) -> HmacSigner:
    return HmacSigner(app_settings.SIGNING_SECRET)


def get_notifier() -> Notifier:
    return LoggingNotifier()


def get_service(
    db: Session = Depends(get_db),
    probe: Probe = Depends(get_probe),
    signer: HmacSigner = Depends(get_signer),
    notifier: Notifier = Depends(get_notifier),
    app_settings: Settings = Depends(get_settings),
) -> ComplianceService:
    return ComplianceService(db=db, probe=probe, signer=signer, notifier=notifier, settings=app_settings)


async def _periodic_broadcast(interval_seconds: int) -> None:
    """Send the demo message to all subscribers every interval."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            with storage.SessionLocal() as db:
                service = ComplianceService(
                    db=db,
                    probe=get_probe(),
                    signer=HmacSigner(settings.SIGNING_SECRET),
                    notifier=get_notifier(),
                    settings=settings,
                )
                await service.broadcast(DEMO_SUBJECT, DEMO_BODY)
        except Exception:
            logger.exception("Periodic broadcast failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, schedule periodic broadcast if enabled
    - Shutdown: Cancel the broadcast task
    """
    init_db()
    task = None
    if settings.BROADCAST_INTERVAL_SECONDS > 0:
        logger.info(f"Periodic broadcast every {settings.BROADCAST_INTERVAL_SECONDS}s")
        task = asyncio.create_task(_periodic_broadcast(settings.BROADCAST_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="STAMP Compliance API",
    description="Consent, unsubscribe and rate-limit verification with signed proofs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SubscriberNotFoundError)
async def subscriber_not_found_handler(request: Request, exc: SubscriberNotFoundError) -> JSONResponse:
    logger.warning(f"Referential error: {exc}")
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


# =============================================================================
# Response helpers
# =============================================================================

def _verdict_response(verdict: Verdict) -> VerdictResponse:
    return VerdictResponse(
        verdict=verdict.name,
        code=int(verdict),
        label=verdict.label,
        category=verdict.category.value,
        retryable=verdict.retryable,
    )


def _subscriber_response(subscriber) -> SubscriberResponse:
    return SubscriberResponse(
        user_id=subscriber.identity,
        username=subscriber.display_name,
        subscribed=bool(subscriber.subscribed),
        consent_token=subscriber.consent_token,
        consent_timestamp=ms_to_iso(subscriber.consent_timestamp),
        created_at=ms_to_iso(subscriber.created_at),
        updated_at=ms_to_iso(subscriber.updated_at),
    )


def _message_response(message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        subject=message.subject,
        body=message.body,
        sent_at=ms_to_iso(message.sent_at),
    )


def _reject(verdict: Verdict) -> HTTPException:
    """Failed verdicts map onto HTTP statuses by category."""
    return HTTPException(
        status_code=VERDICT_HTTP_STATUS[verdict.category],
        detail=_verdict_response(verdict).model_dump(),
    )


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. SIGNING_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.SIGNING_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SIGNING_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Subscription Routes
# =============================================================================

@app.post(
    "/subscribe",
    response_model=SubscribeResponse,
    responses={
        422: {"description": "Consent chain rejected or validation error"},
        500: {"model": ErrorResponse, "description": "Internal verification fault"},
    },
)
async def subscribe(
    payload: SubscribeRequest,
    request: Request,
    service: ComplianceService = Depends(get_service),
) -> SubscribeResponse:
    """
    Subscribe with a verified double opt-in.

    This call is the confirmation step of the consent chain. The consent
    token and proof are stored together with the subscriber.
    """
    logger.info(f"POST /subscribe: user_id={payload.user_id}")

    result = service.subscribe(
        identity=payload.user_id,
        display_name=payload.username,
        ip_address=_client_address(request),
    )
    log_verification_data(
        request,
        user_id=payload.user_id,
        check="consent" if result.verdict is not None else None,
        verdict=result.verdict.name if result.verdict is not None else result.status,
    )

    if result.status == "rejected":
        raise _reject(result.verdict)

    return SubscribeResponse(
        status=result.status,
        verdict=_verdict_response(result.verdict) if result.verdict is not None else None,
        subscriber=_subscriber_response(result.subscriber),
        proof=result.proof,
    )


@app.post(
    "/unsubscribe",
    response_model=UnsubscribeResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Not subscribed"},
        422: {"description": "Unsubscribe link rejected or validation error"},
        503: {"description": "Unsubscribe link probe failed, retry"},
    },
)
async def unsubscribe(
    payload: UnsubscribeRequest,
    request: Request,
    service: ComplianceService = Depends(get_service),
) -> UnsubscribeResponse:
    """
    One-click unsubscribe.

    The subscriber's unsubscribe link is probed and verified before the
    subscription flag is cleared; the response carries the proof of removal.
    """
    logger.info(f"POST /unsubscribe: user_id={payload.user_id}")

    result = await service.unsubscribe(payload.user_id)
    log_verification_data(
        request,
        user_id=payload.user_id,
        check="unsubscribe" if result.verdict is not None else None,
        verdict=result.verdict.name if result.verdict is not None else result.status,
    )

    if result.status == "not_subscribed":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not subscribed")
    if result.status == "rejected":
        raise _reject(result.verdict)

    return UnsubscribeResponse(
        status=result.status,
        verdict=_verdict_response(result.verdict),
        removed_at=ms_to_iso(result.subscriber.updated_at if result.subscriber else now_ms()),
        latency_ms=result.latency_ms,
        proof=result.proof,
    )


@app.get(
    "/subscribers/{user_id}",
    response_model=StatusResponse,
    responses={404: {"model": ErrorResponse, "description": "No subscription found"}},
)
async def subscriber_status(user_id: str, db: Session = Depends(get_db)) -> StatusResponse:
    """Subscription details, recent messages, consent proof and service stats."""
    subscriber = storage.get_subscriber(db, user_id)
    if subscriber is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no subscription found")

    messages = storage.get_messages(db, user_id, limit=RECENT_MESSAGES_LIMIT)
    stats = storage.get_stats(db)

    return StatusResponse(
        subscriber=_subscriber_response(subscriber),
        recent_messages=[_message_response(m) for m in messages],
        consent_proof=try_parse_proof(subscriber.consent_proof),
        stats=StatsResponse(**stats),
    )


@app.get(
    "/subscribers/{user_id}/verify",
    response_model=VerifyResponse,
    responses={404: {"model": ErrorResponse, "description": "No messages to verify"}},
)
async def verify_last_message(
    user_id: str,
    db: Session = Depends(get_db),
    signer: HmacSigner = Depends(get_signer),
) -> VerifyResponse:
    """Proof recorded for the last message sent to a subscriber."""
    message = storage.get_last_message(db, user_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no messages to verify")

    proof = try_parse_proof(message.proof)
    return VerifyResponse(
        message=_message_response(message),
        proof=proof,
        signature_valid=proof is not None and verify_proof(proof, signer),
    )


# =============================================================================
# Broadcast & Stats Routes
# =============================================================================

@app.post("/broadcast", response_model=BroadcastResponse)
async def broadcast(
    payload: BroadcastRequest,
    service: ComplianceService = Depends(get_service),
) -> BroadcastResponse:
    """
    Send a message to every active subscriber.

    Each send is gated by the sender rate limit and a fresh unsubscribe link
    check; failures for one subscriber do not stop the others.
    """
    report = await service.broadcast(payload.subject, payload.body)
    return BroadcastResponse(
        attempted=report.attempted,
        sent=report.sent,
        skipped=report.skipped,
        failed=report.failed,
        halted_by=_verdict_response(report.halted_by) if report.halted_by is not None else None,
        message_ids=report.message_ids,
    )


@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Subscriber and message counts."""
    return StatsResponse(**storage.get_stats(db))


@app.get("/help", response_model=HelpResponse)
async def help_text() -> HelpResponse:
    return HelpResponse(
        name="STAMP Protocol Demo",
        description=(
            "Every subscription, message and removal is checked against consent, "
            "unsubscribe-link liveness and sender rate limits, and carries a signed proof."
        ),
        commands={
            "POST /subscribe": "Subscribe to demo messages",
            "GET /subscribers/{user_id}/verify": "Show proof for last message",
            "GET /subscribers/{user_id}": "Show subscription details",
            "POST /unsubscribe": "Unsubscribe (one-click, proven)",
            "GET /help": "Show this help",
        },
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
