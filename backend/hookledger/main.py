import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hookledger.core.config import Settings, get_settings
from hookledger.core.errors import WebhookError
from hookledger.core.logging import setup_logging
from hookledger.db import crud, models, schemas
from hookledger.db.models import EventStatus, Provider
from hookledger.middleware.body_size import BodySizeLimitMiddleware
from hookledger.runtime import Services, build_services
from hookledger.services.ingest import ingest
from hookledger.services.signatures import SIGNATURE_HEADERS

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()
router = APIRouter()


# ---------- dependencies ----------
def get_services(request: Request) -> Services:
    return request.app.state.services


def db_session(services: Services = Depends(get_services)):
    db: Session = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def current_operator(
    creds: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> models.ApiKey:
    # Released before the handler runs; ledger writes must not queue behind it
    with services.session_factory() as db:
        api_key = crud.verify_api_key(db, creds.credentials)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key


def provider_param(provider: str) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not Found")


@router.get("/health", include_in_schema=False)
def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "providers": {p.value: bool(services.settings.secret_for(p)) for p in Provider},
    }


# ---------- ingress ----------
async def read_limited_body(request: Request, max_bytes: int) -> bytes:
    """Read the request body, giving up as soon as it grows past ``max_bytes``.

    The middleware only sees a declared Content-Length; chunked uploads are
    bounded here.
    """
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")
    return bytes(body)


@router.post("/webhooks/{provider}")
async def receive_webhook(
    request: Request,
    provider: Provider = Depends(provider_param),
    services: Services = Depends(get_services),
):
    settings = services.settings
    secret = settings.secret_for(provider)
    if not secret:
        logger.warning(f"Rejected {provider.value} webhook: no secret configured")
        raise HTTPException(
            status_code=400, detail=f"Webhooks not configured for {provider.value}"
        )

    # Signatures are computed over these exact bytes
    raw = await read_limited_body(request, settings.max_body_bytes)
    if not raw:
        raise HTTPException(status_code=400, detail="Empty body")

    outcome = await run_in_threadpool(
        ingest,
        services.processor,
        services.registry,
        provider,
        raw,
        request.headers.get(SIGNATURE_HEADERS[provider]),
        secret,
        settings.signature_tolerance_seconds,
    )
    return {
        "status": "skipped" if outcome.result.skipped else "processed",
        "event_id": outcome.event_id,
        "event_type": outcome.event_type,
    }


# ---------- operator ----------
@router.get("/events", response_model=list[schemas.WebhookEventOut])
def list_events(
    provider: Provider | None = None,
    event_status: EventStatus | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    _: models.ApiKey = Depends(current_operator),
    services: Services = Depends(get_services),
):
    return services.store.list_events(provider, event_status, limit)


@router.get("/events/{provider}/{event_id}", response_model=schemas.WebhookEventDetail)
def get_event(
    event_id: str,
    provider: Provider = Depends(provider_param),
    _: models.ApiKey = Depends(current_operator),
    services: Services = Depends(get_services),
    db: Session = Depends(db_session),
):
    event = services.store.get(provider, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")

    # db opens its transaction here, after the ledger read has released its own
    detail = schemas.WebhookEventDetail.model_validate(event)
    detail.audit = [
        schemas.AuditEntryOut.model_validate(entry)
        for entry in crud.list_audit_entries(db, event_id)
        if (entry.details or {}).get("provider") == provider.value
    ]
    return detail


@router.post(
    "/events/{provider}/{event_id}/requeue",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.RequeueResponse,
    description="Mark a stuck processing event as failed so the next delivery retries it.",
)
def requeue_event(
    event_id: str,
    provider: Provider = Depends(provider_param),
    operator: models.ApiKey = Depends(current_operator),
    services: Services = Depends(get_services),
):
    event = services.store.get(provider, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    if not services.store.requeue(provider, event_id):
        raise HTTPException(
            status_code=409, detail=f"Event is {event.status.value}, not processing"
        )

    services.audit_sink.record(
        actor="operator",
        action="requeued",
        resource_id=event_id,
        metadata={"provider": provider.value, "operator": operator.name},
    )
    logger.info(f"Operator {operator.name} requeued {provider.value}/{event_id}")
    return {"status": "requeued", "provider": provider, "event_id": event_id}


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the API. Pass ``services`` to run against an existing engine (tests)."""
    settings = services.settings if services else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_services = app.state.services is None
        if owns_services:
            setup_logging(settings.log_level, settings.log_json)
            app.state.services = build_services(settings)
        yield
        if owns_services:
            app.state.services.close()
            app.state.services = None

    app = FastAPI(
        title="Webhook Ledger",
        description="Verified, idempotent intake for provider webhooks",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError):
        # Server-side failure details stay in our logs, not in the sender's
        detail = exc.message if exc.status_code < 500 else "Webhook processing failed"
        return JSONResponse(status_code=exc.status_code, content={"detail": detail})

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Database unavailable"},
        )

    app.include_router(router)
    return app


app = create_app()
