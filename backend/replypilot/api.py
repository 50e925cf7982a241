import json
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import parse_qsl

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import models, number_pool, preferences, schemas, sms_gateway
from .config import settings
from .database import engine, get_db
from .dispatcher import UnknownEventType, emit_event, queue_event
from .logging_utils import RequestIdMiddleware, configure_logging, log_event, log_warning

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    from alembic import command  # noqa: PLC0415
    from alembic.config import Config  # noqa: PLC0415

    base_dir = Path(__file__).resolve().parent.parent
    alembic_ini = base_dir / "alembic.ini"
    if not alembic_ini.exists():
        log_warning("migrations_skipped", reason="alembic.ini not found")
        return
    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    command.upgrade(cfg, "head")
    log_event("migrations_applied", revision="head")


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required")
    if settings.email_enabled and (not settings.smtp_host or not settings.smtp_sender):
        log_warning("email_smtp_not_configured", detail="email deliveries will fail with email_not_configured")
    if not settings.internal_api_token:
        log_warning("internal_api_token_missing", detail="internal endpoints are unauthenticated")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Replypilot Notifications API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    expected = settings.internal_api_token
    if not expected:
        return
    if not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


def _get_customer(db: Session, customer_id: int) -> models.Customer:
    customer = db.get(models.Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}, "detail": message},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return _error(exc.status_code, f"http_{exc.status_code}", message)


@app.exception_handler(number_pool.NoNumbersAvailable)
async def no_numbers_available_handler(request: Request, exc: number_pool.NoNumbersAvailable):
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.code, str(exc))


@app.exception_handler(sms_gateway.SmsProviderNotConfigured)
async def sms_provider_not_configured_handler(request: Request, exc: sms_gateway.SmsProviderNotConfigured):
    return _error(status.HTTP_400_BAD_REQUEST, exc.code, str(exc))


@app.exception_handler(UnknownEventType)
async def unknown_event_type_handler(request: Request, exc: UnknownEventType):
    return _error(status.HTTP_400_BAD_REQUEST, "unknown_event_type", str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_request", str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_warning("unhandled_exception", path=request.url.path, error=str(exc))
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An unexpected error occurred.")


@app.get("/")
def read_root():
    return {"message": "Hello from Replypilot Notifications API!"}


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Database unavailable")


@app.post(
    "/api/customers/{customer_id}/events",
    response_model=schemas.EventEmitResponse,
    dependencies=[Depends(require_internal_token)],
)
def post_customer_event(customer_id: int, body: schemas.EventEmitRequest, db: Session = Depends(get_db)):
    _get_customer(db, customer_id)
    if settings.task_queue_enabled:
        job = queue_event(db, customer_id, body.event_type, body.payload)
        log_event("notification_event_queued", customer_id=customer_id, event_type=body.event_type, job_id=job.id)
        return schemas.EventEmitResponse(queued=True, job_id=job.id)

    outcomes = emit_event(db, customer_id, body.event_type, body.payload)
    return schemas.EventEmitResponse(outcomes=[schemas.DispatchOutcomeResponse(**outcome.as_dict()) for outcome in outcomes])


@app.get(
    "/api/customers/{customer_id}/notification-preferences",
    response_model=schemas.NotificationPreferenceResponse,
    dependencies=[Depends(require_internal_token)],
)
def get_customer_notification_preferences(
    customer_id: int,
    user_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    _get_customer(db, customer_id)
    pref = preferences.get_notification_preferences(db, customer_id, user_id)
    if not pref:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification preferences not found")
    return pref


@app.put(
    "/api/customers/{customer_id}/notification-preferences",
    response_model=schemas.NotificationPreferenceResponse,
    dependencies=[Depends(require_internal_token)],
)
def put_customer_notification_preferences(
    customer_id: int,
    body: schemas.NotificationPreferenceUpdate,
    db: Session = Depends(get_db),
):
    _get_customer(db, customer_id)
    fields = body.model_dump(exclude_unset=True)
    user_id = fields.pop("user_id", None)
    if user_id is not None:
        user = db.get(models.User, user_id)
        if not user or user.customer_id != customer_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return preferences.update_notification_preferences(db, customer_id, user_id, fields)


@app.get(
    "/api/customers/{customer_id}/notification-deliveries",
    response_model=List[schemas.NotificationDeliveryResponse],
    dependencies=[Depends(require_internal_token)],
)
def list_customer_notification_deliveries(
    customer_id: int,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    _get_customer(db, customer_id)
    query = db.query(models.NotificationDelivery).filter(models.NotificationDelivery.customer_id == customer_id)
    if status_filter:
        query = query.filter(models.NotificationDelivery.status == status_filter)
    return query.order_by(models.NotificationDelivery.id.desc()).limit(limit).all()


@app.get(
    "/api/admin/pool-numbers",
    response_model=schemas.PoolNumberListResponse,
    dependencies=[Depends(require_internal_token)],
)
def list_pool_numbers(db: Session = Depends(get_db)):
    return schemas.PoolNumberListResponse(
        available=number_pool.list_pool_numbers(db),
        allocated=number_pool.list_allocated_numbers(db),
    )


@app.post(
    "/api/admin/pool-numbers",
    response_model=schemas.PoolNumberResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_token)],
)
def add_pool_number(body: schemas.PoolNumberCreate, db: Session = Depends(get_db)):
    return number_pool.add_to_pool(db, body.phone_number, body.notes)


@app.post(
    "/api/admin/customers/{customer_id}/numbers",
    response_model=schemas.ProvisionNumberResponse,
    dependencies=[Depends(require_internal_token)],
)
def provision_customer_number(
    customer_id: int,
    body: Optional[schemas.ProvisionNumberRequest] = None,
    db: Session = Depends(get_db),
):
    _get_customer(db, customer_id)
    result = sms_gateway.provision_number(db, customer_id, body.region if body else None)
    if not result.success:
        if result.error == number_pool.NoNumbersAvailable.code:
            raise number_pool.NoNumbersAvailable("No numbers available from provider")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error or "Provisioning failed")
    return schemas.ProvisionNumberResponse(success=True, phone_number=result.phone_number, sid=result.sid)


@app.delete(
    "/api/admin/customers/{customer_id}/numbers/{phone_number}",
    response_model=schemas.ReleaseNumberResponse,
    dependencies=[Depends(require_internal_token)],
)
def release_customer_number(customer_id: int, phone_number: str, db: Session = Depends(get_db)):
    _get_customer(db, customer_id)
    result = sms_gateway.release_number(db, customer_id, phone_number)
    return schemas.ReleaseNumberResponse(success=result.success, error=result.error)


async def _webhook_params(request: Request) -> dict:
    raw = (await request.body()).decode("utf-8", errors="replace")
    if "application/json" in request.headers.get("content-type", ""):
        data = json.loads(raw or "{}")
        if not isinstance(data, dict):
            raise ValueError("Webhook payload must be an object")
        return data
    return dict(parse_qsl(raw, keep_blank_values=True))


@app.post("/webhooks/sms/{provider}", response_model=schemas.InboundSmsResponse)
async def sms_webhook(provider: str, request: Request, db: Session = Depends(get_db)):
    if sms_gateway.get_provider(provider) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown SMS provider")
    params = await _webhook_params(request)
    url = settings.twilio_sms_webhook_url if provider == "twilio" and settings.twilio_sms_webhook_url else str(request.url)
    signature = request.headers.get("X-Twilio-Signature")
    if not sms_gateway.verify_webhook_signature(provider, url, params, signature):
        log_warning("sms_webhook_signature_invalid", provider=provider)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook signature")

    result = sms_gateway.handle_incoming(provider, params, db=db)
    return schemas.InboundSmsResponse(
        success=result.success,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        error=result.error,
    )
