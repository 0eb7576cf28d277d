"""
FastAPI application entry point.

Serves the internal API the bot calls and the payment gateway webhooks.
The delivery tick itself runs in the Celery worker (tasks/delivery_tasks.py).
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from routers import billing, gifts, payment_webhooks, users

setup_logging()
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
WEBHOOK_PREFIX = "/v1/payments/webhooks/"
SENSITIVE_HEADERS = (
    "authorization",
    "cookie",
    "x-internal-token",
    "stripe-signature",
    "crypto-pay-api-signature",
    "trbt-signature",
)


def _filter_sensitive_data(event):
    """Drop auth and webhook signature headers before an event leaves for Sentry."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers.pop(name)
    return event


if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"daily-path@{API_VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        send_default_pii=False,
        before_send=lambda event, hint: _filter_sensitive_data(event),
    )
    logger.info(f"Sentry enabled ({settings.ENVIRONMENT})")

app = FastAPI(
    title="Daily Path API",
    description="Paced daily content delivery, subscription ledger and payment reconciliation",
    version=API_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

cors_origins = [o.strip() for o in (settings.CORS_ORIGINS or "").split(",") if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", "X-Internal-Token", "X-Request-ID"],
    )


def _request_fields(request: Request, request_id: str) -> dict:
    fields = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
    }
    if request.url.path.startswith(WEBHOOK_PREFIX):
        fields["gateway"] = request.url.path[len(WEBHOOK_PREFIX):].strip("/")
    return fields


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request with its id, timing and, for webhooks, the gateway name."""
    request_id = request.headers.get("x-request-id") or uuid4().hex
    request.state.request_id = request_id
    fields = _request_fields(request, request_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={"extra_fields": {**fields, "error": str(e)}},
        )
        raise

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    logger.log(
        level,
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={"extra_fields": {**fields, "status_code": response.status_code, "process_time_ms": elapsed_ms}},
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={"extra_fields": {"request_id": request_id, "method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "request_id": request_id},
    )


@app.get("/health")
async def health():
    """Liveness probe. 503 when the database is unreachable."""
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {
        "status": "healthy",
        "version": API_VERSION,
        "payments_test_mode": settings.PAYMENTS_TEST_MODE,
        "timestamp": time.time(),
    }


app.include_router(payment_webhooks.router)
app.include_router(billing.router)
app.include_router(gifts.router)
app.include_router(users.router)
