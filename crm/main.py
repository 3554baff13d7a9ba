import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status

from crm import __version__
from crm.config import Settings, settings
from crm.logging_utils import RequestLoggingMiddleware, setup_logging
from crm.metrics import get_metrics, get_metrics_content_type
from crm.routers import agents, auth, contacts, conversations, whatsapp
from crm.schemas import HealthResponse
from crm.storage import check_db_health, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# Minimum work factor outside tests
MIN_PRODUCTION_BCRYPT_ROUNDS = 12


def warn_on_weak_settings(app_settings: Settings) -> None:
    """Log settings that are acceptable for tests but not for production."""
    if not app_settings.WHATSAPP_APP_SECRET:
        logger.warning("WHATSAPP_APP_SECRET not set, webhook signatures are not checked")
    if app_settings.BCRYPT_ROUNDS < MIN_PRODUCTION_BCRYPT_ROUNDS:
        logger.warning(
            f"BCRYPT_ROUNDS={app_settings.BCRYPT_ROUNDS} is below {MIN_PRODUCTION_BCRYPT_ROUNDS}, "
            "only use this for tests"
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    warn_on_weak_settings(settings)
    yield


app = FastAPI(
    title="WhatsApp CRM API",
    description="Multi-tenant CRM fed by WhatsApp Business webhooks",
    version=__version__,
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(auth.router)
app.include_router(contacts.router)
app.include_router(agents.router)
app.include_router(conversations.router)
app.include_router(whatsapp.router)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_requests_total: Webhook deliveries by result
    - ingested_events_total: Inbound messages by ingestion status
    - gateway_calls_total: WhatsApp API calls by operation and result
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
