import json
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status

from crm.auth import get_current_user
from crm.config import get_settings
from crm.errors import unwrap
from crm.ingestion import IngestionOrchestrator, get_orchestrator
from crm.logging_utils import log_webhook_data
from crm.metrics import record_webhook_outcome
from crm.models import WhatsappSettings
from crm.repository import Repository
from crm.schemas import (
    ErrorResponse,
    PublicUser,
    WebhookResponse,
    WhatsappSettingsResponse,
    WhatsappSettingsUpdate,
)
from crm.storage import get_repository
from crm.utils import verify_hmac_signature
from crm.webhook import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


def _settings_response(settings_row: Optional[WhatsappSettings]) -> WhatsappSettingsResponse:
    if settings_row is None:
        return WhatsappSettingsResponse()
    return WhatsappSettingsResponse(
        phone_number_id=settings_row.phone_number_id,
        webhook_verify_token=settings_row.webhook_verify_token,
        auto_responses=settings_row.auto_responses,
        is_active=settings_row.is_active,
        has_access_token=bool(settings_row.access_token),
        updated_at=settings_row.updated_at,
    )


# =============================================================================
# Tenant settings
# =============================================================================

@router.get("/settings", response_model=WhatsappSettingsResponse)
async def get_whatsapp_settings(
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> WhatsappSettingsResponse:
    return _settings_response(repository.get_whatsapp_settings(user.id))


@router.put("/settings", response_model=WhatsappSettingsResponse)
async def update_whatsapp_settings(
    body: WhatsappSettingsUpdate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> WhatsappSettingsResponse:
    """
    Create or update the caller's WhatsApp credentials. The next webhook or
    outbound message picks them up; no client is cached in between.
    A phone-number id already registered by another account is refused with 409.
    """
    settings_row = unwrap(repository.upsert_whatsapp_settings(user.id, **body.model_dump(exclude_unset=True)))
    logger.info("WhatsApp settings saved", extra={"tenant_id": user.id})
    return _settings_response(settings_row)


# =============================================================================
# Provider webhook
# =============================================================================

@router.get("/webhook", include_in_schema=False)
async def verify_subscription(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    repository: Repository = Depends(get_repository),
) -> Response:
    expected_tokens = [get_settings().WHATSAPP_VERIFY_TOKEN]
    if hub_token:
        settings_row = repository.find_whatsapp_settings_by_verify_token(hub_token)
        if settings_row is not None:
            expected_tokens.append(settings_row.webhook_verify_token)

    challenge = verify_webhook(hub_mode, hub_token, hub_challenge, expected_tokens)
    if challenge is None:
        logger.warning("Webhook verification rejected", extra={"mode": hub_mode})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return Response(content=challenge, media_type="text/plain")


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Body is not JSON"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
) -> WebhookResponse:
    """
    Ingest a WhatsApp Cloud API delivery.

    Answers 200 whatever happens to the individual messages, since any other
    status makes Meta redeliver the batch. Only a body that fails the
    signature check (when an app secret is configured) or is not JSON at all
    is refused.
    """
    raw_body = await request.body()

    app_secret = get_settings().WHATSAPP_APP_SECRET
    if app_secret and not verify_hmac_signature(raw_body, x_hub_signature_256 or "", app_secret):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, "invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, "invalid_json")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON")

    try:
        results = await orchestrator.ingest_payload(payload)
    except Exception:
        logger.exception("Webhook processing failed")
        record_webhook_outcome("error")
        log_webhook_data(request, "error")
        return WebhookResponse(status="ok")

    statuses = [r.status for r in results]
    if "error" in statuses:
        result = "error"
    elif statuses:
        result = "processed"
    else:
        result = "empty"
    record_webhook_outcome(result)
    log_webhook_data(request, result, statuses)
    logger.info(f"Webhook processed: {len(statuses)} events, result: {result}")

    return WebhookResponse(status="ok")
