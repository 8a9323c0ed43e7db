from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from kahani.config import Settings
from kahani.dependencies import get_conversation_service, get_settings
from kahani.logging_config import get_logger
from kahani.schemas.webhook import WebhookPayload
from kahani.services.conversation_service import ConversationService
from kahani.services.webhook_service import process_webhook

logger = get_logger("webhook")

router = APIRouter()

WHATSAPP_OBJECT = "whatsapp_business_account"


@router.get("/webhook/whatsapp", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    config: Settings = Depends(get_settings),
):
    """Meta subscription handshake."""
    expected = config.whatsapp_webhook_verify_token
    if not expected:
        logger.error("WHATSAPP_WEBHOOK_VERIFY_TOKEN not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Verify token not configured")
    if hub_mode == "subscribe" and hub_verify_token == expected:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook/whatsapp")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: ConversationService = Depends(get_conversation_service),
):
    """Acknowledge at once; logging, dedup and handling run after the response."""
    try:
        raw = await request.json()
        payload = WebhookPayload.model_validate(raw)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Unreadable webhook payload: {e}")
        return {"status": "received"}

    if payload.object != WHATSAPP_OBJECT:
        logger.info("Ignoring non-WhatsApp webhook", extra={"context": {"object": payload.object}})
        return {"status": "received"}

    background_tasks.add_task(process_webhook, raw, payload, service.handle_incoming_message)
    return {"status": "received"}
