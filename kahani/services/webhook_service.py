"""Webhook ingestion: audit log, inbound dedup and delivery-status correlation."""

from typing import Any, Awaitable, Callable, ContextManager, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from kahani.database import session_scope
from kahani.logging_config import get_logger
from kahani.models import ProcessedWebhook, WhatsAppWebhookEvent
from kahani.schemas.webhook import InboundMessage, StatusUpdate, WebhookPayload
from kahani.services.alert_service import alert_async, alert_error, alert_message_dropped
from kahani.services.message_log_service import update_message_status

logger = get_logger("webhook_service")

SessionScope = Callable[[], ContextManager[Session]]

IDEMPOTENCY_PREFIX = "whatsapp_msg_"

# Keys whose handler is running in this process.
_in_flight: set[str] = set()

# Meta error codes for messages the provider refused to deliver
# (ecosystem-health limits, recipient opted out of marketing).
DROPPED_ERROR_CODES = {131049, 131050}

PROVIDER_STATUS_MAP = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}


def idempotency_key(message_id: str) -> str:
    return f"{IDEMPOTENCY_PREFIX}{message_id}"


def is_processed(db: Session, key: str) -> bool:
    return db.query(ProcessedWebhook).filter(ProcessedWebhook.idempotency_key == key).first() is not None


def mark_processed(db: Session, key: str) -> bool:
    """Record a handled inbound event. Returns False if it was already recorded."""
    if db.get(ProcessedWebhook, key) is not None:
        return False
    db.add(ProcessedWebhook(idempotency_key=key))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Webhook already marked processed", extra={"context": {"key": key}})
        return False
    return True


def log_webhook_event(db: Session, raw: dict[str, Any], payload: WebhookPayload) -> Optional[WhatsAppWebhookEvent]:
    """Append the raw payload to the webhook event log. Never raises."""
    message = payload.first_message()
    status = payload.first_status()

    if message is not None:
        direction, event_type = "inbound", message.type
        message_id, from_number = message.id, message.from_number
        to_number = payload.business_number
    elif status is not None:
        direction, event_type = "status", status.status
        message_id, from_number = status.id, payload.business_number
        to_number = status.recipient_id
    else:
        direction, event_type = "inbound", "unknown"
        message_id = from_number = to_number = None

    event = WhatsAppWebhookEvent(
        direction=direction,
        message_id=message_id,
        from_number=from_number,
        to_number=to_number,
        event_type=event_type,
        response_payload=raw,
    )
    try:
        db.add(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to log webhook event: {e}", extra={"context": {"message_id": message_id}})
        return None
    return event


def map_status(status: StatusUpdate) -> tuple[str, Optional[str]]:
    """Provider status -> (local status, error text)."""
    error = status.errors[0] if status.errors else None
    error_text = None
    if error is not None:
        error_text = f"{error.code}: {error.message or error.title or ''}".strip()

    if error is not None and error.code in DROPPED_ERROR_CODES:
        return "dropped", error_text
    return PROVIDER_STATUS_MAP.get(status.status, "unknown"), error_text


def correlate_status(db: Session, status: StatusUpdate) -> str:
    """Write a delivery status onto the logged outbound message.

    Unknown message ids are a no-op. Returns the local status; the caller
    alerts operators when it is ``dropped``.
    """
    local_status, error_text = map_status(status)
    updated = update_message_status(db, status.id, local_status, error_text)
    db.commit()

    logger.info(
        "Delivery status correlated",
        extra={
            "context": {
                "message_id": status.id,
                "status": local_status,
                "matched": updated,
                "recipient": status.recipient_id,
            }
        },
    )

    return local_status


MessageHandler = Callable[[Session, InboundMessage], Awaitable[str]]


async def process_webhook(
    raw: dict[str, Any],
    payload: WebhookPayload,
    handler: MessageHandler,
    scope: SessionScope = session_scope,
) -> str:
    """Background half of the webhook: log, correlate, dedupe, handle.

    The idempotency key is claimed in memory while ``handler`` runs and is
    written only after it returns, so a concurrent redelivery is skipped and
    a failed attempt is retried in full when the provider redelivers.
    """
    with scope() as db:
        log_webhook_event(db, raw, payload)

        status = payload.first_status()
        if status is not None:
            try:
                local_status = correlate_status(db, status)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to correlate delivery status: {e}", extra={"context": {"message_id": status.id}})
            else:
                if local_status == "dropped":
                    error = status.errors[0]
                    await alert_async(
                        alert_message_dropped, status.recipient_id, status.id, error.code, error.message or error.title
                    )

        message = payload.first_message()
        if message is None:
            return "status" if status is not None else "empty"

        key = idempotency_key(message.id)
        if key in _in_flight or is_processed(db, key):
            logger.info("Duplicate webhook message skipped", extra={"context": {"message_id": message.id}})
            return "duplicate"

        _in_flight.add(key)
        try:
            try:
                outcome = await handler(db, message)
            except Exception as e:
                db.rollback()
                logger.error(
                    "Inbound message handling failed",
                    extra={"context": {"message_id": message.id, "from": message.from_number, "type": message.type}},
                    exc_info=True,
                )
                await alert_async(
                    alert_error, "WhatsApp webhook handling failed", {"message_id": message.id, "error": str(e)[:300]}
                )
                return "failed"

            mark_processed(db, key)
        finally:
            _in_flight.discard(key)

        logger.info(
            "Inbound message handled",
            extra={"context": {"message_id": message.id, "type": message.type, "outcome": outcome}},
        )
        return outcome
