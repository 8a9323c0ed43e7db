"""Outbound WhatsApp message log.

Rows are written before the API call and updated with the provider message id
afterwards, so delivery-status callbacks can be matched back to them. Logging
never fails a send.
"""

from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kahani.database import session_scope
from kahani.logging_config import get_logger
from kahani.models import WhatsAppMessage

logger = get_logger("message_log")

MESSAGE_STATUSES = ("queued", "sent", "delivered", "read", "failed", "dropped", "unknown")

SessionScope = Callable[[], ContextManager[Session]]


class MessageLog:
    def __init__(self, scope: SessionScope = session_scope):
        self._scope = scope

    def log_outgoing(
        self,
        *,
        to_number: str,
        message_type: str,
        payload: dict[str, Any],
        template_name: Optional[str] = None,
        order_id: Optional[str] = None,
        category: Optional[str] = None,
        from_number: Optional[str] = None,
    ) -> Optional[UUID]:
        try:
            with self._scope() as db:
                row = WhatsAppMessage(
                    to_number=to_number,
                    from_number=from_number,
                    message_type=message_type,
                    template_name=template_name,
                    order_id=order_id,
                    category=category,
                    payload=payload,
                    status="queued",
                )
                db.add(row)
                db.commit()
                return row.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to log outgoing WhatsApp message: {e}")
            return None

    def mark_sent(self, log_id: Optional[UUID], message_id: Optional[str]) -> None:
        self._update(log_id, message_id=message_id, status="sent", error=None)

    def mark_failed(self, log_id: Optional[UUID], error: str) -> None:
        self._update(log_id, status="failed", error=error[:2000])

    def _update(self, log_id: Optional[UUID], **fields) -> None:
        if log_id is None:
            return
        try:
            with self._scope() as db:
                row = db.query(WhatsAppMessage).filter(WhatsAppMessage.id == log_id).first()
                if row is None:
                    return
                for name, value in fields.items():
                    setattr(row, name, value)
                row.updated_at = datetime.now(timezone.utc)
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update WhatsApp message log {log_id}: {e}")


def update_message_status(db: Session, message_id: str, status: str, error: Optional[str] = None) -> int:
    """Write a delivery status onto logged outbound messages. Unknown ids update nothing."""
    if status not in MESSAGE_STATUSES:
        status = "unknown"
    rows = db.query(WhatsAppMessage).filter(WhatsAppMessage.message_id == message_id).all()
    for row in rows:
        row.status = status
        row.error = error
        row.updated_at = datetime.now(timezone.utc)
    return len(rows)
