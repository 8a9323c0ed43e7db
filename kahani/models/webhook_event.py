import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.sql import func

from kahani.database import Base
from kahani.models.types import JSONType


class WhatsAppWebhookEvent(Base):
    """Append-only log of every webhook payload received."""

    __tablename__ = "whatsapp_webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    direction = Column(Text, nullable=False, default="inbound")  # inbound, status
    message_id = Column(Text)
    from_number = Column(Text)
    to_number = Column(Text)
    event_type = Column(Text, nullable=False)  # message type or delivery status
    response_payload = Column(JSONType, nullable=False, default=dict)
    media_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
