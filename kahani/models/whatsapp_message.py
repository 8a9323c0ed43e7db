import uuid

from sqlalchemy import Column, DateTime, Index, Text, Uuid
from sqlalchemy.sql import func

from kahani.database import Base
from kahani.models.types import JSONType


class WhatsAppMessage(Base):
    """Outbound message log, correlated with delivery-status callbacks by message_id."""

    __tablename__ = "whatsapp_messages"
    __table_args__ = (Index("ix_whatsapp_messages_message_id", "message_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Text)  # provider wamid, set after the API responds
    from_number = Column(Text)
    to_number = Column(Text, nullable=False)
    order_id = Column(Text)  # trial id when known
    template_name = Column(Text)
    message_type = Column(Text, nullable=False)  # text, template, interactive
    category = Column(Text)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="queued")  # queued, sent, delivered, read, failed, dropped, unknown
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
