from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from kahani.database import Base


class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"

    idempotency_key = Column(Text, primary_key=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
