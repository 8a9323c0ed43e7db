import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from kahani.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Trial(Base):
    __tablename__ = "free_trials"
    __table_args__ = (
        Index("ix_free_trials_storyteller_phone_state", "storyteller_phone", "conversation_state"),
        Index("ix_free_trials_customer_phone", "customer_phone"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_phone = Column(Text, nullable=False)  # buyer
    buyer_name = Column(Text, nullable=False)
    storyteller_name = Column(Text, nullable=False)
    storyteller_phone = Column(Text)  # bound on first contact
    album_id = Column(Uuid)
    selected_album = Column(Text, nullable=False)  # denormalized album title
    storyteller_language_preference = Column(Text, default="en")  # en, hn

    conversation_state = Column(Text, nullable=False, default="awaiting_initial_contact")
    current_question_index = Column(Integer, nullable=False, default=0)

    retry_readiness_at = Column(DateTime(timezone=True))
    retry_count = Column(Integer, nullable=False, default=0)
    last_readiness_response = Column(Text)  # yes, maybe

    welcome_sent_at = Column(DateTime(timezone=True))
    readiness_asked_at = Column(DateTime(timezone=True))
    last_question_sent_at = Column(DateTime(timezone=True))
    reminder_sent_at = Column(DateTime(timezone=True))
    question_reminder_count = Column(Integer, nullable=False, default=0)
    next_question_scheduled_for = Column(DateTime(timezone=True))

    custom_cover_image_url = Column(Text)
    forward_link_sent_at = Column(DateTime(timezone=True))
    buyer_no_contact_reminder_sent_at = Column(DateTime(timezone=True))
    storyteller_checkin_scheduled_for = Column(DateTime(timezone=True))
    storyteller_checkin_sent_at = Column(DateTime(timezone=True))
    buyer_checkin_scheduled_for = Column(DateTime(timezone=True))
    buyer_checkin_sent_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    voice_notes = relationship("VoiceNote", back_populates="trial", order_by="VoiceNote.question_index")
