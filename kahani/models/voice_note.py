import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from kahani.database import Base


class VoiceNote(Base):
    __tablename__ = "voice_notes"
    __table_args__ = (UniqueConstraint("free_trial_id", "question_index", name="uq_voice_notes_trial_question"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    free_trial_id = Column(Uuid, ForeignKey("free_trials.id"), nullable=False)
    question_index = Column(Integer, nullable=False)
    question_text = Column(Text, nullable=False)
    media_id = Column(Text, nullable=False)  # provider media reference
    media_url = Column(Text)
    local_file_path = Column(Text)
    mime_type = Column(Text, nullable=False, default="audio/ogg")
    media_sha256 = Column(Text)
    size_bytes = Column(Integer)
    download_status = Column(Text, nullable=False, default="pending")  # pending, completed, failed
    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    trial = relationship("Trial", back_populates="voice_notes")
