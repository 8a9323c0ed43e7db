import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.sql import func

from kahani.database import Base
from kahani.models.types import JSONType


class Album(Base):
    __tablename__ = "albums"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False, unique=True)
    description = Column(Text)
    cover_image = Column(Text)
    questions = Column(JSONType, nullable=False, default=list)
    questions_hn = Column(JSONType)
    is_active = Column(Boolean, nullable=False, default=True)
    is_conversational_album = Column(Boolean, nullable=False, default=False)
    question_set_titles = Column(JSONType)  # {"en": [...], "hn": [...]}
    question_set_premise = Column(JSONType)  # {"en": [...], "hn": [...]}
    created_at = Column(DateTime(timezone=True), server_default=func.now())
