import re
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Longest prefixes first so "+971" is not read as "+9".
KNOWN_COUNTRY_CODES = (
    "+971", "+880", "+886", "+852", "+966", "+965", "+974", "+968", "+973",
    "+962", "+961", "+358", "+380", "+351", "+353", "+44", "+91", "+1",
)


def national_digits(phone: str) -> str:
    """Digits of a phone number with any leading country code removed."""
    phone = phone.strip()
    for prefix in KNOWN_COUNTRY_CODES:
        if phone.startswith(prefix):
            return re.sub(r"\D", "", phone[len(prefix):])
    if phone.startswith("+"):
        return re.sub(r"\D", "", re.sub(r"^\+\d{1,3}", "", phone))
    return re.sub(r"\D", "", phone)


class TrialCreate(BaseModel):
    customer_phone: str = Field(validation_alias=AliasChoices("customerPhone", "customer_phone"))
    buyer_name: str = Field(min_length=2, validation_alias=AliasChoices("buyerName", "buyer_name"))
    storyteller_name: str = Field(
        min_length=2, validation_alias=AliasChoices("storytellerName", "storyteller_name")
    )
    album_id: UUID = Field(validation_alias=AliasChoices("albumId", "album_id"))
    storyteller_language_preference: Literal["en", "hn", "other"] = Field(
        default="en",
        validation_alias=AliasChoices("storytellerLanguagePreference", "storyteller_language_preference"),
    )

    @field_validator("customer_phone")
    @classmethod
    def _phone_has_ten_digits(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Phone number is required")
        if len(national_digits(value)) != 10:
            raise ValueError("Phone number must be exactly 10 digits")
        return value.strip()

    @field_validator("buyer_name", "storyteller_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters")
        return value


class TrialResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_phone: str
    buyer_name: str
    storyteller_name: str
    album_id: Optional[UUID] = None
    selected_album: str
    storyteller_language_preference: Optional[str] = None
    conversation_state: str
    current_question_index: int
    created_at: datetime


class TrialCreateResponse(BaseModel):
    trial: TrialResponse
    confirmation_sent: bool
    shareable_link_sent: bool


class AlbumSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: Optional[str] = None
    cover_image: Optional[str] = None
    questions: list[str] = []


class AlbumTrack(BaseModel):
    question_index: int
    question_text: Optional[str] = None
    voice_note_id: Optional[UUID] = None
    answered_at: Optional[datetime] = None
    media_url: Optional[str] = None
    media_id: Optional[str] = None


class AlbumView(BaseModel):
    trial_id: UUID
    title: str
    description: Optional[str] = None
    storyteller_name: str
    buyer_name: str
    cover_image: Optional[str] = None
    conversation_state: str
    tracks: list[AlbumTrack]


class ScheduledRunResponse(BaseModel):
    success: bool
    skipped: bool = False
    timestamp: datetime
    message: str
    summary: Optional[dict] = None
