"""WhatsApp Cloud API webhook payloads."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TextBody(BaseModel):
    body: str = ""


class MediaRef(BaseModel):
    id: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None


class ButtonReply(BaseModel):
    payload: Optional[str] = None
    text: Optional[str] = None


class InteractiveChoice(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None


class Interactive(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[InteractiveChoice] = None
    list_reply: Optional[InteractiveChoice] = None


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    from_number: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[TextBody] = None
    audio: Optional[MediaRef] = None
    image: Optional[MediaRef] = None
    button: Optional[ButtonReply] = None
    interactive: Optional[Interactive] = None

    @property
    def text_body(self) -> str:
        return self.text.body if self.text else ""

    @property
    def interactive_text(self) -> str:
        """Label of the tapped button or list row, if any."""
        if self.type == "interactive" and self.interactive:
            choice = self.interactive.button_reply or self.interactive.list_reply
            return (choice.title or "") if choice else ""
        if self.type == "button" and self.button:
            return self.button.text or self.button.payload or ""
        return ""

    @property
    def combined_text(self) -> str:
        return self.text_body or self.interactive_text


class StatusError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class StatusUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[str] = None
    errors: list[StatusError] = []


class ChangeMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[ChangeMetadata] = None
    messages: list[InboundMessage] = []
    statuses: list[StatusUpdate] = []


class Change(BaseModel):
    field: Optional[str] = None
    value: Optional[ChangeValue] = None


class Entry(BaseModel):
    id: Optional[str] = None
    changes: list[Change] = []


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Optional[str] = None
    entry: list[Entry] = []

    @property
    def value(self) -> Optional[ChangeValue]:
        if not self.entry or not self.entry[0].changes:
            return None
        return self.entry[0].changes[0].value

    @property
    def business_number(self) -> Optional[str]:
        value = self.value
        if value and value.metadata:
            return value.metadata.display_phone_number
        return None

    def first_message(self) -> Optional[InboundMessage]:
        value = self.value
        return value.messages[0] if value and value.messages else None

    def first_status(self) -> Optional[StatusUpdate]:
        value = self.value
        return value.statuses[0] if value and value.statuses else None
