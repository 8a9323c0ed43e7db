import os

os.environ["DATABASE_URL"] = "sqlite://"

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from kahani.config import Settings
from kahani.database import Base, SessionLocal, engine
from kahani.models import Album, Trial
from kahani.schemas.webhook import InboundMessage
from kahani.services.conversation_service import ConversationService
from kahani.services.outbox_service import OutboxDispatcher
from kahani.services.whatsapp_service import MediaInfo

STORYTELLER_PHONE = "911234567890"
BUYER_PHONE = "919811111111"
BUSINESS_NUMBER = "919876500000"
START = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

QUESTIONS = [
    "What was your favourite game as a child?",
    "Who was your best friend at school?",
    "What did your home smell like during festivals?",
    "What was the first film you saw in a theatre?",
    "What advice would you give your younger self?",
]


@dataclass
class SentMessage:
    kind: str
    to: str
    body: Optional[str] = None
    name: Optional[str] = None
    params: tuple = ()
    button_label: Optional[str] = None
    url: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class FakeGateway:
    """Records every send instead of calling the Graph API."""

    config: Settings
    sent: list = field(default_factory=list)
    failing_numbers: set = field(default_factory=set)
    failing_templates: set = field(default_factory=set)
    media: dict = field(default_factory=dict)
    downloads: dict = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        return True

    async def send_text(self, to, body, *, order_id=None):
        return self._record(SentMessage("text", to, body=body, order_id=order_id))

    async def send_template(self, to, name, params=(), *, button_url_param=None, order_id=None):
        return self._record(SentMessage("template", to, name=name, params=tuple(params), order_id=order_id))

    async def send_cta(self, to, body, button_label, url, *, order_id=None):
        return self._record(
            SentMessage("cta", to, body=body, button_label=button_label, url=url, order_id=order_id)
        )

    async def get_media_info(self, media_id):
        return self.media.get(media_id)

    async def download_media(self, url):
        return self.downloads.get(url)

    def add_media(self, media_id: str, data: bytes, mime_type: str = "audio/ogg") -> None:
        url = f"https://lookaside.example.com/{media_id}"
        self.media[media_id] = MediaInfo(url=url, mime_type=mime_type, file_size=len(data))
        self.downloads[url] = data

    def _record(self, message: SentMessage) -> bool:
        self.sent.append(message)
        return message.to not in self.failing_numbers and message.name not in self.failing_templates

    def templates(self) -> list:
        return [m.name for m in self.sent if m.kind == "template"]

    def to(self, phone: str) -> list:
        return [m for m in self.sent if m.to == phone]


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def db_session():
    """In-memory SQLite session with a fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def scope(db_session):
    """Session scope that hands out the test session instead of opening a new one."""

    @contextmanager
    def _scope():
        yield db_session

    return _scope


@pytest.fixture
def config():
    return Settings(
        database_url="sqlite://",
        whatsapp_phone_number_id="1098765432",
        whatsapp_access_token="test-token",
        whatsapp_business_number_e164=BUSINESS_NUMBER,
        whatsapp_webhook_verify_token="verify-me",
        message_delay_seconds=0,
        cron_secret="cron-secret",
        alerts_admin_token="admin-token",
        public_site_url="https://www.kahani.xyz",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(config):
    return FakeGateway(config)


@pytest.fixture
def voice_note_processor():
    return AsyncMock()


@pytest.fixture
def dispatcher(gateway, voice_note_processor):
    return OutboxDispatcher(gateway, delay_seconds=0, sleep=_no_sleep, voice_note_processor=voice_note_processor)


@pytest.fixture
def service(dispatcher, config, clock):
    return ConversationService(dispatcher, config=config, clock=clock)


@pytest.fixture
def make_album(db_session):
    def factory(**overrides) -> Album:
        fields = {
            "title": "Childhood Memories",
            "description": "Stories from growing up",
            "cover_image": "https://cdn.example.com/childhood.jpg",
            "questions": list(QUESTIONS),
            "is_active": True,
            "is_conversational_album": False,
        }
        fields.update(overrides)
        album = Album(**fields)
        db_session.add(album)
        db_session.commit()
        db_session.refresh(album)
        return album

    return factory


@pytest.fixture
def make_trial(db_session, make_album, clock):
    created = []
    default_album = []

    def factory(album: Optional[Album] = None, **overrides) -> Trial:
        if album is None:
            if not default_album:
                default_album.append(make_album())
            album = default_album[0]
        fields = {
            "customer_phone": BUYER_PHONE,
            "buyer_name": "Asha",
            "storyteller_name": "Nani",
            "album_id": album.id,
            "selected_album": album.title,
            "storyteller_language_preference": "en",
            "conversation_state": "awaiting_initial_contact",
            "current_question_index": 0,
            # Later trials are created later, so "oldest" is well defined.
            "created_at": clock.now + timedelta(seconds=len(created)),
        }
        fields.update(overrides)
        trial = Trial(**fields)
        db_session.add(trial)
        db_session.commit()
        db_session.refresh(trial)
        created.append(trial)
        return trial

    return factory


@pytest.fixture
def make_message():
    counter = {"n": 0}

    def factory(
        text: Optional[str] = None,
        *,
        type: str = "text",
        sender: str = STORYTELLER_PHONE,
        media_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> InboundMessage:
        counter["n"] += 1
        raw = {"id": message_id or f"wamid.in.{counter['n']}", "from": sender, "type": type}
        if type == "text":
            raw["text"] = {"body": text or ""}
        elif type == "button":
            raw["button"] = {"text": text, "payload": text}
        elif type == "audio":
            raw["audio"] = {"id": media_id or f"media-{counter['n']}", "mime_type": "audio/ogg; codecs=opus"}
        elif type == "image":
            raw["image"] = {"id": media_id or f"image-{counter['n']}", "mime_type": "image/jpeg"}
        return InboundMessage.model_validate(raw)

    return factory
