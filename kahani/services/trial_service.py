"""Trial creation and buyer onboarding."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from sqlalchemy.orm import Session

from kahani.config import Settings, settings as default_settings
from kahani.logging_config import get_logger
from kahani.models import Trial
from kahani.schemas.trial import AlbumTrack, AlbumView, TrialCreate, national_digits
from kahani.services import trial_store
from kahani.services.album_catalog import album_content, get_album
from kahani.services.clock import Clock, utcnow
from kahani.services.effects import Effect, Pause, SendTemplate
from kahani.services.outbox_service import OutboxDispatcher
from kahani.services.result import ErrorCode, Result
from kahani.services.state_machine import TrialState
from kahani.services.whatsapp_service import normalize_phone_number

logger = get_logger("trial_service")

CONFIRMATION_TEMPLATE = "buyerconfirmation_vaani_en"
SHAREABLE_LINK_TEMPLATE = "forward_vaani_en"


@dataclass
class TrialCreation:
    trial: Trial
    confirmation_sent: bool
    shareable_link_sent: bool


def build_shareable_link(business_number: Optional[str], buyer_name: str, trial_id) -> str:
    """wa.me link the buyer forwards to the storyteller, prefilled with the storyteller token."""
    prefilled = f"Hi, {buyer_name} has placed an order st_{trial_id} for me."
    return f"https://wa.me/{business_number or ''}?text={quote(prefilled, safe='')}"


def buyer_confirmation(trial: Trial, recipient: str) -> SendTemplate:
    return SendTemplate(
        to=recipient,
        name=CONFIRMATION_TEMPLATE,
        params=(trial.buyer_name, trial.storyteller_name, trial.storyteller_name),
    )


def shareable_link_message(trial: Trial, recipient: str, config: Settings = default_settings) -> SendTemplate:
    link = build_shareable_link(config.whatsapp_business_number_e164, trial.buyer_name, trial.id)
    return SendTemplate(to=recipient, name=SHAREABLE_LINK_TEMPLATE, params=(trial.storyteller_name, link))


def buyer_onboarding_effects(trial: Trial, recipient: str, config: Settings = default_settings) -> list[Effect]:
    return [buyer_confirmation(trial, recipient), Pause(), shareable_link_message(trial, recipient, config)]


async def create_trial(
    db: Session,
    data: TrialCreate,
    dispatcher: OutboxDispatcher,
    config: Settings = default_settings,
    clock: Clock = utcnow,
) -> Result[TrialCreation]:
    """Create a trial and onboard the buyer.

    The shareable link only goes out when the confirmation template did, so a
    buyer never receives a link without context.
    """
    album = get_album(db, str(data.album_id))
    if album is None:
        logger.warning("Trial requested for unknown album", extra={"context": {"album_id": str(data.album_id)}})
        return Result.failure(f"Album {data.album_id} not found", ErrorCode.ALBUM_NOT_FOUND)

    trial = trial_store.create_trial(
        db,
        customer_phone=normalize_phone_number(national_digits(data.customer_phone)),
        buyer_name=data.buyer_name,
        storyteller_name=data.storyteller_name,
        album_id=album.id,
        selected_album=album.title,
        storyteller_language_preference=data.storyteller_language_preference,
        conversation_state=TrialState.AWAITING_INITIAL_CONTACT.value,
    )
    logger.info(
        "Trial created",
        extra={"context": {"trial_id": str(trial.id), "album": album.title, "buyer_phone": trial.customer_phone}},
    )

    order_id = str(trial.id)
    report = await dispatcher.dispatch([buyer_confirmation(trial, trial.customer_phone)], order_id=order_id)
    confirmation_sent = report.sent == 1

    link_sent = False
    if confirmation_sent:
        report = await dispatcher.dispatch(
            [Pause(), shareable_link_message(trial, trial.customer_phone, config)], order_id=order_id
        )
        link_sent = report.sent == 1
        if link_sent:
            stamp_forward_link(db, trial, clock())
    else:
        logger.warning("Buyer confirmation not delivered, holding shareable link", extra={"context": {"trial_id": order_id}})

    return Result.success(TrialCreation(trial=trial, confirmation_sent=confirmation_sent, shareable_link_sent=link_sent))


def stamp_forward_link(db: Session, trial: Trial, now: datetime) -> None:
    trial.forward_link_sent_at = now
    db.commit()


def get_album_view(db: Session, trial_id) -> Optional[AlbumView]:
    """Public album page: one track per question, filled in where a voice note exists."""
    found = trial_store.get_trial_with_album(db, trial_id)
    if found is None:
        return None
    trial, album = found
    content = album_content(album, trial.storyteller_language_preference)
    notes = {note.question_index: note for note in trial_store.get_voice_notes(db, trial.id)}

    tracks = []
    for index in range(max(content.total, max(notes, default=-1) + 1)):
        note = notes.get(index)
        tracks.append(
            AlbumTrack(
                question_index=index,
                question_text=note.question_text if note else content.question(index),
                voice_note_id=note.id if note else None,
                answered_at=note.received_at if note else None,
                media_url=note.media_url if note else None,
                media_id=note.media_id if note else None,
            )
        )

    return AlbumView(
        trial_id=trial.id,
        title=album.title if album else trial.selected_album,
        description=album.description if album else None,
        storyteller_name=trial.storyteller_name,
        buyer_name=trial.buyer_name,
        cover_image=trial.custom_cover_image_url or (album.cover_image if album else None),
        conversation_state=trial.conversation_state,
        tracks=tracks,
    )
