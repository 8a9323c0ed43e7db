"""Trial Store query layer.

Every lookup the resolver, the conversation service and the scheduler make
against the ``free_trials`` / ``voice_notes`` tables lives here. Scheduling
queries take ``now`` explicitly so one clock drives every due comparison.
"""

from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from kahani.models import Album, Trial, VoiceNote
from kahani.services.state_machine import (
    ACTIVE_STATES,
    MAX_QUESTION_REMINDERS,
    REMINDER_AFTER,
    TrialState,
    VoiceNoteDraft,
)


BUYER_NO_CONTACT_AFTER = timedelta(hours=24)

TrialId = Union[str, UUID]


def _as_uuid(value: TrialId) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


# Lookups


def get_trial(db: Session, trial_id: TrialId) -> Optional[Trial]:
    parsed = _as_uuid(trial_id)
    if parsed is None:
        return None
    return db.get(Trial, parsed)


def get_trial_by_buyer_phone(db: Session, phone: str) -> Optional[Trial]:
    """Most recent trial ordered by this buyer."""
    return db.query(Trial).filter(Trial.customer_phone == phone).order_by(Trial.created_at.desc()).first()


def get_trial_by_storyteller_phone(db: Session, phone: str) -> Optional[Trial]:
    return db.query(Trial).filter(Trial.storyteller_phone == phone).order_by(Trial.created_at.asc()).first()


def get_active_trials_by_storyteller_phone(db: Session, phone: str) -> list[Trial]:
    """Trials in awaiting_readiness / in_progress for a storyteller, oldest first."""
    return (
        db.query(Trial)
        .filter(
            Trial.storyteller_phone == phone,
            Trial.conversation_state.in_([state.value for state in ACTIVE_STATES]),
        )
        .order_by(Trial.created_at.asc())
        .all()
    )


def get_trial_with_album(db: Session, trial_id: TrialId) -> Optional[tuple[Trial, Optional[Album]]]:
    """Trial joined with its album, for the public album view."""
    parsed = _as_uuid(trial_id)
    if parsed is None:
        return None
    row = db.query(Trial, Album).outerjoin(Album, Album.id == Trial.album_id).filter(Trial.id == parsed).first()
    if row is None:
        return None
    trial, album = row
    if album is None and trial.selected_album:
        album = db.query(Album).filter(Album.title == trial.selected_album).first()
    return trial, album


# Writes


def create_trial(db: Session, **fields: Any) -> Trial:
    trial = Trial(**fields)
    db.add(trial)
    db.commit()
    db.refresh(trial)
    return trial


def update_trial(db: Session, trial: Trial, changes: dict[str, Any]) -> Trial:
    """Field-merge ``changes`` onto the trial. The caller commits."""
    for name, value in changes.items():
        if not hasattr(Trial, name):
            raise AttributeError(f"Trial has no field {name!r}")
        setattr(trial, name, value)
    db.flush()
    return trial


# Voice notes


def get_voice_notes(db: Session, trial_id: UUID) -> list[VoiceNote]:
    return (
        db.query(VoiceNote)
        .filter(VoiceNote.free_trial_id == trial_id)
        .order_by(VoiceNote.question_index.asc())
        .all()
    )


def get_voice_note(db: Session, trial_id: UUID, question_index: int) -> Optional[VoiceNote]:
    return (
        db.query(VoiceNote)
        .filter(VoiceNote.free_trial_id == trial_id, VoiceNote.question_index == question_index)
        .first()
    )


def answered_indices(db: Session, trial_id: UUID) -> frozenset:
    rows = db.query(VoiceNote.question_index).filter(VoiceNote.free_trial_id == trial_id).all()
    return frozenset(index for (index,) in rows)


def create_voice_note(db: Session, trial_id: UUID, draft: VoiceNoteDraft) -> VoiceNote:
    """Insert the voice note for (trial, question index).

    The unique constraint on that pair raises IntegrityError on flush for a
    duplicate answer.
    """
    note = VoiceNote(
        free_trial_id=trial_id,
        question_index=draft.question_index,
        question_text=draft.question_text,
        media_id=draft.media_id,
        mime_type=draft.mime_type,
        download_status="pending",
    )
    db.add(note)
    db.flush()
    return note


# Scheduler sweeps


def get_scheduled_questions_due(db: Session, now: datetime) -> list[Trial]:
    return (
        db.query(Trial)
        .filter(
            Trial.conversation_state == TrialState.IN_PROGRESS.value,
            Trial.next_question_scheduled_for.isnot(None),
            Trial.next_question_scheduled_for <= now,
        )
        .order_by(Trial.next_question_scheduled_for.asc())
        .all()
    )


def get_pending_reminders(db: Session, now: datetime) -> list[Trial]:
    """In-progress trials whose current question has gone unanswered for too long.

    The per-album reminder cap (lower for conversational albums) is applied by
    the state machine; this only pre-filters on the general cap.
    """
    threshold = now - REMINDER_AFTER
    candidates = (
        db.query(Trial)
        .filter(
            Trial.conversation_state == TrialState.IN_PROGRESS.value,
            Trial.next_question_scheduled_for.is_(None),
            Trial.last_question_sent_at.isnot(None),
            Trial.last_question_sent_at <= threshold,
            Trial.question_reminder_count < MAX_QUESTION_REMINDERS,
            or_(Trial.reminder_sent_at.is_(None), Trial.reminder_sent_at <= threshold),
        )
        .order_by(Trial.last_question_sent_at.asc())
        .all()
    )
    return [trial for trial in candidates if get_voice_note(db, trial.id, trial.current_question_index) is None]


def get_trials_needing_retry(db: Session, now: datetime) -> list[Trial]:
    return (
        db.query(Trial)
        .filter(
            Trial.conversation_state == TrialState.AWAITING_READINESS.value,
            Trial.retry_readiness_at.isnot(None),
            Trial.retry_readiness_at <= now,
        )
        .order_by(Trial.retry_readiness_at.asc())
        .all()
    )


def get_trials_needing_buyer_no_contact_reminder(db: Session, now: datetime) -> list[Trial]:
    return (
        db.query(Trial)
        .filter(
            Trial.conversation_state == TrialState.AWAITING_INITIAL_CONTACT.value,
            Trial.storyteller_phone.is_(None),
            Trial.buyer_no_contact_reminder_sent_at.is_(None),
            Trial.created_at <= now - BUYER_NO_CONTACT_AFTER,
        )
        .order_by(Trial.created_at.asc())
        .all()
    )


def get_trials_needing_storyteller_checkin(db: Session, now: datetime) -> list[Trial]:
    return (
        db.query(Trial)
        .filter(
            Trial.storyteller_checkin_scheduled_for.isnot(None),
            Trial.storyteller_checkin_scheduled_for <= now,
            Trial.storyteller_checkin_sent_at.is_(None),
        )
        .order_by(Trial.storyteller_checkin_scheduled_for.asc())
        .all()
    )


def get_trials_needing_buyer_checkin(db: Session, now: datetime) -> list[Trial]:
    return (
        db.query(Trial)
        .filter(
            Trial.buyer_checkin_scheduled_for.isnot(None),
            Trial.buyer_checkin_scheduled_for <= now,
            Trial.buyer_checkin_sent_at.is_(None),
        )
        .order_by(Trial.buyer_checkin_scheduled_for.asc())
        .all()
    )
