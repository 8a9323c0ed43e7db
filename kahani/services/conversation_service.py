"""Conversation orchestration.

Glues the resolver, the pure state machine, the Trial Store and the outbox
dispatcher together. All work on one trial (inbound messages and scheduler
resumes alike) runs under that trial's lock, so two rapid messages cannot both
advance the question index.
"""

import asyncio
import weakref
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kahani.config import Settings, settings as default_settings
from kahani.logging_config import get_logger, trial_logger
from kahani.models import Trial
from kahani.schemas.webhook import InboundMessage
from kahani.services import trial_store
from kahani.services.album_catalog import content_for_trial
from kahani.services.clock import Clock, utcnow
from kahani.services.outbox_service import DispatchReport, OutboxDispatcher
from kahani.services.state_machine import (
    Decision,
    Event,
    MessageReceived,
    ResumeOldestTrial,
    TrialState,
    TrialView,
    decide,
)
from kahani.services.trial_resolver import ResolutionOutcome, resolve
from kahani.services.whatsapp_service import normalize_phone_number

logger = get_logger("conversation")

DuePredicate = Callable[[Trial, datetime], bool]


class TrialLockRegistry:
    """One asyncio.Lock per trial id, dropped once nobody holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, trial_id) -> asyncio.Lock:
        key = str(trial_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def album_url(config: Settings, trial_id) -> str:
    return f"{config.public_site_url.rstrip('/')}/playlist-albums/{trial_id}"


class ConversationService:
    def __init__(
        self,
        dispatcher: OutboxDispatcher,
        *,
        cover_pipeline=None,
        config: Settings = default_settings,
        clock: Clock = utcnow,
        locks: Optional[TrialLockRegistry] = None,
    ):
        self.dispatcher = dispatcher
        self.cover_pipeline = cover_pipeline
        self.config = config
        self.clock = clock
        self.locks = locks or TrialLockRegistry()

    def snapshot(self, db: Session, trial: Trial, reply_to: Optional[str]) -> TrialView:
        return TrialView(
            id=trial.id,
            state=TrialState(trial.conversation_state),
            storyteller_name=trial.storyteller_name,
            buyer_name=trial.buyer_name,
            reply_to=reply_to,
            buyer_phone=trial.customer_phone,
            language=trial.storyteller_language_preference,
            current_question_index=trial.current_question_index or 0,
            album=content_for_trial(db, trial),
            album_url=album_url(self.config, trial.id),
            answered=trial_store.answered_indices(db, trial.id),
            retry_count=trial.retry_count or 0,
            question_reminder_count=trial.question_reminder_count or 0,
            has_custom_cover=bool(trial.custom_cover_image_url),
            next_question_pending=trial.next_question_scheduled_for is not None,
        )

    async def handle_incoming_message(self, db: Session, message: InboundMessage) -> str:
        """Process one inbound message end to end and return what happened.

        Exceptions propagate so the caller leaves the webhook unmarked and the
        provider's retry gets a second attempt.
        """
        sender = normalize_phone_number(message.from_number)
        text = message.combined_text

        if message.type == "image" and message.image is not None:
            buyer_trial = trial_store.get_trial_by_buyer_phone(db, sender)
            if buyer_trial is not None:
                return await self._handle_cover_image(buyer_trial, message, sender)

        resolution = resolve(db, sender, text, message.type, self.config)
        if resolution.outcome is not ResolutionOutcome.RESOLVED:
            order_id = str(resolution.trial.id) if resolution.trial else None
            await self.dispatcher.dispatch(resolution.effects, order_id=order_id)
            return resolution.outcome.value

        trial = resolution.trial
        reference = resolution.reference.trial_id if resolution.reference else None

        async with self.locks.lock_for(trial.id):
            db.refresh(trial)
            event: Event = MessageReceived(
                message_type=message.type,
                text=text,
                reference=reference,
                media_id=message.audio.id if message.audio else None,
                mime_type=message.audio.mime_type if message.audio else None,
            )
            if (
                reference is None
                and message.type != "audio"
                and trial.conversation_state == TrialState.IN_PROGRESS.value
            ):
                active = trial_store.get_active_trials_by_storyteller_phone(db, sender)
                if len(active) > 1 and active[0].id == trial.id:
                    event = ResumeOldestTrial()

            result = await self._run(db, trial, event, reply_to=sender)
            return result[0].outcome if result else "duplicate_voice_note"

    async def resume(
        self,
        db: Session,
        trial: Trial,
        event: Event,
        still_due: Optional[DuePredicate] = None,
    ) -> Optional[tuple[Decision, DispatchReport]]:
        """Scheduler entry point. Returns None when the trial was skipped."""
        async with self.locks.lock_for(trial.id):
            db.refresh(trial)
            if not trial.storyteller_phone:
                return None
            if still_due is not None and not still_due(trial, self.clock()):
                return None
            return await self._run(db, trial, event, reply_to=trial.storyteller_phone)

    async def _run(
        self, db: Session, trial: Trial, event: Event, reply_to: str
    ) -> Optional[tuple[Decision, DispatchReport]]:
        log = trial_logger(logger, trial.id, event=type(event).__name__)
        now = self.clock()
        view = self.snapshot(db, trial, reply_to)
        decision = decide(view, event, now)

        if decision.voice_note is not None:
            try:
                trial_store.create_voice_note(db, trial.id, decision.voice_note)
            except IntegrityError:
                db.rollback()
                log.info(
                    "Duplicate voice note ignored",
                    extra={"context": {"question_index": decision.voice_note.question_index}},
                )
                return None

        if decision.changes:
            trial_store.update_trial(db, trial, decision.changes)
        db.commit()

        report = await self.dispatcher.dispatch(decision.effects, order_id=str(trial.id))
        log.info(
            "Decision applied",
            extra={
                "context": {
                    "outcome": decision.outcome,
                    "from_state": view.state.value,
                    "to_state": decision.state.value,
                    "question_index": trial.current_question_index,
                    **report.to_dict(),
                }
            },
        )
        return decision, report

    async def _handle_cover_image(self, trial: Trial, message: InboundMessage, sender: str) -> str:
        if self.cover_pipeline is None:
            logger.warning("Cover image received but no pipeline configured", extra={"context": {"trial_id": str(trial.id)}})
            return "cover_image_ignored"
        result = await self.cover_pipeline(trial.id, message.image.id, sender)
        return "cover_image_saved" if result.ok else "cover_image_failed"
