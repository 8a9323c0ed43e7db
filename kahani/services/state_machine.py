"""Trial conversation state machine.

``decide(trial, event, now)`` is the only entry point. It maps
(state, event) to a ``Decision``: the next state, the trial fields to write,
an optional voice note to store, and the outbound effects. It performs no I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

from kahani.services.album_catalog import BATCH_SIZE, AlbumContent
from kahani.services.effects import Effect, Pause, ProcessVoiceNote, SendCallToAction, SendTemplate, SendText
from kahani.services.localization import (
    ActiveTrialParams,
    BuyerAlbumParams,
    MessageKey,
    NameParams,
    NoParams,
    PremiseParams,
    QuestionParams,
    render,
    template_name,
)
from kahani.services.reply_classifier import Readiness, classify_readiness


class TrialState(str, Enum):
    AWAITING_INITIAL_CONTACT = "awaiting_initial_contact"
    AWAITING_READINESS = "awaiting_readiness"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


ACTIVE_STATES = (TrialState.AWAITING_READINESS, TrialState.IN_PROGRESS)

VALID_TRANSITIONS = {
    TrialState.AWAITING_INITIAL_CONTACT: [TrialState.AWAITING_READINESS],
    TrialState.AWAITING_READINESS: [TrialState.IN_PROGRESS, TrialState.COMPLETED],
    TrialState.IN_PROGRESS: [TrialState.AWAITING_READINESS, TrialState.COMPLETED],
    TrialState.COMPLETED: [],
}

MAYBE_RETRY_DELAY = timedelta(hours=4)
READINESS_RETRY_DELAY = timedelta(hours=8)
MAX_READINESS_RETRIES = 3
NEXT_QUESTION_DELAY = timedelta(hours=23)
REMINDER_AFTER = timedelta(hours=10)
MAX_QUESTION_REMINDERS = 3
MAX_CONVERSATIONAL_REMINDERS = 2
STORYTELLER_CHECKIN_DELAY = timedelta(hours=48)

ONBOARDING_TEMPLATE = "introtostoryteller_vaani"
READINESS_TEMPLATE = "ready_vaani"
ACKNOWLEDGEMENT_TEMPLATE = "thanks_vaani"
PHOTO_REQUEST_TEMPLATE = "photorequest_vaani_en"
OPEN_WEBSITE_LABEL = "Open Website"
DEFAULT_AUDIO_MIME = "audio/ogg"

READINESS_MESSAGE_TYPES = ("text", "interactive", "button")


class InvalidTransitionError(Exception):
    def __init__(self, from_state: TrialState, to_state: TrialState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: TrialState, to_state: TrialState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: TrialState, to_state: TrialState) -> TrialState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


@dataclass(frozen=True)
class TrialView:
    """Everything a decision may look at, captured from the store."""

    id: UUID
    state: TrialState
    storyteller_name: str
    buyer_name: str
    reply_to: Optional[str]
    buyer_phone: Optional[str]
    language: Optional[str]
    current_question_index: int
    album: AlbumContent
    album_url: str
    answered: frozenset = frozenset()
    retry_count: int = 0
    question_reminder_count: int = 0
    has_custom_cover: bool = False
    next_question_pending: bool = False


# Events


@dataclass(frozen=True)
class MessageReceived:
    message_type: str
    text: str = ""
    reference: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class ResumeOldestTrial:
    """Storyteller wrote without a reference while several trials are active."""


@dataclass(frozen=True)
class QuestionDue:
    pass


@dataclass(frozen=True)
class ReminderDue:
    pass


@dataclass(frozen=True)
class ReadinessRetryDue:
    pass


Event = Any


@dataclass(frozen=True)
class VoiceNoteDraft:
    question_index: int
    question_text: str
    media_id: str
    mime_type: str


@dataclass
class Decision:
    state: TrialState
    changes: dict[str, Any] = field(default_factory=dict)
    effects: list[Effect] = field(default_factory=list)
    voice_note: Optional[VoiceNoteDraft] = None
    outcome: str = "ignored"

    @property
    def state_changed(self) -> bool:
        return self.changes.get("conversation_state") is not None


def _move(trial: TrialView, to_state: TrialState, decision: Decision) -> Decision:
    transition(trial.state, to_state)
    decision.state = to_state
    decision.changes["conversation_state"] = to_state.value
    return decision


def _ignore(trial: TrialView, outcome: str = "ignored") -> Decision:
    return Decision(state=trial.state, outcome=outcome)


def _readiness_prompt(trial: TrialView) -> SendTemplate:
    return SendTemplate(
        to=trial.reply_to,
        name=template_name(READINESS_TEMPLATE, trial.language),
        params=(trial.storyteller_name,),
    )


def _question_send(trial: TrialView, index: int, now: datetime) -> Optional[tuple[list[Effect], dict[str, Any]]]:
    """Effects and field changes for delivering question ``index``; None if it does not exist."""
    question = trial.album.question(index)
    if question is None:
        return None

    effects: list[Effect] = []
    intro = trial.album.batch_intro(index)
    if intro:
        title, premise = intro
        effects.append(
            SendText(trial.reply_to, render(MessageKey.BATCH_PREMISE, trial.language, PremiseParams(title, premise)))
        )
    effects.append(
        SendText(
            trial.reply_to,
            render(MessageKey.QUESTION, trial.language, QuestionParams(trial.storyteller_name, question)),
        )
    )
    if trial.buyer_phone and not trial.has_custom_cover and index >= 2:
        effects.append(
            SendTemplate(
                to=trial.buyer_phone,
                name=PHOTO_REQUEST_TEMPLATE,
                params=(trial.buyer_name, trial.storyteller_name),
                best_effort=True,
            )
        )

    changes = {
        "current_question_index": index,
        "last_question_sent_at": now,
        "next_question_scheduled_for": None,
        "question_reminder_count": 0,
        "reminder_sent_at": None,
    }
    return effects, changes


def next_unanswered_index(trial: TrialView) -> Optional[int]:
    for index in range(trial.current_question_index, trial.album.total):
        if index not in trial.answered:
            return index
    return None


def reminder_cap(trial: TrialView) -> int:
    return MAX_CONVERSATIONAL_REMINDERS if trial.album.is_conversational else MAX_QUESTION_REMINDERS


# (state, event) handlers


def _on_first_contact(trial: TrialView, event: MessageReceived, now: datetime) -> Decision:
    decision = Decision(state=trial.state, outcome="onboarding_sent")
    decision.effects = [
        SendTemplate(
            to=trial.reply_to,
            name=template_name(ONBOARDING_TEMPLATE, trial.language),
            params=(trial.storyteller_name, trial.buyer_name),
        ),
        Pause(),
        _readiness_prompt(trial),
    ]
    decision.changes.update(welcome_sent_at=now, readiness_asked_at=now)
    return _move(trial, TrialState.AWAITING_READINESS, decision)


def _on_readiness_reply(trial: TrialView, event: MessageReceived, now: datetime) -> Decision:
    if event.message_type not in READINESS_MESSAGE_TYPES:
        return _ignore(trial, "unsupported_message_type")

    readiness = classify_readiness(event.text)
    if readiness is Readiness.YES:
        decision = Decision(state=trial.state, outcome="ready")
        decision.changes.update(last_readiness_response="yes", retry_readiness_at=None, retry_count=0)
        send = _question_send(trial, trial.current_question_index, now)
        if send is None:
            if trial.album.total and trial.current_question_index >= trial.album.total:
                decision.outcome = "already_complete"
                return _move(trial, TrialState.COMPLETED, decision)
            decision.outcome = "question_missing"
        else:
            effects, changes = send
            decision.effects.extend(effects)
            decision.changes.update(changes)
        return _move(trial, TrialState.IN_PROGRESS, decision)

    if readiness is Readiness.MAYBE:
        decision = Decision(state=trial.state, outcome="retry_scheduled")
        decision.changes.update(
            last_readiness_response="maybe",
            retry_readiness_at=now + MAYBE_RETRY_DELAY,
            retry_count=0,
            next_question_scheduled_for=None,
        )
        return decision

    return _ignore(trial, "unrecognized_reply")


def _on_answer(trial: TrialView, event: MessageReceived, now: datetime) -> Decision:
    if event.message_type != "audio":
        return _on_in_progress_text(trial, event, now)
    if not event.media_id:
        return _ignore(trial, "missing_media")

    if trial.next_question_pending:
        # The storyteller has not been sent the current question yet, so this
        # audio repeats the answer that is already stored.
        return _ignore(trial, "duplicate_voice_note")

    index = trial.current_question_index
    question = trial.album.question(index)
    if question is None:
        return _ignore(trial, "question_missing")
    if index in trial.answered:
        return _ignore(trial, "duplicate_voice_note")

    decision = Decision(state=trial.state, outcome="answer_recorded")
    decision.voice_note = VoiceNoteDraft(
        question_index=index,
        question_text=question,
        media_id=event.media_id,
        mime_type=event.mime_type or DEFAULT_AUDIO_MIME,
    )
    decision.effects.append(ProcessVoiceNote(trial_id=trial.id, question_index=index))

    next_index = index + 1
    decision.changes.update(
        current_question_index=next_index,
        next_question_scheduled_for=None,
        reminder_sent_at=None,
        question_reminder_count=0,
        retry_readiness_at=None,
        storyteller_checkin_scheduled_for=None,
        buyer_checkin_scheduled_for=None,
    )
    full_ack = SendTemplate(
        to=trial.reply_to,
        name=template_name(ACKNOWLEDGEMENT_TEMPLATE, trial.language),
        params=(trial.storyteller_name,),
    )

    if next_index >= trial.album.total:
        decision.outcome = "completed"
        decision.effects.extend(
            [
                full_ack,
                SendText(trial.reply_to, render(MessageKey.STORYTELLER_COMPLETION, trial.language, NameParams(trial.storyteller_name))),
                Pause(),
                SendCallToAction(
                    to=trial.reply_to,
                    body=render(MessageKey.STORYTELLER_ALBUM_READY, trial.language, NameParams(trial.storyteller_name)),
                    button_label=OPEN_WEBSITE_LABEL,
                    url=trial.album_url,
                ),
            ]
        )
        if trial.buyer_phone:
            decision.effects.append(
                SendCallToAction(
                    to=trial.buyer_phone,
                    body=render(
                        MessageKey.BUYER_ALBUM_READY,
                        "en",
                        BuyerAlbumParams(trial.buyer_name, trial.storyteller_name),
                    ),
                    button_label=OPEN_WEBSITE_LABEL,
                    url=trial.album_url,
                )
            )
        return _move(trial, TrialState.COMPLETED, decision)

    if trial.album.is_conversational and index % BATCH_SIZE < BATCH_SIZE - 1:
        send = _question_send(trial, next_index, now)
        decision.outcome = "next_question_sent"
        decision.effects.append(
            SendText(trial.reply_to, render(MessageKey.INTERMEDIATE_ACK, trial.language, NameParams(trial.storyteller_name)))
        )
        if send is not None:
            effects, changes = send
            decision.effects.extend(effects)
            decision.changes.update(changes)
        return decision

    decision.outcome = "next_question_scheduled"
    decision.effects.append(full_ack)
    decision.changes["next_question_scheduled_for"] = now + NEXT_QUESTION_DELAY
    return decision


def _on_in_progress_text(trial: TrialView, event: MessageReceived, now: datetime) -> Decision:
    if event.message_type not in READINESS_MESSAGE_TYPES:
        return _ignore(trial, "unsupported_message_type")
    if event.reference and event.reference == str(trial.id):
        key, outcome = MessageKey.FOUND_STORY_COLLECTION, "found_story_collection"
    else:
        key, outcome = MessageKey.SEND_VOICE_NOTE_REMINDER, "voice_note_reminder"
    decision = Decision(state=trial.state, outcome=outcome)
    decision.effects.append(SendText(trial.reply_to, render(key, trial.language, NoParams())))
    return decision


def _on_completed_message(trial: TrialView, event: MessageReceived, now: datetime) -> Decision:
    if event.reference and event.reference != str(trial.id):
        return _ignore(trial, "other_trial_referenced")
    decision = Decision(state=trial.state, outcome="already_completed")
    decision.effects.append(
        SendText(
            trial.reply_to,
            render(MessageKey.COMPLETED_ALL_QUESTIONS, trial.language, NameParams(trial.storyteller_name)),
        )
    )
    return decision


def _on_resume_oldest(trial: TrialView, event: ResumeOldestTrial, now: datetime) -> Decision:
    decision = Decision(state=trial.state, outcome="resumed_oldest_trial")
    decision.effects.extend(
        [
            SendText(
                trial.reply_to,
                render(
                    MessageKey.ACTIVE_TRIAL_PENDING,
                    trial.language,
                    ActiveTrialParams(trial.storyteller_name, trial.buyer_name),
                ),
            ),
            Pause(),
        ]
    )
    index = next_unanswered_index(trial)
    if index is None:
        decision.outcome = "all_answered"
        decision.changes.update(current_question_index=max(trial.album.total, trial.current_question_index))
        return _move(trial, TrialState.COMPLETED, decision)
    effects, changes = _question_send(trial, index, now)
    decision.effects.extend(effects)
    decision.changes.update(changes)
    return decision


def _on_question_due(trial: TrialView, event: QuestionDue, now: datetime) -> Decision:
    decision = Decision(state=trial.state, outcome="readiness_rechecked")
    decision.effects.append(_readiness_prompt(trial))
    decision.changes.update(next_question_scheduled_for=None, readiness_asked_at=now, retry_readiness_at=None)
    return _move(trial, TrialState.AWAITING_READINESS, decision)


def _on_reminder_due(trial: TrialView, event: ReminderDue, now: datetime) -> Decision:
    cap = reminder_cap(trial)
    if trial.question_reminder_count >= cap:
        return _ignore(trial, "reminders_exhausted")
    if trial.current_question_index in trial.answered:
        return _ignore(trial, "already_answered")
    question = trial.album.question(trial.current_question_index)
    if question is None:
        return _ignore(trial, "question_missing")

    count = trial.question_reminder_count + 1
    decision = Decision(state=trial.state, outcome="reminder_sent")
    decision.effects.append(
        SendText(
            trial.reply_to,
            render(MessageKey.QUESTION_REMINDER, trial.language, QuestionParams(trial.storyteller_name, question)),
        )
    )
    decision.changes.update(question_reminder_count=count, reminder_sent_at=now)
    if count >= cap:
        decision.changes["storyteller_checkin_scheduled_for"] = now + STORYTELLER_CHECKIN_DELAY
    return decision


def _on_readiness_retry(trial: TrialView, event: ReadinessRetryDue, now: datetime) -> Decision:
    if trial.retry_count >= MAX_READINESS_RETRIES:
        decision = Decision(state=trial.state, outcome="retries_exhausted")
        decision.changes["retry_readiness_at"] = None
        return decision

    count = trial.retry_count + 1
    decision = Decision(state=trial.state, outcome="readiness_retried")
    decision.effects.append(_readiness_prompt(trial))
    decision.changes.update(
        retry_count=count,
        readiness_asked_at=now,
        retry_readiness_at=now + READINESS_RETRY_DELAY if count < MAX_READINESS_RETRIES else None,
    )
    return decision


Handler = Callable[[TrialView, Any, datetime], Decision]

TRANSITION_TABLE: dict[tuple[TrialState, type], Handler] = {
    (TrialState.AWAITING_INITIAL_CONTACT, MessageReceived): _on_first_contact,
    (TrialState.AWAITING_READINESS, MessageReceived): _on_readiness_reply,
    (TrialState.AWAITING_READINESS, ReadinessRetryDue): _on_readiness_retry,
    (TrialState.IN_PROGRESS, MessageReceived): _on_answer,
    (TrialState.IN_PROGRESS, ResumeOldestTrial): _on_resume_oldest,
    (TrialState.IN_PROGRESS, QuestionDue): _on_question_due,
    (TrialState.IN_PROGRESS, ReminderDue): _on_reminder_due,
    (TrialState.COMPLETED, MessageReceived): _on_completed_message,
}


def decide(trial: TrialView, event: Event, now: datetime) -> Decision:
    """Single dispatch over (state, event type). Unlisted pairs are ignored."""
    handler = TRANSITION_TABLE.get((trial.state, type(event)))
    if handler is None:
        return _ignore(trial, "no_transition")
    return handler(trial, event, now)
