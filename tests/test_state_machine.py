import uuid
from datetime import datetime, timedelta, timezone

import pytest

from kahani.services.album_catalog import AlbumContent
from kahani.services.effects import Pause, ProcessVoiceNote, SendCallToAction, SendTemplate, SendText
from kahani.services.state_machine import (
    InvalidTransitionError,
    MessageReceived,
    QuestionDue,
    ReadinessRetryDue,
    ReminderDue,
    ResumeOldestTrial,
    TrialState,
    TrialView,
    can_transition,
    decide,
    transition,
)

NOW = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
STORYTELLER = "911234567890"
BUYER = "919811111111"

FIVE_QUESTIONS = AlbumContent(questions=("Q1", "Q2", "Q3", "Q4", "Q5"))
CONVERSATIONAL = AlbumContent(
    questions=tuple(f"C{i}" for i in range(1, 10)),
    is_conversational=True,
    batch_titles=("Early days", "School", "Family"),
    batch_premises=("Let's go back to the beginning.", "Now, your school years.", "Finally, family."),
)


def make_view(**overrides) -> TrialView:
    fields = {
        "id": uuid.UUID("6f1c1d8e-8a39-4d7c-9a57-4b0e3f6d2c11"),
        "state": TrialState.IN_PROGRESS,
        "storyteller_name": "Nani",
        "buyer_name": "Asha",
        "reply_to": STORYTELLER,
        "buyer_phone": BUYER,
        "language": "en",
        "current_question_index": 0,
        "album": FIVE_QUESTIONS,
        "album_url": "https://www.kahani.xyz/playlist-albums/6f1c1d8e-8a39-4d7c-9a57-4b0e3f6d2c11",
    }
    fields.update(overrides)
    return TrialView(**fields)


def audio(media_id="media-1") -> MessageReceived:
    return MessageReceived(message_type="audio", media_id=media_id, mime_type="audio/ogg")


def texts(decision) -> list:
    return [e.body for e in decision.effects if isinstance(e, SendText)]


class TestTransitionTable:
    def test_initial_contact_to_readiness(self):
        assert transition(TrialState.AWAITING_INITIAL_CONTACT, TrialState.AWAITING_READINESS) == (
            TrialState.AWAITING_READINESS
        )

    def test_readiness_to_in_progress(self):
        assert transition(TrialState.AWAITING_READINESS, TrialState.IN_PROGRESS) == TrialState.IN_PROGRESS

    def test_in_progress_back_to_readiness(self):
        assert transition(TrialState.IN_PROGRESS, TrialState.AWAITING_READINESS) == TrialState.AWAITING_READINESS

    def test_completed_is_terminal(self):
        for state in TrialState:
            assert can_transition(TrialState.COMPLETED, state) is False

    def test_skipping_readiness_fails(self):
        with pytest.raises(InvalidTransitionError):
            transition(TrialState.AWAITING_INITIAL_CONTACT, TrialState.IN_PROGRESS)

    def test_same_state_fails(self):
        with pytest.raises(InvalidTransitionError):
            transition(TrialState.IN_PROGRESS, TrialState.IN_PROGRESS)

    def test_unlisted_pair_is_ignored(self):
        decision = decide(make_view(state=TrialState.COMPLETED), ReminderDue(), NOW)
        assert decision.outcome == "no_transition"
        assert decision.effects == []
        assert decision.changes == {}


class TestFirstContact:
    def test_sends_onboarding_then_readiness(self):
        view = make_view(state=TrialState.AWAITING_INITIAL_CONTACT)

        decision = decide(view, MessageReceived(message_type="text", text="hi"), NOW)

        assert decision.state == TrialState.AWAITING_READINESS
        assert decision.changes["conversation_state"] == "awaiting_readiness"
        assert decision.changes["welcome_sent_at"] == NOW
        onboarding, pause, readiness = decision.effects
        assert onboarding == SendTemplate(to=STORYTELLER, name="introtostoryteller_vaani_en", params=("Nani", "Asha"))
        assert isinstance(pause, Pause)
        assert readiness.name == "ready_vaani_en"

    def test_hindi_preference_selects_hindi_templates(self):
        view = make_view(state=TrialState.AWAITING_INITIAL_CONTACT, language="hn")

        decision = decide(view, MessageReceived(message_type="audio", media_id="m"), NOW)

        assert [e.name for e in decision.effects if isinstance(e, SendTemplate)] == [
            "introtostoryteller_vaani_hn",
            "ready_vaani_hn",
        ]


class TestReadinessReply:
    def test_yes_sends_current_question(self):
        view = make_view(state=TrialState.AWAITING_READINESS, current_question_index=1)

        decision = decide(view, MessageReceived(message_type="button", text="Yes, let’s begin"), NOW)

        assert decision.state == TrialState.IN_PROGRESS
        assert decision.changes["current_question_index"] == 1
        assert decision.changes["last_question_sent_at"] == NOW
        assert decision.changes["retry_count"] == 0
        [body] = texts(decision)
        assert "Q2" in body

    def test_maybe_schedules_retry_without_state_change(self):
        view = make_view(state=TrialState.AWAITING_READINESS)

        decision = decide(view, MessageReceived(message_type="text", text="Maybe later"), NOW)

        assert decision.state == TrialState.AWAITING_READINESS
        assert "conversation_state" not in decision.changes
        assert decision.changes["retry_readiness_at"] == NOW + timedelta(hours=4)
        assert decision.changes["last_readiness_response"] == "maybe"
        assert decision.effects == []

    def test_unrecognized_reply_is_silent(self):
        view = make_view(state=TrialState.AWAITING_READINESS)

        decision = decide(view, MessageReceived(message_type="text", text="who is this?"), NOW)

        assert decision.outcome == "unrecognized_reply"
        assert decision.effects == []

    def test_audio_while_awaiting_readiness_is_ignored(self):
        view = make_view(state=TrialState.AWAITING_READINESS)

        decision = decide(view, audio(), NOW)

        assert decision.outcome == "unsupported_message_type"
        assert decision.voice_note is None

    def test_yes_past_last_question_completes(self):
        view = make_view(state=TrialState.AWAITING_READINESS, current_question_index=5)

        decision = decide(view, MessageReceived(message_type="text", text="yes"), NOW)

        assert decision.state == TrialState.COMPLETED
        assert decision.outcome == "already_complete"

    def test_batch_premise_precedes_first_question_of_batch(self):
        view = make_view(state=TrialState.AWAITING_READINESS, album=CONVERSATIONAL, current_question_index=3)

        decision = decide(view, MessageReceived(message_type="text", text="ready"), NOW)

        premise, question = texts(decision)
        assert "School" in premise
        assert "Now, your school years." in premise
        assert "C4" in question


class TestAnswer:
    def test_records_voice_note_and_schedules_next_question(self):
        decision = decide(make_view(), audio("media-42"), NOW)

        assert decision.outcome == "next_question_scheduled"
        assert decision.voice_note.question_index == 0
        assert decision.voice_note.question_text == "Q1"
        assert decision.voice_note.media_id == "media-42"
        assert decision.changes["current_question_index"] == 1
        assert decision.changes["next_question_scheduled_for"] == NOW + timedelta(hours=23)
        assert decision.state == TrialState.IN_PROGRESS
        assert isinstance(decision.effects[0], ProcessVoiceNote)
        assert decision.effects[1].name == "thanks_vaani_en"

    def test_answer_cancels_pending_checkins(self):
        decision = decide(make_view(), audio(), NOW)

        assert decision.changes["storyteller_checkin_scheduled_for"] is None
        assert decision.changes["buyer_checkin_scheduled_for"] is None

    def test_already_answered_index_is_duplicate(self):
        decision = decide(make_view(answered=frozenset({0})), audio(), NOW)

        assert decision.outcome == "duplicate_voice_note"
        assert decision.voice_note is None
        assert decision.effects == []

    def test_audio_before_next_question_is_sent_is_duplicate(self):
        view = make_view(current_question_index=1, answered=frozenset({0}), next_question_pending=True)

        decision = decide(view, audio(), NOW)

        assert decision.outcome == "duplicate_voice_note"
        assert decision.voice_note is None
        assert decision.changes == {}

    def test_audio_without_media_is_ignored(self):
        decision = decide(make_view(), MessageReceived(message_type="audio"), NOW)
        assert decision.outcome == "missing_media"

    @pytest.mark.parametrize("index", [0, 1, 3, 4, 6, 7])
    def test_conversational_mid_batch_sends_next_question_at_once(self, index):
        view = make_view(album=CONVERSATIONAL, current_question_index=index)

        decision = decide(view, audio(), NOW)

        assert decision.outcome == "next_question_sent"
        assert decision.changes["current_question_index"] == index + 1
        assert decision.changes["next_question_scheduled_for"] is None
        assert any(f"C{index + 2}" in body for body in texts(decision))

    @pytest.mark.parametrize("index", [2, 5])
    def test_conversational_batch_end_schedules_delay(self, index):
        view = make_view(album=CONVERSATIONAL, current_question_index=index)

        decision = decide(view, audio(), NOW)

        assert decision.outcome == "next_question_scheduled"
        assert decision.changes["next_question_scheduled_for"] == NOW + timedelta(hours=23)
        assert texts(decision) == []

    def test_final_answer_completes_storyteller_first_then_buyer(self):
        view = make_view(current_question_index=4, answered=frozenset({0, 1, 2, 3}))

        decision = decide(view, audio(), NOW)

        assert decision.state == TrialState.COMPLETED
        assert decision.changes["current_question_index"] == 5
        sends = [e for e in decision.effects if not isinstance(e, (Pause, ProcessVoiceNote))]
        recipients = [e.to for e in sends]
        assert recipients == [STORYTELLER, STORYTELLER, STORYTELLER, BUYER]
        assert isinstance(sends[-1], SendCallToAction)
        assert sends[-1].url.endswith("/playlist-albums/6f1c1d8e-8a39-4d7c-9a57-4b0e3f6d2c11")

    def test_final_answer_without_buyer_phone(self):
        view = make_view(current_question_index=4, buyer_phone=None)

        decision = decide(view, audio(), NOW)

        assert all(e.to == STORYTELLER for e in decision.effects if hasattr(e, "to"))


class TestPhotoRequest:
    def test_requested_from_third_question(self):
        view = make_view(album=CONVERSATIONAL, current_question_index=1)

        decision = decide(view, audio(), NOW)

        [photo] = [e for e in decision.effects if isinstance(e, SendTemplate) and e.to == BUYER]
        assert photo.name == "photorequest_vaani_en"
        assert photo.best_effort is True

    def test_not_requested_for_first_questions(self):
        view = make_view(album=CONVERSATIONAL, current_question_index=0)

        decision = decide(view, audio(), NOW)

        assert not [e for e in decision.effects if getattr(e, "to", None) == BUYER]

    def test_not_requested_once_cover_exists(self):
        view = make_view(album=CONVERSATIONAL, current_question_index=1, has_custom_cover=True)

        decision = decide(view, audio(), NOW)

        assert not [e for e in decision.effects if getattr(e, "to", None) == BUYER]


class TestInProgressText:
    def test_own_reference_gets_found_message(self):
        view = make_view()

        decision = decide(view, MessageReceived(message_type="text", text="hi", reference=str(view.id)), NOW)

        assert decision.outcome == "found_story_collection"
        assert decision.changes == {}

    def test_plain_text_gets_voice_note_reminder(self):
        decision = decide(make_view(), MessageReceived(message_type="text", text="hello"), NOW)

        assert decision.outcome == "voice_note_reminder"
        assert "voice note" in texts(decision)[0]

    def test_completed_trial_replies_all_answered(self):
        decision = decide(make_view(state=TrialState.COMPLETED), MessageReceived(message_type="text", text="hi"), NOW)

        assert decision.outcome == "already_completed"
        assert decision.state == TrialState.COMPLETED


class TestResumeOldest:
    def test_sends_pending_notice_then_next_unanswered_question(self):
        view = make_view(current_question_index=1, answered=frozenset({0}))

        decision = decide(view, ResumeOldestTrial(), NOW)

        notice, pause, question = decision.effects
        assert "another Kahani in progress" in notice.body
        assert isinstance(pause, Pause)
        assert "Q2" in question.body
        assert decision.changes["current_question_index"] == 1

    def test_everything_answered_completes(self):
        view = make_view(current_question_index=4, answered=frozenset(range(5)))

        decision = decide(view, ResumeOldestTrial(), NOW)

        assert decision.state == TrialState.COMPLETED
        assert decision.changes["current_question_index"] == 5


class TestScheduledEvents:
    def test_question_due_rechecks_readiness(self):
        decision = decide(make_view(current_question_index=1), QuestionDue(), NOW)

        assert decision.state == TrialState.AWAITING_READINESS
        assert decision.changes["next_question_scheduled_for"] is None
        [prompt] = decision.effects
        assert prompt.name == "ready_vaani_en"

    def test_reminder_sends_current_question(self):
        decision = decide(make_view(current_question_index=2), ReminderDue(), NOW)

        assert decision.outcome == "reminder_sent"
        assert decision.changes["question_reminder_count"] == 1
        assert decision.changes["reminder_sent_at"] == NOW
        assert "Q3" in texts(decision)[0]

    def test_last_reminder_schedules_storyteller_checkin(self):
        decision = decide(make_view(question_reminder_count=2), ReminderDue(), NOW)

        assert decision.changes["question_reminder_count"] == 3
        assert decision.changes["storyteller_checkin_scheduled_for"] == NOW + timedelta(hours=48)

    def test_reminders_stop_at_three(self):
        decision = decide(make_view(question_reminder_count=3), ReminderDue(), NOW)
        assert decision.outcome == "reminders_exhausted"

    def test_conversational_reminders_stop_at_two(self):
        decision = decide(make_view(album=CONVERSATIONAL, question_reminder_count=2), ReminderDue(), NOW)
        assert decision.outcome == "reminders_exhausted"
        assert decision.effects == []

    def test_readiness_retry_increments_and_reschedules(self):
        view = make_view(state=TrialState.AWAITING_READINESS, retry_count=1)

        decision = decide(view, ReadinessRetryDue(), NOW)

        assert decision.changes["retry_count"] == 2
        assert decision.changes["retry_readiness_at"] == NOW + timedelta(hours=8)

    def test_third_readiness_retry_is_the_last(self):
        view = make_view(state=TrialState.AWAITING_READINESS, retry_count=2)

        decision = decide(view, ReadinessRetryDue(), NOW)

        assert decision.changes["retry_count"] == 3
        assert decision.changes["retry_readiness_at"] is None

    def test_retries_exhausted_sends_nothing(self):
        view = make_view(state=TrialState.AWAITING_READINESS, retry_count=3)

        decision = decide(view, ReadinessRetryDue(), NOW)

        assert decision.outcome == "retries_exhausted"
        assert decision.effects == []
        assert decision.changes == {"retry_readiness_at": None}
