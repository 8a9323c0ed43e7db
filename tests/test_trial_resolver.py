import uuid

from kahani.services.effects import Pause, SendTemplate, SendText
from kahani.services.trial_resolver import (
    ResolutionOutcome,
    TokenSource,
    extract_reference,
    not_found_effects,
    resolve,
)

STORYTELLER = "911234567890"
BUYER = "919811111111"
TRIAL_ID = "6f1c1d8e-8a39-4d7c-9a57-4b0e3f6d2c11"


class TestExtractReference:
    def test_storyteller_token(self):
        match = extract_reference(f"Hi, Asha has placed an order st_{TRIAL_ID} for me.")
        assert match.trial_id == TRIAL_ID
        assert match.source is TokenSource.STORYTELLER

    def test_buyer_token(self):
        assert extract_reference(f"by_{TRIAL_ID}").source is TokenSource.BUYER

    def test_bare_uuid(self):
        match = extract_reference(f"my order is {TRIAL_ID.upper()}")
        assert match.source is TokenSource.BARE
        assert match.trial_id == TRIAL_ID

    def test_buyer_token_wins(self):
        other = str(uuid.uuid4())
        match = extract_reference(f"st_{other} by_{TRIAL_ID}")
        assert match.source is TokenSource.BUYER
        assert match.trial_id == TRIAL_ID

    def test_no_token(self):
        assert extract_reference("hello") is None
        assert extract_reference("") is None
        assert extract_reference(None) is None


class TestNotFound:
    def test_plain_text_gets_support_template(self):
        [effect] = not_found_effects(STORYTELLER, "text", None)
        assert effect == SendTemplate(to=STORYTELLER, name="support_fallback_vaani_en")

    def test_audio_gets_generic_reply(self):
        [effect] = not_found_effects(STORYTELLER, "audio", None)
        assert isinstance(effect, SendText)
        assert "couldn't find a story collection" in effect.body

    def test_unknown_token_gets_generic_reply(self):
        reference = extract_reference(f"st_{TRIAL_ID}")
        [effect] = not_found_effects(STORYTELLER, "text", reference)
        assert isinstance(effect, SendText)


class TestResolve:
    def test_storyteller_token_binds_phone(self, db_session, make_trial, config):
        trial = make_trial()

        resolution = resolve(db_session, STORYTELLER, f"Hi order st_{trial.id} for me", "text", config)

        assert resolution.outcome is ResolutionOutcome.RESOLVED
        assert resolution.trial.id == trial.id
        db_session.refresh(trial)
        assert trial.storyteller_phone == STORYTELLER

    def test_bound_phone_is_not_rebound(self, db_session, make_trial, config):
        trial = make_trial()

        first = resolve(db_session, STORYTELLER, str(trial.id), "text", config)
        second = resolve(db_session, "919000000001", str(trial.id), "text", config)

        assert first.trial.id == second.trial.id == trial.id
        db_session.refresh(trial)
        assert trial.storyteller_phone == STORYTELLER

    def test_buyer_clicking_storyteller_link_gets_guidance(self, db_session, make_trial, config):
        trial = make_trial()

        resolution = resolve(db_session, BUYER, f"Hi, Asha has placed an order st_{trial.id} for me.", "text", config)

        assert resolution.outcome is ResolutionOutcome.HANDLED
        [effect] = resolution.effects
        assert effect.to == BUYER
        assert "meant for Nani" in effect.body
        assert f"st_{trial.id}" in effect.body
        db_session.refresh(trial)
        assert trial.storyteller_phone is None

    def test_buyer_who_is_also_storyteller_resolves(self, db_session, make_trial, config):
        trial = make_trial(storyteller_phone=BUYER, conversation_state="in_progress")

        resolution = resolve(db_session, BUYER, f"st_{trial.id}", "text", config)

        assert resolution.outcome is ResolutionOutcome.RESOLVED

    def test_buyer_token_resends_onboarding(self, db_session, make_trial, config):
        trial = make_trial()

        resolution = resolve(db_session, BUYER, f"by_{trial.id}", "text", config)

        assert resolution.outcome is ResolutionOutcome.HANDLED
        confirmation, pause, link = resolution.effects
        assert confirmation.name == "buyerconfirmation_vaani_en"
        assert confirmation.params == ("Asha", "Nani", "Nani")
        assert isinstance(pause, Pause)
        assert link.name == "forward_vaani_en"
        assert link.params[1].startswith("https://wa.me/919876500000?text=")

    def test_buyer_token_from_another_phone_still_resends(self, db_session, make_trial, config):
        trial = make_trial()

        resolution = resolve(db_session, "919000000001", f"by_{trial.id}", "text", config)

        assert resolution.outcome is ResolutionOutcome.HANDLED
        assert all(e.to == "919000000001" for e in resolution.effects if not isinstance(e, Pause))

    def test_oldest_active_trial_without_token(self, db_session, make_trial, config):
        oldest = make_trial(storyteller_phone=STORYTELLER, conversation_state="in_progress")
        make_trial(storyteller_phone=STORYTELLER, conversation_state="awaiting_readiness")

        resolution = resolve(db_session, STORYTELLER, "hello", "text", config)

        assert resolution.outcome is ResolutionOutcome.RESOLVED
        assert resolution.trial.id == oldest.id

    def test_completed_trial_is_last_resort(self, db_session, make_trial, config):
        trial = make_trial(storyteller_phone=STORYTELLER, conversation_state="completed")

        resolution = resolve(db_session, STORYTELLER, "hello", "text", config)

        assert resolution.trial.id == trial.id

    def test_unknown_sender(self, db_session, make_trial, config):
        make_trial()

        resolution = resolve(db_session, "919000000001", "hello", "text", config)

        assert resolution.outcome is ResolutionOutcome.NOT_FOUND
        assert resolution.effects[0].name == "support_fallback_vaani_en"

    def test_unknown_token(self, db_session, config):
        resolution = resolve(db_session, STORYTELLER, f"st_{TRIAL_ID}", "text", config)

        assert resolution.outcome is ResolutionOutcome.NOT_FOUND
        assert isinstance(resolution.effects[0], SendText)
