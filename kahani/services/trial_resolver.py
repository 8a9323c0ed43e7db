"""Maps an inbound WhatsApp message to the trial it belongs to.

Order of precedence:

1. An embedded reference token: ``by_<uuid>`` (buyer), ``st_<uuid>``
   (storyteller link) or a bare UUID, checked in that order.
2. A buyer who sent the storyteller's link gets guidance instead.
3. A ``by_`` token re-sends buyer onboarding, whatever number it comes from.
4. ``st_``/bare tokens fetch the trial and bind the sender as storyteller if
   no storyteller phone is on record yet.
5. Otherwise the sender's oldest active trial, then any trial for the phone.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from kahani.config import Settings, settings as default_settings
from kahani.logging_config import get_logger
from kahani.models import Trial
from kahani.services import trial_store
from kahani.services.effects import Effect, SendTemplate, SendText
from kahani.services.localization import BuyerGuidanceParams, MessageKey, render
from kahani.services.trial_service import build_shareable_link, buyer_onboarding_effects

logger = get_logger("trial_resolver")

BUYER_PREFIX_PATTERN = re.compile(r"by_([a-f0-9-]{36})", re.IGNORECASE)
STORYTELLER_PREFIX_PATTERN = re.compile(r"st_([a-f0-9-]{36})", re.IGNORECASE)
ORDER_ID_PATTERN = re.compile(r"([a-f0-9-]{36})", re.IGNORECASE)

SUPPORT_FALLBACK_TEMPLATE = "support_fallback_vaani_en"


class TokenSource(str, Enum):
    BUYER = "buyer"
    STORYTELLER = "storyteller"
    BARE = "bare"


class ResolutionOutcome(str, Enum):
    RESOLVED = "resolved"
    HANDLED = "handled"  # answered during resolution, skip the state machine
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TokenMatch:
    trial_id: str
    source: TokenSource


@dataclass
class Resolution:
    outcome: ResolutionOutcome
    trial: Optional[Trial] = None
    reference: Optional[TokenMatch] = None
    effects: list[Effect] = field(default_factory=list)


def extract_reference(text: Optional[str]) -> Optional[TokenMatch]:
    """First matching token wins; a buyer token hides any later patterns."""
    if not text:
        return None
    for pattern, source in (
        (BUYER_PREFIX_PATTERN, TokenSource.BUYER),
        (STORYTELLER_PREFIX_PATTERN, TokenSource.STORYTELLER),
        (ORDER_ID_PATTERN, TokenSource.BARE),
    ):
        match = pattern.search(text)
        if match:
            return TokenMatch(trial_id=match.group(1).lower(), source=source)
    return None


def _buyer_sent_storyteller_link(trial: Trial, sender: str, config: Settings) -> list[Effect]:
    link = build_shareable_link(config.whatsapp_business_number_e164, trial.buyer_name, trial.id)
    body = render(
        MessageKey.BUYER_SENT_STORYTELLER_LINK,
        "en",
        BuyerGuidanceParams(trial.buyer_name, trial.storyteller_name, link),
    )
    return [SendText(sender, body)]


def not_found_effects(sender: str, message_type: str, reference: Optional[TokenMatch]) -> list[Effect]:
    """Plain text with no token reads as a support query; anything else gets the generic reply."""
    if message_type == "text" and reference is None:
        return [SendTemplate(to=sender, name=SUPPORT_FALLBACK_TEMPLATE)]
    return [SendText(sender, render(MessageKey.NO_TRIAL_FOUND, "en"))]


def resolve(
    db: Session,
    sender: str,
    text: str,
    message_type: str,
    config: Settings = default_settings,
) -> Resolution:
    """Find the trial for an inbound message. ``sender`` must already be normalized.

    Binding the storyteller phone is committed here, before any state change.
    """
    reference = extract_reference(text)
    ctx = {"from": sender, "reference": reference.trial_id if reference else None}

    if reference and reference.source is TokenSource.STORYTELLER:
        trial = trial_store.get_trial(db, reference.trial_id)
        if trial and trial.customer_phone == sender and trial.storyteller_phone != sender:
            logger.info("Buyer sent the storyteller link", extra={"context": {**ctx, "trial_id": str(trial.id)}})
            return Resolution(
                ResolutionOutcome.HANDLED,
                trial=trial,
                reference=reference,
                effects=_buyer_sent_storyteller_link(trial, sender, config),
            )

    if reference and reference.source is TokenSource.BUYER:
        trial = trial_store.get_trial(db, reference.trial_id)
        if trial:
            if trial.customer_phone != sender:
                logger.warning(
                    "Buyer token from a different phone number",
                    extra={"context": {**ctx, "trial_id": str(trial.id), "expected": trial.customer_phone}},
                )
            logger.info("Re-sending buyer onboarding", extra={"context": {**ctx, "trial_id": str(trial.id)}})
            return Resolution(
                ResolutionOutcome.HANDLED,
                trial=trial,
                reference=reference,
                effects=buyer_onboarding_effects(trial, sender, config),
            )

    if reference:
        trial = trial_store.get_trial(db, reference.trial_id)
        if trial:
            if not trial.storyteller_phone:
                trial.storyteller_phone = sender
                db.commit()
                logger.info(
                    "Storyteller phone bound to trial", extra={"context": {**ctx, "trial_id": str(trial.id)}}
                )
            return Resolution(ResolutionOutcome.RESOLVED, trial=trial, reference=reference)

    active = trial_store.get_active_trials_by_storyteller_phone(db, sender)
    if active:
        logger.info(
            "Resolved oldest active trial",
            extra={"context": {**ctx, "trial_id": str(active[0].id), "active_trials": len(active)}},
        )
        return Resolution(ResolutionOutcome.RESOLVED, trial=active[0], reference=reference)

    trial = trial_store.get_trial_by_storyteller_phone(db, sender)
    if trial:
        return Resolution(ResolutionOutcome.RESOLVED, trial=trial, reference=reference)

    logger.info("No trial found for sender", extra={"context": {**ctx, "type": message_type}})
    return Resolution(
        ResolutionOutcome.NOT_FOUND,
        reference=reference,
        effects=not_found_effects(sender, message_type, reference),
    )
