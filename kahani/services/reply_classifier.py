from enum import Enum

YES_BUTTONS = (
    "yes, let's begin",
    "yes let's begin",
    "yes, lets begin",
    "yes lets begin",
    "yes, let us begin",
    "हाँ, शुरू करते हैं",
    "हाँ शुरू करते हैं",
)
MAYBE_BUTTONS = (
    "maybe later",
    "थोड़ी देर में",
)

YES_KEYWORDS = ("yes", "yeah", "yep", "sure", "ready", "ok", "okay", "begin", "शुरू", "हाँ", "हां", "ठीक", "तैयार")
MAYBE_KEYWORDS = ("not sure", "maybe later", "later", "wait", "देर", "बाद में", "थोड़ी")

_QUOTES = str.maketrans({"‘": "'", "’": "'", "`": "'", "“": '"', "”": '"', "–": "-", "—": "-"})


class Readiness(str, Enum):
    YES = "yes"
    MAYBE = "maybe"
    UNKNOWN = "unknown"


def normalize_reply(text: str) -> str:
    return (text or "").strip().lower().translate(_QUOTES)


def classify_readiness(text: str) -> Readiness:
    """Classify a reply to the readiness prompt.

    Exact button labels are checked before keyword containment. When a reply
    carries both a yes-word and a maybe-word ("ok but later"), YES wins.
    """
    normalized = normalize_reply(text)
    if not normalized:
        return Readiness.UNKNOWN

    if normalized in YES_BUTTONS:
        return Readiness.YES
    if normalized in MAYBE_BUTTONS:
        return Readiness.MAYBE

    if any(keyword in normalized for keyword in YES_KEYWORDS):
        return Readiness.YES
    if any(keyword in normalized for keyword in MAYBE_KEYWORDS):
        return Readiness.MAYBE
    return Readiness.UNKNOWN
