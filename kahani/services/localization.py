"""Localized storyteller/buyer copy.

Every message the bot sends as free text is a ``MessageKey``. Each key owns a
parameter dataclass, so a caller cannot render ``QUESTION`` without a question
or pass buyer fields to a storyteller message.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

DEFAULT_LANGUAGE = "en"
HINDI = "hn"


def resolve_language(preference: Optional[str]) -> str:
    """Only Hindi has its own copy; every other preference reads English."""
    return HINDI if preference == HINDI else DEFAULT_LANGUAGE


@dataclass(frozen=True)
class NoParams:
    pass


@dataclass(frozen=True)
class NameParams:
    name: str


@dataclass(frozen=True)
class QuestionParams:
    name: str
    question: str


@dataclass(frozen=True)
class PremiseParams:
    title: str
    premise: str


@dataclass(frozen=True)
class ActiveTrialParams:
    storyteller_name: str
    buyer_name: str


@dataclass(frozen=True)
class BuyerGuidanceParams:
    buyer_name: str
    storyteller_name: str
    link: str


@dataclass(frozen=True)
class BuyerAlbumParams:
    buyer_name: str
    storyteller_name: str


class MessageKey(str, Enum):
    NO_TRIAL_FOUND = "no_trial_found"
    QUESTION = "question"
    QUESTION_REMINDER = "question_reminder"
    BATCH_PREMISE = "batch_premise"
    INTERMEDIATE_ACK = "intermediate_ack"
    FOUND_STORY_COLLECTION = "found_story_collection"
    SEND_VOICE_NOTE_REMINDER = "send_voice_note_reminder"
    COMPLETED_ALL_QUESTIONS = "completed_all_questions"
    ACTIVE_TRIAL_PENDING = "active_trial_pending"
    STORYTELLER_COMPLETION = "storyteller_completion"
    STORYTELLER_ALBUM_READY = "storyteller_album_ready"
    BUYER_ALBUM_READY = "buyer_album_ready"
    BUYER_SENT_STORYTELLER_LINK = "buyer_sent_storyteller_link"
    COVER_IMAGE_SAVED = "cover_image_saved"
    COVER_IMAGE_DOWNLOAD_FAILED = "cover_image_download_failed"
    COVER_IMAGE_SAVE_FAILED = "cover_image_save_failed"
    COVER_IMAGE_PROCESSING_FAILED = "cover_image_processing_failed"


PARAMS: dict[MessageKey, type] = {
    MessageKey.NO_TRIAL_FOUND: NoParams,
    MessageKey.QUESTION: QuestionParams,
    MessageKey.QUESTION_REMINDER: QuestionParams,
    MessageKey.BATCH_PREMISE: PremiseParams,
    MessageKey.INTERMEDIATE_ACK: NameParams,
    MessageKey.FOUND_STORY_COLLECTION: NoParams,
    MessageKey.SEND_VOICE_NOTE_REMINDER: NoParams,
    MessageKey.COMPLETED_ALL_QUESTIONS: NameParams,
    MessageKey.ACTIVE_TRIAL_PENDING: ActiveTrialParams,
    MessageKey.STORYTELLER_COMPLETION: NameParams,
    MessageKey.STORYTELLER_ALBUM_READY: NameParams,
    MessageKey.BUYER_ALBUM_READY: BuyerAlbumParams,
    MessageKey.BUYER_SENT_STORYTELLER_LINK: BuyerGuidanceParams,
    MessageKey.COVER_IMAGE_SAVED: NameParams,
    MessageKey.COVER_IMAGE_DOWNLOAD_FAILED: NoParams,
    MessageKey.COVER_IMAGE_SAVE_FAILED: NoParams,
    MessageKey.COVER_IMAGE_PROCESSING_FAILED: NoParams,
}

MESSAGES: dict[MessageKey, dict[str, str]] = {
    MessageKey.NO_TRIAL_FOUND: {
        "en": (
            "Hello! We couldn't find a story collection linked to this number. "
            "If someone has gifted you a Kahani, please open the link they shared and send the message as it is."
        ),
        "hn": (
            "नमस्ते! इस नंबर से जुड़ा कोई कहानी संग्रह नहीं मिला। "
            "अगर किसी ने आपको कहानी भेंट की है, तो कृपया उनका भेजा लिंक खोलकर संदेश वैसे ही भेजें।"
        ),
    },
    MessageKey.QUESTION: {
        "en": "{name}, here is your question:\n\n*{question}*\n\nTake your time and reply with a voice note whenever you are ready. 🎙️",
        "hn": "{name}, आपका सवाल यह है:\n\n*{question}*\n\nआराम से सोचिए और जब तैयार हों, वॉइस नोट में जवाब भेजिए। 🎙️",
    },
    MessageKey.QUESTION_REMINDER: {
        "en": "Hi {name}, just a gentle reminder. We'd love to hear your answer:\n\n*{question}*\n\nReply with a voice note whenever you are ready. 🎙️",
        "hn": "नमस्ते {name}, बस एक छोटी-सी याद दिलाना। हमें आपका जवाब सुनना अच्छा लगेगा:\n\n*{question}*\n\nजब तैयार हों, वॉइस नोट भेजिए। 🎙️",
    },
    MessageKey.BATCH_PREMISE: {
        "en": "*{title}*\n\n{premise}",
        "hn": "*{title}*\n\n{premise}",
    },
    MessageKey.INTERMEDIATE_ACK: {
        "en": "Thank you, {name}! That was lovely. Here is the next one. 🌼",
        "hn": "धन्यवाद {name}! बहुत सुंदर। अगला सवाल यह है। 🌼",
    },
    MessageKey.FOUND_STORY_COLLECTION: {
        "en": "We found your story collection! Please reply to the latest question with a voice note. 🎙️",
        "hn": "आपका कहानी संग्रह मिल गया! कृपया पिछले सवाल का जवाब वॉइस नोट में भेजें। 🎙️",
    },
    MessageKey.SEND_VOICE_NOTE_REMINDER: {
        "en": "Please answer the question with a voice note. Just press and hold the 🎙️ button to record.",
        "hn": "कृपया सवाल का जवाब वॉइस नोट में भेजें। रिकॉर्ड करने के लिए 🎙️ बटन दबाकर रखें।",
    },
    MessageKey.COMPLETED_ALL_QUESTIONS: {
        "en": "Thank you {name}! You have already answered all the questions. Your album is ready for your family. ❤️",
        "hn": "धन्यवाद {name}! आप सभी सवालों के जवाब दे चुके हैं। आपका एल्बम आपके परिवार के लिए तैयार है। ❤️",
    },
    MessageKey.ACTIVE_TRIAL_PENDING: {
        "en": (
            "Hi {storyteller_name}! You have another Kahani in progress. "
            "Let's finish this one for {buyer_name} first, and we'll get to the next one right after. 😊"
        ),
        "hn": (
            "नमस्ते {storyteller_name}! आपकी एक और कहानी चल रही है। "
            "पहले {buyer_name} के लिए यह पूरी करते हैं, उसके बाद अगली शुरू करेंगे। 😊"
        ),
    },
    MessageKey.STORYTELLER_COMPLETION: {
        "en": "Thank you {name}! You've completed all the questions. Your stories will be compiled into a beautiful album for your family.",
        "hn": "धन्यवाद {name}! आपने सभी सवालों के जवाब दे दिए हैं। आपकी कहानियाँ आपके परिवार के लिए एक सुंदर एल्बम में सहेजी जाएँगी।",
    },
    MessageKey.STORYTELLER_ALBUM_READY: {
        "en": (
            "Hello {name}, your Kahani album is ready 🌼\n\n"
            "It holds the stories you shared, in your own voice, for your family to listen to whenever they miss you.\n\n"
            "Thank you for trusting me with your memories."
        ),
        "hn": (
            "नमस्ते {name}, आपका कहानी एल्बम तैयार है 🌼\n\n"
            "इसमें आपकी अपनी आवाज़ में आपकी कहानियाँ हैं, ताकि आपका परिवार जब चाहे उन्हें सुन सके।\n\n"
            "अपनी यादें मुझ पर भरोसा करके बाँटने के लिए धन्यवाद।"
        ),
    },
    MessageKey.BUYER_ALBUM_READY: {
        "en": (
            "Hello {buyer_name} 👋\n\nHere is {storyteller_name}'s Kahani album, their stories in their own voice 🎧📖\n\n"
            "When you have a quiet moment, please do listen!\n\nThese are the memories you can carry with you, always ❤️"
        ),
        "hn": (
            "नमस्ते {buyer_name} 👋\n\nयह रहा {storyteller_name} का कहानी एल्बम, उनकी अपनी आवाज़ में 🎧📖\n\n"
            "जब फुर्सत मिले, ज़रूर सुनिए!\n\nये यादें हमेशा आपके साथ रहेंगी ❤️"
        ),
    },
    MessageKey.BUYER_SENT_STORYTELLER_LINK: {
        "en": (
            "Hi {buyer_name}! 👋\n\nLooks like you clicked on the link that was meant for {storyteller_name}. 😊\n\n"
            "No worries! Please *copy this link and send it to {storyteller_name}*:\n\n{link}\n\n"
            "They just need to click the link and send the pre-filled message, that's it! ✨\n\nHope to hear from them soon! ❤️"
        ),
    },
    MessageKey.COVER_IMAGE_SAVED: {
        "en": (
            "Perfect! Thank you so much for the beautiful photo! 📸✨\n\n"
            "I've saved it and it will be used as the cover for {name}'s album. It's going to look amazing! 🎨\n\n"
            "Your album is coming together beautifully! ❤️"
        ),
    },
    MessageKey.COVER_IMAGE_DOWNLOAD_FAILED: {
        "en": "Sorry, I couldn't download your image. Could you please try sending it again? 📸",
    },
    MessageKey.COVER_IMAGE_SAVE_FAILED: {
        "en": "Sorry, there was an issue saving your image. Please try again later. 📸",
    },
    MessageKey.COVER_IMAGE_PROCESSING_FAILED: {
        "en": "Sorry, there was an issue processing your image. Please try again later. 📸",
    },
}


def render(key: MessageKey, language: Optional[str], params=NoParams()) -> str:
    """Render a message in the given language, falling back to English copy."""
    expected = PARAMS[key]
    if not isinstance(params, expected):
        raise TypeError(f"{key.value} expects {expected.__name__}, got {type(params).__name__}")
    variants = MESSAGES[key]
    template = variants.get(resolve_language(language)) or variants[DEFAULT_LANGUAGE]
    return template.format(**asdict(params))


def template_name(base: str, language: Optional[str]) -> str:
    """Apply the template catalog's language suffix, e.g. ``ready_vaani`` -> ``ready_vaani_hn``."""
    return f"{base}_{resolve_language(language)}"


def template_language_code(name: str) -> str:
    """WhatsApp language code for a template name: ``_hn`` is Hindi, anything else English."""
    return "hi" if name.endswith("_hn") else "en"
