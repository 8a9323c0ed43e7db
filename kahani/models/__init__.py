from kahani.models.album import Album
from kahani.models.processed_webhook import ProcessedWebhook
from kahani.models.trial import Trial
from kahani.models.voice_note import VoiceNote
from kahani.models.webhook_event import WhatsAppWebhookEvent
from kahani.models.whatsapp_message import WhatsAppMessage

__all__ = [
    "Album",
    "Trial",
    "VoiceNote",
    "WhatsAppMessage",
    "WhatsAppWebhookEvent",
    "ProcessedWebhook",
]
