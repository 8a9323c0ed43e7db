from kahani.schemas.trial import AlbumView, TrialCreate, TrialCreateResponse
from kahani.schemas.webhook import InboundMessage, StatusUpdate, WebhookPayload

__all__ = ["TrialCreate", "TrialCreateResponse", "AlbumView", "WebhookPayload", "InboundMessage", "StatusUpdate"]
