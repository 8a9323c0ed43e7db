"""Application wiring: one gateway, dispatcher, conversation service and scheduler per app."""

from dataclasses import dataclass

from fastapi import Request

from kahani.config import Settings, settings
from kahani.services.conversation_service import ConversationService
from kahani.services.media_service import CoverImagePipeline, ObjectStorage, VoiceNotePipeline
from kahani.services.outbox_service import OutboxDispatcher
from kahani.services.scheduler_service import Scheduler
from kahani.services.whatsapp_service import WhatsAppGateway


@dataclass
class Services:
    gateway: WhatsAppGateway
    dispatcher: OutboxDispatcher
    conversation: ConversationService
    scheduler: Scheduler


def build_services(config: Settings = settings) -> Services:
    gateway = WhatsAppGateway(config)
    storage = ObjectStorage(config)
    dispatcher = OutboxDispatcher(
        gateway,
        delay_seconds=config.message_delay_seconds,
        voice_note_processor=VoiceNotePipeline(gateway, storage),
    )
    conversation = ConversationService(
        dispatcher,
        cover_pipeline=CoverImagePipeline(gateway, storage),
        config=config,
    )
    scheduler = Scheduler(conversation, interval_seconds=config.scheduler_interval_seconds, config=config)
    return Services(gateway=gateway, dispatcher=dispatcher, conversation=conversation, scheduler=scheduler)


def get_settings() -> Settings:
    return settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatcher(request: Request) -> OutboxDispatcher:
    return get_services(request).dispatcher


def get_conversation_service(request: Request) -> ConversationService:
    return get_services(request).conversation


def get_scheduler(request: Request) -> Scheduler:
    return get_services(request).scheduler
