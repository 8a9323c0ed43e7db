"""Executes the effects a conversation decision produced.

Effects run in order. A failed send is logged and counted, never raised, so
one undeliverable message does not stop the rest of the batch or roll back a
state change that was already committed.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

from kahani.config import settings
from kahani.logging_config import get_logger
from kahani.services.effects import (
    Effect,
    Pause,
    ProcessVoiceNote,
    SendCallToAction,
    SendTemplate,
    SendText,
)
from kahani.services.whatsapp_service import WhatsAppGateway

logger = get_logger("outbox")

VoiceNoteProcessor = Callable[[UUID, int], Awaitable[Any]]


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0
    best_effort_failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "best_effort_failed": self.best_effort_failed}


class OutboxDispatcher:
    def __init__(
        self,
        gateway: WhatsAppGateway,
        *,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        voice_note_processor: Optional[VoiceNoteProcessor] = None,
    ):
        self.gateway = gateway
        self.delay_seconds = settings.message_delay_seconds if delay_seconds is None else delay_seconds
        self._sleep = sleep
        self._voice_note_processor = voice_note_processor
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(self, effects: Iterable[Effect], *, order_id: Optional[str] = None) -> DispatchReport:
        report = DispatchReport()
        for effect in effects:
            if isinstance(effect, Pause):
                await self._sleep(self.delay_seconds)
                continue
            if isinstance(effect, ProcessVoiceNote):
                self._start_voice_note_processing(effect)
                continue

            try:
                ok = await self._send(effect, order_id)
            except Exception as e:
                logger.error(
                    f"Effect failed: {e}",
                    extra={"context": {"effect": type(effect).__name__, "to": effect.to, "order_id": order_id}},
                    exc_info=True,
                )
                ok = False

            if ok:
                report.sent += 1
            elif effect.best_effort:
                report.best_effort_failed += 1
                logger.warning(
                    "Best-effort message not delivered",
                    extra={"context": {"effect": type(effect).__name__, "to": effect.to, "order_id": order_id}},
                )
            else:
                report.failed += 1
        return report

    async def _send(self, effect: Effect, order_id: Optional[str]) -> bool:
        if isinstance(effect, SendText):
            return await self.gateway.send_text(effect.to, effect.body, order_id=order_id)
        if isinstance(effect, SendTemplate):
            return await self.gateway.send_template(
                effect.to,
                effect.name,
                effect.params,
                button_url_param=effect.button_url_param,
                order_id=order_id,
            )
        if isinstance(effect, SendCallToAction):
            return await self.gateway.send_cta(
                effect.to, effect.body, effect.button_label, effect.url, order_id=order_id
            )
        raise TypeError(f"Unsupported effect: {effect!r}")

    def _start_voice_note_processing(self, effect: ProcessVoiceNote) -> None:
        if self._voice_note_processor is None:
            logger.warning(
                "No voice note processor configured",
                extra={"context": {"trial_id": str(effect.trial_id), "question_index": effect.question_index}},
            )
            return
        task = asyncio.create_task(self._voice_note_processor(effect.trial_id, effect.question_index))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Voice note processing crashed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for background media processing started by earlier dispatches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
