"""Polling scheduler.

Every tick sweeps the Trial Store for due timestamps, in this order:

1. due questions (re-check readiness before the next question)
2. pending question reminders
3. readiness retries
4. buyer reminder when the storyteller never made contact
5. storyteller check-ins
6. buyer check-ins

Each trial in a sweep is processed on its own; an exception is logged and the
sweep moves on. A tick that starts while the previous one is still running is
skipped, not queued.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Optional

from sqlalchemy.orm import Session

from kahani.config import Settings, settings as default_settings
from kahani.database import session_scope
from kahani.logging_config import get_logger
from kahani.models import Trial
from kahani.services import trial_store
from kahani.services.alert_service import alert_async, alert_error
from kahani.services.album_catalog import content_for_trial
from kahani.services.clock import Clock, ensure_timezone
from kahani.services.conversation_service import ConversationService
from kahani.services.effects import SendTemplate
from kahani.services.localization import template_name
from kahani.services.state_machine import (
    MAX_QUESTION_REMINDERS,
    QuestionDue,
    ReadinessRetryDue,
    ReminderDue,
    TrialState,
    transition,
)

logger = get_logger("scheduler")

SessionScope = Callable[[], ContextManager[Session]]

QUESTION_SEND_RETRY_DELAY = timedelta(hours=1)
BUYER_CHECKIN_DELAY = timedelta(hours=24)

BUYER_NO_CONTACT_TEMPLATE = "storyteller_no_contact_buyer_reminder_en"
STORYTELLER_CHECKIN_TEMPLATE = "checkin_storyteller_vaani"
BUYER_CHECKIN_TEMPLATE = "checkin_buyer_vaani_en"


def _is_due(value: Optional[datetime], now: datetime) -> bool:
    value = ensure_timezone(value)
    return value is not None and value <= now


def _new_summary() -> dict[str, int]:
    return {"found": 0, "processed": 0, "skipped": 0, "failed": 0, "errors": 0}


class Scheduler:
    def __init__(
        self,
        service: ConversationService,
        *,
        scope: SessionScope = session_scope,
        clock: Optional[Clock] = None,
        interval_seconds: Optional[float] = None,
        config: Settings = default_settings,
    ):
        self.service = service
        self._scope = scope
        self.clock = clock or service.clock
        self.interval_seconds = max(
            config.scheduler_interval_seconds if interval_seconds is None else interval_seconds, 0.1
        )
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self) -> dict[str, Any]:
        """Run every sweep once. Returns ``{"skipped": True}`` if a tick is already running."""
        if self._tick_lock.locked():
            logger.info("Scheduler tick skipped, previous tick still running")
            return {"skipped": True}

        async with self._tick_lock:
            summary: dict[str, Any] = {"skipped": False}
            with self._scope() as db:
                summary["due_questions"] = await self.send_due_questions(db)
                summary["reminders"] = await self.send_pending_reminders(db)
                summary["readiness_retries"] = await self.process_readiness_retries(db)
                summary["buyer_no_contact"] = await self.send_buyer_no_contact_reminders(db)
                summary["storyteller_checkins"] = await self.send_storyteller_checkins(db)
                summary["buyer_checkins"] = await self.send_buyer_checkins(db)

            if any(isinstance(v, dict) and (v["processed"] or v["failed"] or v["errors"]) for v in summary.values()):
                logger.info("Scheduler tick finished", extra={"context": summary})
            return summary

    # Core sweeps

    async def send_due_questions(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_scheduled_questions_due(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        def still_due(trial: Trial, at: datetime) -> bool:
            return (
                trial.conversation_state == TrialState.IN_PROGRESS.value
                and _is_due(trial.next_question_scheduled_for, at)
            )

        for trial in trials:
            try:
                result = await self.service.resume(db, trial, QuestionDue(), still_due=still_due)
                if result is None:
                    summary["skipped"] += 1
                    continue
                _, report = result
                if report.ok:
                    summary["processed"] += 1
                    continue

                summary["failed"] += 1
                await self._reschedule_question(db, trial)
            except Exception as e:
                self._sweep_error(db, "due_questions", trial, e)
                summary["errors"] += 1
        return summary

    async def _reschedule_question(self, db: Session, trial: Trial) -> None:
        async with self.service.locks.lock_for(trial.id):
            db.refresh(trial)
            if trial.conversation_state != TrialState.AWAITING_READINESS.value:
                # The storyteller answered while the readiness check was failing.
                logger.info(
                    "Trial moved on, question not rescheduled",
                    extra={"context": {"trial_id": str(trial.id), "state": trial.conversation_state}},
                )
                return
            retry_at = self.clock() + QUESTION_SEND_RETRY_DELAY
            state = transition(TrialState(trial.conversation_state), TrialState.IN_PROGRESS)
            trial_store.update_trial(
                db, trial, {"conversation_state": state.value, "next_question_scheduled_for": retry_at}
            )
            db.commit()
        logger.warning(
            "Readiness check not delivered, question rescheduled",
            extra={"context": {"trial_id": str(trial.id), "retry_at": retry_at}},
        )

    async def send_pending_reminders(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_pending_reminders(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        def still_due(trial: Trial, at: datetime) -> bool:
            return (
                trial.conversation_state == TrialState.IN_PROGRESS.value
                and trial.next_question_scheduled_for is None
                and (trial.question_reminder_count or 0) < MAX_QUESTION_REMINDERS
            )

        for trial in trials:
            try:
                result = await self.service.resume(db, trial, ReminderDue(), still_due=still_due)
                if result is None or result[0].outcome != "reminder_sent":
                    summary["skipped"] += 1
                elif result[1].ok:
                    summary["processed"] += 1
                else:
                    summary["failed"] += 1
            except Exception as e:
                self._sweep_error(db, "reminders", trial, e)
                summary["errors"] += 1
        return summary

    async def process_readiness_retries(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_trials_needing_retry(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        def still_due(trial: Trial, at: datetime) -> bool:
            return (
                trial.conversation_state == TrialState.AWAITING_READINESS.value
                and _is_due(trial.retry_readiness_at, at)
            )

        for trial in trials:
            try:
                result = await self.service.resume(db, trial, ReadinessRetryDue(), still_due=still_due)
                if result is None or result[0].outcome != "readiness_retried":
                    summary["skipped"] += 1
                elif result[1].ok:
                    summary["processed"] += 1
                else:
                    summary["failed"] += 1
            except Exception as e:
                self._sweep_error(db, "readiness_retries", trial, e)
                summary["errors"] += 1
        return summary

    # Follow-up sweeps

    async def send_buyer_no_contact_reminders(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_trials_needing_buyer_no_contact_reminder(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        for trial in trials:
            try:
                sent = await self._send_and_stamp(
                    db,
                    trial,
                    still_due=lambda t: (
                        t.conversation_state == TrialState.AWAITING_INITIAL_CONTACT.value
                        and not t.storyteller_phone
                        and t.buyer_no_contact_reminder_sent_at is None
                    ),
                    effect=lambda t: SendTemplate(
                        to=t.customer_phone, name=BUYER_NO_CONTACT_TEMPLATE, params=(t.buyer_name, t.storyteller_name)
                    ),
                    changes=lambda t, at: {"buyer_no_contact_reminder_sent_at": at},
                )
                self._count(summary, sent)
            except Exception as e:
                self._sweep_error(db, "buyer_no_contact", trial, e)
                summary["errors"] += 1
        return summary

    async def send_storyteller_checkins(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_trials_needing_storyteller_checkin(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        def changes(trial: Trial, at: datetime) -> dict[str, Any]:
            fields: dict[str, Any] = {"storyteller_checkin_sent_at": at, "storyteller_checkin_scheduled_for": None}
            if trial.customer_phone:
                fields["buyer_checkin_scheduled_for"] = at + BUYER_CHECKIN_DELAY
            return fields

        for trial in trials:
            try:
                sent = await self._send_and_stamp(
                    db,
                    trial,
                    still_due=lambda t: (
                        bool(t.storyteller_phone)
                        and t.storyteller_checkin_sent_at is None
                        and t.storyteller_checkin_scheduled_for is not None
                    ),
                    effect=lambda t: SendTemplate(
                        to=t.storyteller_phone,
                        name=template_name(STORYTELLER_CHECKIN_TEMPLATE, content_for_trial(db, t).language),
                        params=(t.storyteller_name,),
                    ),
                    changes=changes,
                )
                self._count(summary, sent)
            except Exception as e:
                self._sweep_error(db, "storyteller_checkins", trial, e)
                summary["errors"] += 1
        return summary

    async def send_buyer_checkins(self, db: Session) -> dict[str, int]:
        now = self.clock()
        trials = trial_store.get_trials_needing_buyer_checkin(db, now)
        summary = _new_summary()
        summary["found"] = len(trials)

        for trial in trials:
            try:
                sent = await self._send_and_stamp(
                    db,
                    trial,
                    still_due=lambda t: (
                        bool(t.customer_phone)
                        and t.buyer_checkin_sent_at is None
                        and t.buyer_checkin_scheduled_for is not None
                    ),
                    effect=lambda t: SendTemplate(
                        to=t.customer_phone, name=BUYER_CHECKIN_TEMPLATE, params=(t.buyer_name, t.storyteller_name)
                    ),
                    changes=lambda t, at: {"buyer_checkin_sent_at": at, "buyer_checkin_scheduled_for": None},
                )
                self._count(summary, sent)
            except Exception as e:
                self._sweep_error(db, "buyer_checkins", trial, e)
                summary["errors"] += 1
        return summary

    async def _send_and_stamp(self, db: Session, trial: Trial, still_due, effect, changes) -> Optional[bool]:
        """Send one follow-up template and stamp the trial if it went out. None means skipped."""
        async with self.service.locks.lock_for(trial.id):
            db.refresh(trial)
            if not still_due(trial):
                return None
            report = await self.service.dispatcher.dispatch([effect(trial)], order_id=str(trial.id))
            if not report.ok:
                logger.warning("Follow-up template not delivered", extra={"context": {"trial_id": str(trial.id)}})
                return False
            trial_store.update_trial(db, trial, changes(trial, self.clock()))
            db.commit()
            return True

    @staticmethod
    def _count(summary: dict[str, int], sent: Optional[bool]) -> None:
        if sent is None:
            summary["skipped"] += 1
        elif sent:
            summary["processed"] += 1
        else:
            summary["failed"] += 1

    @staticmethod
    def _sweep_error(db: Session, sweep: str, trial: Trial, error: Exception) -> None:
        db.rollback()
        logger.error(
            f"Scheduler sweep failed for trial: {error}",
            extra={"context": {"sweep": sweep, "trial_id": str(trial.id)}},
            exc_info=True,
        )

    # Background loop

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Scheduler tick failed", extra={"context": {"error": str(exc)}}, exc_info=True)
                await alert_async(alert_error, "Scheduler tick failed", {"error": str(exc)})

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Scheduler started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")
