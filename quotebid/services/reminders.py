from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from quotebid.core.clock import Clock, utcnow
from quotebid.core.config import settings
from quotebid.core.logging import get_structlog_logger
from quotebid.models import Opportunity, PitchStatus, ReminderKind, ReminderOutcome, ScheduledReminder, User
from quotebid.services.email import EmailClient
from quotebid.services.storage import DatabaseStorage
from quotebid.utils import formatting

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class ReminderPolicy:
    kind: ReminderKind
    delay: timedelta
    template: str
    preference: str


def default_policies() -> Dict[ReminderKind, ReminderPolicy]:
    return {
        ReminderKind.DRAFT: ReminderPolicy(
            kind=ReminderKind.DRAFT,
            delay=timedelta(minutes=settings.draft_reminder_delay_minutes),
            template="draft-reminder",
            preference="notifications",
        ),
        ReminderKind.SAVED_OPPORTUNITY: ReminderPolicy(
            kind=ReminderKind.SAVED_OPPORTUNITY,
            delay=timedelta(minutes=settings.saved_opportunity_reminder_delay_minutes),
            template="saved-opportunity-alert",
            preference="alerts",
        ),
    }


@dataclass
class ReminderTick:
    due: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class ReminderService:
    """Durable reminders for unfinished drafts and saved-but-unpitched opportunities.

    Each pending reminder is a ``scheduled_reminders`` row keyed by
    ``(kind, user_id, subject_id)``; scheduling again replaces the pending row.
    A single poll loop fires due rows. Every fired row is consumed whatever
    happens: sent, skipped because the action became moot, or failed.
    """

    def __init__(
        self,
        storage: DatabaseStorage,
        email_client: EmailClient,
        *,
        clock: Optional[Clock] = None,
        policies: Optional[Dict[ReminderKind, ReminderPolicy]] = None,
    ):
        self.storage = storage
        self.email_client = email_client
        self.clock = clock or utcnow
        self.policies = policies or default_policies()

    async def schedule(
        self,
        kind: ReminderKind,
        user_id: int,
        subject_id: int,
        opportunity_id: int,
        anchor_time: Optional[datetime] = None,
    ) -> ScheduledReminder:
        """Due ``policy.delay`` after ``anchor_time``, never earlier than now."""
        policy = self.policies[kind]
        now = self.clock()
        due_at = max((anchor_time or now) + policy.delay, now)

        reminder = await self.storage.replace_pending_reminder(
            kind,
            user_id=user_id,
            subject_id=subject_id,
            opportunity_id=opportunity_id,
            due_at=due_at,
        )
        logger.info(
            "reminders.scheduled",
            kind=kind.value,
            user_id=user_id,
            subject_id=subject_id,
            reminder_id=reminder.id,
            due_at=due_at.isoformat(),
        )
        return reminder

    async def cancel(self, kind: ReminderKind, user_id: int, subject_id: int) -> bool:
        canceled = await self.storage.cancel_pending_reminders(kind, user_id, subject_id)
        if canceled:
            logger.info(
                "reminders.canceled",
                kind=kind.value,
                user_id=user_id,
                subject_id=subject_id,
            )
        return canceled > 0

    async def schedule_draft(
        self, user_id: int, pitch_id: int, opportunity_id: int, anchor_time: Optional[datetime] = None
    ) -> ScheduledReminder:
        return await self.schedule(ReminderKind.DRAFT, user_id, pitch_id, opportunity_id, anchor_time)

    async def cancel_draft(self, user_id: int, pitch_id: int) -> bool:
        return await self.cancel(ReminderKind.DRAFT, user_id, pitch_id)

    async def schedule_saved_opportunity(
        self, user_id: int, opportunity_id: int, anchor_time: Optional[datetime] = None
    ) -> ScheduledReminder:
        return await self.schedule(
            ReminderKind.SAVED_OPPORTUNITY, user_id, opportunity_id, opportunity_id, anchor_time
        )

    async def cancel_saved_opportunity(self, user_id: int, opportunity_id: int) -> bool:
        return await self.cancel(ReminderKind.SAVED_OPPORTUNITY, user_id, opportunity_id)

    async def run_once(self) -> ReminderTick:
        tick = ReminderTick()
        due = await self.storage.find_due_reminders(self.clock())
        tick.due = len(due)

        for reminder in due:
            outcome = await self.fire(reminder)
            if outcome == ReminderOutcome.SENT:
                tick.sent += 1
            elif outcome == ReminderOutcome.FAILED:
                tick.failed += 1
            elif outcome is not None:
                tick.skipped += 1

        if tick.due:
            logger.info(
                "reminders.tick_completed",
                due=tick.due,
                sent=tick.sent,
                skipped=tick.skipped,
                failed=tick.failed,
            )
        return tick

    async def fire(self, reminder: ScheduledReminder) -> Optional[str]:
        """Consume one due reminder. Returns its outcome, or None if another tick took it."""
        if not await self.storage.claim_reminder(reminder.id):
            return None

        log = logger.bind(
            reminder_id=reminder.id,
            kind=reminder.kind,
            user_id=reminder.user_id,
            subject_id=reminder.subject_id,
        )
        try:
            outcome = await self._deliver(reminder, log)
        except Exception as e:
            log.error("reminders.fire_failed", error=str(e), exc_info=True)
            outcome = ReminderOutcome.FAILED

        sent_at = self.clock() if outcome == ReminderOutcome.SENT else None
        try:
            await self.storage.finish_reminder(reminder.id, outcome, sent_at)
        except Exception as e:
            log.error("reminders.finish_failed", outcome=outcome, error=str(e))
        return outcome

    async def _deliver(self, reminder: ScheduledReminder, log) -> str:
        kind = ReminderKind(reminder.kind)
        policy = self.policies[kind]

        if kind == ReminderKind.DRAFT:
            still_relevant = await self._draft_still_open(reminder)
        else:
            still_relevant = await self._opportunity_still_unpitched(reminder)
        if not still_relevant:
            log.info("reminders.skipped_moot")
            return ReminderOutcome.SKIPPED

        opportunity = await self.storage.get_opportunity(reminder.opportunity_id)
        if opportunity is None or not opportunity.is_open:
            log.info("reminders.skipped_opportunity_closed", opportunity_id=reminder.opportunity_id)
            return ReminderOutcome.SKIPPED

        user = await self.storage.get_user(reminder.user_id)
        if user is None:
            log.info("reminders.skipped_user_missing")
            return ReminderOutcome.SKIPPED
        if not user.allows_email(policy.preference):
            log.info("reminders.skipped_opted_out", preference=policy.preference)
            return ReminderOutcome.OPTED_OUT

        variables = self._variables(kind, user, opportunity)
        result = await self.email_client.send(user.email, policy.template, variables)
        if not result.success:
            log.error("reminders.send_failed", error=result.error)
            return ReminderOutcome.FAILED

        log.info("reminders.sent", message_id=result.id)
        return ReminderOutcome.SENT

    async def _draft_still_open(self, reminder: ScheduledReminder) -> bool:
        pitch = await self.storage.get_pitch(reminder.subject_id)
        return (
            pitch is not None
            and pitch.user_id == reminder.user_id
            and pitch.status == PitchStatus.DRAFT
        )

    async def _opportunity_still_unpitched(self, reminder: ScheduledReminder) -> bool:
        pitch = await self.storage.find_user_pitch_for_opportunity(
            reminder.user_id, reminder.opportunity_id
        )
        return pitch is None

    def _variables(self, kind: ReminderKind, user: User, opportunity: Opportunity) -> dict:
        now = self.clock()
        variables = {
            "user_first_name": user.first_name,
            "opportunity_title": opportunity.title,
            "publication_name": opportunity.publication_name,
            "request_type": opportunity.request_type or "Expert Commentary",
            "current_price": opportunity.display_price,
            "opportunity_id": opportunity.id,
        }
        if kind == ReminderKind.DRAFT:
            variables["opportunity_description"] = (
                opportunity.description
                or "Expert commentary needed for this publication opportunity."
            )
            variables["time_left"] = formatting.hours_left(opportunity.deadline, now)
        else:
            variables["bid_deadline"] = formatting.days_left(opportunity.deadline, now)
        return variables
