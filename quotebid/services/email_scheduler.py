from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from quotebid.core.clock import Clock, utcnow
from quotebid.core.config import settings
from quotebid.core.exceptions import BusinessRuleError, NotFoundError
from quotebid.core.logging import get_structlog_logger
from quotebid.models import Opportunity
from quotebid.services.alert_fanout import AlertFanOut
from quotebid.services.storage import DatabaseStorage

logger = get_structlog_logger(__name__)

SENT = "sent"
CLAIM_LOST = "claim_lost"
FAILED = "failed"


@dataclass
class SchedulerTick:
    due: int = 0
    sent: int = 0
    lost_claim: int = 0
    failed: int = 0
    stuck: int = 0


class OpportunityEmailScheduler:
    """Persistent scheduler for opportunity alert emails.

    State lives on the opportunity row (``email_scheduled_at``,
    ``email_send_attempted``, ``email_sent_at``), so a restart loses nothing.
    ``email_send_attempted`` is claimed with a conditional update before the
    fan-out runs; a row whose send then fails stays attempted and is never
    retried automatically.
    """

    def __init__(
        self,
        storage: DatabaseStorage,
        fan_out: AlertFanOut,
        *,
        clock: Optional[Clock] = None,
        failsafe_minutes: Optional[int] = None,
        stuck_minutes: Optional[int] = None,
    ):
        self.storage = storage
        self.fan_out = fan_out
        self.clock = clock or utcnow
        self.failsafe_minutes = (
            settings.email_failsafe_minutes if failsafe_minutes is None else failsafe_minutes
        )
        self.stuck_minutes = settings.email_stuck_minutes if stuck_minutes is None else stuck_minutes

    async def schedule(self, opportunity_id: int, delay_minutes: Optional[int] = None) -> Opportunity:
        """Set the alert to fire ``delay_minutes`` from now; zero sends it inline."""
        if delay_minutes is None:
            delay_minutes = settings.opportunity_email_delay()
        delay_minutes = max(0, delay_minutes)

        scheduled_at = self.clock() + timedelta(minutes=delay_minutes)
        opportunity = await self.storage.schedule_opportunity_email(opportunity_id, scheduled_at)
        if opportunity is None:
            raise NotFoundError(
                message=f"Opportunity {opportunity_id} not found",
                details={"opportunity_id": opportunity_id},
            )

        logger.info(
            "email_scheduler.scheduled",
            opportunity_id=opportunity_id,
            delay_minutes=delay_minutes,
            scheduled_at=scheduled_at.isoformat(),
        )

        if delay_minutes == 0:
            await self.send(opportunity_id)
            opportunity = await self.storage.get_opportunity(opportunity_id) or opportunity

        return opportunity

    async def send(self, opportunity_id: int) -> bool:
        """Claim, fan out, mark sent. Returns True only when this call sent the alert."""
        return await self._deliver(opportunity_id) == SENT

    async def _deliver(self, opportunity_id: int) -> str:
        claimed = await self.storage.claim_opportunity_email(opportunity_id, self.clock())
        if not claimed:
            logger.info("email_scheduler.claim_lost", opportunity_id=opportunity_id)
            return CLAIM_LOST

        try:
            opportunity = await self.storage.get_opportunity(opportunity_id)
            if opportunity is None:
                logger.warning("email_scheduler.opportunity_missing", opportunity_id=opportunity_id)
                return FAILED

            result = await self.fan_out.fan_out(opportunity)
            await self.storage.mark_opportunity_email_sent(opportunity_id, self.clock())
        except Exception as e:
            logger.error(
                "email_scheduler.send_failed",
                opportunity_id=opportunity_id,
                error=str(e),
                exc_info=True,
            )
            return FAILED

        logger.info(
            "email_scheduler.sent",
            opportunity_id=opportunity_id,
            recipients=result.recipients,
            delivered=result.delivered,
            failed=len(result.failed),
        )
        return SENT

    async def run_once(self) -> SchedulerTick:
        """One poll cycle: send every due or never-scheduled alert, then report stuck rows."""
        now = self.clock()
        tick = SchedulerTick()

        due = await self.storage.find_due_opportunity_emails(
            now, now - timedelta(minutes=self.failsafe_minutes)
        )
        tick.due = len(due)

        for opportunity in due:
            if opportunity.email_scheduled_at is None:
                logger.warning("email_scheduler.failsafe_pickup", opportunity_id=opportunity.id)
            outcome = await self._deliver(opportunity.id)
            if outcome == SENT:
                tick.sent += 1
            elif outcome == CLAIM_LOST:
                tick.lost_claim += 1
            else:
                tick.failed += 1

        stuck = await self.find_stuck()
        tick.stuck = len(stuck)
        for opportunity in stuck:
            logger.error(
                "email_scheduler.stuck",
                opportunity_id=opportunity.id,
                scheduled_at=opportunity.email_scheduled_at.isoformat()
                if opportunity.email_scheduled_at
                else None,
            )

        if tick.due or tick.stuck:
            logger.info(
                "email_scheduler.tick_completed",
                due=tick.due,
                sent=tick.sent,
                lost_claim=tick.lost_claim,
                failed=tick.failed,
                stuck=tick.stuck,
            )
        return tick

    async def find_stuck(self) -> List[Opportunity]:
        """Rows attempted more than ``stuck_minutes`` ago and never marked sent."""
        cutoff = self.clock() - timedelta(minutes=self.stuck_minutes)
        return await self.storage.find_stuck_opportunity_emails(cutoff)

    async def resend(self, opportunity_id: int, *, force: bool = False) -> Opportunity:
        """Operator reconciliation: send a stuck alert now.

        Without ``force`` the row is reset only while it still matches the
        stuck criteria, so a send that is merely slow is never doubled.
        ``force`` reschedules unconditionally, even an alert already sent.
        """
        if force:
            logger.warning("email_scheduler.forced_resend", opportunity_id=opportunity_id)
            return await self.schedule(opportunity_id, delay_minutes=0)

        now = self.clock()
        cutoff = now - timedelta(minutes=self.stuck_minutes)
        if not await self.storage.reset_stuck_opportunity_email(opportunity_id, now, cutoff):
            opportunity = await self.storage.get_opportunity(opportunity_id)
            if opportunity is None:
                raise NotFoundError(
                    message=f"Opportunity {opportunity_id} not found",
                    details={"opportunity_id": opportunity_id},
                )
            raise BusinessRuleError(
                message="Alert email is not stuck; only unsent attempts older than the stuck threshold can be resent",
                details={
                    "opportunity_id": opportunity_id,
                    "email_sent_at": opportunity.email_sent_at.isoformat()
                    if opportunity.email_sent_at
                    else None,
                    "email_attempted_at": opportunity.email_attempted_at.isoformat()
                    if opportunity.email_attempted_at
                    else None,
                },
            )

        logger.warning("email_scheduler.manual_resend", opportunity_id=opportunity_id)
        await self.send(opportunity_id)
        return await self.storage.get_opportunity(opportunity_id)
