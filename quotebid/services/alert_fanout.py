from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from quotebid.core.clock import Clock, utcnow
from quotebid.core.logging import get_structlog_logger
from quotebid.models import Opportunity, User
from quotebid.services.email import EmailClient, SendResult
from quotebid.services.storage import DatabaseStorage
from quotebid.utils import formatting

logger = get_structlog_logger(__name__)

ALERT_TEMPLATE = "new-opportunity-alert"


@dataclass
class FanOutResult:
    opportunity_id: int
    recipients: int = 0
    delivered: int = 0
    skipped: int = 0
    failed: List[int] = field(default_factory=list)


class AlertFanOut:
    """Send one opportunity alert to every user in the opportunity's industry."""

    def __init__(
        self,
        storage: DatabaseStorage,
        email_client: EmailClient,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.email_client = email_client
        self.clock = clock or utcnow

    async def fan_out(self, opportunity: Opportunity) -> FanOutResult:
        result = FanOutResult(opportunity_id=opportunity.id)

        if not opportunity.industry:
            logger.info("alert_fanout.no_industry", opportunity_id=opportunity.id)
            return result

        users = await self.storage.get_users_by_industry(opportunity.industry)
        result.recipients = len(users)
        if not users:
            logger.info(
                "alert_fanout.no_recipients",
                opportunity_id=opportunity.id,
                industry=opportunity.industry,
            )
            return result

        outcomes = await asyncio.gather(
            *(self._send_one(opportunity, user) for user in users)
        )

        for user, outcome in zip(users, outcomes):
            if outcome is None:
                result.failed.append(user.id)
            elif outcome.skipped:
                result.skipped += 1
            else:
                result.delivered += 1

        logger.info(
            "alert_fanout.completed",
            opportunity_id=opportunity.id,
            industry=opportunity.industry,
            recipients=result.recipients,
            delivered=result.delivered,
            skipped=result.skipped,
            failed=len(result.failed),
        )
        return result

    async def _send_one(self, opportunity: Opportunity, user: User) -> Optional[SendResult]:
        """Returns ``None`` when this recipient failed; never raises."""
        if not user.allows_email("alerts"):
            return SendResult(success=True, skipped=True)

        variables = {
            "user_first_name": user.first_name,
            "publication_type": opportunity.publication_name,
            "title": opportunity.title,
            "request_type": opportunity.request_type or "Expert Request",
            "bid_deadline": formatting.days_left(opportunity.deadline, self.clock()),
            "opportunity_id": opportunity.id,
        }
        try:
            sent = await self.email_client.send(user.email, ALERT_TEMPLATE, variables)
        except Exception as e:
            logger.error(
                "alert_fanout.send_error",
                opportunity_id=opportunity.id,
                user_id=user.id,
                error=str(e),
            )
            return None

        if not sent.success:
            logger.error(
                "alert_fanout.send_failed",
                opportunity_id=opportunity.id,
                user_id=user.id,
                error=sent.error,
            )
            return None
        return sent
