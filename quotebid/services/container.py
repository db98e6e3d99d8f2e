from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotebid.core.clock import Clock, utcnow
from quotebid.core.config import settings
from quotebid.core.logging import get_structlog_logger
from quotebid.services.alert_fanout import AlertFanOut
from quotebid.services.background import PollingScheduler
from quotebid.services.billing import PlacementWorkflow
from quotebid.services.email import EmailClient
from quotebid.services.email_scheduler import OpportunityEmailScheduler
from quotebid.services.payments import PaymentGateway
from quotebid.services.reminders import ReminderService
from quotebid.services.storage import DatabaseStorage

logger = get_structlog_logger(__name__)


@dataclass
class Services:
    storage: DatabaseStorage
    email_client: EmailClient
    payments: PaymentGateway
    fan_out: AlertFanOut
    email_scheduler: OpportunityEmailScheduler
    reminders: ReminderService
    placements: PlacementWorkflow
    scheduler: Optional[PollingScheduler] = None

    def build_scheduler(self) -> PollingScheduler:
        self.scheduler = PollingScheduler()
        self.scheduler.add_job(
            "opportunity_emails",
            self.email_scheduler.run_once,
            interval=settings.email_poll_interval_seconds,
            initial_delay=settings.email_poll_initial_delay_seconds,
        )
        self.scheduler.add_job(
            "reminders",
            self.reminders.run_once,
            interval=settings.reminder_poll_interval_seconds,
            initial_delay=settings.email_poll_initial_delay_seconds,
        )
        return self.scheduler

    def start_loops(self) -> None:
        (self.scheduler or self.build_scheduler()).start()

    async def stop_loops(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()

    def loop_status(self) -> Dict[str, dict]:
        return self.scheduler.status() if self.scheduler is not None else {}


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email_client: Optional[EmailClient] = None,
    payments: Optional[PaymentGateway] = None,
    clock: Optional[Clock] = None,
) -> Services:
    """Wire the storage facade, collaborators and workflows together."""
    clock = clock or utcnow
    storage = DatabaseStorage(session_factory)
    email_client = email_client or EmailClient()
    payments = payments or PaymentGateway()
    fan_out = AlertFanOut(storage, email_client, clock=clock)

    services = Services(
        storage=storage,
        email_client=email_client,
        payments=payments,
        fan_out=fan_out,
        email_scheduler=OpportunityEmailScheduler(storage, fan_out, clock=clock),
        reminders=ReminderService(storage, email_client, clock=clock),
        placements=PlacementWorkflow(storage, payments, email_client, clock=clock),
    )
    logger.debug("services.built", email_provider=getattr(email_client, "provider", None))
    return services
