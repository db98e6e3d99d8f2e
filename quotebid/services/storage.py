from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotebid.core.clock import utcnow
from quotebid.core.exceptions import DatabaseError
from quotebid.core.logging import get_structlog_logger
from quotebid.models import (
    Bid,
    Opportunity,
    OpportunityStatus,
    Pitch,
    PitchStatus,
    Placement,
    PlacementStatus,
    Publication,
    ReminderKind,
    SavedOpportunity,
    ScheduledReminder,
    User,
)

logger = get_structlog_logger(__name__)


class DatabaseStorage:
    """Async storage facade over the relational store.

    Every operation opens its own short session. A missing row is reported as
    ``None`` (or an empty list); any SQLAlchemy failure is re-raised as
    ``DatabaseError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("storage.operation_failed", operation=operation, error=str(e))
            raise DatabaseError(
                message=f"Storage operation failed: {operation}",
                details={"operation": operation, "error": str(e)},
            ) from e
        finally:
            await session.close()

    async def _update_row(self, model, row_id: int, operation: str, fields: Dict[str, Any]):
        async with self._session(operation) as session:
            row = await session.get(model, row_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            await session.flush()
            return row

    async def ping(self) -> bool:
        async with self._session("ping") as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar_one() == 1

    # ------------------------------------------------------------------ users

    async def create_user(self, **fields: Any) -> User:
        async with self._session("create_user") as session:
            user = User(**fields)
            session.add(user)
            await session.flush()
            return user

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._session("get_user") as session:
            return await session.get(User, user_id)

    async def get_users_by_industry(self, industry: str) -> List[User]:
        async with self._session("get_users_by_industry") as session:
            result = await session.execute(
                select(User).where(User.industry == industry).order_by(User.id)
            )
            return list(result.scalars().all())

    async def set_user_customer_id(self, user_id: int, customer_id: str) -> Optional[User]:
        return await self._update_row(
            User, user_id, "set_user_customer_id", {"stripe_customer_id": customer_id}
        )

    # ---------------------------------------------------------- opportunities

    async def create_publication(self, **fields: Any) -> Publication:
        async with self._session("create_publication") as session:
            publication = Publication(**fields)
            session.add(publication)
            await session.flush()
            return publication

    async def create_opportunity(self, **fields: Any) -> Opportunity:
        async with self._session("create_opportunity") as session:
            opportunity = Opportunity(**fields)
            session.add(opportunity)
            await session.flush()
            opportunity_id = opportunity.id
        return await self.get_opportunity(opportunity_id)

    async def get_opportunity(self, opportunity_id: int) -> Optional[Opportunity]:
        async with self._session("get_opportunity") as session:
            return await session.get(Opportunity, opportunity_id)

    async def update_opportunity(self, opportunity_id: int, **fields: Any) -> Optional[Opportunity]:
        return await self._update_row(Opportunity, opportunity_id, "update_opportunity", fields)

    async def close_opportunity(self, opportunity_id: int) -> Optional[Opportunity]:
        async with self._session("close_opportunity") as session:
            opportunity = await session.get(Opportunity, opportunity_id)
            if opportunity is None:
                return None
            if opportunity.status != OpportunityStatus.CLOSED.value:
                opportunity.status = OpportunityStatus.CLOSED.value
                opportunity.closed_at = utcnow()
                opportunity.last_price = opportunity.current_price or opportunity.minimum_bid
                await session.flush()
            return opportunity

    async def select_opportunities_where(self, *criteria: Any) -> List[Opportunity]:
        async with self._session("select_opportunities_where") as session:
            result = await session.execute(
                select(Opportunity).where(*criteria).order_by(Opportunity.id)
            )
            return list(result.scalars().all())

    async def schedule_opportunity_email(
        self, opportunity_id: int, scheduled_at: datetime
    ) -> Optional[Opportunity]:
        return await self._update_row(
            Opportunity,
            opportunity_id,
            "schedule_opportunity_email",
            {
                "email_scheduled_at": scheduled_at,
                "email_send_attempted": False,
                "email_attempted_at": None,
                "email_sent_at": None,
            },
        )

    async def reset_stuck_opportunity_email(
        self, opportunity_id: int, scheduled_at: datetime, cutoff: datetime
    ) -> bool:
        """Reschedule an alert only while it is still stuck as of ``cutoff``."""
        async with self._session("reset_stuck_opportunity_email") as session:
            result = await session.execute(
                update(Opportunity)
                .where(
                    Opportunity.id == opportunity_id,
                    Opportunity.email_send_attempted.is_(True),
                    Opportunity.email_sent_at.is_(None),
                    Opportunity.email_attempted_at < cutoff,
                )
                .values(
                    email_scheduled_at=scheduled_at,
                    email_send_attempted=False,
                    email_attempted_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def find_due_opportunity_emails(
        self, now: datetime, failsafe_cutoff: datetime
    ) -> List[Opportunity]:
        """Open opportunities whose alert is due, or that were never scheduled."""
        scheduled_and_due = and_(
            Opportunity.email_scheduled_at.is_not(None),
            Opportunity.email_scheduled_at <= now,
            Opportunity.email_send_attempted.is_(False),
        )
        never_scheduled = and_(
            Opportunity.email_scheduled_at.is_(None),
            Opportunity.created_at < failsafe_cutoff,
            Opportunity.email_send_attempted.is_(False),
        )
        return await self.select_opportunities_where(
            Opportunity.status == OpportunityStatus.OPEN.value,
            Opportunity.email_sent_at.is_(None),
            or_(scheduled_and_due, never_scheduled),
        )

    async def claim_opportunity_email(self, opportunity_id: int, attempted_at: datetime) -> bool:
        """Flip ``email_send_attempted`` false -> true; only one caller can win."""
        async with self._session("claim_opportunity_email") as session:
            result = await session.execute(
                update(Opportunity)
                .where(
                    Opportunity.id == opportunity_id,
                    Opportunity.email_send_attempted.is_(False),
                    Opportunity.email_sent_at.is_(None),
                )
                .values(email_send_attempted=True, email_attempted_at=attempted_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def mark_opportunity_email_sent(self, opportunity_id: int, sent_at: datetime) -> bool:
        async with self._session("mark_opportunity_email_sent") as session:
            result = await session.execute(
                update(Opportunity)
                .where(
                    Opportunity.id == opportunity_id,
                    Opportunity.email_send_attempted.is_(True),
                    Opportunity.email_sent_at.is_(None),
                )
                .values(email_sent_at=sent_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def find_stuck_opportunity_emails(self, cutoff: datetime) -> List[Opportunity]:
        """Claimed before ``cutoff`` and never marked sent."""
        return await self.select_opportunities_where(
            Opportunity.status == OpportunityStatus.OPEN.value,
            Opportunity.email_send_attempted.is_(True),
            Opportunity.email_sent_at.is_(None),
            Opportunity.email_attempted_at < cutoff,
        )

    # ------------------------------------------------------------------- bids

    async def create_bid(self, **fields: Any) -> Bid:
        async with self._session("create_bid") as session:
            bid = Bid(**fields)
            session.add(bid)
            await session.flush()
            return bid

    async def get_user_bid_amount(self, user_id: int, opportunity_id: int) -> Optional[Decimal]:
        async with self._session("get_user_bid_amount") as session:
            result = await session.execute(
                select(func.max(Bid.amount)).where(
                    Bid.user_id == user_id,
                    Bid.opportunity_id == opportunity_id,
                )
            )
            amount = result.scalar_one_or_none()
            return Decimal(str(amount)) if amount is not None else None

    # ---------------------------------------------------------------- pitches

    async def create_pitch(self, **fields: Any) -> Pitch:
        async with self._session("create_pitch") as session:
            pitch = Pitch(**fields)
            session.add(pitch)
            await session.flush()
            return pitch

    async def get_pitch(self, pitch_id: int) -> Optional[Pitch]:
        async with self._session("get_pitch") as session:
            return await session.get(Pitch, pitch_id)

    async def update_pitch(self, pitch_id: int, **fields: Any) -> Optional[Pitch]:
        return await self._update_row(Pitch, pitch_id, "update_pitch", fields)

    async def update_pitch_status(
        self, pitch_id: int, status: str, at: Optional[datetime] = None
    ) -> Optional[Pitch]:
        """Set the status; the first move into a successful state stamps ``successful_at``."""
        async with self._session("update_pitch_status") as session:
            pitch = await session.get(Pitch, pitch_id)
            if pitch is None:
                return None
            pitch.status = status
            if PitchStatus.is_successful(status) and pitch.successful_at is None:
                pitch.successful_at = at or utcnow()
            await session.flush()
            return pitch

    async def find_user_pitch_for_opportunity(
        self, user_id: int, opportunity_id: int
    ) -> Optional[Pitch]:
        async with self._session("find_user_pitch_for_opportunity") as session:
            result = await session.execute(
                select(Pitch)
                .where(Pitch.user_id == user_id, Pitch.opportunity_id == opportunity_id)
                .order_by(Pitch.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def find_successful_pitches_without_placement(self) -> List[Pitch]:
        async with self._session("find_successful_pitches_without_placement") as session:
            result = await session.execute(
                select(Pitch)
                .outerjoin(Placement, Placement.pitch_id == Pitch.id)
                .where(
                    Pitch.status.in_(sorted(PitchStatus.SUCCESSFUL_STATES)),
                    Placement.id.is_(None),
                )
                .order_by(Pitch.id)
            )
            return list(result.scalars().all())

    # ---------------------------------------------------- saved opportunities

    async def save_opportunity(self, user_id: int, opportunity_id: int) -> SavedOpportunity:
        async with self._session("save_opportunity") as session:
            result = await session.execute(
                select(SavedOpportunity).where(
                    SavedOpportunity.user_id == user_id,
                    SavedOpportunity.opportunity_id == opportunity_id,
                )
            )
            saved = result.scalars().first()
            if saved is None:
                saved = SavedOpportunity(user_id=user_id, opportunity_id=opportunity_id)
                session.add(saved)
                await session.flush()
            return saved

    async def unsave_opportunity(self, user_id: int, opportunity_id: int) -> bool:
        async with self._session("unsave_opportunity") as session:
            result = await session.execute(
                select(SavedOpportunity).where(
                    SavedOpportunity.user_id == user_id,
                    SavedOpportunity.opportunity_id == opportunity_id,
                )
            )
            saved = result.scalars().first()
            if saved is None:
                return False
            await session.delete(saved)
            return True

    # ------------------------------------------------------------- placements

    async def create_placement(self, **fields: Any) -> Placement:
        """Insert a placement; a second placement for the same pitch returns the first."""
        try:
            async with self._session("create_placement") as session:
                placement = Placement(**fields)
                session.add(placement)
                await session.flush()
                return placement
        except DatabaseError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            existing = await self.get_placement_for_pitch(fields["pitch_id"])
            if existing is None:
                raise
            logger.info("storage.placement_exists", pitch_id=fields["pitch_id"], placement_id=existing.id)
            return existing

    async def get_placement(self, placement_id: int) -> Optional[Placement]:
        async with self._session("get_placement") as session:
            return await session.get(Placement, placement_id)

    async def get_placement_for_pitch(self, pitch_id: int) -> Optional[Placement]:
        async with self._session("get_placement_for_pitch") as session:
            result = await session.execute(select(Placement).where(Placement.pitch_id == pitch_id))
            return result.scalars().first()

    async def claim_placement_billing(
        self, placement_id: int, expected_status: str, seen_attempts: int
    ) -> bool:
        """Optimistically claim a placement for one billing attempt."""
        async with self._session("claim_placement_billing") as session:
            result = await session.execute(
                update(Placement)
                .where(
                    Placement.id == placement_id,
                    Placement.status == expected_status,
                    Placement.billing_attempts == seen_attempts,
                )
                .values(billing_attempts=seen_attempts + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def update_placement_article(
        self, placement_id: int, article_url: Optional[str] = None, article_title: Optional[str] = None
    ) -> Optional[Placement]:
        fields = {"article_url": article_url, "article_title": article_title}
        return await self._update_row(
            Placement,
            placement_id,
            "update_placement_article",
            {key: value for key, value in fields.items() if value is not None},
        )

    async def update_placement_status(self, placement_id: int, status: str) -> Optional[Placement]:
        return await self._update_row(
            Placement, placement_id, "update_placement_status", {"status": status}
        )

    async def update_placement_payment(
        self,
        placement_id: int,
        *,
        payment_id: str,
        payment_intent_id: Optional[str],
        invoice_id: Optional[str],
        charged_at: datetime,
    ) -> Optional[Placement]:
        return await self._update_row(
            Placement,
            placement_id,
            "update_placement_payment",
            {
                "status": PlacementStatus.PAID.value,
                "payment_id": payment_id,
                "payment_intent_id": payment_intent_id,
                "invoice_id": invoice_id,
                "charged_at": charged_at,
                "error_message": None,
            },
        )

    async def update_placement_error(self, placement_id: int, error_message: str) -> Optional[Placement]:
        """Record a processor decline; the next attempt gets a fresh idempotency key."""
        async with self._session("update_placement_error") as session:
            placement = await session.get(Placement, placement_id)
            if placement is None:
                return None
            placement.status = PlacementStatus.ERROR.value
            placement.error_message = error_message
            placement.declined_attempts = (placement.declined_attempts or 0) + 1
            await session.flush()
            return placement

    async def mark_placement_notified(self, placement_id: int, notified_at: datetime) -> bool:
        async with self._session("mark_placement_notified") as session:
            result = await session.execute(
                update(Placement)
                .where(Placement.id == placement_id, Placement.notification_sent.is_(False))
                .values(notification_sent=True, notified_at=notified_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # -------------------------------------------------------------- reminders

    def _pending_reminders(self, kind: ReminderKind, user_id: int, subject_id: int):
        return and_(
            ScheduledReminder.kind == kind.value,
            ScheduledReminder.user_id == user_id,
            ScheduledReminder.subject_id == subject_id,
            ScheduledReminder.canceled_at.is_(None),
            ScheduledReminder.send_attempted.is_(False),
        )

    async def replace_pending_reminder(
        self,
        kind: ReminderKind,
        *,
        user_id: int,
        subject_id: int,
        opportunity_id: int,
        due_at: datetime,
    ) -> ScheduledReminder:
        """Cancel any pending reminder for the key and insert a new one, atomically."""
        async with self._session("replace_pending_reminder") as session:
            now = utcnow()
            await session.execute(
                update(ScheduledReminder)
                .where(self._pending_reminders(kind, user_id, subject_id))
                .values(canceled_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            reminder = ScheduledReminder(
                kind=kind.value,
                user_id=user_id,
                subject_id=subject_id,
                opportunity_id=opportunity_id,
                due_at=due_at,
            )
            session.add(reminder)
            await session.flush()
            return reminder

    async def cancel_pending_reminders(self, kind: ReminderKind, user_id: int, subject_id: int) -> int:
        async with self._session("cancel_pending_reminders") as session:
            now = utcnow()
            result = await session.execute(
                update(ScheduledReminder)
                .where(self._pending_reminders(kind, user_id, subject_id))
                .values(canceled_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def find_due_reminders(self, now: datetime) -> List[ScheduledReminder]:
        async with self._session("find_due_reminders") as session:
            result = await session.execute(
                select(ScheduledReminder)
                .where(
                    ScheduledReminder.canceled_at.is_(None),
                    ScheduledReminder.send_attempted.is_(False),
                    ScheduledReminder.due_at <= now,
                )
                .order_by(ScheduledReminder.due_at, ScheduledReminder.id)
            )
            return list(result.scalars().all())

    async def claim_reminder(self, reminder_id: int) -> bool:
        async with self._session("claim_reminder") as session:
            result = await session.execute(
                update(ScheduledReminder)
                .where(
                    ScheduledReminder.id == reminder_id,
                    ScheduledReminder.canceled_at.is_(None),
                    ScheduledReminder.send_attempted.is_(False),
                )
                .values(send_attempted=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def finish_reminder(
        self, reminder_id: int, outcome: str, sent_at: Optional[datetime] = None
    ) -> Optional[ScheduledReminder]:
        return await self._update_row(
            ScheduledReminder,
            reminder_id,
            "finish_reminder",
            {"outcome": outcome, "sent_at": sent_at},
        )

    async def get_reminder(self, reminder_id: int) -> Optional[ScheduledReminder]:
        async with self._session("get_reminder") as session:
            return await session.get(ScheduledReminder, reminder_id)

    async def count_pending_reminders(
        self, kind: Optional[ReminderKind] = None, user_id: Optional[int] = None
    ) -> int:
        async with self._session("count_pending_reminders") as session:
            criteria = [
                ScheduledReminder.canceled_at.is_(None),
                ScheduledReminder.send_attempted.is_(False),
            ]
            if kind is not None:
                criteria.append(ScheduledReminder.kind == kind.value)
            if user_id is not None:
                criteria.append(ScheduledReminder.user_id == user_id)
            result = await session.execute(
                select(func.count()).select_from(ScheduledReminder).where(*criteria)
            )
            return int(result.scalar_one())
