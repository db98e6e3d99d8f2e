from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from quotebid.core.clock import Clock, utcnow
from quotebid.core.config import settings
from quotebid.core.exceptions import (
    BaseAPIException,
    BusinessRuleError,
    ConflictError,
    EmailDeliveryError,
    NotFoundError,
    PaymentCaptureError,
    PaymentError,
)
from quotebid.core.logging import get_structlog_logger
from quotebid.models import Pitch, PitchStatus, Placement, PlacementStatus, User
from quotebid.services.email import EmailClient
from quotebid.services.payments import ChargeResult, PaymentGateway
from quotebid.services.storage import DatabaseStorage
from quotebid.utils import formatting

logger = get_structlog_logger(__name__)

BILLING_TEMPLATE = "billing-confirmation"


@dataclass
class BillingResult:
    placement: Placement
    payment_source: str
    notification_sent: bool
    notification_error: Optional[str] = None


@dataclass
class PitchStatusResult:
    pitch: Pitch
    placement: Optional[Placement] = None
    billing: Optional[BillingResult] = None
    billing_error: Optional[str] = None


def billing_idempotency_key(placement_id: int, attempt: int) -> str:
    """Processor idempotency key; ``attempt`` counts recorded declines plus one."""
    return f"placement-{placement_id}-attempt-{attempt}"


class PlacementWorkflow:
    """Pitch success -> placement -> charge -> confirmation email.

    Each step is its own operation. The placement row is the durable record
    of whether the external charge happened: ``paid`` placements are never
    charged again, ``error`` placements move only through ``retry_billing``.
    """

    def __init__(
        self,
        storage: DatabaseStorage,
        payments: PaymentGateway,
        email_client: EmailClient,
        *,
        clock: Optional[Clock] = None,
        auto_bill: Optional[bool] = None,
    ):
        self.storage = storage
        self.payments = payments
        self.email_client = email_client
        self.clock = clock or utcnow
        self.auto_bill = settings.auto_bill_placements if auto_bill is None else auto_bill

    # ----------------------------------------------------------------- pitches

    async def update_pitch_status(
        self,
        pitch_id: int,
        status: str,
        *,
        article_title: Optional[str] = None,
        article_url: Optional[str] = None,
    ) -> PitchStatusResult:
        pitch = await self.storage.update_pitch_status(pitch_id, status, at=self.clock())
        if pitch is None:
            raise NotFoundError(message=f"Pitch {pitch_id} not found", details={"pitch_id": pitch_id})

        logger.info("billing.pitch_status_updated", pitch_id=pitch_id, status=status)
        result = PitchStatusResult(pitch=pitch)
        if not PitchStatus.is_successful(status):
            return result

        result.placement = await self.create_placement_for_pitch(
            pitch, article_title=article_title, article_url=article_url
        )

        if self.auto_bill and result.placement.status == PlacementStatus.READY_FOR_BILLING.value:
            try:
                result.billing = await self.bill(result.placement.id)
                result.placement = result.billing.placement
            except BaseAPIException as e:
                # the pitch update stands; the placement row records the failure
                logger.warning("billing.auto_bill_failed", placement_id=result.placement.id, error=e.message)
                result.billing_error = e.message
                result.placement = await self.storage.get_placement(result.placement.id) or result.placement

        return result

    async def resolve_bid_amount(self, user_id: int, opportunity) -> Decimal:
        """The user's highest bid on the opportunity, else its minimum bid."""
        amount = await self.storage.get_user_bid_amount(user_id, opportunity.id)
        if amount is not None:
            return amount
        logger.info(
            "billing.bid_fallback_minimum",
            user_id=user_id,
            opportunity_id=opportunity.id,
            minimum_bid=str(opportunity.minimum_bid),
        )
        return Decimal(str(opportunity.minimum_bid))

    async def create_placement_for_pitch(
        self,
        pitch: Pitch,
        *,
        article_title: Optional[str] = None,
        article_url: Optional[str] = None,
    ) -> Placement:
        existing = await self.storage.get_placement_for_pitch(pitch.id)
        if existing is not None:
            return existing

        opportunity = await self.storage.get_opportunity(pitch.opportunity_id)
        if opportunity is None:
            raise BusinessRuleError(
                message=f"Opportunity {pitch.opportunity_id} for pitch {pitch.id} not found",
                details={"pitch_id": pitch.id},
            )
        if opportunity.publication_id is None:
            raise BusinessRuleError(
                message=f"Opportunity {opportunity.id} has no publication; cannot create placement",
                details={"pitch_id": pitch.id, "opportunity_id": opportunity.id},
            )

        amount = await self.resolve_bid_amount(pitch.user_id, opportunity)
        placement = await self.storage.create_placement(
            pitch_id=pitch.id,
            user_id=pitch.user_id,
            opportunity_id=opportunity.id,
            publication_id=opportunity.publication_id,
            article_title=article_title or opportunity.title,
            article_url=article_url,
            amount=amount,
            payment_intent_id=pitch.payment_intent_id,
            status=PlacementStatus.READY_FOR_BILLING.value,
        )
        logger.info(
            "billing.placement_created",
            placement_id=placement.id,
            pitch_id=pitch.id,
            amount=str(amount),
        )
        return placement

    async def sync_successful_pitches(self) -> int:
        """Create the missing placement for every successful pitch that has none."""
        created = 0
        for pitch in await self.storage.find_successful_pitches_without_placement():
            try:
                await self.create_placement_for_pitch(pitch)
                created += 1
            except BusinessRuleError as e:
                logger.warning("billing.sync_skipped", pitch_id=pitch.id, error=e.message)
        logger.info("billing.sync_completed", created=created)
        return created

    # ----------------------------------------------------------------- billing

    async def _load_placement(self, placement_id: int) -> Placement:
        placement = await self.storage.get_placement(placement_id)
        if placement is None:
            raise NotFoundError(
                message=f"Placement {placement_id} not found",
                details={"placement_id": placement_id},
            )
        return placement

    async def bill(self, placement_id: int, *, article_url: Optional[str] = None) -> BillingResult:
        placement = await self._load_placement(placement_id)

        if placement.is_paid:
            raise ConflictError(
                message="This placement has already been paid",
                details={"placement_id": placement_id},
            )
        if placement.status == PlacementStatus.ERROR.value:
            raise BusinessRuleError(
                message="Placement billing failed previously; use retry-billing",
                details={"placement_id": placement_id, "error_message": placement.error_message},
            )

        if article_url:
            placement = await self.storage.update_placement_article(placement_id, article_url=article_url)

        return await self._charge(placement)

    async def retry_billing(self, placement_id: int) -> BillingResult:
        placement = await self._load_placement(placement_id)

        if placement.is_paid:
            raise ConflictError(
                message="This placement has already been paid",
                details={"placement_id": placement_id},
            )
        if placement.status != PlacementStatus.ERROR.value:
            raise BusinessRuleError(
                message="Only placements in error can be retried",
                details={"placement_id": placement_id, "status": placement.status},
            )

        logger.info(
            "billing.retry_requested",
            placement_id=placement_id,
            previous_error=placement.error_message,
            attempts=placement.billing_attempts,
        )
        return await self._charge(placement)

    async def _ensure_customer(self, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer_id = await self.payments.create_customer(user)
        await self.storage.set_user_customer_id(user.id, customer_id)
        return customer_id

    async def _charge(self, placement: Placement) -> BillingResult:
        user = await self.storage.get_user(placement.user_id)
        if user is None:
            raise BusinessRuleError(
                message=f"User {placement.user_id} for placement {placement.id} not found",
                details={"placement_id": placement.id},
            )

        # failure here leaves the placement untouched
        customer_id = await self._ensure_customer(user)

        claimed = await self.storage.claim_placement_billing(
            placement.id, placement.status, placement.billing_attempts
        )
        if not claimed:
            raise ConflictError(
                message="Placement changed while billing; reload and try again",
                details={"placement_id": placement.id},
            )
        attempt = placement.billing_attempts + 1
        # a charge that succeeded but was never recorded replays under the same key
        key = billing_idempotency_key(placement.id, (placement.declined_attempts or 0) + 1)
        log = logger.bind(placement_id=placement.id, user_id=user.id, attempt=attempt, idempotency_key=key)

        try:
            charge, source = await self._capture(placement, user, customer_id, key)
        except PaymentError as e:
            await self.storage.update_placement_error(placement.id, e.message)
            log.error("billing.capture_failed", error=e.message)
            raise PaymentCaptureError(
                message=e.message,
                details={"placement_id": placement.id, "attempt": attempt},
            ) from e

        paid = await self.storage.update_placement_payment(
            placement.id,
            payment_id=charge.payment_id,
            payment_intent_id=charge.payment_intent_id,
            invoice_id=charge.invoice_id,
            charged_at=self.clock(),
        )
        log.info("billing.paid", payment_id=charge.payment_id, source=source, amount=str(paid.amount))

        result = BillingResult(placement=paid, payment_source=source, notification_sent=False)
        try:
            result.placement = await self._send_confirmation(paid, user)
            result.notification_sent = result.placement.notification_sent
        except BaseAPIException as e:
            # payment state stands; notify can be retried on its own
            log.warning("billing.notification_failed", error=e.message)
            result.notification_error = e.message
        return result

    async def _capture(
        self, placement: Placement, user: User, customer_id: str, key: str
    ) -> Tuple[ChargeResult, str]:
        if placement.payment_intent_id:
            try:
                intent = await self.payments.retrieve_intent(placement.payment_intent_id)
                if intent.get("status") == "requires_capture":
                    charge = await self.payments.capture_intent(
                        placement.payment_intent_id, idempotency_key=key
                    )
                    return charge, "captured_intent"
                logger.info(
                    "billing.intent_not_capturable",
                    placement_id=placement.id,
                    payment_intent_id=placement.payment_intent_id,
                    intent_status=intent.get("status"),
                )
            except PaymentError as e:
                logger.warning(
                    "billing.intent_capture_failed",
                    placement_id=placement.id,
                    payment_intent_id=placement.payment_intent_id,
                    error=e.message,
                )

        charge = await self.payments.charge(
            customer_id,
            placement.amount,
            payment_method_id=user.stripe_payment_method_id,
            idempotency_key=key,
            metadata={"placement_id": placement.id, "pitch_id": placement.pitch_id},
            description=f"QuoteBid placement: {placement.article_title or placement.id}",
        )
        return charge, "direct_charge"

    # ------------------------------------------------------------ notification

    async def notify(self, placement_id: int) -> Placement:
        placement = await self._load_placement(placement_id)
        if placement.status != PlacementStatus.PAID.value:
            raise BusinessRuleError(
                message="Only paid placements can be notified",
                details={"placement_id": placement_id, "status": placement.status},
            )
        if placement.notification_sent:
            raise ConflictError(
                message="Notification already sent for this placement",
                details={"placement_id": placement_id},
            )

        user = await self.storage.get_user(placement.user_id)
        if user is None:
            raise BusinessRuleError(
                message=f"User {placement.user_id} for placement {placement_id} not found",
                details={"placement_id": placement_id},
            )
        return await self._send_confirmation(placement, user)

    async def _send_confirmation(self, placement: Placement, user: User) -> Placement:
        """Send the billing confirmation once; raises EmailDeliveryError on failure."""
        if not user.allows_email("billing"):
            logger.info("billing.notification_opted_out", placement_id=placement.id, user_id=user.id)
        else:
            opportunity = await self.storage.get_opportunity(placement.opportunity_id)
            variables = {
                "user_first_name": user.first_name,
                "receipt_number": placement.payment_id,
                "article_title": placement.article_title,
                "article_url": placement.article_url or "",
                "publication_name": opportunity.publication_name if opportunity else "Top Publication",
                "billing_date": (placement.charged_at or self.clock()).strftime("%B %d, %Y"),
                "total_amount": formatting.format_money(placement.amount),
            }
            result = await self.email_client.send(user.email, BILLING_TEMPLATE, variables)
            if not result.success:
                logger.error("billing.notification_send_failed", placement_id=placement.id, error=result.error)
                raise EmailDeliveryError(
                    message=result.error or "Email delivery failed",
                    details={"placement_id": placement.id},
                )

        await self.storage.mark_placement_notified(placement.id, self.clock())
        logger.info("billing.notification_sent", placement_id=placement.id, user_id=user.id)
        return await self.storage.get_placement(placement.id)
