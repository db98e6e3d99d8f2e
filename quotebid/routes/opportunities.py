from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from quotebid.core.exceptions import BusinessRuleError, NotFoundError
from quotebid.core.logging import get_structlog_logger
from quotebid.middleware.auth import CurrentUser, get_current_user, require_admin
from quotebid.models import Opportunity
from quotebid.routes.deps import get_services
from quotebid.schemas import (
    OpportunityCreate,
    OpportunityResponse,
    OpportunityUpdate,
    SavedOpportunityResponse,
)
from quotebid.services import Services

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["opportunities"])


async def _get_opportunity_or_404(services: Services, opportunity_id: int) -> Opportunity:
    opportunity = await services.storage.get_opportunity(opportunity_id)
    if opportunity is None:
        raise NotFoundError(
            message=f"Opportunity {opportunity_id} not found",
            details={"opportunity_id": opportunity_id},
        )
    return opportunity


@router.post(
    "/admin/opportunities",
    response_model=OpportunityResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_opportunity(
    body: OpportunityCreate,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Create an opportunity and schedule its industry alert email."""
    fields = body.model_dump(exclude={"email_delay_minutes"})
    opportunity = await services.storage.create_opportunity(**fields)
    logger.info(
        "opportunities.created",
        opportunity_id=opportunity.id,
        industry=opportunity.industry,
        admin_id=admin.id,
    )
    return await services.email_scheduler.schedule(opportunity.id, body.email_delay_minutes)


@router.get("/opportunities/{opportunity_id}", response_model=OpportunityResponse)
async def get_opportunity(
    opportunity_id: int,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    return await _get_opportunity_or_404(services, opportunity_id)


@router.patch("/admin/opportunities/{opportunity_id}", response_model=OpportunityResponse)
async def update_opportunity(
    opportunity_id: int,
    body: OpportunityUpdate,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Edit an open opportunity's details or live price."""
    opportunity = await _get_opportunity_or_404(services, opportunity_id)
    if not opportunity.is_open:
        raise BusinessRuleError(
            message="Closed opportunities cannot be edited",
            details={"opportunity_id": opportunity_id},
        )

    fields = body.model_dump(exclude_unset=True)
    opportunity = await services.storage.update_opportunity(opportunity_id, **fields)
    logger.info(
        "opportunities.updated",
        opportunity_id=opportunity_id,
        fields=sorted(fields),
        admin_id=admin.id,
    )
    return opportunity


@router.post("/admin/opportunities/{opportunity_id}/close", response_model=OpportunityResponse)
async def close_opportunity(
    opportunity_id: int,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    opportunity = await services.storage.close_opportunity(opportunity_id)
    if opportunity is None:
        raise NotFoundError(
            message=f"Opportunity {opportunity_id} not found",
            details={"opportunity_id": opportunity_id},
        )
    logger.info(
        "opportunities.closed",
        opportunity_id=opportunity_id,
        last_price=str(opportunity.last_price),
        admin_id=admin.id,
    )
    return opportunity


@router.get("/admin/opportunities/email-status/stuck", response_model=List[OpportunityResponse])
async def list_stuck_alert_emails(
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Alert emails that were attempted but never confirmed sent."""
    return await services.email_scheduler.find_stuck()


@router.post("/admin/opportunities/{opportunity_id}/resend-alert", response_model=OpportunityResponse)
async def resend_alert(
    opportunity_id: int,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Resend an alert stuck longer than ``EMAIL_STUCK_MINUTES``."""
    await _get_opportunity_or_404(services, opportunity_id)
    logger.warning("opportunities.alert_resend", opportunity_id=opportunity_id, admin_id=admin.id)
    return await services.email_scheduler.resend(opportunity_id)


@router.post("/opportunities/{opportunity_id}/save", response_model=SavedOpportunityResponse)
async def save_opportunity(
    opportunity_id: int,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    """Bookmark an opportunity; a reminder follows unless the user pitches first."""
    opportunity = await _get_opportunity_or_404(services, opportunity_id)
    if not opportunity.is_open:
        raise BusinessRuleError(
            message="Closed opportunities cannot be saved",
            details={"opportunity_id": opportunity_id},
        )

    await services.storage.save_opportunity(user.id, opportunity_id)
    response = SavedOpportunityResponse(opportunity_id=opportunity_id, saved=True)

    if await services.storage.find_user_pitch_for_opportunity(user.id, opportunity_id) is None:
        reminder = await services.reminders.schedule_saved_opportunity(user.id, opportunity_id)
        response.reminder_due_at = reminder.due_at
    return response


@router.delete("/opportunities/{opportunity_id}/save", response_model=SavedOpportunityResponse)
async def unsave_opportunity(
    opportunity_id: int,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    await services.storage.unsave_opportunity(user.id, opportunity_id)
    await services.reminders.cancel_saved_opportunity(user.id, opportunity_id)
    return SavedOpportunityResponse(opportunity_id=opportunity_id, saved=False)
