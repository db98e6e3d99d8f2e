from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from quotebid.core.exceptions import NotFoundError
from quotebid.core.logging import get_structlog_logger
from quotebid.middleware.auth import CurrentUser, require_admin
from quotebid.routes.deps import get_services
from quotebid.schemas import BillingResponse, BillRequest, PlacementResponse
from quotebid.services import Services

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/admin/placements", tags=["placements"])


@router.get("/{placement_id}", response_model=PlacementResponse)
async def get_placement(
    placement_id: int,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    placement = await services.storage.get_placement(placement_id)
    if placement is None:
        raise NotFoundError(
            message=f"Placement {placement_id} not found",
            details={"placement_id": placement_id},
        )
    return placement


@router.post("/{placement_id}/bill", response_model=BillingResponse)
async def bill_placement(
    placement_id: int,
    body: Optional[BillRequest] = Body(default=None),
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Charge a ready placement. Already-paid placements are refused with 409."""
    logger.info("placements.bill_requested", placement_id=placement_id, admin_id=admin.id)
    result = await services.placements.bill(
        placement_id, article_url=body.article_url if body else None
    )
    return BillingResponse.model_validate(result, from_attributes=True)


@router.post("/{placement_id}/retry-billing", response_model=BillingResponse)
async def retry_billing(
    placement_id: int,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    logger.info("placements.retry_requested", placement_id=placement_id, admin_id=admin.id)
    result = await services.placements.retry_billing(placement_id)
    return BillingResponse.model_validate(result, from_attributes=True)


@router.post("/{placement_id}/notify", response_model=PlacementResponse)
async def notify_placement(
    placement_id: int,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    logger.info("placements.notify_requested", placement_id=placement_id, admin_id=admin.id)
    return await services.placements.notify(placement_id)
