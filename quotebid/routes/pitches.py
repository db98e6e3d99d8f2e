from __future__ import annotations

from fastapi import APIRouter, Depends, status

from quotebid.core.exceptions import AuthorizationError, BusinessRuleError, ConflictError, NotFoundError
from quotebid.core.logging import get_structlog_logger
from quotebid.middleware.auth import CurrentUser, get_current_user, require_admin
from quotebid.models import Pitch, PitchStatus
from quotebid.routes.deps import get_services
from quotebid.schemas import DraftUpdate, PitchCreate, PitchResponse, PitchStatusResponse, PitchStatusUpdate
from quotebid.services import Services

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["pitches"])


async def _get_own_draft(services: Services, pitch_id: int, user: CurrentUser) -> Pitch:
    pitch = await services.storage.get_pitch(pitch_id)
    if pitch is None:
        raise NotFoundError(message=f"Pitch {pitch_id} not found", details={"pitch_id": pitch_id})
    if pitch.user_id != user.id:
        raise AuthorizationError(message="Pitch belongs to another user")
    if not pitch.is_draft:
        raise BusinessRuleError(
            message="Pitch has already been submitted",
            details={"pitch_id": pitch_id, "status": pitch.status},
        )
    return pitch


async def _require_open_opportunity(services: Services, opportunity_id: int) -> None:
    opportunity = await services.storage.get_opportunity(opportunity_id)
    if opportunity is None:
        raise NotFoundError(
            message=f"Opportunity {opportunity_id} not found",
            details={"opportunity_id": opportunity_id},
        )
    if not opportunity.is_open:
        raise BusinessRuleError(
            message="Opportunity is closed",
            details={"opportunity_id": opportunity_id},
        )


async def _record_submission(services: Services, pitch: Pitch) -> None:
    """A submitted pitch places its bid and makes pending reminders moot."""
    if pitch.bid_amount is not None:
        await services.storage.create_bid(
            opportunity_id=pitch.opportunity_id,
            user_id=pitch.user_id,
            amount=pitch.bid_amount,
            payment_intent_id=pitch.payment_intent_id,
        )
    await services.reminders.cancel_draft(pitch.user_id, pitch.id)
    await services.reminders.cancel_saved_opportunity(pitch.user_id, pitch.opportunity_id)


@router.post("/pitches", response_model=PitchResponse, status_code=status.HTTP_201_CREATED)
async def create_pitch(
    body: PitchCreate,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    await _require_open_opportunity(services, body.opportunity_id)

    existing = await services.storage.find_user_pitch_for_opportunity(user.id, body.opportunity_id)
    if existing is not None:
        raise ConflictError(
            message="A pitch for this opportunity already exists",
            details={"pitch_id": existing.id, "status": existing.status},
        )

    pitch = await services.storage.create_pitch(
        opportunity_id=body.opportunity_id,
        user_id=user.id,
        content=body.content,
        audio_url=body.audio_url,
        bid_amount=body.bid_amount,
        payment_intent_id=body.payment_intent_id,
        status=PitchStatus.DRAFT if body.is_draft else PitchStatus.PENDING,
    )
    logger.info("pitches.created", pitch_id=pitch.id, user_id=user.id, draft=pitch.is_draft)

    if pitch.is_draft:
        await services.reminders.schedule_draft(
            user.id, pitch.id, pitch.opportunity_id, anchor_time=pitch.created_at
        )
    else:
        await _record_submission(services, pitch)
    return pitch


@router.put("/pitches/{pitch_id}/draft", response_model=PitchResponse)
async def update_draft(
    pitch_id: int,
    body: DraftUpdate,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    """Save draft edits; the reminder window restarts from this edit."""
    await _get_own_draft(services, pitch_id, user)
    pitch = await services.storage.update_pitch(pitch_id, **body.model_dump(exclude_unset=True))
    await services.reminders.schedule_draft(
        user.id, pitch.id, pitch.opportunity_id, anchor_time=pitch.updated_at
    )
    return pitch


@router.post("/pitches/{pitch_id}/submit", response_model=PitchResponse)
async def submit_draft(
    pitch_id: int,
    services: Services = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    draft = await _get_own_draft(services, pitch_id, user)
    await _require_open_opportunity(services, draft.opportunity_id)
    if not (draft.content or draft.audio_url):
        raise BusinessRuleError(
            message="A submitted pitch needs content or an audio recording",
            details={"pitch_id": pitch_id},
        )

    pitch = await services.storage.update_pitch_status(pitch_id, PitchStatus.PENDING)
    await _record_submission(services, pitch)
    logger.info("pitches.submitted", pitch_id=pitch_id, user_id=user.id)
    return pitch


@router.patch("/admin/pitches/{pitch_id}/status", response_model=PitchStatusResponse)
async def update_pitch_status(
    pitch_id: int,
    body: PitchStatusUpdate,
    services: Services = Depends(get_services),
    admin: CurrentUser = Depends(require_admin),
):
    """Move a pitch to a new status; a successful status creates its placement."""
    result = await services.placements.update_pitch_status(
        pitch_id,
        body.status,
        article_title=body.article_title,
        article_url=body.article_url,
    )
    if not result.pitch.is_draft:
        await services.reminders.cancel_draft(result.pitch.user_id, result.pitch.id)

    logger.info(
        "pitches.status_updated",
        pitch_id=pitch_id,
        status=body.status,
        placement_id=result.placement.id if result.placement else None,
        admin_id=admin.id,
    )
    return PitchStatusResponse.model_validate(result, from_attributes=True)
