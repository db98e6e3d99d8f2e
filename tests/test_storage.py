from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from quotebid.core.exceptions import DatabaseError
from quotebid.models import Opportunity, OpportunityStatus, PlacementStatus
from quotebid.services.storage import DatabaseStorage


@pytest.mark.asyncio
async def test_missing_rows_are_none_not_errors(storage):
    assert await storage.get_opportunity(404) is None
    assert await storage.update_opportunity(404, title="nothing") is None
    assert await storage.get_users_by_industry("Finance") == []
    assert await storage.get_user_bid_amount(1, 404) is None


@pytest.mark.asyncio
async def test_store_failures_raise_database_error(tmp_path):
    # no tables created
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool)
    storage = DatabaseStorage(async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False))

    with pytest.raises(DatabaseError):
        await storage.get_opportunity(1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_close_opportunity_freezes_price(storage, factory):
    opportunity = await factory.opportunity(minimum_bid=Decimal("300.00"))

    closed = await storage.close_opportunity(opportunity.id)

    assert closed.status == OpportunityStatus.CLOSED.value
    assert closed.closed_at is not None
    assert closed.last_price == Decimal("300.00")


@pytest.mark.asyncio
async def test_select_opportunities_where(storage, factory):
    await factory.opportunity(industry="Finance")
    tech = await factory.opportunity(industry="Technology")

    rows = await storage.select_opportunities_where(Opportunity.industry == "Technology")

    assert [row.id for row in rows] == [tech.id]


@pytest.mark.asyncio
async def test_users_by_industry_is_exact_match(storage, factory):
    finance = await factory.user(industry="Finance")
    await factory.user(industry="Finance & Banking")
    await factory.user(industry=None)

    assert [user.id for user in await storage.get_users_by_industry("Finance")] == [finance.id]


@pytest.mark.asyncio
async def test_save_opportunity_is_idempotent(storage, factory):
    user = await factory.user()
    opportunity = await factory.opportunity()

    first = await storage.save_opportunity(user.id, opportunity.id)
    second = await storage.save_opportunity(user.id, opportunity.id)

    assert first.id == second.id
    assert await storage.unsave_opportunity(user.id, opportunity.id) is True
    assert await storage.unsave_opportunity(user.id, opportunity.id) is False


@pytest.mark.asyncio
async def test_successful_at_is_never_cleared(storage, factory):
    user = await factory.user()
    opportunity = await factory.opportunity()
    pitch = await factory.pitch(user_id=user.id, opportunity_id=opportunity.id)

    successful = await storage.update_pitch_status(pitch.id, "successful")
    stamped = successful.successful_at
    assert stamped is not None

    moved_on = await storage.update_pitch_status(pitch.id, "not_interested")
    assert moved_on.successful_at == stamped
    again = await storage.update_pitch_status(pitch.id, "Successful Coverage")
    assert again.successful_at == stamped


@pytest.mark.asyncio
async def test_claim_placement_billing_is_optimistic(storage, factory):
    user = await factory.user()
    opportunity = await factory.opportunity()
    pitch = await factory.pitch(user_id=user.id, opportunity_id=opportunity.id)
    placement = await storage.create_placement(
        pitch_id=pitch.id,
        user_id=user.id,
        opportunity_id=opportunity.id,
        publication_id=opportunity.publication_id,
        amount=Decimal("300.00"),
    )

    ready = PlacementStatus.READY_FOR_BILLING.value
    assert await storage.claim_placement_billing(placement.id, ready, 0) is True
    assert await storage.claim_placement_billing(placement.id, ready, 0) is False

    # a second placement for the same pitch returns the first
    duplicate = await storage.create_placement(
        pitch_id=pitch.id,
        user_id=user.id,
        opportunity_id=opportunity.id,
        publication_id=opportunity.publication_id,
        amount=Decimal("999.00"),
    )
    assert duplicate.id == placement.id

    errored = await storage.update_placement_error(placement.id, "card_declined")
    assert errored.status == PlacementStatus.ERROR.value
    assert errored.declined_attempts == 1
    reset = await storage.update_placement_status(placement.id, ready)
    assert reset.status == ready
    assert reset.billing_attempts == 1
