import pytest


@pytest.mark.asyncio
async def test_one_failing_recipient_does_not_block_others(services, factory, email_client):
    first = await factory.user()
    broken = await factory.user()
    third = await factory.user()
    await factory.user(industry="Technology")
    email_client.fail_for.add(broken.email)
    opportunity = await factory.opportunity(industry="Finance")

    result = await services.fan_out.fan_out(opportunity)

    assert result.recipients == 3
    assert result.delivered == 2
    assert result.failed == [broken.id]
    assert {email.to for email in email_client.sent} == {first.email, third.email}


@pytest.mark.asyncio
async def test_raising_send_is_isolated(services, factory, email_client):
    ok = await factory.user()
    exploding = await factory.user()
    email_client.raise_for.add(exploding.email)
    opportunity = await factory.opportunity()

    result = await services.fan_out.fan_out(opportunity)

    assert result.delivered == 1
    assert result.failed == [exploding.id]
    assert [email.to for email in email_client.sent] == [ok.email]


@pytest.mark.asyncio
async def test_alert_opt_out_is_skipped(services, factory, email_client):
    await factory.user()
    await factory.user(email_preferences={"alerts": False})
    opportunity = await factory.opportunity()

    result = await services.fan_out.fan_out(opportunity)

    assert (result.recipients, result.delivered, result.skipped) == (2, 1, 1)
    assert result.failed == []
    assert len(email_client.sent) == 1


@pytest.mark.asyncio
async def test_opportunity_without_industry_has_no_recipients(services, factory, email_client):
    await factory.user()
    opportunity = await factory.opportunity(industry=None)

    result = await services.fan_out.fan_out(opportunity)

    assert result.recipients == 0
    assert email_client.sent == []
