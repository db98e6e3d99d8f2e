from datetime import timedelta

import pytest

from quotebid.models import PitchStatus, ReminderKind, ReminderOutcome


async def _draft(factory, user, opportunity):
    return await factory.pitch(
        user_id=user.id, opportunity_id=opportunity.id, status=PitchStatus.DRAFT, content=None
    )


@pytest.mark.asyncio
async def test_draft_reminder_fires_after_delay(services, factory, email_client, clock):
    user = await factory.user(full_name="Grace Hopper")
    opportunity = await factory.opportunity(deadline=clock() + timedelta(hours=5, minutes=30))
    draft = await _draft(factory, user, opportunity)

    reminder = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)
    assert reminder.due_at == clock() + timedelta(minutes=30)

    tick = await services.reminders.run_once()
    assert tick.due == 0

    clock.advance(minutes=30)
    tick = await services.reminders.run_once()
    assert (tick.due, tick.sent) == (1, 1)

    [email] = email_client.to(user.email)
    assert email.template == "draft-reminder"
    assert email.variables["user_first_name"] == "Grace"
    assert email.variables["current_price"] == "$300"
    assert email.variables["time_left"] == "5 hours"

    fired = await services.storage.get_reminder(reminder.id)
    assert fired.outcome == ReminderOutcome.SENT
    assert fired.sent_at == clock()


@pytest.mark.asyncio
async def test_rescheduling_replaces_pending_reminder(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)

    first = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)
    clock.advance(minutes=20)
    second = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)

    assert await services.storage.count_pending_reminders(ReminderKind.DRAFT, user.id) == 1
    assert (await services.storage.get_reminder(first.id)).canceled_at is not None

    # The original due time passes without a send
    clock.advance(minutes=15)
    assert (await services.reminders.run_once()).due == 0

    clock.advance(minutes=15)
    tick = await services.reminders.run_once()
    assert tick.sent == 1
    assert len(email_client.sent) == 1
    assert (await services.storage.get_reminder(second.id)).outcome == ReminderOutcome.SENT


@pytest.mark.asyncio
async def test_past_anchor_is_due_immediately(services, factory, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)

    reminder = await services.reminders.schedule_draft(
        user.id, draft.id, opportunity.id, anchor_time=clock() - timedelta(hours=2)
    )

    assert reminder.due_at == clock()


@pytest.mark.asyncio
async def test_canceled_draft_reminder_never_fires(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)
    await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)

    assert await services.reminders.cancel_draft(user.id, draft.id) is True
    assert await services.reminders.cancel_draft(user.id, draft.id) is False

    clock.advance(hours=1)
    assert (await services.reminders.run_once()).due == 0
    assert email_client.sent == []


@pytest.mark.asyncio
async def test_submitted_draft_reminder_is_skipped(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)
    reminder = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)

    await services.storage.update_pitch_status(draft.id, PitchStatus.PENDING)
    clock.advance(minutes=31)
    tick = await services.reminders.run_once()

    assert (tick.due, tick.skipped, tick.sent) == (1, 1, 0)
    assert email_client.sent == []
    assert (await services.storage.get_reminder(reminder.id)).outcome == ReminderOutcome.SKIPPED


@pytest.mark.asyncio
async def test_saved_reminder_suppressed_once_user_pitches(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    await services.storage.save_opportunity(user.id, opportunity.id)
    await services.reminders.schedule_saved_opportunity(user.id, opportunity.id)

    await factory.pitch(user_id=user.id, opportunity_id=opportunity.id)
    clock.advance(hours=7)
    tick = await services.reminders.run_once()

    assert tick.skipped == 1
    assert email_client.sent == []


@pytest.mark.asyncio
async def test_saved_reminder_sends_when_still_unpitched(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity(deadline=clock() + timedelta(days=2))
    await services.reminders.schedule_saved_opportunity(user.id, opportunity.id)

    clock.advance(hours=6)
    tick = await services.reminders.run_once()

    assert tick.sent == 1
    [email] = email_client.sent
    assert email.template == "saved-opportunity-alert"
    assert email.variables["bid_deadline"] == "2 days left"


@pytest.mark.asyncio
async def test_closed_opportunity_reminder_is_skipped(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    await services.reminders.schedule_saved_opportunity(user.id, opportunity.id)
    await services.storage.close_opportunity(opportunity.id)

    clock.advance(hours=6)
    tick = await services.reminders.run_once()

    assert tick.skipped == 1
    assert email_client.sent == []


@pytest.mark.asyncio
async def test_opted_out_user_gets_no_reminder(services, factory, email_client, clock):
    user = await factory.user(email_preferences={"notifications": False})
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)
    reminder = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)

    clock.advance(minutes=30)
    await services.reminders.run_once()

    assert email_client.sent == []
    assert (await services.storage.get_reminder(reminder.id)).outcome == ReminderOutcome.OPTED_OUT


@pytest.mark.asyncio
async def test_failed_send_consumes_reminder(services, factory, email_client, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)
    reminder = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)
    email_client.fail_all = True

    clock.advance(minutes=30)
    tick = await services.reminders.run_once()
    assert tick.failed == 1

    clock.advance(minutes=30)
    assert (await services.reminders.run_once()).due == 0
    assert (await services.storage.get_reminder(reminder.id)).outcome == ReminderOutcome.FAILED


@pytest.mark.asyncio
async def test_fire_is_claimed_once(services, factory, clock):
    user = await factory.user()
    opportunity = await factory.opportunity()
    draft = await _draft(factory, user, opportunity)
    reminder = await services.reminders.schedule_draft(user.id, draft.id, opportunity.id)
    clock.advance(minutes=30)

    assert await services.reminders.fire(reminder) == ReminderOutcome.SENT
    assert await services.reminders.fire(reminder) is None
