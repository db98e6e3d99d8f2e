from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from quotebid.main import create_app
from quotebid.models import PitchStatus, ReminderKind


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_admin_route_requires_token(client):
    response = await client.post("/api/admin/opportunities", json={})

    assert response.status_code == 401
    assert response.json()["code"] == "missing_token"


@pytest.mark.asyncio
async def test_admin_route_rejects_regular_user(client, user_headers):
    response = await client.get("/api/admin/opportunities/email-status/stuck", headers=user_headers(5))

    assert response.status_code == 403
    assert response.json()["code"] == "admin_required"


@pytest.mark.asyncio
async def test_invalid_token(client):
    response = await client.get("/api/opportunities/1", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_create_opportunity_sends_alert(client, factory, admin_headers, email_client):
    user = await factory.user(industry="Finance")
    publication = await factory.publication(name="Bloomberg")

    response = await client.post(
        "/api/admin/opportunities",
        headers=admin_headers,
        json={
            "publication_id": publication.id,
            "title": "Where are mortgage rates heading?",
            "industry": "Finance",
            "minimum_bid": "250.00",
            "email_delay_minutes": 0,
        },
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["email_send_attempted"] is True
    assert body["email_sent_at"] is not None
    [email] = email_client.to(user.email)
    assert email.variables["publication_type"] == "Bloomberg"


@pytest.mark.asyncio
async def test_create_opportunity_validation_error(client, admin_headers):
    response = await client.post(
        "/api/admin/opportunities",
        headers=admin_headers,
        json={"publication_id": 1, "title": "", "minimum_bid": "-1"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_draft_then_submit(client, services, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    headers = user_headers(user.id)

    created = await client.post(
        "/api/pitches",
        headers=headers,
        json={"opportunity_id": opportunity.id, "is_draft": True},
    )
    assert created.status_code == 201, created.text
    pitch = created.json()
    assert pitch["is_draft"] is True
    assert await services.storage.count_pending_reminders(ReminderKind.DRAFT, user.id) == 1

    edited = await client.put(
        f"/api/pitches/{pitch['id']}/draft",
        headers=headers,
        json={"content": "Twenty years in consumer credit.", "bid_amount": "350.00"},
    )
    assert edited.status_code == 200
    assert await services.storage.count_pending_reminders(ReminderKind.DRAFT, user.id) == 1

    submitted = await client.post(f"/api/pitches/{pitch['id']}/submit", headers=headers)
    assert submitted.status_code == 200
    assert submitted.json()["status"] == PitchStatus.PENDING
    assert submitted.json()["is_draft"] is False
    assert await services.storage.count_pending_reminders(user_id=user.id) == 0
    assert await services.storage.get_user_bid_amount(user.id, opportunity.id) == Decimal("350.00")

    again = await client.post(f"/api/pitches/{pitch['id']}/submit", headers=headers)
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_submit_empty_draft_is_refused(client, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    headers = user_headers(user.id)
    created = await client.post(
        "/api/pitches", headers=headers, json={"opportunity_id": opportunity.id, "is_draft": True}
    )

    response = await client.post(f"/api/pitches/{created.json()['id']}/submit", headers=headers)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_second_pitch_for_opportunity_conflicts(client, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    payload = {"opportunity_id": opportunity.id, "content": "My take on rate cuts."}

    first = await client.post("/api/pitches", headers=user_headers(user.id), json=payload)
    second = await client.post("/api/pitches", headers=user_headers(user.id), json=payload)

    assert first.status_code == 201
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_pitch_on_closed_opportunity_is_refused(client, services, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    await services.storage.close_opportunity(opportunity.id)

    response = await client.post(
        "/api/pitches",
        headers=user_headers(user.id),
        json={"opportunity_id": opportunity.id, "content": "Too late?"},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_saved_reminder_canceled_by_pitch(client, services, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    headers = user_headers(user.id)

    saved = await client.post(f"/api/opportunities/{opportunity.id}/save", headers=headers)
    assert saved.status_code == 200
    assert saved.json()["reminder_due_at"] is not None
    assert await services.storage.count_pending_reminders(ReminderKind.SAVED_OPPORTUNITY, user.id) == 1

    await client.post(
        "/api/pitches", headers=headers, json={"opportunity_id": opportunity.id, "content": "Here is my pitch."}
    )
    assert await services.storage.count_pending_reminders(ReminderKind.SAVED_OPPORTUNITY, user.id) == 0


@pytest.mark.asyncio
async def test_unsave_cancels_reminder(client, services, factory, user_headers):
    user = await factory.user()
    opportunity = await factory.opportunity()
    headers = user_headers(user.id)
    await client.post(f"/api/opportunities/{opportunity.id}/save", headers=headers)

    response = await client.delete(f"/api/opportunities/{opportunity.id}/save", headers=headers)

    assert response.json() == {"opportunity_id": opportunity.id, "saved": False, "reminder_due_at": None}
    assert await services.storage.count_pending_reminders(user_id=user.id) == 0


@pytest.mark.asyncio
async def test_placement_billing_endpoints(client, factory, admin_headers, payments):
    user = await factory.user()
    opportunity = await factory.opportunity()
    pitch = await factory.pitch(user_id=user.id, opportunity_id=opportunity.id)

    status_response = await client.patch(
        f"/api/admin/pitches/{pitch.id}/status",
        headers=admin_headers,
        json={"status": PitchStatus.SUCCESSFUL, "article_title": "Fed holds steady"},
    )
    assert status_response.status_code == 200, status_response.text
    placement = status_response.json()["placement"]
    assert placement["status"] == "ready_for_billing"
    assert placement["article_title"] == "Fed holds steady"
    assert Decimal(placement["amount"]) == Decimal("300")

    payments.decline_message = "Your card was declined."
    declined = await client.post(f"/api/admin/placements/{placement['id']}/bill", headers=admin_headers)
    assert declined.status_code == 402
    assert declined.json()["message"] == "Your card was declined."

    payments.decline_message = None
    retried = await client.post(
        f"/api/admin/placements/{placement['id']}/retry-billing", headers=admin_headers
    )
    assert retried.status_code == 200, retried.text
    assert retried.json()["placement"]["status"] == "paid"
    assert retried.json()["notification_sent"] is True

    billed_again = await client.post(f"/api/admin/placements/{placement['id']}/bill", headers=admin_headers)
    assert billed_again.status_code == 409
    assert len(payments.charges) == 1

    notified_again = await client.post(
        f"/api/admin/placements/{placement['id']}/notify", headers=admin_headers
    )
    assert notified_again.status_code == 409


@pytest.mark.asyncio
async def test_get_missing_placement(client, admin_headers):
    response = await client.get("/api/admin/placements/999", headers=admin_headers)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_then_close_opportunity(client, factory, admin_headers):
    opportunity = await factory.opportunity()

    updated = await client.patch(
        f"/api/admin/opportunities/{opportunity.id}",
        headers=admin_headers,
        json={"current_price": "425.00"},
    )
    assert updated.status_code == 200, updated.text
    assert Decimal(updated.json()["current_price"]) == Decimal("425")
    assert updated.json()["title"] == opportunity.title

    closed = await client.post(f"/api/admin/opportunities/{opportunity.id}/close", headers=admin_headers)
    assert closed.status_code == 200
    assert closed.json()["status"] == "closed"
    assert Decimal(closed.json()["last_price"]) == Decimal("425")

    refused = await client.patch(
        f"/api/admin/opportunities/{opportunity.id}",
        headers=admin_headers,
        json={"current_price": "500.00"},
    )
    assert refused.status_code == 400


@pytest.mark.asyncio
async def test_resend_alert_refused_once_sent(client, services, factory, admin_headers):
    opportunity = await factory.opportunity()
    await services.email_scheduler.schedule(opportunity.id, delay_minutes=0)

    response = await client.post(
        f"/api/admin/opportunities/{opportunity.id}/resend-alert", headers=admin_headers
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_offset_deadline_is_stored_as_utc(client, services, factory, admin_headers):
    publication = await factory.publication()

    created = await client.post(
        "/api/admin/opportunities",
        headers=admin_headers,
        json={
            "publication_id": publication.id,
            "title": "Rupee outlook",
            "industry": "Finance",
            "minimum_bid": "150.00",
            "deadline": "2026-10-21T00:00:00+05:00",
        },
    )
    assert created.status_code == 201, created.text
    opportunity_id = created.json()["id"]
    stored = await services.storage.get_opportunity(opportunity_id)
    assert stored.deadline == datetime(2026, 10, 20, 19, 0)

    updated = await client.patch(
        f"/api/admin/opportunities/{opportunity_id}",
        headers=admin_headers,
        json={"deadline": "2026-10-22T09:30:00-04:00"},
    )
    assert updated.status_code == 200, updated.text
    assert (await services.storage.get_opportunity(opportunity_id)).deadline == datetime(2026, 10, 22, 13, 30)
