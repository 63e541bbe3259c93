"""HTTP endpoints, served against the in-memory engine."""
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from api.app import create_app
from db.publications import PublicationChannel
from publishing.errors import EmailSendError
from publishing.service import PublicationService


@pytest.fixture
def service(publication_store, article_store, email_log_store, locks, dispatcher,
            make_scheduler, email_engine):
    return PublicationService(
        publications=publication_store,
        articles=article_store,
        email_logs=email_log_store,
        locks=locks,
        dispatcher=dispatcher,
        scheduler=make_scheduler("api-worker"),
        email_engine=email_engine,
    )


@pytest.fixture
async def client(service):
    app = create_app(use_lifespan=False)
    app.state.publication_service = service
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    # No pool in these tests
    assert data["status"] == "degraded"
    assert data["database"] is False
    assert data["scheduler"] == {"running": False, "phase": "idle"}


@pytest.mark.asyncio
async def test_publish_now(client, datastore, transport):
    datastore.subscribers.append("reader@example.com")
    article = datastore.add_article()

    response = await client.post(
        f"/api/articles/{article.id}/publish",
        json={"channels": ["website", "email"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["results"] == {"website": "published", "email": "published"}
    assert data["success_count"] == 2
    assert transport.calls[0]["recipients"] == ["reader@example.com"]
    assert all(p.published_at is not None for p in datastore.publications.values())


@pytest.mark.asyncio
async def test_publish_now_with_explicit_recipients(client, datastore, transport):
    datastore.subscribers.append("reader@example.com")
    article = datastore.add_article()

    response = await client.post(
        f"/api/articles/{article.id}/publish",
        json={"channels": ["email"], "recipients": ["editor@example.com"]},
    )

    assert response.json()["results"] == {"email": "published"}
    assert transport.calls[0]["recipients"] == ["editor@example.com"]


@pytest.mark.asyncio
async def test_publish_failure_reported(client, datastore, transport):
    datastore.subscribers.append("reader@example.com")
    transport.fail_with = EmailSendError("rejected")
    article = datastore.add_article()

    response = await client.post(f"/api/articles/{article.id}/publish", json={"channels": ["email"]})

    assert response.json()["results"] == {"email": "failed"}
    publication = next(iter(datastore.publications.values()))
    assert publication.lease_holder is None
    assert publication.published_at is None


@pytest.mark.asyncio
async def test_publish_unknown_article(client):
    response = await client.post(f"/api/articles/{uuid4()}/publish", json={"channels": ["website"]})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_publish_requires_channels(client, datastore):
    article = datastore.add_article()
    response = await client.post(f"/api/articles/{article.id}/publish", json={"channels": []})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_schedule_creates_one_publication_per_channel(client, datastore):
    article = datastore.add_article()
    when = datastore.now + timedelta(hours=2)

    response = await client.post(
        f"/api/articles/{article.id}/schedule",
        json={"channels": ["website", "email", "email"], "scheduled_for": when.isoformat()},
    )

    assert response.status_code == 200
    assert len(response.json()["publication_ids"]) == 2
    channels = sorted(p.channel.value for p in datastore.publications.values())
    assert channels == ["email", "website"]
    assert all(p.scheduled_at == when for p in datastore.publications.values())


@pytest.mark.asyncio
async def test_overdue_and_retry(client, datastore):
    article = datastore.add_article(title="Late article")
    publication = datastore.add_publication(
        article.id, PublicationChannel.EMAIL, scheduled_at=datastore.now - timedelta(hours=1)
    )
    publication.last_error = "relay down"

    response = await client.get("/api/publications/overdue")
    assert response.status_code == 200
    overdue = response.json()
    assert overdue[0]["id"] == str(publication.id)
    assert overdue[0]["article_title"] == "Late article"
    assert overdue[0]["last_error"] == "relay down"

    publication.lease_holder = "stuck-worker"
    response = await client.post(f"/api/publications/{publication.id}/retry")
    assert response.status_code == 200
    assert publication.lease_holder is None

    response = await client.post(f"/api/publications/{uuid4()}/retry")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_email_stats(client, datastore, transport):
    datastore.subscribers.extend(["a@example.com", "b@example.com"])
    article = datastore.add_article()
    transport.fail_with = EmailSendError("rejected")
    await client.post(f"/api/articles/{article.id}/publish", json={"channels": ["email"]})

    response = await client.get(f"/api/articles/{article.id}/email-stats")

    data = response.json()
    assert data["total_sent"] == 0
    assert data["total_failed"] == 2
    assert data["delivered_count"] == 0
    assert data["total_subscribers"] == 2
    assert data["failed_recipients"] == ["a@example.com", "b@example.com"]


@pytest.mark.asyncio
async def test_list_article_publications(client, datastore):
    article = datastore.add_article()
    await client.post(f"/api/articles/{article.id}/publish", json={"channels": ["website"]})
    datastore.add_publication(article.id, PublicationChannel.EMAIL, scheduled_at=datastore.now + timedelta(days=1))

    response = await client.get(f"/api/articles/{article.id}/publications")

    assert response.status_code == 200
    by_channel = {p["channel"]: p for p in response.json()}
    assert by_channel["website"]["published_at"] is not None
    assert by_channel["email"]["published_at"] is None
    assert by_channel["email"]["lease_holder"] is None


@pytest.mark.asyncio
async def test_failed_explicit_send_is_retried_to_same_recipients(client, service, datastore, transport):
    datastore.subscribers.extend(["a@example.com", "b@example.com", "c@example.com"])
    article = datastore.add_article()
    transport.fail_with = EmailSendError("rejected")

    response = await client.post(
        f"/api/articles/{article.id}/publish",
        json={"channels": ["email"], "recipients": ["editor@example.com"]},
    )
    assert response.json()["results"] == {"email": "failed"}

    publication = next(iter(datastore.publications.values()))
    assert publication.recipients == ["editor@example.com"]
    assert publication.lease_holder is None

    # The scheduler picks the released publication up again
    transport.fail_with = None
    result = await service.scheduler.tick()

    assert result.completed == 1
    assert all(call["recipients"] == ["editor@example.com"] for call in transport.calls)
    assert datastore.logs_for(article.id, "a@example.com") == []
    assert publication.published_at is not None


@pytest.mark.asyncio
async def test_publish_rejects_blank_recipients(client, datastore):
    article = datastore.add_article()

    for recipients in ([], ["  "]):
        response = await client.post(
            f"/api/articles/{article.id}/publish",
            json={"channels": ["email"], "recipients": recipients},
        )
        assert response.status_code == 422

    assert datastore.publications == {}
