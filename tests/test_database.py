"""Database integration tests (need a reachable PostgreSQL)."""
import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from db import (
    AttemptStatus,
    EmailDeliveryAttempt,
    EmailLogStatus,
    article_store,
    delivery_attempt_store,
    email_log_store,
    publication_store,
    static_link_store,
    subscriber_store,
)
from db.publications import PublicationChannel

pytestmark = pytest.mark.integration


@pytest.fixture
async def article_id(db):
    return await article_store.create(
        title="כותרת לבדיקה",
        content="תוכן לבדיקה",
    )


@pytest.mark.asyncio
async def test_fetch_due_filters_schedule_and_leases(db, article_id):
    now = datetime.now(timezone.utc)
    asap = await publication_store.create(article_id, PublicationChannel.WEBSITE)
    past = await publication_store.create(article_id, PublicationChannel.EMAIL, now - timedelta(minutes=5))
    await publication_store.create(article_id, PublicationChannel.OTHER, now + timedelta(hours=1))

    due = await publication_store.fetch_due()

    assert {item.publication.id for item in due} == {asap, past}
    assert all(item.article.id == article_id for item in due)


@pytest.mark.asyncio
async def test_concurrent_lease_single_winner(db, article_id):
    ids = [
        await publication_store.create(article_id, channel)
        for channel in (PublicationChannel.WEBSITE, PublicationChannel.EMAIL)
    ]

    results = await asyncio.gather(*[
        publication_store.lease(ids, f"worker-{i}", timedelta(minutes=5)) for i in range(4)
    ])

    won = [pid for batch in results for pid in batch]
    assert sorted(won) == sorted(ids)
    assert await publication_store.fetch_due() == []


@pytest.mark.asyncio
async def test_expired_lease_swept(db, article_id):
    publication_id = await publication_store.create(article_id, PublicationChannel.WEBSITE)
    await publication_store.lease([publication_id], "crashed", timedelta(seconds=-1))

    assert await publication_store.lease([publication_id], "other", timedelta(minutes=5)) == []
    assert await publication_store.sweep_expired() == 1
    assert await publication_store.lease([publication_id], "other", timedelta(minutes=5)) == [publication_id]


@pytest.mark.asyncio
async def test_mark_done_and_retry(db, article_id):
    publication_id = await publication_store.create(article_id, PublicationChannel.WEBSITE)
    await publication_store.lease([publication_id], "me", timedelta(minutes=5))

    assert await publication_store.mark_done(publication_id, holder_id="someone-else") is False
    assert await publication_store.mark_done(publication_id, holder_id="me") is True
    assert await publication_store.mark_done(publication_id, holder_id="me") is False

    publication = await publication_store.get(publication_id)
    assert publication.published_at is not None
    assert publication.lease_holder is None

    assert await publication_store.reset_for_retry(publication_id) is True
    assert [item.publication.id for item in await publication_store.fetch_due()] == [publication_id]


@pytest.mark.asyncio
async def test_missing_article_joins_as_none(db):
    orphan = uuid4()
    await publication_store.create(orphan, PublicationChannel.EMAIL)

    due = await publication_store.fetch_due()
    assert due[0].publication.content_id == orphan
    assert due[0].article is None


@pytest.mark.asyncio
async def test_email_log_roundtrip(db, article_id):
    await subscriber_store.subscribe("A@Example.com")
    await subscriber_store.subscribe("b@example.com")
    assert await subscriber_store.list_active() == ["a@example.com", "b@example.com"]

    await email_log_store.record_results(article_id, ["a@example.com", "b@example.com"], EmailLogStatus.FAILED)
    assert await email_log_store.has_history(article_id) is True
    assert await email_log_store.delete_failed(article_id, ["a@example.com"]) == 1
    await email_log_store.record_results(article_id, ["a@example.com"], EmailLogStatus.SENT)

    assert await email_log_store.delivered_recipients(article_id) == {"a@example.com"}
    assert await email_log_store.failed_recipients(article_id) == ["b@example.com"]
    stats = await email_log_store.delivery_stats(article_id)
    assert (stats.total_sent, stats.total_failed) == (1, 1)


@pytest.mark.asyncio
async def test_set_published_once(db, article_id):
    assert await article_store.set_published(article_id) is True
    assert await article_store.set_published(article_id) is False


@pytest.mark.asyncio
async def test_static_links_for_email(db):
    await db.execute(
        """
        INSERT INTO static_links (name, fixed_text, url, list_type, position)
        VALUES ('site', 'לאתר', 'example.com', 'general', 2),
               ('vip', 'VIP', 'vip.example.com', 'vip', 1),
               ('contact', 'צרו קשר', NULL, 'all', 1)
        """
    )

    links = await static_link_store.list_for_email()
    assert [link.name for link in links] == ["contact", "site"]


@pytest.mark.asyncio
async def test_delivery_attempt_upsert(db, article_id):
    attempt = EmailDeliveryAttempt(attempt_id="attempt-1", article_id=article_id, recipient_count=2)
    await delivery_attempt_store.upsert(attempt)

    attempt.status = AttemptStatus.FAILED
    attempt.error_message = "relay down"
    await delivery_attempt_store.upsert(attempt)

    stored = await delivery_attempt_store.get("attempt-1")
    assert stored.status is AttemptStatus.FAILED
    assert stored.error_message == "relay down"
    assert stored.recipient_count == 2


@pytest.mark.asyncio
async def test_stored_recipients_come_back_with_due_rows(db, article_id):
    publication_id = await publication_store.create(
        article_id, PublicationChannel.EMAIL, recipients=["editor@example.com"]
    )

    due = await publication_store.fetch_due()

    assert [item.publication.id for item in due] == [publication_id]
    assert due[0].publication.recipients == ["editor@example.com"]


@pytest.mark.asyncio
async def test_sent_row_not_duplicated(db, article_id):
    await email_log_store.record_results(article_id, ["a@example.com"], EmailLogStatus.SENT)
    await email_log_store.record_results(article_id, ["a@example.com", "b@example.com"], EmailLogStatus.SENT)

    stats = await email_log_store.delivery_stats(article_id)
    assert stats.total_sent == 2
