"""Scheduler ticks: discovery, leasing, dispatch, overlap handling."""
import asyncio
from datetime import timedelta

import pytest
import unittest.mock as mock

from db.publications import DuePublication, PublicationChannel
from publishing.scheduler import SchedulerPhase, group_by_article


@pytest.mark.asyncio
async def test_tick_publishes_due_and_skips_future(datastore, make_scheduler, transport):
    datastore.subscribers.append("reader@example.com")
    article = datastore.add_article()
    website = datastore.add_publication(article.id, PublicationChannel.WEBSITE)
    email = datastore.add_publication(article.id, PublicationChannel.EMAIL,
                                      scheduled_at=datastore.now - timedelta(minutes=1))
    later = datastore.add_publication(article.id, PublicationChannel.OTHER,
                                      scheduled_at=datastore.now + timedelta(hours=1))

    scheduler = make_scheduler("worker-a")
    result = await scheduler.tick()

    assert (result.due, result.leased, result.completed, result.failed) == (2, 2, 2, 0)
    assert website.published_at is not None
    assert email.published_at is not None
    assert later.published_at is None
    assert len(transport.calls) == 1
    assert scheduler.phase is SchedulerPhase.IDLE


@pytest.mark.asyncio
async def test_nothing_due(make_scheduler):
    result = await make_scheduler().tick()
    assert (result.due, result.leased) == (0, 0)


@pytest.mark.asyncio
async def test_two_schedulers_send_once(datastore, make_scheduler, transport):
    datastore.subscribers.extend(["a@example.com", "b@example.com"])
    article = datastore.add_article()
    publication = datastore.add_publication(article.id, PublicationChannel.EMAIL)

    first, second = make_scheduler("worker-a"), make_scheduler("worker-b")
    results = await asyncio.gather(first.tick(), second.tick())

    assert sum(r.completed for r in results) == 1
    assert sum(r.leased for r in results) == 1
    assert len(transport.calls) == 1
    assert len(datastore.logs_for(article.id)) == 2
    assert publication.published_at is not None


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(datastore, make_scheduler, dispatcher):
    article = datastore.add_article()
    datastore.add_publication(article.id, PublicationChannel.WEBSITE)
    scheduler = make_scheduler()

    gate = asyncio.Event()
    original = dispatcher.dispatch

    async def slow_dispatch(*args, **kwargs):
        await gate.wait()
        return await original(*args, **kwargs)

    with mock.patch.object(dispatcher, "dispatch", side_effect=slow_dispatch):
        running = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0.01)
        assert scheduler.phase is SchedulerPhase.DISPATCHING

        assert await scheduler.tick() is None

        gate.set()
        result = await running

    assert result.completed == 1


@pytest.mark.asyncio
async def test_missing_article_is_skipped_and_lease_kept(datastore, make_scheduler):
    article = datastore.add_article()
    orphan = datastore.add_publication(article.id, PublicationChannel.WEBSITE)
    del datastore.articles[article.id]
    healthy_article = datastore.add_article()
    healthy = datastore.add_publication(healthy_article.id, PublicationChannel.WEBSITE)

    scheduler = make_scheduler("worker-a", lease_ttl=timedelta(minutes=5))
    result = await scheduler.tick()

    assert result.missing_articles == 1
    assert result.completed == 1
    assert healthy.published_at is not None
    assert orphan.published_at is None
    assert orphan.lease_holder == "worker-a"

    # Lease expires and the sweep makes it due again
    datastore.advance(minutes=6)
    result = await scheduler.tick()
    assert result.due == 1
    assert result.missing_articles == 1


@pytest.mark.asyncio
async def test_dispatch_error_does_not_stop_the_tick(datastore, make_scheduler, dispatcher):
    article = datastore.add_article()
    first = datastore.add_publication(article.id, PublicationChannel.WEBSITE)
    second = datastore.add_publication(datastore.add_article().id, PublicationChannel.WEBSITE)
    original = dispatcher.dispatch

    async def flaky_dispatch(publication, *args, **kwargs):
        if publication.id == first.id:
            raise ConnectionError("db dropped")
        return await original(publication, *args, **kwargs)

    with mock.patch.object(dispatcher, "dispatch", side_effect=flaky_dispatch):
        result = await make_scheduler().tick()

    assert (result.completed, result.failed) == (1, 1)
    assert second.published_at is not None


@pytest.mark.asyncio
async def test_sweep_failure_does_not_abort_tick(datastore, make_scheduler):
    datastore.failing["sweep_expired"] = ConnectionError("db blip")
    article = datastore.add_article()
    publication = datastore.add_publication(article.id, PublicationChannel.WEBSITE)

    result = await make_scheduler().tick()

    assert result.completed == 1
    assert publication.published_at is not None


@pytest.mark.asyncio
async def test_fetch_failure_aborts_tick(datastore, make_scheduler):
    datastore.failing["fetch_due"] = ConnectionError("db down")
    scheduler = make_scheduler()

    with pytest.raises(ConnectionError):
        await scheduler.tick()
    assert scheduler.phase is SchedulerPhase.IDLE
    assert await scheduler._safe_tick() is None


@pytest.mark.asyncio
async def test_start_runs_first_tick_immediately(datastore, make_scheduler):
    article = datastore.add_article()
    publication = datastore.add_publication(article.id, PublicationChannel.WEBSITE)
    scheduler = make_scheduler(poll_interval=3600)

    await scheduler.start()
    try:
        for _ in range(50):
            if publication.published_at is not None:
                break
            await asyncio.sleep(0.01)
    finally:
        await scheduler.stop()

    assert publication.published_at is not None
    assert scheduler.running is False


def test_group_by_article_keeps_order(datastore):
    a, b = datastore.add_article(), datastore.add_article()
    due = [
        DuePublication(publication=datastore.add_publication(a.id, PublicationChannel.WEBSITE), article=a),
        DuePublication(publication=datastore.add_publication(b.id, PublicationChannel.EMAIL), article=b),
        DuePublication(publication=datastore.add_publication(a.id, PublicationChannel.EMAIL), article=a),
    ]

    groups = group_by_article(due)

    assert list(groups) == [a.id, b.id]
    assert [item.publication.channel for item in groups[a.id]] == [
        PublicationChannel.WEBSITE, PublicationChannel.EMAIL,
    ]
