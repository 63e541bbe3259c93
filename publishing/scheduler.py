"""Publishing scheduler - background task for scheduled publications."""
import asyncio
import socket
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from config.logging import get_logger
from db.publications import DuePublication
from publishing.dispatcher import PublicationDispatcher
from publishing.locks import DEFAULT_LEASE_TTL, LockManager
from publishing.protocols import LeaseStorage

logger = get_logger(__name__)


class SchedulerPhase(str, Enum):
    """Where the current tick is."""
    IDLE = "idle"
    SWEEPING = "sweeping"
    DISCOVERING = "discovering"
    LEASING = "leasing"
    DISPATCHING = "dispatching"


@dataclass
class TickResult:
    due: int = 0
    leased: int = 0
    completed: int = 0
    failed: int = 0
    missing_articles: int = 0


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class PublishingScheduler:
    """Background scheduler for publishing articles at scheduled times."""

    def __init__(
        self,
        store: LeaseStorage,
        locks: LockManager,
        dispatcher: PublicationDispatcher,
        instance_id: Optional[str] = None,
        poll_interval: float = 60,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
    ):
        """
        Initialize scheduler.

        Args:
            store: Lease store holding the publications
            locks: Lock manager over the same store
            dispatcher: Channel dispatcher
            instance_id: Lease holder id for this process
            poll_interval: How often to check for due publications (seconds)
            lease_ttl: How long a lease protects a publication being dispatched
        """
        self.store = store
        self.locks = locks
        self.dispatcher = dispatcher
        self.instance_id = instance_id or default_instance_id()
        self.poll_interval = poll_interval
        self.lease_ttl = lease_ttl
        self.phase = SchedulerPhase.IDLE
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._ticking = False

    async def start(self):
        """Start the scheduler background task. The first tick runs immediately."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Publishing scheduler started",
            poll_interval=self.poll_interval,
            instance_id=self.instance_id,
        )

    async def stop(self):
        """Stop the scheduler. An in-flight tick is cancelled; its leases expire."""
        self.running = False
        for task in (self._task, self._tick_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._tick_task = None
        logger.info("Publishing scheduler stopped")

    async def _run(self):
        """Timer loop: fire a tick every poll_interval unless one is in flight."""
        while self.running:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self._safe_tick())
            else:
                logger.warning("Previous tick still running, skipping", instance_id=self.instance_id)

            # Wait before next check
            await asyncio.sleep(self.poll_interval)

    async def _safe_tick(self) -> Optional[TickResult]:
        try:
            return await self.tick()
        except Exception as e:
            logger.error("Scheduler tick failed", error=str(e), exc_info=True)
            return None

    async def tick(self) -> Optional[TickResult]:
        """Run one sweep → discover → lease → dispatch pass.

        Returns None if another tick is already in flight in this process.
        Errors before dispatch abort the tick and propagate; errors in a single
        dispatch are contained.
        """
        if self._ticking:
            logger.info("Tick already in flight, skipping", instance_id=self.instance_id)
            return None

        self._ticking = True
        try:
            return await self._tick()
        finally:
            self._ticking = False
            self.phase = SchedulerPhase.IDLE

    async def _tick(self) -> TickResult:
        result = TickResult()

        self.phase = SchedulerPhase.SWEEPING
        await self.locks.sweep_expired_leases()

        self.phase = SchedulerPhase.DISCOVERING
        due = await self.store.fetch_due()
        result.due = len(due)
        if not due:
            return result

        groups = group_by_article(due)

        self.phase = SchedulerPhase.LEASING
        leased = set(await self.locks.lease_batch(
            [item.publication.id for item in due],
            self.instance_id,
            self.lease_ttl,
        ))
        result.leased = len(leased)
        if not leased:
            return result

        logger.info(
            f"Processing {len(leased)} due publications",
            articles=len(groups),
            instance_id=self.instance_id,
        )

        self.phase = SchedulerPhase.DISPATCHING
        for content_id, items in groups.items():
            for item in items:
                publication = item.publication
                if publication.id not in leased:
                    continue

                if item.article is None:
                    # Leave the lease to expire; the sweep reclaims it later
                    logger.warning(
                        "Article not found for publication, skipping",
                        publication_id=str(publication.id),
                        content_id=str(content_id),
                    )
                    result.missing_articles += 1
                    continue

                try:
                    done = await self.dispatcher.dispatch(
                        publication,
                        item.article,
                        holder_id=self.instance_id,
                    )
                except Exception as e:
                    logger.error(
                        "Failed to dispatch publication",
                        publication_id=str(publication.id),
                        channel=publication.channel.value,
                        content_id=str(content_id),
                        error=str(e),
                        exc_info=True,
                    )
                    done = False

                if done:
                    result.completed += 1
                else:
                    result.failed += 1

        logger.info(
            "Scheduler tick complete",
            due=result.due,
            leased=result.leased,
            completed=result.completed,
            failed=result.failed,
        )
        return result


def group_by_article(due: List[DuePublication]) -> Dict[UUID, List[DuePublication]]:
    """Group due publications by content_id, keeping discovery order."""
    groups: Dict[UUID, List[DuePublication]] = OrderedDict()
    for item in due:
        groups.setdefault(item.publication.content_id, []).append(item)
    return groups
