"""Lease-based mutual exclusion over the publications table."""
from datetime import timedelta
from typing import List, Optional, Sequence
from uuid import UUID

from config.logging import get_logger
from publishing.protocols import LeaseStorage

logger = get_logger(__name__)

DEFAULT_LEASE_TTL = timedelta(minutes=5)


class LockManager:
    """Acquire, release and reclaim publication leases."""

    def __init__(self, store: LeaseStorage):
        self.store = store

    async def sweep_expired_leases(self) -> int:
        """Clear expired leases. Never raises; errors are logged."""
        try:
            cleared = await self.store.sweep_expired()
        except Exception as e:
            logger.error("Lease sweep failed", error=str(e), exc_info=True)
            return 0

        if cleared:
            logger.info("Expired leases reclaimed", count=cleared)
        return cleared

    async def lease_batch(
        self,
        publication_ids: Sequence[UUID],
        holder_id: str,
        ttl: timedelta = DEFAULT_LEASE_TTL,
    ) -> List[UUID]:
        """Lease whichever of publication_ids are unheld; return those won."""
        if not publication_ids:
            return []

        leased = await self.store.lease(publication_ids, holder_id, ttl)

        lost = len(publication_ids) - len(leased)
        logger.debug(
            "Lease batch",
            holder_id=holder_id,
            requested=len(publication_ids),
            leased=len(leased),
            contended=lost,
        )
        return leased

    async def release(
        self,
        publication_id: UUID,
        holder_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Give up a lease without publishing; the row becomes leasable again."""
        released = await self.store.release(publication_id, holder_id=holder_id, error=error)
        if not released:
            logger.warning(
                "Release found no lease to clear",
                publication_id=str(publication_id),
                holder_id=holder_id,
            )
        return released

    async def mark_done(self, publication_id: UUID, holder_id: Optional[str] = None) -> bool:
        """Set published_at and drop the lease atomically."""
        done = await self.store.mark_done(publication_id, holder_id=holder_id)
        if not done:
            logger.warning(
                "Publication was not marked done; lease lost or already published",
                publication_id=str(publication_id),
                holder_id=holder_id,
            )
        return done
