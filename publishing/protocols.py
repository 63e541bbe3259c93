"""
Store Protocol Definitions

typing.Protocol interfaces for the stores the publishing engine depends on.
The asyncpg-backed stores in db/ satisfy them; tests pass in-memory
implementations instead.
"""
from datetime import timedelta
from typing import List, Optional, Protocol, Sequence, Set
from uuid import UUID

from db.articles import Article
from db.email_logs import EmailDeliveryAttempt, EmailLogStatus
from db.publications import DuePublication
from db.static_links import StaticLink


class LeaseStorage(Protocol):
    """Publication rows with lease columns."""

    async def fetch_due(self) -> List[DuePublication]:
        ...

    async def sweep_expired(self) -> int:
        ...

    async def lease(
        self,
        publication_ids: Sequence[UUID],
        holder_id: str,
        ttl: timedelta,
    ) -> List[UUID]:
        """Conditionally lease rows with no holder; returns the ids won."""
        ...

    async def release(
        self,
        publication_id: UUID,
        holder_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        ...

    async def mark_done(self, publication_id: UUID, holder_id: Optional[str] = None) -> bool:
        ...


class ArticleStorage(Protocol):
    async def get(self, article_id: UUID) -> Optional[Article]:
        ...

    async def set_published(self, article_id: UUID) -> bool:
        ...


class SubscriberStorage(Protocol):
    async def list_active(self) -> List[str]:
        ...


class StaticLinkStorage(Protocol):
    async def list_for_email(self) -> List[StaticLink]:
        ...


class EmailLogStorage(Protocol):
    """Per-recipient outcomes; the source of truth for dedup."""

    async def delivered_recipients(self, article_id: UUID) -> Set[str]:
        ...

    async def has_history(self, article_id: UUID) -> bool:
        ...

    async def delete_failed(self, article_id: UUID, emails: Sequence[str]) -> int:
        ...

    async def record_results(
        self,
        article_id: UUID,
        emails: Sequence[str],
        status: EmailLogStatus,
    ) -> None:
        ...


class AttemptStorage(Protocol):
    async def upsert(self, attempt: EmailDeliveryAttempt) -> None:
        ...
