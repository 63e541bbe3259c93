"""Publication records and their leases.

Every mutation of the lease columns is a single conditional UPDATE so that
several scheduler processes can share the table without a coordinator.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Sequence
from uuid import UUID
from pydantic import BaseModel
from db.articles import Article
from db.connection import db, Database
from config.logging import get_logger

logger = get_logger(__name__)


class PublicationChannel(str, Enum):
    """Target channel of a publication."""
    WEBSITE = "website"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    OTHER = "other"


class Publication(BaseModel):
    """One channel publication of an article."""
    id: UUID
    content_id: UUID
    channel: PublicationChannel
    scheduled_at: Optional[datetime] = None  # None = as soon as possible
    published_at: Optional[datetime] = None  # None = not yet done
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    # Explicit email recipients; None means the subscriber list
    recipients: Optional[List[str]] = None
    created_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.published_at is not None:
            return False
        return self.scheduled_at is None or self.scheduled_at <= now


class DuePublication(BaseModel):
    """A due publication joined with its article (None if the article is gone)."""
    publication: Publication
    article: Optional[Article] = None


class OverduePublication(BaseModel):
    """Publication whose schedule passed without being published."""
    id: UUID
    content_id: UUID
    channel: PublicationChannel
    scheduled_at: Optional[datetime] = None
    article_title: Optional[str] = None
    lease_holder: Optional[str] = None
    last_error: Optional[str] = None


PUBLICATION_COLUMNS = (
    "id", "content_id", "channel", "scheduled_at", "published_at",
    "lease_holder", "lease_expires_at", "last_error", "recipients", "created_at",
)


def _rows_affected(status: str) -> int:
    """Parse the row count out of an asyncpg command status ('UPDATE 3')."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PublicationStore:
    """Lease store for publications."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def create(
        self,
        content_id: UUID,
        channel: PublicationChannel,
        scheduled_at: Optional[datetime] = None,
        recipients: Optional[Sequence[str]] = None,
    ) -> UUID:
        """Schedule an article for one channel.

        recipients pins an email publication to an explicit address list for
        every attempt, including the ones the scheduler retries.
        """
        publication_id = await self.db.fetchval(
            """
            INSERT INTO publications (content_id, channel, scheduled_at, recipients)
            VALUES ($1, $2, $3, $4)
            RETURNING id
            """,
            content_id,
            PublicationChannel(channel).value,
            scheduled_at,
            list(recipients) if recipients is not None else None,
        )

        logger.info(
            "Publication scheduled",
            publication_id=str(publication_id),
            content_id=str(content_id),
            channel=PublicationChannel(channel).value,
            scheduled_at=scheduled_at.isoformat() if scheduled_at else None,
        )
        return publication_id

    async def get(self, publication_id: UUID) -> Optional[Publication]:
        """Get a publication by ID."""
        row = await self.db.fetchrow(
            "SELECT * FROM publications WHERE id = $1",
            publication_id,
        )
        if not row:
            return None
        return Publication(**dict(row))

    async def list_by_article(self, content_id: UUID) -> List[Publication]:
        """Get all publications for an article."""
        rows = await self.db.fetch(
            """
            SELECT * FROM publications
            WHERE content_id = $1
            ORDER BY created_at
            """,
            content_id,
        )
        return [Publication(**dict(row)) for row in rows]

    async def fetch_due(self) -> List[DuePublication]:
        """Get every due, unleased publication joined with its article."""
        rows = await self.db.fetch(
            """
            SELECT p.*,
                   a.id AS a_id,
                   a.title AS a_title,
                   a.content AS a_content,
                   a.image_url AS a_image_url,
                   a.published_at AS a_published_at,
                   a.created_at AS a_created_at,
                   a.updated_at AS a_updated_at
            FROM publications p
            LEFT JOIN articles a ON a.id = p.content_id
            WHERE p.published_at IS NULL
              AND (p.scheduled_at IS NULL OR p.scheduled_at <= now())
              AND p.lease_holder IS NULL
            ORDER BY p.scheduled_at ASC NULLS FIRST, p.created_at ASC
            """
        )

        due = []
        for row in rows:
            row_dict = dict(row)
            publication = Publication(**{k: row_dict[k] for k in PUBLICATION_COLUMNS})
            article = None
            if row_dict.get("a_id") is not None:
                article = Article(
                    id=row_dict["a_id"],
                    title=row_dict["a_title"],
                    content=row_dict["a_content"],
                    image_url=row_dict["a_image_url"],
                    published_at=row_dict["a_published_at"],
                    created_at=row_dict["a_created_at"],
                    updated_at=row_dict["a_updated_at"],
                )
            due.append(DuePublication(publication=publication, article=article))
        return due

    async def sweep_expired(self) -> int:
        """Clear leases whose expiry has passed. Returns the number cleared."""
        status = await self.db.execute(
            """
            UPDATE publications
            SET lease_holder = NULL,
                lease_expires_at = NULL
            WHERE lease_holder IS NOT NULL
              AND lease_expires_at < now()
            """
        )
        return _rows_affected(status)

    async def lease(
        self,
        publication_ids: Sequence[UUID],
        holder_id: str,
        ttl: timedelta,
    ) -> List[UUID]:
        """Lease the currently unheld rows among publication_ids.

        Compare-and-set per row: the WHERE clause is the lock, so two racing
        callers can never both get the same id back.
        """
        if not publication_ids:
            return []

        rows = await self.db.fetch(
            """
            UPDATE publications
            SET lease_holder = $2,
                lease_expires_at = now() + $3::interval
            WHERE id = ANY($1::uuid[])
              AND lease_holder IS NULL
              AND published_at IS NULL
            RETURNING id
            """,
            list(publication_ids),
            holder_id,
            ttl,
        )
        return [row["id"] for row in rows]

    async def release(
        self,
        publication_id: UUID,
        holder_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Clear the lease without touching published_at."""
        result = await self.db.fetchrow(
            """
            UPDATE publications
            SET lease_holder = NULL,
                lease_expires_at = NULL,
                last_error = COALESCE($3, last_error)
            WHERE id = $1
              AND ($2::text IS NULL OR lease_holder = $2::text)
            RETURNING id
            """,
            publication_id,
            holder_id,
            error,
        )
        return result is not None

    async def mark_done(
        self,
        publication_id: UUID,
        holder_id: Optional[str] = None,
    ) -> bool:
        """Set published_at and clear the lease in one update."""
        result = await self.db.fetchrow(
            """
            UPDATE publications
            SET published_at = now(),
                lease_holder = NULL,
                lease_expires_at = NULL,
                last_error = NULL
            WHERE id = $1
              AND published_at IS NULL
              AND ($2::text IS NULL OR lease_holder = $2::text)
            RETURNING id
            """,
            publication_id,
            holder_id,
        )
        return result is not None

    async def reset_for_retry(self, publication_id: UUID) -> bool:
        """Make a publication due again by clearing published_at and the lease."""
        result = await self.db.fetchrow(
            """
            UPDATE publications
            SET published_at = NULL,
                lease_holder = NULL,
                lease_expires_at = NULL
            WHERE id = $1
            RETURNING id
            """,
            publication_id,
        )
        if result is not None:
            logger.info("Publication reset for retry", publication_id=str(publication_id))
        return result is not None

    async def list_overdue(self, limit: int = 100) -> List[OverduePublication]:
        """Publications whose scheduled time has passed but are not published."""
        rows = await self.db.fetch(
            """
            SELECT p.id, p.content_id, p.channel, p.scheduled_at,
                   p.lease_holder, p.last_error,
                   a.title AS article_title
            FROM publications p
            LEFT JOIN articles a ON a.id = p.content_id
            WHERE p.published_at IS NULL
              AND p.scheduled_at <= now()
            ORDER BY p.scheduled_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [OverduePublication(**dict(row)) for row in rows]


# Global instance
publication_store = PublicationStore()
