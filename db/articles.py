"""Article storage."""
from typing import Optional
from uuid import UUID
from datetime import datetime
from pydantic import BaseModel
from db.connection import db, Database
from config.logging import get_logger

logger = get_logger(__name__)


class Article(BaseModel):
    """Content item that publications point at."""
    id: UUID
    title: str
    content: Optional[str] = None  # Markdown / light HTML
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ArticleStore:
    """Read/write access to articles.

    The engine only reads title, content and image_url, and writes
    published_at the first time any channel succeeds.
    """

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def create(
        self,
        title: str,
        content: str,
        image_url: Optional[str] = None,
    ) -> UUID:
        """Create a new article (unpublished)."""
        article_id = await self.db.fetchval(
            """
            INSERT INTO articles (title, content, image_url)
            VALUES ($1, $2, $3)
            RETURNING id
            """,
            title,
            content,
            image_url,
        )

        logger.info("Article created", article_id=str(article_id), title=title)
        return article_id

    async def get(self, article_id: UUID) -> Optional[Article]:
        """Get an article by ID."""
        row = await self.db.fetchrow(
            "SELECT * FROM articles WHERE id = $1",
            article_id,
        )

        if not row:
            return None

        return Article(**dict(row))

    async def set_published(self, article_id: UUID) -> bool:
        """Stamp published_at if it is not already set.

        Returns True only when this call performed the first publish.
        """
        result = await self.db.fetchrow(
            """
            UPDATE articles
            SET published_at = now(),
                updated_at = now()
            WHERE id = $1 AND published_at IS NULL
            RETURNING id
            """,
            article_id,
        )

        if result is not None:
            logger.info("Article marked as published", article_id=str(article_id))
        return result is not None


# Global instance
article_store = ArticleStore()
