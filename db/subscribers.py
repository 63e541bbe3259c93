"""Newsletter subscriber storage."""
from typing import List, Optional
from db.connection import db, Database
from config.logging import get_logger

logger = get_logger(__name__)


class SubscriberStore:
    """Manage content subscribers."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def list_active(self) -> List[str]:
        """Emails of all active subscribers, deduplicated, in signup order."""
        rows = await self.db.fetch(
            """
            SELECT email FROM subscribers
            WHERE is_subscribed = true
            ORDER BY created_at, id
            """
        )

        seen = set()
        emails = []
        for row in rows:
            email = row["email"].strip().lower()
            if email and email not in seen:
                seen.add(email)
                emails.append(email)
        return emails

    async def subscribe(self, email: str) -> None:
        """Add a subscriber, or reactivate one that unsubscribed."""
        await self.db.execute(
            """
            INSERT INTO subscribers (email, is_subscribed)
            VALUES ($1, true)
            ON CONFLICT (email) DO UPDATE SET is_subscribed = true
            """,
            email.strip().lower(),
        )
        logger.info("Subscriber added")


# Global instance
subscriber_store = SubscriberStore()
