"""Email delivery log and attempt records.

email_logs is the only record of who received what: a 'sent' row for
(article_id, email) means that recipient has the article.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List, Sequence, Set
from uuid import UUID
from pydantic import BaseModel
from db.connection import db, Database
from config.logging import get_logger

logger = get_logger(__name__)


class EmailLogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    SENDING = "sending"
    SUCCESS = "success"
    FAILED = "failed"


class EmailLog(BaseModel):
    """One recipient outcome of one send attempt."""
    id: Optional[int] = None
    article_id: UUID
    email: str
    status: EmailLogStatus
    sent_at: Optional[datetime] = None


class EmailDeliveryAttempt(BaseModel):
    """One logical send, keyed by a client-generated attempt_id."""
    attempt_id: str
    article_id: UUID
    publication_id: Optional[UUID] = None
    status: AttemptStatus = AttemptStatus.SENDING
    recipient_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EmailDeliveryStats(BaseModel):
    """Per-article delivery counts derived from email_logs."""
    article_id: UUID
    total_sent: int
    total_failed: int


class EmailLogStore:
    """Append-only (plus failed-row cleanup) recipient log."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def delivered_recipients(self, article_id: UUID) -> Set[str]:
        """Emails with a 'sent' row for this article."""
        rows = await self.db.fetch(
            """
            SELECT DISTINCT email FROM email_logs
            WHERE article_id = $1 AND status = 'sent'
            """,
            article_id,
        )
        return {row["email"] for row in rows}

    async def has_history(self, article_id: UUID) -> bool:
        """Whether any delivery was ever recorded for this article."""
        return bool(await self.db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM email_logs WHERE article_id = $1)",
            article_id,
        ))

    async def delete_failed(self, article_id: UUID, emails: Sequence[str]) -> int:
        """Drop stale 'failed' rows for recipients about to be re-attempted."""
        if not emails:
            return 0

        rows = await self.db.fetch(
            """
            DELETE FROM email_logs
            WHERE article_id = $1
              AND status = 'failed'
              AND email = ANY($2::text[])
            RETURNING id
            """,
            article_id,
            list(emails),
        )
        if rows:
            logger.info(
                "Cleaned up failed email logs",
                article_id=str(article_id),
                count=len(rows),
            )
        return len(rows)

    async def record_results(
        self,
        article_id: UUID,
        emails: Sequence[str],
        status: EmailLogStatus,
    ) -> None:
        """Insert one row per recipient with the same status.

        A 'sent' row is never duplicated: recipients already holding one are
        skipped.
        """
        if not emails:
            return

        await self.db.execute(
            """
            INSERT INTO email_logs (article_id, email, status, sent_at)
            SELECT $1, recipient, $3::text, now()
            FROM unnest($2::text[]) AS recipient
            WHERE $3::text <> 'sent'
               OR NOT EXISTS (
                   SELECT 1 FROM email_logs existing
                   WHERE existing.article_id = $1
                     AND existing.email = recipient
                     AND existing.status = 'sent'
               )
            """,
            article_id,
            list(emails),
            EmailLogStatus(status).value,
        )

    async def delivery_stats(self, article_id: UUID) -> Optional[EmailDeliveryStats]:
        """Sent/failed counts, or None when the article has no delivery history."""
        row = await self.db.fetchrow(
            """
            SELECT
                COUNT(*) FILTER (WHERE status = 'sent') AS total_sent,
                COUNT(*) FILTER (WHERE status = 'failed') AS total_failed
            FROM email_logs
            WHERE article_id = $1
            """,
            article_id,
        )
        if not row or (row["total_sent"] == 0 and row["total_failed"] == 0):
            return None

        return EmailDeliveryStats(
            article_id=article_id,
            total_sent=row["total_sent"],
            total_failed=row["total_failed"],
        )

    async def failed_recipients(self, article_id: UUID) -> List[str]:
        """Recipients whose last outcome is a failure with no later success."""
        rows = await self.db.fetch(
            """
            SELECT DISTINCT f.email
            FROM email_logs f
            WHERE f.article_id = $1
              AND f.status = 'failed'
              AND NOT EXISTS (
                  SELECT 1 FROM email_logs s
                  WHERE s.article_id = f.article_id
                    AND s.email = f.email
                    AND s.status = 'sent'
              )
            ORDER BY f.email
            """,
            article_id,
        )
        return [row["email"] for row in rows]


class DeliveryAttemptStore:
    """Idempotent attempt records."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def upsert(self, attempt: EmailDeliveryAttempt) -> None:
        """Insert or overwrite the attempt with this attempt_id."""
        await self.db.execute(
            """
            INSERT INTO email_delivery_attempts (
                attempt_id, article_id, publication_id, status,
                recipient_count, error_message
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (attempt_id) DO UPDATE
            SET status = EXCLUDED.status,
                recipient_count = EXCLUDED.recipient_count,
                error_message = EXCLUDED.error_message,
                updated_at = now()
            """,
            attempt.attempt_id,
            attempt.article_id,
            attempt.publication_id,
            attempt.status.value,
            attempt.recipient_count,
            attempt.error_message,
        )

    async def get(self, attempt_id: str) -> Optional[EmailDeliveryAttempt]:
        row = await self.db.fetchrow(
            "SELECT * FROM email_delivery_attempts WHERE attempt_id = $1",
            attempt_id,
        )
        if not row:
            return None
        return EmailDeliveryAttempt(**dict(row))


# Global instances
email_log_store = EmailLogStore()
delivery_attempt_store = DeliveryAttemptStore()
