"""Email delivery engine.

Delivers one article to a computed recipient set. Who already received the
article is read back from email_logs on every call, so repeated or resumed
invocations only ever target the recipients still missing it.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set
from uuid import UUID, uuid4

from pydantic import BaseModel

from config.logging import get_logger
from db.articles import Article
from db.email_logs import AttemptStatus, EmailDeliveryAttempt, EmailLogStatus
from publishing.errors import ContentValidationError
from publishing.executor import RetryableCallExecutor
from publishing.protocols import (
    ArticleStorage,
    AttemptStorage,
    EmailLogStorage,
    StaticLinkStorage,
    SubscriberStorage,
)
from publishing.render import content_hash, render, validate_email_html
from publishing.transport import EmailTransport, SenderIdentity

logger = get_logger(__name__)


class RecipientMode(str, Enum):
    """How the recipient list of a send was chosen."""
    OVERRIDE = "override"
    FIRST_SEND = "first_send"
    RETRY = "retry"
    ALREADY_DELIVERED = "already_delivered"


@dataclass
class RecipientPlan:
    mode: RecipientMode
    recipients: List[str]
    active: List[str] = field(default_factory=list)
    delivered: Set[str] = field(default_factory=set)


class DeliverySummary(BaseModel):
    """'Delivered to N of M subscribers', derived from email_logs only."""
    article_id: UUID
    delivered_count: int
    total_subscribers: int
    undelivered_count: int


class DeliveryReport(DeliverySummary):
    """Outcome of one deliver() call."""
    sent: bool
    new_sends: int = 0
    mode: RecipientMode
    attempt_id: Optional[str] = None
    error: Optional[str] = None


class EmailDeliveryEngine:
    """Idempotent, resumable article delivery over email."""

    def __init__(
        self,
        articles: ArticleStorage,
        subscribers: SubscriberStorage,
        email_logs: EmailLogStorage,
        attempts: AttemptStorage,
        static_links: StaticLinkStorage,
        transport: EmailTransport,
        executor: RetryableCallExecutor,
        sender: SenderIdentity,
        renderer: Callable[..., str] = render,
        min_content_length: int = 100,
        max_content_length: int = 50000,
    ):
        self.articles = articles
        self.subscribers = subscribers
        self.email_logs = email_logs
        self.attempts = attempts
        self.static_links = static_links
        self.transport = transport
        self.executor = executor
        self.sender = sender
        self.renderer = renderer
        self.min_content_length = min_content_length
        self.max_content_length = max_content_length

    async def resolve_recipients(
        self,
        article_id: UUID,
        recipients_override: Optional[Sequence[str]] = None,
    ) -> RecipientPlan:
        """Pick recipients: explicit override, else everyone not yet delivered."""
        if recipients_override is not None:
            recipients = normalize_recipients(recipients_override)
            if not recipients:
                raise ValueError("recipients_override must contain at least one address")
            return RecipientPlan(
                mode=RecipientMode.OVERRIDE,
                recipients=recipients,
                delivered=await self.email_logs.delivered_recipients(article_id),
            )

        active = await self.subscribers.list_active()
        delivered = await self.email_logs.delivered_recipients(article_id)
        undelivered = [email for email in active if email not in delivered]

        if not undelivered:
            mode = RecipientMode.ALREADY_DELIVERED
        elif await self.email_logs.has_history(article_id):
            mode = RecipientMode.RETRY
        else:
            mode = RecipientMode.FIRST_SEND

        return RecipientPlan(
            mode=mode,
            recipients=undelivered,
            active=active,
            delivered=delivered,
        )

    async def summarize(self, article_id: UUID) -> DeliverySummary:
        """Current delivery counts for an article, read from the log."""
        active = await self.subscribers.list_active()
        delivered = await self.email_logs.delivered_recipients(article_id)
        return _summary(article_id, active, delivered)

    async def deliver(
        self,
        article: Article,
        publication_id: Optional[UUID] = None,
        attempt_id: Optional[str] = None,
        recipients_override: Optional[Sequence[str]] = None,
    ) -> DeliveryReport:
        """Send the article to whoever still needs it.

        Raises ContentValidationError when the rendered email looks broken;
        transport failures are recorded and reported with sent=False.
        """
        attempt_id = attempt_id or uuid4().hex
        plan = await self.resolve_recipients(article.id, recipients_override)

        if plan.mode is RecipientMode.ALREADY_DELIVERED:
            logger.info(
                "Article already delivered to all subscribers",
                article_id=str(article.id),
                subscribers=len(plan.active),
            )
            await self._ensure_published(article)
            return DeliveryReport(
                **_summary(article.id, plan.active, plan.delivered).model_dump(),
                sent=True,
                mode=plan.mode,
            )

        attempt = EmailDeliveryAttempt(
            attempt_id=attempt_id,
            article_id=article.id,
            publication_id=publication_id,
            status=AttemptStatus.SENDING,
            recipient_count=len(plan.recipients),
        )
        await self.attempts.upsert(attempt)

        # Override recipients may already hold a sent row; only the rest get logged
        fresh = [email for email in plan.recipients if email not in plan.delivered]

        try:
            html = await self._render(article, attempt)
            await self.email_logs.delete_failed(article.id, plan.recipients)

            logger.info(
                "Sending article email",
                article_id=str(article.id),
                attempt_id=attempt_id,
                mode=plan.mode.value,
                recipients=len(plan.recipients),
                content_hash=content_hash(html),
            )

            error = await self._send_batch(article, plan.recipients, html, attempt_id)
            status = EmailLogStatus.SENT if error is None else EmailLogStatus.FAILED
            await self.email_logs.record_results(article.id, fresh, status)
        except Exception as e:
            if attempt.status is AttemptStatus.SENDING:
                attempt.status = AttemptStatus.FAILED
                attempt.error_message = str(e) or e.__class__.__name__
                await self.attempts.upsert(attempt)
            raise

        if error is None:
            attempt.status = AttemptStatus.SUCCESS
            await self.attempts.upsert(attempt)
            await self._ensure_published(article)
        else:
            attempt.status = AttemptStatus.FAILED
            attempt.error_message = error
            await self.attempts.upsert(attempt)

        summary = await self.summarize(article.id)
        new_sends = len(fresh) if error is None else 0

        logger.info(
            "Email delivery finished",
            article_id=str(article.id),
            attempt_id=attempt_id,
            delivered=summary.delivered_count,
            total=summary.total_subscribers,
            new_sends=new_sends,
        )

        return DeliveryReport(
            **summary.model_dump(),
            sent=error is None,
            new_sends=new_sends,
            mode=plan.mode,
            attempt_id=attempt_id,
            error=error,
        )

    async def _send_batch(
        self,
        article: Article,
        recipients: List[str],
        html: str,
        attempt_id: str,
    ) -> Optional[str]:
        """One remote call for the whole list. Returns the error text, or None."""
        try:
            await self.executor.call(
                lambda: self.transport.send(recipients, article.title, html, self.sender),
                description="email batch send",
            )
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(
                "Email batch send failed",
                article_id=str(article.id),
                attempt_id=attempt_id,
                recipients=len(recipients),
                error=error,
            )
            return error
        return None

    async def _render(self, article: Article, attempt: EmailDeliveryAttempt) -> str:
        links = await self.static_links.list_for_email()
        html = self.renderer(article.title, article.content or "", article.image_url, links)

        diagnosis = validate_email_html(
            html,
            min_length=self.min_content_length,
            max_length=self.max_content_length,
        )
        for warning in diagnosis.warnings:
            logger.warning("Email content warning", article_id=str(article.id), issue=warning)

        if not diagnosis.is_valid:
            attempt.status = AttemptStatus.FAILED
            attempt.error_message = "; ".join(diagnosis.errors)
            await self.attempts.upsert(attempt)
            logger.error(
                "Email content failed validation, not sending",
                article_id=str(article.id),
                errors=diagnosis.errors,
            )
            raise ContentValidationError(
                f"Email content for article {article.id} is invalid: {attempt.error_message}",
                issues=diagnosis.issues,
            )
        return html

    async def _ensure_published(self, article: Article) -> None:
        if article.published_at is not None:
            return
        await self.executor.call(
            lambda: self.articles.set_published(article.id),
            description="mark article published",
        )


def normalize_recipients(emails: Sequence[str]) -> List[str]:
    """Trim, lowercase and deduplicate addresses, keeping first-seen order."""
    seen = set()
    result = []
    for email in emails:
        email = email.strip().lower()
        if email and email not in seen:
            seen.add(email)
            result.append(email)
    return result


def _summary(article_id: UUID, active: Sequence[str], delivered: Set[str]) -> DeliverySummary:
    delivered_count = sum(1 for email in active if email in delivered)
    return DeliverySummary(
        article_id=article_id,
        delivered_count=delivered_count,
        total_subscribers=len(active),
        undelivered_count=len(active) - delivered_count,
    )
