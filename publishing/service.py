"""Wiring and application-facing operations of the publication engine.

PublicationService is built once at process start (build_publication_service)
and passed to whatever needs it; there is no module-level client state.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from config.logging import get_logger
from config.settings import Settings, settings as default_settings
from db.articles import ArticleStore
from db.connection import Database
from db.email_logs import DeliveryAttemptStore, EmailDeliveryStats, EmailLogStore
from db.publications import OverduePublication, Publication, PublicationChannel, PublicationStore
from db.static_links import StaticLinkStore
from db.subscribers import SubscriberStore
from publishing import ChannelPublisher
from publishing.credentials import (
    CredentialProvider,
    RefreshCoalescer,
    RefreshTokenCredentialProvider,
    StaticCredentialProvider,
)
from publishing.dispatcher import PublicationDispatcher
from publishing.email import DeliverySummary, EmailDeliveryEngine, normalize_recipients
from publishing.errors import ArticleNotFoundError
from publishing.executor import RetryableCallExecutor
from publishing.locks import LockManager
from publishing.scheduler import PublishingScheduler
from publishing.transport import EmailTransport, RelayTransport, SendGridTransport, SenderIdentity

logger = get_logger(__name__)


class PublicationService:
    """Facade over scheduler, dispatcher and stores."""

    def __init__(
        self,
        publications: PublicationStore,
        articles: ArticleStore,
        email_logs: EmailLogStore,
        locks: LockManager,
        dispatcher: PublicationDispatcher,
        scheduler: PublishingScheduler,
        email_engine: Optional[EmailDeliveryEngine] = None,
    ):
        self.publications = publications
        self.articles = articles
        self.email_logs = email_logs
        self.locks = locks
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.email_engine = email_engine

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    def register_publisher(self, publisher: ChannelPublisher) -> None:
        self.dispatcher.register(publisher)

    async def schedule(
        self,
        content_id: UUID,
        channels: Sequence[PublicationChannel],
        scheduled_at: Optional[datetime] = None,
    ) -> List[UUID]:
        """Create one publication per channel. scheduled_at=None means ASAP."""
        article = await self.articles.get(content_id)
        if article is None:
            raise ArticleNotFoundError(f"Article {content_id} not found")

        return [
            await self.publications.create(content_id, channel, scheduled_at)
            for channel in dict.fromkeys(channels)
        ]

    async def publish_now(
        self,
        content_id: UUID,
        channels: Sequence[PublicationChannel],
        recipients: Optional[Sequence[str]] = None,
    ) -> Dict[str, str]:
        """Create publications and dispatch them in this call.

        Returns channel -> 'published' | 'failed' | 'queued'. A publication
        another process leased first is 'queued' and completes there.

        recipients is stored on the email publication, so a failed send that
        the scheduler retries later still goes only to those addresses.
        """
        if recipients is not None:
            recipients = normalize_recipients(recipients)
            if not recipients:
                raise ValueError("recipients must contain at least one address")

        article = await self.articles.get(content_id)
        if article is None:
            raise ArticleNotFoundError(f"Article {content_id} not found")

        holder_id = self.scheduler.instance_id
        results: Dict[str, str] = {}
        for channel in dict.fromkeys(channels):
            publication_id = await self.publications.create(
                content_id,
                channel,
                recipients=recipients if channel == PublicationChannel.EMAIL else None,
            )
            leased = await self.locks.lease_batch([publication_id], holder_id, self.scheduler.lease_ttl)
            if publication_id not in leased:
                results[PublicationChannel(channel).value] = "queued"
                continue

            publication = await self.publications.get(publication_id)
            done = await self.dispatcher.dispatch(publication, article, holder_id=holder_id)
            results[PublicationChannel(channel).value] = "published" if done else "failed"
            if done and article.published_at is None:
                article = await self.articles.get(content_id) or article

        logger.info("Publish now finished", content_id=str(content_id), results=results)
        return results

    async def list_publications(self, content_id: UUID) -> List[Publication]:
        return await self.publications.list_by_article(content_id)

    async def retry_publication(self, publication_id: UUID) -> bool:
        """Make a publication due again; the next tick picks it up."""
        return await self.publications.reset_for_retry(publication_id)

    async def list_overdue(self, limit: int = 100) -> List[OverduePublication]:
        return await self.publications.list_overdue(limit)

    async def email_stats(self, article_id: UUID) -> Optional[EmailDeliveryStats]:
        return await self.email_logs.delivery_stats(article_id)

    async def delivery_summary(self, article_id: UUID) -> Optional[DeliverySummary]:
        if self.email_engine is None:
            return None
        return await self.email_engine.summarize(article_id)

    async def failed_recipients(self, article_id: UUID) -> List[str]:
        return await self.email_logs.failed_recipients(article_id)


def build_credentials(config: Settings) -> Optional[CredentialProvider]:
    if config.email_transport == "relay":
        if not config.email_relay_url:
            return None
        return RefreshTokenCredentialProvider(
            access_token=config.email_relay_token,
            refresh_token=config.email_relay_refresh_token,
            refresh_url=config.email_auth_refresh_url,
            api_key=config.email_auth_api_key,
        )
    if config.sendgrid_api_key:
        return StaticCredentialProvider(config.sendgrid_api_key)
    return None


def build_transport(config: Settings, credentials: CredentialProvider) -> EmailTransport:
    if config.email_transport == "relay":
        return RelayTransport(config.email_relay_url, credentials)
    return SendGridTransport(credentials)


def build_publication_service(
    config: Optional[Settings] = None,
    database: Optional[Database] = None,
    publishers: Sequence[ChannelPublisher] = (),
) -> PublicationService:
    """Construct the full engine from settings."""
    config = config or default_settings

    publications = PublicationStore(database)
    articles = ArticleStore(database)
    email_logs = EmailLogStore(database)

    credentials = build_credentials(config)
    coalescer = None
    if credentials is not None:
        coalescer = RefreshCoalescer(
            credentials,
            min_interval=config.credential_min_refresh_interval_seconds,
            wait_timeout=config.credential_refresh_timeout_seconds,
        )
    executor = RetryableCallExecutor(
        coalescer=coalescer,
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
    )

    email_engine = None
    if credentials is not None:
        email_engine = EmailDeliveryEngine(
            articles=articles,
            subscribers=SubscriberStore(database),
            email_logs=email_logs,
            attempts=DeliveryAttemptStore(database),
            static_links=StaticLinkStore(database),
            transport=build_transport(config, credentials),
            executor=executor,
            sender=SenderIdentity(email=config.email_from_address, name=config.email_from_name),
            min_content_length=config.email_min_content_length,
            max_content_length=config.email_max_content_length,
        )
    else:
        logger.warning("No email transport configured; email publications will be released")

    locks = LockManager(publications)
    dispatcher = PublicationDispatcher(
        locks=locks,
        articles=articles,
        email_engine=email_engine,
        executor=executor,
        publishers=publishers,
    )
    scheduler = PublishingScheduler(
        store=publications,
        locks=locks,
        dispatcher=dispatcher,
        instance_id=config.scheduler_instance_id,
        poll_interval=config.publish_poll_interval_seconds,
        lease_ttl=timedelta(seconds=config.publish_lease_ttl_seconds),
    )

    return PublicationService(
        publications=publications,
        articles=articles,
        email_logs=email_logs,
        locks=locks,
        dispatcher=dispatcher,
        scheduler=scheduler,
        email_engine=email_engine,
    )
