"""Per-publication channel routing."""
from typing import Dict, Iterable, Optional, Sequence

from config.logging import get_logger
from db.articles import Article
from db.publications import Publication, PublicationChannel
from publishing import ChannelPublisher
from publishing.email import EmailDeliveryEngine
from publishing.errors import ChannelNotConfiguredError
from publishing.executor import RetryableCallExecutor
from publishing.locks import LockManager
from publishing.protocols import ArticleStorage

logger = get_logger(__name__)


class PublicationDispatcher:
    """Fulfil one leased publication and settle its lease.

    Success ends in mark_done; any failure, raised or reported, ends in
    release so the publication stays retryable.
    """

    def __init__(
        self,
        locks: LockManager,
        articles: ArticleStorage,
        email_engine: Optional[EmailDeliveryEngine],
        executor: RetryableCallExecutor,
        publishers: Iterable[ChannelPublisher] = (),
    ):
        self.locks = locks
        self.articles = articles
        self.email_engine = email_engine
        self.executor = executor
        self.publishers: Dict[PublicationChannel, ChannelPublisher] = {
            p.channel_name: p for p in publishers
        }

    def register(self, publisher: ChannelPublisher) -> None:
        """Register the publisher for an external channel."""
        self.publishers[publisher.channel_name] = publisher

    async def dispatch(
        self,
        publication: Publication,
        article: Article,
        holder_id: Optional[str] = None,
        recipients_override: Optional[Sequence[str]] = None,
    ) -> bool:
        """Publish to the publication's channel. Returns True if marked done."""
        try:
            succeeded, error = await self._publish(publication, article, recipients_override)
        except Exception as e:
            logger.error(
                "Channel publish failed",
                publication_id=str(publication.id),
                channel=publication.channel.value,
                content_id=str(publication.content_id),
                error=str(e),
                exc_info=True,
            )
            succeeded, error = False, str(e) or e.__class__.__name__

        if succeeded:
            done = await self.locks.mark_done(publication.id, holder_id=holder_id)
            if done:
                logger.info(
                    "Publication completed",
                    publication_id=str(publication.id),
                    channel=publication.channel.value,
                    content_id=str(publication.content_id),
                )
            return done

        logger.warning(
            "Publication not completed, releasing lease",
            publication_id=str(publication.id),
            channel=publication.channel.value,
            content_id=str(publication.content_id),
            error=error,
        )
        await self.locks.release(publication.id, holder_id=holder_id, error=error)
        return False

    async def _publish(
        self,
        publication: Publication,
        article: Article,
        recipients_override: Optional[Sequence[str]],
    ):
        channel = publication.channel

        if channel is PublicationChannel.WEBSITE:
            if article.published_at is None:
                await self.executor.call(
                    lambda: self.articles.set_published(article.id),
                    description="website publish",
                )
            return True, None

        if channel is PublicationChannel.EMAIL:
            if self.email_engine is None:
                raise ChannelNotConfiguredError("No email transport configured")
            if recipients_override is None:
                recipients_override = publication.recipients
            report = await self.email_engine.deliver(
                article,
                publication_id=publication.id,
                recipients_override=recipients_override,
            )
            return report.sent, report.error

        publisher = self.publishers.get(channel)
        if publisher is None:
            raise ChannelNotConfiguredError(f"No publisher registered for channel {channel.value}")

        result = await publisher.publish(article, publication)
        if result.success and article.published_at is None:
            await self.executor.call(
                lambda: self.articles.set_published(article.id),
                description=f"{channel.value} publish",
            )
        return result.success, result.error
