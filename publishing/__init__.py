"""Scheduled multi-channel publishing."""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
from db.articles import Article
from db.publications import Publication, PublicationChannel

__all__ = ["ChannelPublisher", "PublishResult"]


class PublishResult:
    """Result of a channel publish operation."""

    def __init__(
        self,
        success: bool,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.success = success
        self.error = error
        self.metadata = metadata or {}

    def __repr__(self) -> str:
        return f"PublishResult(success={self.success!r}, error={self.error!r})"


class ChannelPublisher(ABC):
    """Base class for channels handled outside the engine (WhatsApp, other)."""

    @property
    @abstractmethod
    def channel_name(self) -> PublicationChannel:
        """Channel this publisher serves."""
        pass

    @abstractmethod
    async def publish(self, article: Article, publication: Publication) -> PublishResult:
        """
        Publish an article to this channel.

        Args:
            article: The article to publish
            publication: The leased publication row being fulfilled

        Returns:
            PublishResult; success=False leaves the publication retryable
        """
        pass

