"""Make db a package."""
from db.connection import db, Database
from db.articles import article_store, ArticleStore, Article
from db.publications import (
    publication_store,
    PublicationStore,
    Publication,
    PublicationChannel,
    DuePublication,
    OverduePublication,
)
from db.subscribers import subscriber_store, SubscriberStore
from db.static_links import static_link_store, StaticLinkStore, StaticLink
from db.email_logs import (
    email_log_store,
    delivery_attempt_store,
    EmailLogStore,
    DeliveryAttemptStore,
    EmailLog,
    EmailLogStatus,
    EmailDeliveryAttempt,
    AttemptStatus,
    EmailDeliveryStats,
)

__all__ = [
    "db",
    "Database",
    "article_store",
    "ArticleStore",
    "Article",
    "publication_store",
    "PublicationStore",
    "Publication",
    "PublicationChannel",
    "DuePublication",
    "OverduePublication",
    "subscriber_store",
    "SubscriberStore",
    "static_link_store",
    "StaticLinkStore",
    "StaticLink",
    "email_log_store",
    "delivery_attempt_store",
    "EmailLogStore",
    "DeliveryAttemptStore",
    "EmailLog",
    "EmailLogStatus",
    "EmailDeliveryAttempt",
    "AttemptStatus",
    "EmailDeliveryStats",
]
