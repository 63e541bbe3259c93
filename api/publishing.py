"""FastAPI endpoints for publishing operations."""
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator
from db.publications import OverduePublication, Publication, PublicationChannel
from publishing.errors import ArticleNotFoundError
from publishing.service import PublicationService
from config.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["publishing"])


def get_service(request: Request) -> PublicationService:
    """The service instance built at startup."""
    return request.app.state.publication_service


# Request/Response Models

class PublishRequest(BaseModel):
    """Request to publish an article now."""
    channels: List[PublicationChannel] = Field(..., min_length=1, description="Channels to publish to")
    recipients: Optional[List[str]] = Field(
        None, description="Send the email only to these addresses (skips dedup)"
    )

    @field_validator("recipients")
    @classmethod
    def recipients_not_blank(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is not None and not any(email.strip() for email in value):
            raise ValueError("recipients must contain at least one address")
        return value


class ScheduleRequest(BaseModel):
    """Request to schedule a publication."""
    channels: List[PublicationChannel] = Field(..., min_length=1, description="Channels to publish to")
    scheduled_for: Optional[datetime] = Field(None, description="When to publish (ISO 8601); omit for ASAP")


class PublishResponse(BaseModel):
    """Response from publish operation."""
    article_id: str
    results: Dict[str, str]
    success_count: int


class ScheduleResponse(BaseModel):
    """Response from schedule operation."""
    article_id: str
    publication_ids: List[str]
    scheduled_for: Optional[datetime]


class RetryResponse(BaseModel):
    publication_id: str
    retried: bool


class EmailStatsResponse(BaseModel):
    """Delivery counts for an article, all derived from the email log."""
    article_id: str
    total_sent: int = 0
    total_failed: int = 0
    delivered_count: Optional[int] = None
    total_subscribers: Optional[int] = None
    undelivered_count: Optional[int] = None
    failed_recipients: List[str] = []


# Endpoints

@router.post("/articles/{article_id}/publish", response_model=PublishResponse)
async def publish_article(
    article_id: UUID,
    request: PublishRequest,
    service: PublicationService = Depends(get_service),
):
    """
    Publish an article to the given channels immediately.

    - **channels**: website, email, whatsapp, other
    - **recipients**: optional explicit email list
    """
    try:
        results = await service.publish_now(article_id, request.channels, request.recipients)
    except ArticleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return PublishResponse(
        article_id=str(article_id),
        results=results,
        success_count=sum(1 for status in results.values() if status == "published"),
    )


@router.post("/articles/{article_id}/schedule", response_model=ScheduleResponse)
async def schedule_article(
    article_id: UUID,
    request: ScheduleRequest,
    service: PublicationService = Depends(get_service),
):
    """Schedule an article for publication on the given channels."""
    try:
        publication_ids = await service.schedule(article_id, request.channels, request.scheduled_for)
    except ArticleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return ScheduleResponse(
        article_id=str(article_id),
        publication_ids=[str(pid) for pid in publication_ids],
        scheduled_for=request.scheduled_for,
    )


@router.get("/articles/{article_id}/publications", response_model=List[Publication])
async def list_article_publications(
    article_id: UUID,
    service: PublicationService = Depends(get_service),
):
    """All channel publications of an article with their lease state."""
    return await service.list_publications(article_id)


@router.post("/publications/{publication_id}/retry", response_model=RetryResponse)
async def retry_publication(
    publication_id: UUID,
    service: PublicationService = Depends(get_service),
):
    """Make a publication due again."""
    retried = await service.retry_publication(publication_id)
    if not retried:
        raise HTTPException(status_code=404, detail=f"Publication {publication_id} not found")
    return RetryResponse(publication_id=str(publication_id), retried=True)


@router.get("/publications/overdue", response_model=List[OverduePublication])
async def list_overdue_publications(
    limit: int = Query(100, ge=1, le=500),
    service: PublicationService = Depends(get_service),
):
    """Publications whose scheduled time passed without being published."""
    return await service.list_overdue(limit)


@router.get("/articles/{article_id}/email-stats", response_model=EmailStatsResponse)
async def get_email_stats(
    article_id: UUID,
    service: PublicationService = Depends(get_service),
):
    """Email delivery statistics for an article."""
    stats = await service.email_stats(article_id)
    summary = await service.delivery_summary(article_id)
    failed = await service.failed_recipients(article_id)

    response = EmailStatsResponse(article_id=str(article_id), failed_recipients=failed)
    if stats:
        response.total_sent = stats.total_sent
        response.total_failed = stats.total_failed
    if summary:
        response.delivered_count = summary.delivered_count
        response.total_subscribers = summary.total_subscribers
        response.undelivered_count = summary.undelivered_count
    return response
