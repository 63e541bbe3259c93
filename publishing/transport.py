"""Remote email send transports.

A transport performs one batched send for a whole recipient list. The batch
is atomic from the engine's point of view: it either raises or every
recipient is considered sent.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx
from pydantic import BaseModel
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

from config.logging import get_logger
from publishing.credentials import CredentialProvider
from publishing.errors import (
    CredentialExpiredError,
    EmailSendError,
    TransientSendError,
    UNAUTHORIZED_STATUS_CODES,
    TRANSIENT_STATUS_CODES,
)

logger = get_logger(__name__)


class SenderIdentity(BaseModel):
    """From address of outgoing mail."""
    email: str
    name: str = ""


def error_for_status(status: Optional[int], detail: str) -> Exception:
    """Typed error for a failed send given its HTTP status (None = no response)."""
    if status is None:
        return TransientSendError(f"Send failed without a response: {detail}")
    if status in UNAUTHORIZED_STATUS_CODES:
        return CredentialExpiredError(f"Send rejected with {status}: {detail}")
    if status in TRANSIENT_STATUS_CODES:
        return TransientSendError(f"Send failed with {status}: {detail}")
    return EmailSendError(f"Send failed with {status}: {detail}")


class EmailTransport(ABC):
    """Abstract email transport interface (pluggable)."""

    @abstractmethod
    async def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html: str,
        sender: SenderIdentity,
    ) -> None:
        """Send one message to all recipients in a single remote call.

        Raises CredentialExpiredError, TransientSendError or EmailSendError.
        """
        pass


class SendGridTransport(EmailTransport):
    """SendGrid transport: one API call, one personalization per recipient."""

    def __init__(self, credentials: CredentialProvider):
        self.credentials = credentials

    async def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html: str,
        sender: SenderIdentity,
    ) -> None:
        if not recipients:
            return

        message = Mail(
            from_email=Email(sender.email, sender.name or None),
            to_emails=[To(recipient) for recipient in recipients],
            subject=subject,
            html_content=Content("text/html", html),
            is_multiple=True,  # Recipients don't see each other
        )
        client = SendGridAPIClient(await self.credentials.get_token())

        try:
            # The SendGrid client is synchronous
            response = await asyncio.to_thread(client.send, message)
        except Exception as e:
            raise error_for_status(getattr(e, "status_code", None), str(e)) from e

        if response.status_code not in (200, 201, 202):
            raise error_for_status(response.status_code, str(response.body))

        logger.info(
            "Email batch sent via SendGrid",
            recipients=len(recipients),
            status=response.status_code,
        )


class RelayTransport(EmailTransport):
    """POSTs the batch to an authenticated email relay function.

    Payload: {"emailList": [...], "subject", "htmlContent",
    "sender": {"email", "name"}}; bearer token from the credential provider.
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        url: str,
        credentials: CredentialProvider,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.credentials = credentials
        self._timeout = timeout
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html: str,
        sender: SenderIdentity,
    ) -> None:
        if not recipients:
            return

        client = await self._ensure_client()
        token = await self.credentials.get_token()

        try:
            response = await client.post(
                self.url,
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "emailList": list(recipients),
                    "subject": subject,
                    "htmlContent": html,
                    "sender": {"email": sender.email, "name": sender.name},
                },
            )
        except httpx.TransportError as e:
            raise TransientSendError(f"Relay unreachable: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:200] if response.text else "No body"
            raise error_for_status(response.status_code, detail)

        logger.info(
            "Email batch sent via relay",
            recipients=len(recipients),
            status=response.status_code,
        )
