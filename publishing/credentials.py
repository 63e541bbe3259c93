"""Credential providers and single-flight refresh."""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from config.logging import get_logger

logger = get_logger(__name__)


class CredentialProvider(ABC):
    """Source of the token used for remote send calls."""

    @abstractmethod
    async def get_token(self) -> str:
        """Return the current token."""
        pass

    @abstractmethod
    async def refresh(self) -> Optional[str]:
        """Obtain a new token. Returns None if the credential cannot be refreshed."""
        pass


class StaticCredentialProvider(CredentialProvider):
    """A fixed API key. Nothing to refresh."""

    def __init__(self, token: str):
        self._token = token

    async def get_token(self) -> str:
        return self._token

    async def refresh(self) -> Optional[str]:
        return None


class RefreshTokenCredentialProvider(CredentialProvider):
    """Session-style access token renewed through a refresh-token grant."""

    DEFAULT_TIMEOUT = 15.0

    def __init__(
        self,
        access_token: str,
        refresh_token: str,
        refresh_url: str,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._access_token = access_token
        self._refresh_token = refresh_token
        self.refresh_url = refresh_url
        self.api_key = api_key
        self._timeout = timeout
        self._client = client

    async def get_token(self) -> str:
        return self._access_token

    async def refresh(self) -> Optional[str]:
        if not self._refresh_token or not self.refresh_url:
            logger.warning("No refresh token configured, cannot refresh credential")
            return None

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(
                self.refresh_url,
                params={"grant_type": "refresh_token"},
                headers=headers,
                json={"refresh_token": self._refresh_token},
            )
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code != 200:
            logger.warning("Credential refresh rejected", status=response.status_code)
            return None

        data = response.json()
        self._access_token = data["access_token"]
        # Refresh tokens rotate on every use
        self._refresh_token = data.get("refresh_token", self._refresh_token)
        logger.info("Credential refreshed")
        return self._access_token


class RefreshCoalescer:
    """Single-flight wrapper around CredentialProvider.refresh.

    Concurrent callers share one in-flight refresh. A refresh that succeeded
    less than min_interval seconds ago is reused instead of repeated. Callers
    wait at most wait_timeout for the in-flight refresh; after that the stuck
    refresh is cancelled and cleared so the next caller can start a new one.
    """

    def __init__(
        self,
        provider: CredentialProvider,
        min_interval: float = 5.0,
        wait_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.min_interval = min_interval
        self.wait_timeout = wait_timeout
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None
        self._last_refresh_at: Optional[float] = None
        self._last_token: Optional[str] = None

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _recent_token(self) -> Optional[str]:
        if self._last_token is None or self._last_refresh_at is None:
            return None
        if self._clock() - self._last_refresh_at < self.min_interval:
            return self._last_token
        return None

    async def refresh(self) -> Optional[str]:
        recent = self._recent_token()
        if recent is not None:
            logger.debug("Reusing recent credential refresh")
            return recent

        if not self.refreshing:
            self._inflight = asyncio.create_task(self._run_refresh())
        else:
            logger.debug("Waiting on in-flight credential refresh")

        task = self._inflight
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Credential refresh timed out, clearing in-flight refresh",
                timeout=self.wait_timeout,
            )
            if self._inflight is task:
                self._inflight = None
                task.cancel()
            return None

    async def _run_refresh(self) -> Optional[str]:
        try:
            token = await self.provider.refresh()
        except Exception as e:
            logger.error("Credential refresh failed", error=str(e))
            return None

        if token:
            self._last_token = token
            self._last_refresh_at = self._clock()
        return token
