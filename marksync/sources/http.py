"""
sources/http.py - Shared HTTP plumbing for remote sources
Timeouts, retry with backoff and mapping of HTTP failures onto sync errors
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar
import logging

import httpx

from ..config import SourceConfig
from ..errors import (
    ConflictError, NetworkError, NotFoundError, SyncError, UnauthorizedError,
)
from .base import BookmarkSource, Credentials

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_JITTER = 0.1

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def error_from_response(response: httpx.Response, provider: str) -> SyncError:
    """Map a failed HTTP response onto the sync error taxonomy"""
    status = response.status_code
    detail = response.text[:200] if response.content else response.reason_phrase

    if status in (401, 403):
        return UnauthorizedError(f"{provider} rejected credentials ({status})", status_code=status)
    if status == 404:
        return NotFoundError(f"{provider}: not found", status_code=status)
    if status in (409, 412):
        return ConflictError(f"{provider}: remote changed since last read ({status})", status_code=status)
    if status in RETRYABLE_STATUS_CODES:
        retry_after = response.headers.get('retry-after')
        try:
            retry_after = float(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        return NetworkError(f"{provider} error {status}: {detail}",
                            status_code=status, retry_after=retry_after)
    return SyncError(f"{provider} error {status}: {detail}", status_code=status)


def error_from_exception(exc: httpx.HTTPError, provider: str) -> SyncError:
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"{provider} request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"{provider} connection failed: {exc}")
    return SyncError(f"{provider} request failed: {exc}")


def _calculate_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + delay * jitter * random.random()


async def retry_with_backoff(func: Callable[[], Awaitable[T]], *,
                             max_retries: int = DEFAULT_MAX_RETRIES,
                             base_delay: float = DEFAULT_BASE_DELAY,
                             max_delay: float = DEFAULT_MAX_DELAY,
                             jitter: float = DEFAULT_JITTER,
                             operation_name: str = "operation") -> T:
    """
    Run func, retrying retryable NetworkErrors with exponential backoff.
    Other errors, and the last retryable one, propagate unchanged.
    """
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except NetworkError as e:
            if attempt == max_retries:
                logger.error(f"{operation_name} failed after {attempt + 1} attempts: {e}")
                raise

            delay = _calculate_delay(attempt, base_delay, max_delay, jitter)
            if e.retry_after:
                delay = max(delay, min(e.retry_after, max_delay))
            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_retries + 1} failed: {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


class HttpSource(BookmarkSource):
    """
    Base for sources reached over HTTPS
    The httpx client is injected (tests, shared pools) or created lazily
    """

    provider = "http"

    def __init__(self, config: SourceConfig, credentials: Optional[Credentials] = None, *,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 base_delay: float = DEFAULT_BASE_DELAY):
        super().__init__(config, credentials)
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def auth_headers(self) -> dict:
        if not self.credentials.access_token:
            return {}
        return {'Authorization': f'Bearer {self.credentials.access_token}'}

    async def request(self, method: str, url: str, *, ok_statuses=(200,), **kwargs) -> httpx.Response:
        """Send one request; anything outside ok_statuses becomes a SyncError"""
        headers = {**self.auth_headers(), **kwargs.pop('headers', {})}
        kwargs.setdefault('timeout', self.timeout)
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise error_from_exception(e, self.provider) from e

        if response.status_code not in ok_statuses:
            raise error_from_response(response, self.provider)
        return response

    async def request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Idempotent requests only; writes go through request()"""
        return await retry_with_backoff(
            lambda: self.request(method, url, **dict(kwargs)),
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            operation_name=f"{self.provider} {method} {url}",
        )
