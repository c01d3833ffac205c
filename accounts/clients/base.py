"""
Base HTTP client for upstream services.

Provides resilient requests with:
- exponential backoff retry for transient errors (network, 5xx, 429)
- request timeouts
- a small exception taxonomy the cache layer can react to
"""

import asyncio
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from accounts.config import settings
from accounts.utils.logging import get_logger

logger = get_logger(__name__)


class UpstreamError(Exception):
    """Base exception for upstream service errors."""
    def __init__(self, message: str, service: str, code: Optional[str] = None):
        self.message = message
        self.service = service
        self.code = code
        super().__init__(f"[{service}] {message}")


class UpstreamUnavailable(UpstreamError):
    """Raised on transient failures once retries are exhausted."""
    pass


class UpstreamTimeout(UpstreamUnavailable):
    """Raised when a request exceeds the configured timeout."""
    pass


class UpstreamRejected(UpstreamError):
    """Raised on permanent failures: 4xx other than 429, malformed bodies."""
    pass


def is_retryable_status(status_code: int) -> bool:
    """5xx and 429 are worth another attempt."""
    return status_code >= 500 or status_code == 429


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return body.get("message") or error or ""
    return ""


class BaseHttpClient:
    """Async JSON client with retry, backoff and timeout."""

    service: str = "upstream"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = settings.upstream_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.upstream_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.upstream_retry_delay_seconds if retry_delay is None else retry_delay
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def default_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "x-service-name": settings.service_name,
        }

    async def initialize(self) -> None:
        """Initialize HTTP client."""
        self._http_client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.default_headers(),
            transport=self._transport,
        )
        logger.info("Upstream client initialized", service=self.service, base_url=self.base_url)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make a request, retrying transient failures with exponential backoff."""
        if not self._http_client:
            await self.initialize()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, exp_base=2),
            retry=retry_if_exception_type(UpstreamUnavailable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.debug("Retrying upstream request", service=self.service, endpoint=endpoint, attempt=number)
                return await self._send(method, endpoint, **kwargs)

    async def _send(self, method: str, endpoint: str, **kwargs) -> Any:
        try:
            response = await self._http_client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Request timeout after {self.timeout}s", self.service) from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Network error: {e}", self.service) from e
        except httpx.RequestError as e:
            # Undecodable body, redirect loop and the like
            raise UpstreamRejected(f"Malformed response: {e}", self.service) from e

        if response.is_error:
            detail = _error_detail(response) or f"HTTP {response.status_code}"
            code = str(response.status_code)
            if is_retryable_status(response.status_code):
                logger.warning("Upstream transient error", service=self.service, status=response.status_code)
                raise UpstreamUnavailable(detail, self.service, code)
            raise UpstreamRejected(detail, self.service, code)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamRejected("Malformed JSON response", self.service, str(response.status_code)) from e


async def mock_delay(seconds: float = 0.1) -> None:
    """Simulated upstream latency for mock mode."""
    await asyncio.sleep(seconds)
