"""
Retrying HTTP client for rate-limited external APIs

Wraps one outbound call with bounded retries:
- 429: wait max(Retry-After, exponential backoff) and try again
- other non-2xx: exponential backoff
- network errors and per-attempt timeouts: linear backoff

The client keeps no counters between calls. The aiohttp session and the
sleep function are injected so callers control connection pooling and
tests can observe the delays.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..config import settings
from .errors import (
    ApiResponseError,
    ItemFailure,
    RateLimitedError,
    RetriesExhaustedError,
    TransientExternalError,
)

logger = logging.getLogger(__name__)


@dataclass
class ApiRequest:
    url: str
    method: str = 'POST'
    json: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    expect: str = 'json'  # 'json' or 'bytes'


@dataclass
class ApiResponse:
    status: int
    headers: Dict[str, str]
    data: Any


def _header(headers, name: str) -> Optional[str]:
    if headers is None:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored"""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return max(seconds, 0.0)


class RetryingApiClient:
    """One outbound call per `call()`, retried according to the response"""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        max_retries: int = settings.MAX_RETRIES,
        base_delay_ms: int = settings.BASE_DELAY_MS,
        timeout_seconds: float = settings.API_TIMEOUT_SECONDS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.session = session
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep or asyncio.sleep

    def backoff_delay_ms(self, attempt: int) -> float:
        return self.base_delay_ms * (2 ** (attempt - 1))

    def rate_limit_delay_ms(self, retry_after: Optional[float], attempt: int) -> float:
        return max((retry_after or 0) * 1000, self.backoff_delay_ms(attempt))

    def network_delay_ms(self, attempt: int) -> float:
        return self.base_delay_ms * attempt

    async def call(self, request: ApiRequest) -> ApiResponse:
        """
        Perform the request, retrying transient failures.

        Raises:
            RetriesExhaustedError: every attempt failed
            ItemFailure: a 2xx response body could not be parsed
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(self._attempt(request), timeout=self.timeout_seconds)

            except RateLimitedError as e:
                last_error = e
                delay_ms = self.rate_limit_delay_ms(e.retry_after, attempt)
                logger.warning(f"Rate limited by {request.url}, waiting {delay_ms:.0f}ms "
                               f"(attempt {attempt}/{self.max_retries})")

            except ApiResponseError as e:
                last_error = e
                delay_ms = self.backoff_delay_ms(attempt)
                logger.warning(f"{e} from {request.url} (attempt {attempt}/{self.max_retries})")

            except (aiohttp.ClientError, asyncio.TimeoutError, TransientExternalError) as e:
                last_error = e
                delay_ms = self.network_delay_ms(attempt)
                logger.warning(f"Network error calling {request.url}: {e!r} "
                               f"(attempt {attempt}/{self.max_retries})")

            if attempt < self.max_retries:
                await self._sleep(delay_ms / 1000)

        raise RetriesExhaustedError(self.max_retries, last_error)

    async def _attempt(self, request: ApiRequest) -> ApiResponse:
        async with self.session.request(
            request.method,
            request.url,
            json=request.json,
            headers=request.headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
        ) as response:
            if response.status == 429:
                retry_after = parse_retry_after(_header(response.headers, 'Retry-After'))
                raise RateLimitedError(f"Rate limited: {request.url}", retry_after=retry_after)

            if not 200 <= response.status < 300:
                body = await response.text()
                raise ApiResponseError(response.status, body)

            if request.expect == 'bytes':
                data = await response.read()
            else:
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise ItemFailure(f"Invalid JSON from {request.url}: {e}") from e

            return ApiResponse(
                status=response.status,
                headers=dict(response.headers),
                data=data,
            )
