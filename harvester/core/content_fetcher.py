"""Direct fetching of original pages and images.

Content is stored verbatim; nothing is extracted or rewritten. Every transfer
is streamed to disk against a byte budget so an oversized response is
abandoned before it is written in full.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

import httpx

from harvester.core.atomic import commit_temp, discard_temp, temp_path_for

logger = logging.getLogger(__name__)


class FetchErrorType(str, Enum):
    """Classification of fetch errors for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable (404, 403, etc.)
    HTTP_5XX = "http_5xx"  # Retriable (server error)
    CONNECTION_ERROR = "connection_error"  # Retriable
    TOO_LARGE = "too_large"  # Not retriable
    NO_CONTENT = "no_content"  # Not retriable


# Error types that can be retried
RETRIABLE_ERRORS = {FetchErrorType.TIMEOUT, FetchErrorType.HTTP_5XX, FetchErrorType.CONNECTION_ERROR}

# HTTP timeout
FETCH_TIMEOUT = 20.0

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"


@dataclass
class FetchResult:
    """Result of a content fetch operation."""

    success: bool
    byte_count: int = 0
    content_type: str | None = None
    error_type: FetchErrorType | None = None
    error_message: str | None = None
    http_status: int | None = None

    @property
    def retriable(self) -> bool:
        """Whether this error can be retried."""
        return self.error_type in RETRIABLE_ERRORS if self.error_type else False


class _TooLarge(Exception):
    pass


class ContentFetcher:
    """Fetches pages and images over plain HTTP(S).

    - Redirects are followed
    - Each transfer is bounded by ``timeout`` seconds end to end
    - Size budgets are checked against Content-Length and while streaming
    """

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
                transport=self._transport,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/*,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _stream(self, url: str, sink: IO[bytes], max_bytes: int | None) -> FetchResult:
        client = await self._get_client()
        async with client.stream("GET", url) as response:
            status = response.status_code
            if status >= 500:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.HTTP_5XX,
                    error_message=f"Server error: {status}",
                    http_status=status,
                )
            if status >= 400:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.HTTP_4XX,
                    error_message=f"Client error: {status}",
                    http_status=status,
                )

            content_length = response.headers.get("content-length")
            if max_bytes is not None and content_length and content_length.isdigit():
                if int(content_length) > max_bytes:
                    raise _TooLarge(f"Content too large: {content_length} bytes")

            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if max_bytes is not None and received > max_bytes:
                    raise _TooLarge(f"Content exceeded {max_bytes} bytes")
                sink.write(chunk)

            if received == 0:
                return FetchResult(
                    success=False,
                    error_type=FetchErrorType.NO_CONTENT,
                    error_message="Empty response body",
                    http_status=status,
                )
            return FetchResult(
                success=True,
                byte_count=received,
                content_type=response.headers.get("content-type"),
                http_status=status,
            )

    async def _guarded(self, url: str, sink: IO[bytes], max_bytes: int | None) -> FetchResult:
        """Run one bounded transfer, classifying failures."""
        try:
            return await asyncio.wait_for(self._stream(url, sink, max_bytes), timeout=self.timeout)

        except (httpx.TimeoutException, asyncio.TimeoutError):
            return FetchResult(
                success=False,
                error_type=FetchErrorType.TIMEOUT,
                error_message=f"Download timeout after {self.timeout:g} seconds",
            )

        except _TooLarge as e:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.TOO_LARGE,
                error_message=str(e),
            )

        except (httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError) as e:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.CONNECTION_ERROR,
                error_message=f"Connection error: {e}",
            )

        except httpx.HTTPError as e:
            logger.warning(f"Unexpected HTTP error fetching {url}: {e}")
            return FetchResult(
                success=False,
                error_type=FetchErrorType.CONNECTION_ERROR,
                error_message=f"{type(e).__name__}: {e}",
            )

    async def download_to(self, url: str, dest: Path, max_bytes: int | None = None) -> FetchResult:
        """Stream a URL to ``dest`` via a temp sibling; ``dest`` only appears complete."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = temp_path_for(dest)
        try:
            with open(tmp, "wb") as f:
                result = await self._guarded(url, f, max_bytes)
            if result.success:
                commit_temp(tmp, dest)
            return result
        finally:
            discard_temp(tmp)
