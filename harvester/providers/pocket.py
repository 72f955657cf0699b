"""Pocket GraphQL client for the saved-items listing."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from harvester.core.session_store import session_id_for_token

logger = logging.getLogger(__name__)

POCKET_BASE_URL = "https://getpocket.com"
DEFAULT_CONSUMER_KEY = "94110-6d5ff7a89d72c869766af0e0"
BEARER_COOKIE = "AUTH_BEARER_default"
REQUIRED_COOKIES = ("PHPSESSID", BEARER_COOKIE)

_FRAGMENTS = """
fragment SavedItemDetails on SavedItem {
  _createdAt
  _updatedAt
  title
  url
  savedId: id
  status
  isFavorite
  favoritedAt
  isArchived
  archivedAt
  tags { id name }
  annotations {
    highlights {
      id quote patch version _createdAt _updatedAt
      note { text _createdAt _updatedAt }
    }
  }
}

fragment ItemDetails on Item {
  isArticle
  title
  shareId: id
  itemId
  readerSlug
  resolvedId
  resolvedUrl
  domain
  domainMetadata { name }
  excerpt
  hasImage
  hasVideo
  images { caption credit height imageId src width }
  videos { vid videoId type src }
  topImageUrl
  timeToRead
  givenUrl
  collection { imageUrl intro title excerpt }
  authors { id name url }
  datePublished
  syndicatedArticle { slug publisher { name url } }
}

fragment ItemPreview on PocketMetadata {
  ... on ItemSummary {
    previewId: id
    id
    image {
      caption credit url
      cachedImages(imageOptions: [{ id: "WebPImage", fileType: WEBP, width: 640 }]) { url id }
    }
    excerpt
    title
    authors { name }
    domain { name }
    datePublished
    url
  }
  ... on OEmbed {
    previewId: id
    id
    image {
      caption credit url
      cachedImages(imageOptions: [{ id: "WebPImage", fileType: WEBP, width: 640 }]) { url id }
    }
    excerpt
    title
    authors { name }
    domain { name }
    datePublished
    url
    htmlEmbed
    type
  }
}
"""

SAVED_ITEMS_QUERY = """
query GetSavedItems(
  $filter: SavedItemsFilter
  $sort: SavedItemsSort
  $pagination: PaginationInput
) {
  user {
    savedItems(filter: $filter, sort: $sort, pagination: $pagination) {
      edges {
        cursor
        node {
          ...SavedItemDetails
          item {
            ...ItemDetails
            ... on Item {
              preview { ...ItemPreview }
            }
          }
        }
      }
      pageInfo { hasNextPage hasPreviousPage startCursor endCursor }
      totalCount
    }
  }
}
""" + _FRAGMENTS


class SortOrder(str, Enum):
    """Listing order by creation time."""

    DESC = "DESC"
    ASC = "ASC"

    def flipped(self) -> SortOrder:
        return SortOrder.ASC if self is SortOrder.DESC else SortOrder.DESC


class PocketError(Exception):
    """Base exception for Pocket API errors."""


class PocketAuthError(PocketError):
    """Authentication failed or session expired."""


class PocketRateLimitError(PocketError):
    """Upstream refused the request for exceeding its quota."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PocketCursorError(PocketError):
    """The pagination cursor is no longer recognized."""


class PocketResponseError(PocketError):
    """Response did not have the expected shape."""


@dataclass
class ListPage:
    """One page of the saved-items listing."""

    items: list[dict[str, Any]]
    end_cursor: str | None
    has_next_page: bool
    total_count: int | None = None


def parse_cookies(cookie_string: str) -> dict[str, str]:
    """Split a Cookie header into name/value pairs. Values may contain '='."""
    cookies: dict[str, str] = {}
    for part in cookie_string.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies[name] = value
    return cookies


def extract_bearer(cookie_string: str) -> str | None:
    """The long-lived bearer token from the cookie string, if present."""
    return parse_cookies(cookie_string).get(BEARER_COOKIE) or None


def session_id_from_cookies(cookie_string: str) -> str:
    """Stable session id for the account behind a cookie string.

    Raises:
        PocketAuthError: If the bearer cookie is missing.
    """
    token = extract_bearer(cookie_string)
    if not token:
        raise PocketAuthError(f"Could not extract {BEARER_COOKIE} token from cookies")
    return session_id_for_token(token)


def parse_fetch_request(fetch_code: str) -> tuple[str, dict[str, str]]:
    """Extract (cookie_string, headers) from a browser "Copy as fetch" snippet.

    The cookie header is removed from the returned headers.

    Raises:
        ValueError: If headers or the required cookies cannot be found.
    """
    match = re.search(
        r'"headers"\s*:\s*(\{[\s\S]*?\})\s*(?:,\s*"body"|,\s*"method"|\})', fetch_code
    )
    if not match:
        raise ValueError("Could not find headers in the fetch request")
    try:
        headers = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise ValueError(f"Error parsing headers: {e}") from e

    cookie_string = headers.get("cookie") or headers.get("Cookie")
    if not cookie_string:
        raise ValueError("No cookie header found")
    cookies = parse_cookies(cookie_string)
    if any(not cookies.get(name) for name in REQUIRED_COOKIES):
        raise ValueError("Missing required authentication cookies")

    return cookie_string, {k: v for k, v in headers.items() if k.lower() != "cookie"}


def _error_code(error: dict[str, Any]) -> str:
    return str((error.get("extensions") or {}).get("code") or "")


def _classify_errors(errors: list[dict[str, Any]]) -> PocketError:
    """Map GraphQL errors onto the client's exception types."""
    for error in errors:
        code = _error_code(error)
        message = (error.get("message") or "").lower()
        if code in ("UNAUTHENTICATED", "UNAUTHORIZED_FIELD_OR_TYPE") or (
            "unauthorized" in message or "not logged in" in message
        ):
            return PocketAuthError("Authentication expired")
    for error in errors:
        message = (error.get("message") or "").lower()
        if _error_code(error) == "161" or "too many requests" in message:
            return PocketRateLimitError("Rate limited by Pocket")
    for error in errors:
        message = (error.get("message") or "").lower()
        if "cursor" in message and ("not found" in message or "invalid" in message):
            return PocketCursorError(error.get("message") or "Cursor not found")
    messages = "; ".join(e.get("message") or "unknown error" for e in errors)
    return PocketResponseError(f"GraphQL error: {messages}")


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class PocketClient:
    """Async client for the Pocket web GraphQL endpoint.

    Authenticates with the browser session's cookie string and the headers
    captured alongside it.
    """

    def __init__(
        self,
        cookie_string: str,
        headers: dict[str, str] | None = None,
        *,
        consumer_key: str = DEFAULT_CONSUMER_KEY,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not cookie_string:
            raise ValueError("Pocket cookie string is required")
        request_headers = {k: v for k, v in (headers or {}).items() if k.lower() != "cookie"}
        request_headers.update({
            "cookie": cookie_string,
            "content-type": "application/json",
            "referer": f"{POCKET_BASE_URL}/saves?src=navbar",
        })
        self._consumer_key = consumer_key
        self._client = httpx.AsyncClient(
            base_url=POCKET_BASE_URL,
            headers=request_headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_auth(cls, auth: dict[str, Any], **kwargs: Any) -> PocketClient:
        """Build a client from a session's persisted auth record."""
        return cls(auth.get("cookie_string") or "", auth.get("headers") or {}, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PocketClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _graphql(self, query: str, variables: dict[str, Any], operation: str) -> dict[str, Any]:
        """POST one GraphQL operation and return its ``data``.

        Raises:
            PocketAuthError, PocketRateLimitError, PocketCursorError,
            PocketResponseError: classified from status code and error payload.
        """
        resp = await self._client.post(
            "/graphql",
            params={"consumer_key": self._consumer_key, "enable_cors": "1"},
            json={"query": query, "operationName": operation, "variables": variables},
        )

        if resp.status_code == 401:
            raise PocketAuthError("Authentication expired")
        if resp.status_code == 429:
            raise PocketRateLimitError("Rate limited by Pocket (429)", _retry_after(resp))

        try:
            body = resp.json()
        except ValueError as e:
            resp.raise_for_status()
            raise PocketResponseError(f"Non-JSON response ({resp.status_code})") from e

        if not isinstance(body, dict):
            raise PocketResponseError("Invalid response structure")
        if body.get("errors"):
            raise _classify_errors(body["errors"])
        resp.raise_for_status()
        return body.get("data") or {}

    async def list_saved_items(
        self,
        sort_order: SortOrder | str = SortOrder.DESC,
        page_size: int = 1000,
        cursor: str | None = None,
    ) -> ListPage:
        """Fetch one page of saved items (unread and archived)."""
        pagination: dict[str, Any] = {"first": page_size}
        if cursor:
            pagination["after"] = cursor
        variables = {
            "filter": {"statuses": ["UNREAD", "ARCHIVED"]},
            "sort": {"sortBy": "CREATED_AT", "sortOrder": SortOrder(sort_order).value},
            "pagination": pagination,
        }

        data = await self._graphql(SAVED_ITEMS_QUERY, variables, "GetSavedItems")
        saved_items = (data.get("user") or {}).get("savedItems")
        if not isinstance(saved_items, dict):
            raise PocketResponseError("Invalid response structure")

        items = [
            edge["node"]
            for edge in saved_items.get("edges") or []
            if edge and isinstance(edge.get("node"), dict) and edge["node"].get("savedId")
        ]
        page_info = saved_items.get("pageInfo") or {}
        logger.debug(f"Listed {len(items)} saved items (cursor={cursor}, order={variables['sort']['sortOrder']})")
        return ListPage(
            items=items,
            end_cursor=page_info.get("endCursor"),
            has_next_page=bool(page_info.get("hasNextPage")),
            total_count=saved_items.get("totalCount"),
        )
