"""Listing walk for a session's saved items.

Provides:
- DuplicateEscape: escalation when pages keep returning only known items
- FetchOrchestrator: cursor-walking pagination with rate limiting,
  resumable state and bounded error recovery
- article_limit_quota(): quota check capping the stored item count
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx

from harvester.core.atomic import StoreError, write_bytes
from harvester.core.rate_limiter import RequestWindowLimiter
from harvester.core.records import split_content
from harvester.core.session_store import SessionStore, TaskStatus, utcnow_iso
from harvester.core.settings import Settings
from harvester.providers.pocket import (
    ListPage,
    PocketAuthError,
    PocketCursorError,
    PocketError,
    PocketRateLimitError,
    SortOrder,
)

logger = logging.getLogger(__name__)

Quota = Callable[[int], bool]


class ListingClient(Protocol):
    async def list_saved_items(
        self, sort_order: SortOrder | str, page_size: int, cursor: str | None
    ) -> ListPage: ...


def article_limit_quota(limit: int | None) -> Quota | None:
    """Quota allowing new items only while fewer than ``limit`` are stored."""
    if limit is None:
        return None
    return lambda count: count < limit


class EscapeStep(str, Enum):
    """Action the orchestrator takes after a page."""

    NONE = "none"
    FLIP = "flip"  # reverse sort order, restart from the first page
    SHRINK = "shrink"  # keep position, request smaller pages
    REVERT = "revert"  # original order and size, resume from remembered cursor


@dataclass
class DuplicateEscape:
    """Tracks consecutive all-duplicate pages and escalates in three stages.

    Stage 0 walks normally. Each escalation happens once the duplicate page
    count reaches ``threshold``; after the revert (stage 3) there is no
    further escalation.
    """

    threshold: int
    normal_page_size: int
    shrunk_page_size: int
    sort_order: SortOrder = SortOrder.DESC
    page_size: int = 0
    stage: int = 0
    duplicate_pages: int = 0
    remembered_cursor: str | None = None
    initial_order: SortOrder = field(init=False)

    def __post_init__(self) -> None:
        self.initial_order = self.sort_order
        if not self.page_size:
            self.page_size = self.normal_page_size

    def observe(self, item_count: int, new_count: int, next_cursor: str | None) -> EscapeStep:
        """Record a processed page and return the escalation to apply, if any."""
        if new_count > 0:
            self.duplicate_pages = 0
            self.page_size = self.normal_page_size
            if self.stage == 2:
                self.stage = 1
            return EscapeStep.NONE

        if item_count == 0:
            return EscapeStep.NONE

        self.duplicate_pages += 1
        if self.duplicate_pages < self.threshold or self.stage >= 3:
            return EscapeStep.NONE

        self.duplicate_pages = 0
        if self.stage == 0:
            self.stage = 1
            self.remembered_cursor = next_cursor
            self.sort_order = self.sort_order.flipped()
            return EscapeStep.FLIP
        if self.stage == 1:
            self.stage = 2
            self.page_size = self.shrunk_page_size
            return EscapeStep.SHRINK

        self.stage = 3
        self.sort_order = self.initial_order
        self.page_size = self.normal_page_size
        return EscapeStep.REVERT

    def resume_cursor(self, cursor: str | None) -> str | None:
        """Cursor to persist for a later run, which always starts in the initial order."""
        return self.remembered_cursor if self.stage in (1, 2) else cursor


@dataclass
class FetchRunResult:
    """Outcome of one orchestrator run."""

    status: TaskStatus
    count: int = 0
    new_items: int = 0
    pages: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "count": self.count,
            "new_items": self.new_items,
            "pages": self.pages,
            "error": self.error,
        }


class FetchOrchestrator:
    """Walks the saved-items listing and persists every new item.

    All progress (cursor, counts, status) is written to the session store
    after every page, so a stopped or crashed run resumes where it left off.
    Stop requests are polled from disk at the top of each iteration.
    """

    def __init__(
        self,
        store: SessionStore,
        client: ListingClient,
        limiter: RequestWindowLimiter,
        settings: Settings,
        *,
        quota: Quota | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._client = client
        self._limiter = limiter
        self._settings = settings
        self._quota = quota if quota is not None else article_limit_quota(settings.article_limit)
        self._sleep = sleep

    def _finish(self, session_id: str, result: FetchRunResult, **updates: Any) -> FetchRunResult:
        self._store.update_fetch_task(
            session_id,
            status=result.status,
            error=result.error,
            ended_at=utcnow_iso(),
            count=result.count,
            **updates,
        )
        logger.info(
            f"Fetch for {session_id} ended: {result.status.value} "
            f"({result.new_items} new, {result.count} stored, {result.pages} pages)"
            + (f" - {result.error}" if result.error else "")
        )
        return result

    def _is_stopped(self, session_id: str) -> bool:
        return self._store.require_session(session_id).fetch_task.status == TaskStatus.STOPPED

    def _quota_allows(self, count: int) -> bool:
        return self._quota is None or self._quota(count)

    def _store_item(self, session_id: str, payload: dict[str, Any]) -> None:
        record, content = split_content(payload)
        self._store.save_article(session_id, record)
        if content is not None:
            write_bytes(self._store.content_path(session_id, str(record["savedId"])), content.encode("utf-8"))

    async def run(self, session_id: str) -> FetchRunResult:
        """Run the listing walk to completion, stop, or error."""
        s = self._settings
        session = self._store.require_session(session_id)
        cursor = session.fetch_task.cursor
        count = len(self._store.list_article_ids(session_id))
        result = FetchRunResult(status=TaskStatus.RUNNING, count=count)

        self._store.update_fetch_task(
            session_id,
            status=TaskStatus.RUNNING,
            started_at=utcnow_iso(),
            ended_at=None,
            error=None,
            rate_limited_at=None,
            rate_limit_retry_after=None,
            count=count,
        )
        if cursor:
            logger.info(f"Resuming fetch for {session_id} from cursor {cursor}")
        else:
            logger.info(f"Starting fetch for {session_id}")

        escape = DuplicateEscape(
            threshold=s.duplicate_page_threshold,
            normal_page_size=s.page_size,
            shrunk_page_size=s.shrunk_page_size,
        )
        rate_limit_retries = 0
        backoff = s.rate_limit_backoff_initial
        cursor_resets = 0

        try:
            while True:
                if self._is_stopped(session_id):
                    logger.info(f"Fetch for {session_id} stopped by user")
                    result.status = TaskStatus.STOPPED
                    result.count = len(self._store.list_article_ids(session_id))
                    return result

                if not self._quota_allows(result.count):
                    result.status = TaskStatus.STOPPED
                    result.error = f"Article limit reached ({result.count} stored)"
                    return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))

                await self._limiter.enforce(session_id)
                if self._is_stopped(session_id):
                    # A stop that landed during the pacing wait
                    continue
                logger.info(
                    f"Fetching page {'after cursor ' + cursor if cursor else '(first page)'} "
                    f"[{escape.sort_order.value}, {escape.page_size}]"
                )

                try:
                    page = await self._client.list_saved_items(escape.sort_order, escape.page_size, cursor)

                except PocketAuthError:
                    result.status = TaskStatus.ERROR
                    result.error = "Authentication expired"
                    return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))

                except PocketRateLimitError as e:
                    rate_limit_retries += 1
                    if rate_limit_retries > s.max_rate_limit_retries:
                        result.status = TaskStatus.ERROR
                        result.error = "Max rate limit retries exceeded"
                        return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))
                    wait_time = min(max(backoff, e.retry_after or 0), s.rate_limit_backoff_max)
                    logger.warning(
                        f"Rate limited. Backing off for {wait_time:.0f}s "
                        f"(retry {rate_limit_retries}/{s.max_rate_limit_retries})"
                    )
                    self._store.update_fetch_task(
                        session_id,
                        rate_limited_at=utcnow_iso(),
                        rate_limit_retry_after=round(wait_time),
                    )
                    await self._sleep(wait_time)
                    backoff = min(backoff * 2, s.rate_limit_backoff_max)
                    continue

                except PocketCursorError as e:
                    cursor_resets += 1
                    if cursor_resets > s.max_cursor_resets:
                        result.status = TaskStatus.ERROR
                        result.error = f"Cursor reset limit exceeded: {e}"
                        return self._finish(session_id, result, cursor=None)
                    logger.warning(f"Cursor {cursor} not recognized, restarting from first page")
                    cursor = None
                    self._store.update_fetch_task(session_id, cursor=None)
                    continue

                except (PocketError, httpx.HTTPError) as e:
                    result.status = TaskStatus.ERROR
                    result.error = str(e) or type(e).__name__
                    return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))

                rate_limit_retries = 0
                backoff = s.rate_limit_backoff_initial
                result.pages += 1

                if page.has_next_page and not page.end_cursor:
                    result.status = TaskStatus.ERROR
                    result.error = "Invalid response structure: missing end cursor"
                    return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))

                new_on_page = 0
                quota_hit = False
                last_id: str | None = None
                for payload in page.items:
                    saved_id = str(payload["savedId"])
                    last_id = saved_id
                    if self._store.has_article(session_id, saved_id):
                        continue
                    if not self._quota_allows(result.count):
                        quota_hit = True
                        break
                    self._store_item(session_id, payload)
                    new_on_page += 1
                    result.new_items += 1
                    result.count += 1

                ids = self._store.write_article_index(session_id)
                result.count = len(ids)

                if quota_hit:
                    # Cursor stays at this page so a later run picks up the rest
                    result.status = TaskStatus.STOPPED
                    result.error = f"Article limit reached ({result.count} stored)"
                    return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))

                logger.info(f"Page {result.pages}: {len(page.items)} items, {new_on_page} new, {result.count} stored")

                total = max(page.total_count or 0, result.count)
                if not page.has_next_page:
                    result.status = TaskStatus.COMPLETED
                    return self._finish(
                        session_id,
                        result,
                        cursor=None,
                        current_id=None,
                        total=total,
                        rate_limited_at=None,
                        rate_limit_retry_after=None,
                    )

                next_cursor = page.end_cursor
                step = escape.observe(len(page.items), new_on_page, next_cursor)
                if step is EscapeStep.FLIP:
                    logger.warning(
                        f"{s.duplicate_page_threshold} pages without new items, "
                        f"switching to {escape.sort_order.value} order from the start"
                    )
                    next_cursor = None
                elif step is EscapeStep.SHRINK:
                    logger.warning(f"Still no new items, shrinking page size to {escape.page_size}")
                elif step is EscapeStep.REVERT:
                    logger.warning(
                        f"Still no new items, reverting to {escape.sort_order.value} order "
                        f"from cursor {escape.remembered_cursor}"
                    )
                    next_cursor = escape.remembered_cursor

                cursor = next_cursor
                self._store.update_fetch_task(
                    session_id,
                    cursor=escape.resume_cursor(cursor),
                    current_id=last_id,
                    count=result.count,
                    total=total,
                    rate_limited_at=None,
                    rate_limit_retry_after=None,
                )

        except StoreError as e:
            logger.exception(f"Fetch for {session_id} failed writing to the session store")
            try:
                self._store.update_fetch_task(
                    session_id,
                    status=TaskStatus.ERROR,
                    error=str(e) or type(e).__name__,
                    current_id=None,
                    ended_at=utcnow_iso(),
                )
            except StoreError:
                logger.error(f"Could not record the failure of fetch {session_id}")
            raise
        except Exception as e:
            logger.exception(f"Fetch for {session_id} failed")
            result.status = TaskStatus.ERROR
            result.error = str(e) or type(e).__name__
            return self._finish(session_id, result, cursor=escape.resume_cursor(cursor))
