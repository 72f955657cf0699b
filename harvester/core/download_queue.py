"""Bounded-concurrency download of article pages and images.

Provides:
- ArticleDownloader: fetches one article's original page and its images
- DownloadQueue: per-session queue running a fixed number of downloads at once
- download_single(): one article outside the queue
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from harvester.core.content_fetcher import ContentFetcher, FetchErrorType, FetchResult
from harvester.core.rate_limiter import DomainRateLimiter
from harvester.core.session_store import SessionStore, TaskStatus, utcnow_iso
from harvester.core.settings import Settings
from harvester.providers.content_types import SavedArticle

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Stopped by user"

# Seconds between stop checks while downloads are in flight
STOP_POLL_INTERVAL = 1.0


class EntryStatus(str, Enum):
    """Status of one article in a download queue."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    ERROR = "error"


class ArticleDownloadError(Exception):
    """An article's page could not be downloaded."""

    def __init__(self, message: str, result: FetchResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class ArticleDownloadResult:
    """What one article download wrote."""

    saved_id: str
    content_downloaded: bool = False
    images_downloaded: int = 0
    images_existing: int = 0
    images_failed: int = 0
    images_skipped: int = 0  # left out to stay under the article size cap
    bytes: int = 0
    stopped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "saved_id": self.saved_id,
            "content_downloaded": self.content_downloaded,
            "images_downloaded": self.images_downloaded,
            "images_existing": self.images_existing,
            "images_failed": self.images_failed,
            "images_skipped": self.images_skipped,
            "bytes": self.bytes,
            "stopped": self.stopped,
        }


@dataclass
class QueueEntry:
    """One article in a download queue."""

    record: dict[str, Any]
    status: EntryStatus = EntryStatus.PENDING
    error: str | None = None

    @property
    def saved_id(self) -> str:
        return str(self.record["savedId"])

    def to_dict(self) -> dict[str, Any]:
        return {"saved_id": self.saved_id, "status": self.status.value, "error": self.error}


class ArticleDownloader:
    """Downloads an article's original page and referenced images.

    Everything lands in the article's directory via temp-file-then-rename,
    so a file that exists is always complete. Total bytes per article never
    exceed ``settings.max_article_bytes``.
    """

    def __init__(
        self,
        store: SessionStore,
        fetcher: ContentFetcher,
        settings: Settings,
        *,
        domain_limiter: DomainRateLimiter | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._settings = settings
        self._domains = domain_limiter or DomainRateLimiter(
            min_delay=settings.domain_min_delay, max_delay=settings.domain_max_delay
        )

    def domain_delays(self) -> dict[str, float]:
        """Current polite delay per domain, in seconds."""
        return self._domains.get_stats()

    async def _fetch_to(self, url: str, dest: Path, max_bytes: int) -> FetchResult:
        await self._domains.wait_for_domain(url)
        result = await self._fetcher.download_to(url, dest, max_bytes=max_bytes)
        if result.success:
            self._domains.record_success(url)
        elif result.retriable:
            self._domains.record_failure(url)
        return result

    async def download(
        self,
        session_id: str,
        record: dict[str, Any],
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> ArticleDownloadResult:
        """Download page and images for one stored record.

        An existing page is kept and only missing images are fetched.
        ``should_stop`` is consulted before each request; a request already
        under way always runs to its end.

        Raises:
            ArticleDownloadError: If the page is missing and cannot be fetched.
        """
        article = SavedArticle.from_record(record)
        result = ArticleDownloadResult(saved_id=article.saved_id)
        cap = self._settings.max_article_bytes
        content_path = self._store.content_path(session_id, article.saved_id)

        if content_path.exists():
            result.bytes += content_path.stat().st_size
        else:
            if not article.url:
                raise ArticleDownloadError("Article has no URL")
            if should_stop is not None and should_stop():
                raise ArticleDownloadError(STOPPED_BY_USER)
            fetched = await self._fetch_to(article.url, content_path, cap)
            if not fetched.success:
                raise ArticleDownloadError(fetched.error_message or "Download failed", fetched)
            result.content_downloaded = True
            result.bytes += fetched.byte_count

        refs = article.image_refs()
        article_dir = content_path.parent
        for i, ref in enumerate(refs):
            dest = article_dir / ref.filename
            if dest.exists() and dest.stat().st_size > 0:
                result.images_existing += 1
                result.bytes += dest.stat().st_size
                continue

            if should_stop is not None and should_stop():
                result.stopped = True
                logger.info(f"Article {article.saved_id}: stopped before {len(refs) - i} remaining images")
                break

            remaining = cap - result.bytes
            if remaining <= 0:
                result.images_skipped = len(refs) - i
                break

            too_large = False
            for url in ref.urls:
                fetched = await self._fetch_to(url, dest, remaining)
                if fetched.success:
                    result.images_downloaded += 1
                    result.bytes += fetched.byte_count
                    break
                if fetched.error_type is FetchErrorType.TOO_LARGE:
                    too_large = True
                    break
                logger.debug(f"Image {url} failed: {fetched.error_message}")
            else:
                result.images_failed += 1

            if too_large:
                result.images_skipped = len(refs) - i
                break

        if result.images_skipped:
            logger.warning(
                f"Article {article.saved_id}: skipped {result.images_skipped} images "
                f"to stay under {cap / (1024 * 1024):.0f} MB"
            )
        if refs:
            logger.info(
                f"Article {article.saved_id} images: {result.images_downloaded} downloaded, "
                f"{result.images_existing} existing, {result.images_failed} errors"
            )
        return result


class DownloadQueue:
    """Runs article downloads for one session, ``download_concurrency`` at a time.

    Entries are scheduled strictly in input order. The persisted download task
    status is polled at every scheduling decision; once it reads ``stopped``
    no further entries start, pending ones are marked as errors, and the
    downloads in flight are left to finish before the queue returns.
    """

    def __init__(
        self,
        session_id: str,
        records: list[dict[str, Any]],
        store: SessionStore,
        downloader: ArticleDownloader,
        settings: Settings,
        *,
        update_session: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._downloader = downloader
        self._settings = settings
        self._update_session = update_session
        self._sleep = sleep
        self._consecutive_failures = 0
        self.entries: list[QueueEntry] = []
        for record in records:
            entry = QueueEntry(record=record)
            if store.has_content(session_id, entry.saved_id):
                entry.status = EntryStatus.COMPLETED
            self.entries.append(entry)

    def _count(self, status: EntryStatus) -> int:
        return sum(1 for e in self.entries if e.status == status)

    def counts(self) -> dict[str, int]:
        return {status.value: self._count(status) for status in EntryStatus}

    def entry_statuses(self) -> dict[str, str]:
        return {e.saved_id: e.status.value for e in self.entries}

    def _next_pending(self) -> QueueEntry | None:
        for entry in self.entries:
            if entry.status == EntryStatus.PENDING:
                return entry
        return None

    def _is_stopped(self) -> bool:
        session = self._store.require_session(self.session_id)
        return session.download_task.status == TaskStatus.STOPPED

    def _update(self, **updates: Any) -> None:
        if self._update_session:
            self._store.update_download_task(self.session_id, **updates)

    async def _download(self, entry: QueueEntry) -> None:
        try:
            await self._downloader.download(
                self.session_id,
                entry.record,
                should_stop=self._is_stopped if self._update_session else None,
            )
        except ArticleDownloadError as e:
            entry.status = EntryStatus.ERROR
            entry.error = str(e)
            logger.warning(f"Download failed for {entry.saved_id}: {e}")
        except Exception as e:
            entry.status = EntryStatus.ERROR
            entry.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error downloading {entry.saved_id}")
        else:
            entry.status = EntryStatus.COMPLETED

    async def _halt(self, active: dict[asyncio.Task[None], QueueEntry]) -> None:
        for task in active:
            task.cancel()
        await asyncio.gather(*active, return_exceptions=True)
        active.clear()
        self._mark_stopped(EntryStatus.PENDING, EntryStatus.DOWNLOADING)

    def _mark_stopped(self, *statuses: EntryStatus) -> None:
        for entry in self.entries:
            if entry.status in statuses:
                entry.status = EntryStatus.ERROR
                entry.error = STOPPED_BY_USER

    def _schedule(self, active: dict[asyncio.Task[None], QueueEntry]) -> None:
        while len(active) < self._settings.download_concurrency:
            entry = self._next_pending()
            if entry is None:
                return
            entry.status = EntryStatus.DOWNLOADING
            self._update(current_id=entry.saved_id)
            active[asyncio.create_task(self._download(entry))] = entry

    async def run(self) -> TaskStatus:
        """Drain the queue. Returns the final status."""
        s = self._settings
        self._update(
            status=TaskStatus.RUNNING,
            started_at=utcnow_iso(),
            ended_at=None,
            error=None,
            current_id=None,
            count=self._count(EntryStatus.COMPLETED),
            total=len(self.entries),
        )
        logger.info(
            f"Downloading {self._count(EntryStatus.PENDING)} of {len(self.entries)} articles "
            f"for {self.session_id} ({s.download_concurrency} at a time)"
        )

        active: dict[asyncio.Task[None], QueueEntry] = {}
        stopping = False
        try:
            while True:
                if not stopping and self._update_session and self._is_stopped():
                    stopping = True
                    self._mark_stopped(EntryStatus.PENDING)
                    logger.info(
                        f"Downloads for {self.session_id} stopped by user, "
                        f"waiting for {len(active)} in flight"
                    )

                if not stopping:
                    if self._consecutive_failures < s.consecutive_failure_threshold:
                        self._schedule(active)
                    elif not active:
                        logger.warning(
                            f"{self._consecutive_failures} consecutive failures, "
                            f"pausing downloads for {s.failure_cooldown:.0f}s"
                        )
                        self._update(rate_limited_at=utcnow_iso(), rate_limit_retry_after=round(s.failure_cooldown))
                        await self._sleep(s.failure_cooldown)
                        self._consecutive_failures = 0
                        self._update(rate_limited_at=None, rate_limit_retry_after=None)
                        continue

                if not active:
                    break

                done, _ = await asyncio.wait(
                    active, timeout=STOP_POLL_INTERVAL, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    entry = active.pop(task)
                    if entry.status == EntryStatus.COMPLETED:
                        self._consecutive_failures = 0
                    else:
                        self._consecutive_failures += 1
                if done:
                    self._update(count=self._count(EntryStatus.COMPLETED))

        except asyncio.CancelledError:
            await self._halt(active)
            raise

        completed = self._count(EntryStatus.COMPLETED)
        if stopping:
            self._update(count=completed, current_id=None)
            logger.info(f"Downloads for {self.session_id} stopped with {completed} completed")
            return TaskStatus.STOPPED

        errors = self._count(EntryStatus.ERROR)
        status = TaskStatus.ERROR if errors and not completed else TaskStatus.COMPLETED
        self._update(
            status=status,
            ended_at=utcnow_iso(),
            current_id=None,
            count=completed,
            error=f"All {errors} downloads failed" if status == TaskStatus.ERROR else None,
        )
        logger.info(f"Downloads for {self.session_id} finished: {completed} completed, {errors} errors")
        return status


@dataclass
class SingleDownloadResult:
    """Outcome of a one-off article download."""

    success: bool
    already_downloaded: bool = False
    error: str | None = None
    details: ArticleDownloadResult | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "already_downloaded": self.already_downloaded,
            "error": self.error,
            "details": self.details.to_dict() if self.details else None,
        }


async def download_single(
    store: SessionStore,
    downloader: ArticleDownloader,
    session_id: str,
    saved_id: str,
) -> SingleDownloadResult:
    """Download one article without touching the session's download task."""
    if store.has_content(session_id, saved_id):
        return SingleDownloadResult(success=True, already_downloaded=True)

    record = store.read_article(session_id, saved_id)
    if record is None:
        return SingleDownloadResult(success=False, error=f"Article {saved_id} not found")

    try:
        details = await downloader.download(session_id, record)
    except ArticleDownloadError as e:
        logger.warning(f"Error downloading article {saved_id}: {e}")
        return SingleDownloadResult(success=False, error=str(e))
    return SingleDownloadResult(success=True, details=details)
