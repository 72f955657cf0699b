"""Per-session task orchestration.

The registry starts, stops and reports on the fetch and download workers of
each session. Disk stays authoritative: the registry only caches live asyncio
tasks, and every status it reports is read back from the session store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from harvester.core.content_fetcher import ContentFetcher
from harvester.core.download_queue import (
    ArticleDownloader,
    DownloadQueue,
    SingleDownloadResult,
    download_single,
)
from harvester.core.fetch_job import FetchOrchestrator, FetchRunResult, Quota
from harvester.core.rate_limiter import RequestWindowLimiter
from harvester.core.session_store import SessionStore, TaskStatus, utcnow_iso
from harvester.core.settings import Settings
from harvester.providers.pocket import PocketClient, session_id_from_cookies

logger = logging.getLogger(__name__)

ClientFactory = Callable[[dict[str, Any]], PocketClient]


@dataclass
class SessionWorkers:
    """Live tasks for one session."""

    fetch: asyncio.Task[FetchRunResult] | None = None
    download: asyncio.Task[TaskStatus] | None = None
    queue: DownloadQueue | None = None
    # Bumped on every start and stop; a restart waiting on an old worker runs only if still current
    fetch_generation: int = 0
    download_generation: int = 0

    @property
    def fetch_running(self) -> bool:
        return self.fetch is not None and not self.fetch.done()

    @property
    def download_running(self) -> bool:
        return self.download is not None and not self.download.done()


class SessionRegistry:
    """Owns the store, the rate limiter and the live workers of every session."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore | None = None,
        *,
        client_factory: ClientFactory | None = None,
        fetcher: ContentFetcher | None = None,
        limiter: RequestWindowLimiter | None = None,
        quota: Quota | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or SessionStore(settings.sessions_dir)
        self.limiter = limiter or RequestWindowLimiter(self.store, settings)
        self._client_factory = client_factory or PocketClient.from_auth
        self._fetcher = fetcher or ContentFetcher(timeout=settings.download_timeout)
        self._downloader = ArticleDownloader(self.store, self._fetcher, settings)
        self._quota = quota
        self._workers: dict[str, SessionWorkers] = {}

    def workers(self, session_id: str) -> SessionWorkers:
        return self._workers.setdefault(session_id, SessionWorkers())

    # --- Auth ---

    def save_auth(self, cookie_string: str, headers: dict[str, str] | None = None) -> str:
        """Create a session for the account behind the cookies, or refresh its auth.

        Returns:
            The stable session id.
        """
        session_id = session_id_from_cookies(cookie_string)
        self.store.create_or_update_session(
            session_id, {"cookie_string": cookie_string, "headers": dict(headers or {})}
        )
        return session_id

    # --- Fetch ---

    async def _wind_down(self, session_id: str, previous: asyncio.Task[Any], kind: str) -> None:
        logger.info(f"Waiting for the stopped {kind} of {session_id} to exit before restarting")
        await asyncio.wait({previous})

    async def _run_fetch(
        self,
        session_id: str,
        client: PocketClient,
        previous: asyncio.Task[FetchRunResult] | None = None,
        generation: int = 0,
    ) -> FetchRunResult:
        try:
            if previous is not None:
                await self._wind_down(session_id, previous, "fetch")
                if self.workers(session_id).fetch_generation != generation:
                    # Stopped or restarted again while waiting
                    return FetchRunResult(
                        status=TaskStatus.STOPPED, count=len(self.store.list_article_ids(session_id))
                    )
            orchestrator = FetchOrchestrator(
                self.store, client, self.limiter, self.settings, quota=self._quota
            )
            return await orchestrator.run(session_id)
        finally:
            await client.aclose()

    async def start_fetch(self, session_id: str) -> asyncio.Task[FetchRunResult]:
        """Start the listing walk in the background.

        A live walk is reused while the persisted status reads running. After
        a stop, the new run starts once the old worker has exited.
        """
        session = self.store.require_session(session_id)
        workers = self.workers(session_id)
        previous = None
        if workers.fetch_running:
            if session.fetch_task.status == TaskStatus.RUNNING:
                logger.info(f"Fetch for {session_id} already running")
                return workers.fetch  # type: ignore[return-value]
            previous = workers.fetch

        client = self._client_factory(session.auth)
        workers.fetch_generation += 1
        workers.fetch = asyncio.create_task(
            self._run_fetch(session_id, client, previous, workers.fetch_generation),
            name=f"fetch-{session_id}",
        )
        return workers.fetch

    def stop(self, session_id: str) -> bool:
        """Request the fetch to stop. Returns False if it was not running."""
        session = self.store.require_session(session_id)
        workers = self.workers(session_id)
        if session.fetch_task.status != TaskStatus.RUNNING and not workers.fetch_running:
            return False
        workers.fetch_generation += 1
        self.store.update_fetch_task(session_id, status=TaskStatus.STOPPED, ended_at=utcnow_iso())
        logger.info(f"Stop requested for fetch {session_id}")
        return True

    # --- Downloads ---

    def _records_for(self, session_id: str, saved_ids: list[str] | None) -> list[dict[str, Any]]:
        if saved_ids is None:
            return self.store.load_articles(session_id)
        records = []
        for saved_id in saved_ids:
            record = self.store.read_article(session_id, saved_id)
            if record is None:
                logger.warning(f"Article {saved_id} not found in {session_id}, skipping")
                continue
            records.append(record)
        return records

    def _new_queue(self, session_id: str, saved_ids: list[str] | None) -> DownloadQueue:
        records = self._records_for(session_id, saved_ids)
        queue = DownloadQueue(session_id, records, self.store, self._downloader, self.settings)
        self.workers(session_id).queue = queue
        return queue

    async def _restart_download(
        self,
        session_id: str,
        saved_ids: list[str] | None,
        previous: asyncio.Task[TaskStatus],
        generation: int,
    ) -> TaskStatus:
        await self._wind_down(session_id, previous, "downloads")
        if self.workers(session_id).download_generation != generation:
            return TaskStatus.STOPPED
        # Built only now so articles the old queue finished count as done
        return await self._new_queue(session_id, saved_ids).run()

    async def start_download(
        self, session_id: str, saved_ids: list[str] | None = None
    ) -> asyncio.Task[TaskStatus]:
        """Start downloading content, newest first unless ``saved_ids`` gives an order.

        Only one download runs per session; a live one is reused while the
        persisted status reads running.
        """
        session = self.store.require_session(session_id)
        workers = self.workers(session_id)
        if workers.download_running:
            if session.download_task.status == TaskStatus.RUNNING:
                logger.info(f"Downloads for {session_id} already running")
                return workers.download  # type: ignore[return-value]
            workers.download_generation += 1
            workers.download = asyncio.create_task(
                self._restart_download(session_id, saved_ids, workers.download, workers.download_generation),
                name=f"download-{session_id}",
            )
            return workers.download

        workers.download_generation += 1
        queue = self._new_queue(session_id, saved_ids)
        workers.download = asyncio.create_task(queue.run(), name=f"download-{session_id}")
        return workers.download

    def stop_download(self, session_id: str) -> bool:
        """Request downloads to stop. Returns False if they were not running."""
        session = self.store.require_session(session_id)
        workers = self.workers(session_id)
        if session.download_task.status != TaskStatus.RUNNING and not workers.download_running:
            return False
        workers.download_generation += 1
        self.store.update_download_task(
            session_id, status=TaskStatus.STOPPED, ended_at=utcnow_iso(), current_id=None
        )
        logger.info(f"Stop requested for downloads {session_id}")
        return True

    async def download_single(self, session_id: str, saved_id: str) -> SingleDownloadResult:
        """Download one article outside the queue."""
        self.store.require_session(session_id)
        return await download_single(self.store, self._downloader, session_id, saved_id)

    # --- Rate limit ---

    def boost_rate_limit(self, session_id: str, remove_count: int = 25) -> int:
        """Discount the oldest requests from pacing. Returns how many were moved."""
        return self.limiter.boost(session_id, remove_count)

    # --- Status ---

    def get_status(self, session_id: str) -> dict[str, Any]:
        """Combined view of a session: tasks, counts, rate limit and disk usage."""
        session = self.store.require_session(session_id)
        workers = self.workers(session_id)
        size = self.store.session_size_bytes(session_id)
        return {
            "session": session.to_dict(include_auth=False),
            "fetch_task": session.fetch_task.to_dict(),
            "download_task": session.download_task.to_dict(),
            "articles": {
                "total": session.fetch_task.count,
                "downloaded": self.store.count_downloaded(session_id),
            },
            "rate_limit": self.limiter.status(session_id).to_dict(),
            "domain_delays": self._downloader.domain_delays(),
            "size": {"bytes": size, "mb": round(size / (1024 * 1024), 2)},
            "workers": {
                "fetch_running": workers.fetch_running,
                "download_running": workers.download_running,
            },
        }

    def get_download_status(self, session_id: str) -> dict[str, Any]:
        """Per-article download state: live queue entries first, then disk."""
        self.store.require_session(session_id)
        queue = self.workers(session_id).queue
        statuses = queue.entry_statuses() if queue else {}
        for saved_id in self.store.list_article_ids(session_id):
            if saved_id not in statuses:
                statuses[saved_id] = "completed" if self.store.has_content(session_id, saved_id) else "pending"

        values = list(statuses.values())
        return {
            "total": len(values),
            "completed": values.count("completed"),
            "downloading": values.count("downloading"),
            "errors": values.count("error"),
            "article_status": statuses,
        }

    # --- Lifecycle ---

    async def wait(self, session_id: str) -> None:
        """Wait for the session's live tasks to finish."""
        workers = self.workers(session_id)
        tasks = [t for t in (workers.fetch, workers.download) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _cancel(self, session_id: str) -> None:
        workers = self._workers.pop(session_id, None)
        if workers is None:
            return
        tasks = [t for t in (workers.fetch, workers.download) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def delete_session(self, session_id: str) -> bool:
        """Stop all workers and remove every file of the session."""
        self.store.require_session(session_id)
        await self._cancel(session_id)
        return self.store.delete_session(session_id)

    async def aclose(self) -> None:
        for session_id in list(self._workers):
            await self._cancel(session_id)
        await self._fetcher.close()


# Global registry instance
_registry: SessionRegistry | None = None


def init_registry(settings: Settings, **kwargs: Any) -> SessionRegistry:
    """Initialize the global SessionRegistry."""
    global _registry
    _registry = SessionRegistry(settings, **kwargs)
    return _registry


def get_registry() -> SessionRegistry:
    """Get the global SessionRegistry. Must call init_registry first."""
    if _registry is None:
        raise RuntimeError("SessionRegistry not initialized. Call init_registry first.")
    return _registry
