"""Tests for fetch_job.py"""

from unittest.mock import AsyncMock

import httpx
import pytest

from harvester.core.atomic import ConcurrentModificationError, StoreError
from harvester.core.fetch_job import (
    DuplicateEscape,
    EscapeStep,
    FetchOrchestrator,
    article_limit_quota,
)
from harvester.core.session_store import SessionStore, TaskStatus
from harvester.core.settings import Settings
from harvester.providers.pocket import (
    ListPage,
    PocketAuthError,
    PocketCursorError,
    PocketRateLimitError,
    PocketResponseError,
    SortOrder,
)

AUTH = {"cookie_string": "PHPSESSID=a; AUTH_BEARER_default=b", "headers": {}}


def _item(saved_id, article=None):
    item = {"title": f"Title {saved_id}", "domain": "example.com"}
    if article is not None:
        item["article"] = article
    return {"savedId": str(saved_id), "title": f"Saved {saved_id}", "url": f"https://example.com/{saved_id}", "item": item}


def _page(ids, end_cursor=None, has_next=False, total=None):
    return ListPage(items=[_item(i) for i in ids], end_cursor=end_cursor, has_next_page=has_next, total_count=total)


class FakeClient:
    """Returns queued pages or raises queued exceptions."""

    def __init__(self, responses, on_call=None):
        self.responses = list(responses)
        self.calls = []
        self.on_call = on_call

    async def list_saved_items(self, sort_order, page_size, cursor):
        self.calls.append((SortOrder(sort_order), page_size, cursor))
        if self.on_call:
            self.on_call(len(self.calls))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeSleep:
    def __init__(self):
        self.sleeps = []

    async def __call__(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def store(tmp_path):
    store = SessionStore(tmp_path / "sessions")
    store.create_or_update_session("s1", AUTH)
    return store


@pytest.fixture
def settings(tmp_path):
    return Settings(sessions_dir=str(tmp_path / "sessions"))


def _orchestrator(store, client, settings, **kwargs):
    sleep = kwargs.pop("sleep", None) or FakeSleep()
    orchestrator = FetchOrchestrator(store, client, AsyncMock(), settings, sleep=sleep, **kwargs)
    return orchestrator, sleep


def _seed(store, ids):
    for saved_id in ids:
        store.save_article("s1", _item(saved_id))


class TestDuplicateEscape:
    """Tests for DuplicateEscape."""

    def _escape(self):
        return DuplicateEscape(threshold=2, normal_page_size=10, shrunk_page_size=5)

    def test_stages(self):
        escape = self._escape()
        assert escape.observe(3, 0, "a") is EscapeStep.NONE
        assert escape.observe(3, 0, "b") is EscapeStep.FLIP
        assert escape.sort_order is SortOrder.ASC
        assert escape.remembered_cursor == "b"

        escape.observe(3, 0, "x")
        assert escape.observe(3, 0, "y") is EscapeStep.SHRINK
        assert escape.page_size == 5

        escape.observe(3, 0, "z")
        assert escape.observe(3, 0, "w") is EscapeStep.REVERT
        assert escape.sort_order is SortOrder.DESC
        assert escape.page_size == 10

        # No escalation after the revert
        for cursor in ["p", "q", "r", "s"]:
            assert escape.observe(3, 0, cursor) is EscapeStep.NONE

    def test_new_items_reset(self):
        escape = self._escape()
        escape.observe(3, 0, "a")
        escape.observe(3, 0, "b")
        escape.observe(3, 0, "c")
        escape.observe(3, 0, "d")
        assert escape.stage == 2

        assert escape.observe(3, 1, "e") is EscapeStep.NONE
        assert escape.stage == 1
        assert escape.page_size == 10
        assert escape.duplicate_pages == 0

    def test_empty_page_is_not_duplicate(self):
        escape = self._escape()
        for _ in range(5):
            assert escape.observe(0, 0, "a") is EscapeStep.NONE
        assert escape.duplicate_pages == 0

    def test_resume_cursor(self):
        escape = self._escape()
        assert escape.resume_cursor("c") == "c"
        escape.observe(3, 0, "a")
        escape.observe(3, 0, "b")
        assert escape.resume_cursor("flipped") == "b"


class TestQuota:
    """Tests for article_limit_quota."""

    def test_no_limit(self):
        assert article_limit_quota(None) is None

    def test_limit(self):
        quota = article_limit_quota(2)
        assert quota(1) is True
        assert quota(2) is False


@pytest.mark.asyncio
class TestFetchOrchestrator:
    """Tests for FetchOrchestrator.run."""

    async def test_two_pages_complete(self, store, settings):
        first = ListPage(
            items=[_item(1, "<p>one</p>"), _item(2), _item(3)], end_cursor="c1", has_next_page=True, total_count=6
        )
        client = FakeClient([first, _page([4, 5, 6], total=6)])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert result.count == 6
        assert result.new_items == 6
        assert result.pages == 2
        assert client.calls == [(SortOrder.DESC, 1000, None), (SortOrder.DESC, 1000, "c1")]
        assert orchestrator._limiter.enforce.await_count == 2

        task = store.require_session("s1").fetch_task
        assert task.status == TaskStatus.COMPLETED
        assert task.cursor is None
        assert task.count == 6
        assert task.total == 6
        assert task.error is None
        assert store.read_article_index("s1") == ["6", "5", "4", "3", "2", "1"]

        assert store.content_path("s1", "1").read_text() == "<p>one</p>"
        assert "article" not in store.read_article("s1", "1")["item"]
        assert not store.has_content("s1", "2")

    async def test_rerun_skips_existing(self, store, settings, monkeypatch):
        _seed(store, [1, 2, 3])
        saves = []
        original = store.save_article

        def tracking_save(session_id, record):
            saves.append(record["savedId"])
            return original(session_id, record)

        monkeypatch.setattr(store, "save_article", tracking_save)
        client = FakeClient([_page([1, 2, 3, 4])])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert result.new_items == 1
        assert result.count == 4
        assert saves == ["4"]

    async def test_resumes_from_cursor(self, store, settings):
        store.update_fetch_task("s1", cursor="saved-cursor", status=TaskStatus.STOPPED)
        client = FakeClient([_page([1])])
        orchestrator, _ = _orchestrator(store, client, settings)

        await orchestrator.run("s1")
        assert client.calls[0][2] == "saved-cursor"

    async def test_auth_error(self, store, settings):
        store.update_fetch_task("s1", cursor="c5")
        client = FakeClient([PocketAuthError("expired")])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.ERROR
        task = store.require_session("s1").fetch_task
        assert task.status == TaskStatus.ERROR
        assert task.error == "Authentication expired"
        assert task.cursor == "c5"
        assert task.ended_at is not None

    async def test_rate_limit_backoff_then_success(self, store, settings):
        client = FakeClient([PocketRateLimitError("429"), PocketRateLimitError("429"), _page([1])])
        orchestrator, sleep = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert sleep.sleeps == [1.0, 2.0]
        task = store.require_session("s1").fetch_task
        assert task.rate_limited_at is None
        assert task.rate_limit_retry_after is None

    async def test_rate_limit_backoff_capped(self, store, tmp_path):
        settings = Settings(sessions_dir=str(tmp_path / "sessions"), rate_limit_backoff_max=3.0)
        client = FakeClient([PocketRateLimitError("429")] * 4 + [_page([1])])
        orchestrator, sleep = _orchestrator(store, client, settings)

        await orchestrator.run("s1")
        assert sleep.sleeps == [1.0, 2.0, 3.0, 3.0]

    async def test_rate_limit_retries_exhausted(self, store, tmp_path):
        settings = Settings(sessions_dir=str(tmp_path / "sessions"), max_rate_limit_retries=2)
        client = FakeClient([PocketRateLimitError("429")] * 3)
        orchestrator, sleep = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.ERROR
        assert result.error == "Max rate limit retries exceeded"
        assert sleep.sleeps == [1.0, 2.0]

    async def test_rate_limit_recorded_while_waiting(self, store, settings):
        seen = {}

        def on_call(n):
            if n == 2:
                seen["task"] = store.require_session("s1").fetch_task

        client = FakeClient([PocketRateLimitError("429", retry_after=30), _page([1])], on_call=on_call)
        orchestrator, sleep = _orchestrator(store, client, settings)

        await orchestrator.run("s1")

        assert sleep.sleeps == [30]
        assert seen["task"].rate_limited_at is not None
        assert seen["task"].rate_limit_retry_after == 30

    async def test_cursor_reset(self, store, settings):
        store.update_fetch_task("s1", cursor="stale")
        client = FakeClient([PocketCursorError("Cursor not found"), _page([1])])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert [call[2] for call in client.calls] == ["stale", None]

    async def test_cursor_reset_limit(self, store, tmp_path):
        settings = Settings(sessions_dir=str(tmp_path / "sessions"), max_cursor_resets=1)
        client = FakeClient([PocketCursorError("Cursor not found")] * 2)
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")
        assert result.status == TaskStatus.ERROR
        assert "Cursor reset limit exceeded" in result.error

    async def test_stop_between_pages(self, store, settings):
        def on_call(n):
            if n == 1:
                store.update_fetch_task("s1", status=TaskStatus.STOPPED)

        client = FakeClient([_page([1, 2], end_cursor="c1", has_next=True), _page([3])], on_call=on_call)
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.STOPPED
        assert len(client.calls) == 1
        task = store.require_session("s1").fetch_task
        assert task.status == TaskStatus.STOPPED
        assert task.cursor == "c1"
        assert task.count == 2

    async def test_quota_stops_mid_page(self, store, settings):
        client = FakeClient([_page([1, 2, 3], end_cursor="c1", has_next=True), _page([4, 5, 6], end_cursor="c2", has_next=True)])
        orchestrator, _ = _orchestrator(store, client, settings, quota=article_limit_quota(4))

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.STOPPED
        assert result.error == "Article limit reached (4 stored)"
        assert store.list_article_ids("s1") == ["4", "3", "2", "1"]
        task = store.require_session("s1").fetch_task
        # Cursor stays on the partially processed page
        assert task.cursor == "c1"

    async def test_quota_already_reached(self, store, settings):
        _seed(store, [1, 2])
        client = FakeClient([])
        orchestrator, _ = _orchestrator(store, client, settings, quota=article_limit_quota(2))

        result = await orchestrator.run("s1")
        assert result.status == TaskStatus.STOPPED
        assert client.calls == []

    async def test_duplicate_escape_walk(self, store, tmp_path):
        settings = Settings(
            sessions_dir=str(tmp_path / "sessions"), duplicate_page_threshold=2, page_size=10, shrunk_page_size=5
        )
        _seed(store, [1, 2, 3, 4, 5, 6])
        persisted = {}

        def on_call(n):
            persisted[n] = store.require_session("s1").fetch_task.cursor

        client = FakeClient(
            [
                _page([1, 2], "a", True),
                _page([3, 4], "b", True),
                _page([5, 6], "x", True),
                _page([1, 2], "y", True),
                _page([3], "z", True),
                _page([4], "w", True),
                _page([7]),
            ],
            on_call=on_call,
        )
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert result.new_items == 1
        assert client.calls == [
            (SortOrder.DESC, 10, None),
            (SortOrder.DESC, 10, "a"),
            (SortOrder.ASC, 10, None),
            (SortOrder.ASC, 10, "x"),
            (SortOrder.ASC, 5, "y"),
            (SortOrder.ASC, 5, "z"),
            (SortOrder.DESC, 10, "b"),
        ]
        # While walking flipped, the persisted cursor is the one to resume the normal order from
        assert persisted[4] == "b"
        assert persisted[6] == "b"

    async def test_missing_end_cursor(self, store, settings):
        client = FakeClient([ListPage(items=[_item(1)], end_cursor=None, has_next_page=True)])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")
        assert result.status == TaskStatus.ERROR
        assert "missing end cursor" in result.error

    @pytest.mark.parametrize(
        "error",
        [PocketResponseError("Invalid response structure"), httpx.ConnectError("boom")],
    )
    async def test_other_errors(self, store, settings, error):
        client = FakeClient([error])
        orchestrator, _ = _orchestrator(store, client, settings)

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.ERROR
        assert store.require_session("s1").fetch_task.error == str(error)


class CursorListing:
    """Serves a fixed library by cursor, like the listing API."""

    def __init__(self, pages, on_call=None):
        self.pages = pages
        self.calls = []
        self.on_call = on_call

    async def list_saved_items(self, sort_order, page_size, cursor):
        self.calls.append(cursor)
        if self.on_call:
            self.on_call(len(self.calls))
        return self.pages[cursor]


THREE_PAGES = {
    None: _page([1, 2], end_cursor="c1", has_next=True, total=6),
    "c1": _page([3, 4], end_cursor="c2", has_next=True, total=6),
    "c2": _page([5, 6], total=6),
}


@pytest.mark.asyncio
class TestInterruptedFetch:
    """Tests for stopping a fetch part way and running it again."""

    async def test_resumed_run_matches_uninterrupted_run(self, store, settings, tmp_path):
        other = SessionStore(tmp_path / "other")
        other.create_or_update_session("s1", AUTH)
        uninterrupted, _ = _orchestrator(other, CursorListing(THREE_PAGES), settings)
        assert (await uninterrupted.run("s1")).status == TaskStatus.COMPLETED

        def stop_after_first(n):
            if n == 1:
                store.update_fetch_task("s1", status=TaskStatus.STOPPED)

        first_listing = CursorListing(THREE_PAGES, on_call=stop_after_first)
        first, _ = _orchestrator(store, first_listing, settings)
        assert (await first.run("s1")).status == TaskStatus.STOPPED
        assert store.list_article_ids("s1") == ["2", "1"]

        second_listing = CursorListing(THREE_PAGES)
        second, _ = _orchestrator(store, second_listing, settings)
        result = await second.run("s1")

        assert result.status == TaskStatus.COMPLETED
        assert second_listing.calls == ["c1", "c2"]
        assert store.list_article_ids("s1") == other.list_article_ids("s1")
        assert store.read_article_index("s1") == other.read_article_index("s1")
        for saved_id in other.list_article_ids("s1"):
            mine = store.read_article("s1", saved_id)
            theirs = other.read_article("s1", saved_id)
            assert (mine["title"], mine["url"]) == (theirs["title"], theirs["url"])
        task = store.require_session("s1").fetch_task
        assert task.cursor is None
        assert task.count == 6

    async def test_stop_during_pacing_wait(self, store, settings):
        client = FakeClient([_page([1])])
        limiter = AsyncMock()

        async def enforce(session_id):
            store.update_fetch_task(session_id, status=TaskStatus.STOPPED)

        limiter.enforce.side_effect = enforce
        orchestrator = FetchOrchestrator(store, client, limiter, settings, sleep=FakeSleep())

        result = await orchestrator.run("s1")

        assert result.status == TaskStatus.STOPPED
        assert client.calls == []


@pytest.mark.asyncio
class TestStoreFailure:
    """Tests for session store failures during a fetch."""

    async def test_failure_recorded_before_raising(self, store, settings, monkeypatch):
        def failing_save(session_id, record):
            raise ConcurrentModificationError("article.json changed during write")

        monkeypatch.setattr(store, "save_article", failing_save)
        client = FakeClient([_page([1, 2])])
        orchestrator, _ = _orchestrator(store, client, settings)

        with pytest.raises(ConcurrentModificationError):
            await orchestrator.run("s1")

        task = store.require_session("s1").fetch_task
        assert task.status == TaskStatus.ERROR
        assert task.error == "article.json changed during write"
        assert task.ended_at is not None

    async def test_original_error_raised_when_status_write_fails(self, store, settings, monkeypatch):
        def failing_save(session_id, record):
            raise ConcurrentModificationError("article.json changed during write")

        client = FakeClient([_page([1])])
        orchestrator, _ = _orchestrator(store, client, settings)
        monkeypatch.setattr(store, "save_article", failing_save)
        original_update = store.update_fetch_task

        def update(session_id, **fields):
            if fields.get("status") == TaskStatus.ERROR:
                raise StoreError("disk full")
            return original_update(session_id, **fields)

        monkeypatch.setattr(store, "update_fetch_task", update)

        with pytest.raises(ConcurrentModificationError):
            await orchestrator.run("s1")
