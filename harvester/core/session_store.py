"""Session and task state, persisted as a per-session directory tree.

Layout under ``sessions_dir``::

    <session_id>/session.json          session record with both task sub-records
    <session_id>/articles.json         aggregate list of known article ids
    <session_id>/articles/<savedId>/   index.json, original.html, images

Disk is the single source of truth: every read goes to disk and every mutation
goes through an atomic merge write.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from harvester.core.atomic import StoreError, deep_merge, read_record, write_record
from harvester.core.records import merge_article, tag_record

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
ARTICLE_INDEX_FILE = "articles.json"
ARTICLES_DIR = "articles"
RECORD_FILE = "index.json"
CONTENT_FILE = "original.html"


class SessionNotFoundError(StoreError):
    """No session record for the given id."""


class TaskStatus(str, Enum):
    """Status of a fetch or download task."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def session_id_for_token(bearer_token: str) -> str:
    """Stable session id derived from the long-lived auth token."""
    digest = hashlib.sha256(bearer_token.encode()).hexdigest()
    return f"pocket-{digest[:8]}-{digest[-8:]}"


@dataclass
class FetchTask:
    """Progress of the listing walk."""

    status: TaskStatus = TaskStatus.IDLE
    count: int = 0
    total: int = 0
    cursor: str | None = None
    current_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    rate_limited_at: datetime | None = None
    rate_limit_retry_after: int | None = None
    error: str | None = None
    rate_limit_state: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "count": self.count,
            "total": self.total,
            "cursor": self.cursor,
            "current_id": self.current_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "rate_limited_at": self.rate_limited_at.isoformat() if self.rate_limited_at else None,
            "rate_limit_retry_after": self.rate_limit_retry_after,
            "error": self.error,
            "rate_limit_state": self.rate_limit_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FetchTask:
        data = data or {}
        return cls(
            status=TaskStatus(data.get("status") or "idle"),
            count=data.get("count") or 0,
            total=data.get("total") or 0,
            cursor=data.get("cursor"),
            current_id=data.get("current_id"),
            started_at=_parse_dt(data.get("started_at")),
            ended_at=_parse_dt(data.get("ended_at")),
            rate_limited_at=_parse_dt(data.get("rate_limited_at")),
            rate_limit_retry_after=data.get("rate_limit_retry_after"),
            error=data.get("error"),
            rate_limit_state=data.get("rate_limit_state") or {},
        )


@dataclass
class DownloadTask:
    """Progress of content downloads."""

    status: TaskStatus = TaskStatus.IDLE
    count: int = 0
    total: int = 0
    current_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    rate_limited_at: datetime | None = None
    rate_limit_retry_after: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "count": self.count,
            "total": self.total,
            "current_id": self.current_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "rate_limited_at": self.rate_limited_at.isoformat() if self.rate_limited_at else None,
            "rate_limit_retry_after": self.rate_limit_retry_after,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DownloadTask:
        data = data or {}
        return cls(
            status=TaskStatus(data.get("status") or "idle"),
            count=data.get("count") or 0,
            total=data.get("total") or 0,
            current_id=data.get("current_id"),
            started_at=_parse_dt(data.get("started_at")),
            ended_at=_parse_dt(data.get("ended_at")),
            rate_limited_at=_parse_dt(data.get("rate_limited_at")),
            rate_limit_retry_after=data.get("rate_limit_retry_after"),
            error=data.get("error"),
        )


@dataclass
class Session:
    """One user's export session."""

    id: str
    auth: dict[str, Any]
    fetch_task: FetchTask
    download_task: DownloadTask
    created_at: datetime | None = None
    last_modified_at: datetime | None = None

    def to_dict(self, *, include_auth: bool = True) -> dict[str, Any]:
        auth: Any = self.auth
        if not include_auth:
            auth = {k: bool(v) for k, v in self.auth.items()}
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_modified_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
            "auth": auth,
            "fetch_task": self.fetch_task.to_dict(),
            "download_task": self.download_task.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            auth=data.get("auth") or {},
            fetch_task=FetchTask.from_dict(data.get("fetch_task")),
            download_task=DownloadTask.from_dict(data.get("download_task")),
            created_at=_parse_dt(data.get("created_at")),
            last_modified_at=_parse_dt(data.get("last_modified_at")),
        )


def _serialize_updates(updates: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in updates.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


def _article_sort_key(saved_id: str) -> tuple[int, int | str]:
    try:
        return (0, -int(saved_id))
    except ValueError:
        return (1, saved_id)


class SessionStore:
    """Directory-backed store for sessions and their articles. Thread-safe."""

    def __init__(self, sessions_dir: str | Path) -> None:
        self._root = Path(sessions_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    # --- Paths ---

    def session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._root / session_id

    def _session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / SESSION_FILE

    def articles_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / ARTICLES_DIR

    def article_dir(self, session_id: str, saved_id: str) -> Path:
        if not saved_id or "/" in saved_id or saved_id.startswith("."):
            raise ValueError(f"Invalid article id: {saved_id!r}")
        return self.articles_dir(session_id) / saved_id

    def content_path(self, session_id: str, saved_id: str) -> Path:
        return self.article_dir(session_id, saved_id) / CONTENT_FILE

    # --- Sessions ---

    def create_or_update_session(self, session_id: str, auth: dict[str, Any]) -> Session:
        """Create a session, or refresh auth on an existing one.

        Re-authenticating an existing session resets a non-running fetch task to
        idle with counts taken from disk; the cursor is kept so the next run
        resumes.
        """
        now = utcnow_iso()
        with self._lock:
            existing = read_record(self._session_path(session_id))
            if existing is None:
                session = Session(
                    id=session_id,
                    auth=auth,
                    fetch_task=FetchTask(),
                    download_task=DownloadTask(),
                    created_at=datetime.fromisoformat(now),
                    last_modified_at=datetime.fromisoformat(now),
                )
                write_record(self._session_path(session_id), session.to_dict())
                logger.info(f"Created session {session_id}")
                return session

            count = len(self.list_article_ids(session_id))
            fetch_task = existing.get("fetch_task") or {}
            updates: dict[str, Any] = {"last_modified_at": now}
            if fetch_task.get("status") != TaskStatus.RUNNING.value:
                updates["fetch_task"] = {
                    "status": TaskStatus.IDLE.value,
                    "count": count,
                    "total": max(count, fetch_task.get("total") or 0),
                    "error": None,
                }
            # auth is replaced wholesale, not merged
            write_record(
                self._session_path(session_id),
                updates,
                merge=True,
                merge_fn=lambda cur, new: {**deep_merge(cur, new), "auth": auth},
            )
        logger.info(f"Updated auth for session {session_id}")
        return self.get_session(session_id)  # type: ignore[return-value]

    def get_session(self, session_id: str) -> Session | None:
        """Read a session from disk, or None. Fetch count is recomputed from disk."""
        data = read_record(self._session_path(session_id))
        if data is None:
            return None
        session = Session.from_dict(data)
        session.fetch_task.count = len(self.list_article_ids(session_id))
        return session

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def list_sessions(self) -> list[str]:
        return sorted(
            p.name for p in self._root.iterdir()
            if p.is_dir() and (p / SESSION_FILE).exists()
        )

    def _update_task(self, session_id: str, key: str, updates: dict[str, Any]) -> None:
        path = self._session_path(session_id)
        if not path.exists():
            raise SessionNotFoundError(f"Session {session_id} not found")
        write_record(
            path,
            {key: _serialize_updates(updates), "last_modified_at": utcnow_iso()},
            merge=True,
        )

    def update_fetch_task(self, session_id: str, **updates: Any) -> None:
        """Merge field updates into the persisted fetch task."""
        self._update_task(session_id, "fetch_task", updates)

    def update_download_task(self, session_id: str, **updates: Any) -> None:
        """Merge field updates into the persisted download task."""
        self._update_task(session_id, "download_task", updates)

    def delete_session(self, session_id: str) -> bool:
        """Remove all persisted state. Returns True if anything was deleted."""
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            return False
        shutil.rmtree(session_dir)
        logger.info(f"Deleted session {session_id}")
        return True

    def session_size_bytes(self, session_id: str) -> int:
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            return 0
        return sum(p.stat().st_size for p in session_dir.rglob("*") if p.is_file())

    # --- Articles ---

    def list_article_ids(self, session_id: str) -> list[str]:
        """Ids of valid article directories (those holding a record), newest first."""
        articles_dir = self.articles_dir(session_id)
        if not articles_dir.is_dir():
            return []
        ids = [
            p.name for p in articles_dir.iterdir()
            if not p.name.startswith(".") and p.is_dir() and (p / RECORD_FILE).exists()
        ]
        ids.sort(key=_article_sort_key)
        return ids

    def has_article(self, session_id: str, saved_id: str) -> bool:
        return (self.article_dir(session_id, saved_id) / RECORD_FILE).exists()

    def has_content(self, session_id: str, saved_id: str) -> bool:
        return self.content_path(session_id, saved_id).exists()

    def read_article(self, session_id: str, saved_id: str) -> dict[str, Any] | None:
        return read_record(self.article_dir(session_id, saved_id) / RECORD_FILE)

    def save_article(self, session_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Merge-write an article record into its directory."""
        saved_id = str(record["savedId"])
        return write_record(
            self.article_dir(session_id, saved_id) / RECORD_FILE,
            tag_record(record),
            merge=True,
            merge_fn=merge_article,
        )

    def load_articles(self, session_id: str) -> list[dict[str, Any]]:
        """All readable article records, newest first."""
        records = []
        for saved_id in self.list_article_ids(session_id):
            record = self.read_article(session_id, saved_id)
            if record is None:
                logger.warning(f"Failed to load article {saved_id}")
                continue
            records.append(record)
        records.sort(key=lambda r: r.get("_createdAt") or 0, reverse=True)
        return records

    def count_downloaded(self, session_id: str) -> int:
        return sum(1 for a in self.list_article_ids(session_id) if self.has_content(session_id, a))

    def write_article_index(self, session_id: str) -> list[str]:
        """Rewrite the aggregate article listing from disk."""
        ids = self.list_article_ids(session_id)
        write_record(
            self.session_dir(session_id) / ARTICLE_INDEX_FILE,
            {"article_ids": ids, "updated_at": utcnow_iso()},
        )
        return ids

    def read_article_index(self, session_id: str) -> list[str]:
        """Fast enumeration from the aggregate file, falling back to a scan."""
        data = read_record(self.session_dir(session_id) / ARTICLE_INDEX_FILE)
        if data is None:
            return self.list_article_ids(session_id)
        return list(data.get("article_ids") or [])

