"""Request pacing.

Provides:
- RequestWindowLimiter: per-session sliding one-hour window against the
  upstream request quota, persisted in the session's fetch task
- DomainRateLimiter: per-domain polite delays for direct content fetches
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from harvester.core.session_store import SessionStore
from harvester.core.settings import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of a session's request window."""

    requests_in_last_hour: int
    is_in_slow_mode: bool
    next_request_available: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_in_last_hour": self.requests_in_last_hour,
            "is_in_slow_mode": self.is_in_slow_mode,
            "next_request_available": self.next_request_available.isoformat(),
        }


@dataclass
class RequestWindow:
    """Request timestamps within the last hour, oldest first.

    ``boosted_times`` were discounted from pacing by a boost but still count
    against the hard hourly cap.
    """

    request_times: list[float]
    boosted_times: list[float]

    @classmethod
    def from_state(cls, state: dict[str, Any] | None) -> RequestWindow:
        state = state or {}
        return cls(
            request_times=sorted(float(t) for t in state.get("request_times") or []),
            boosted_times=sorted(float(t) for t in state.get("boosted_times") or []),
        )

    def to_state(self) -> dict[str, Any]:
        return {"request_times": self.request_times, "boosted_times": self.boosted_times}

    def prune(self, now: float, hour: float, max_count: int) -> None:
        self.request_times = [t for t in self.request_times if now - t < hour][-max_count:]
        self.boosted_times = [t for t in self.boosted_times if now - t < hour][-max_count:]

    @property
    def paced_count(self) -> int:
        return len(self.request_times)

    @property
    def total_count(self) -> int:
        return len(self.request_times) + len(self.boosted_times)

    def oldest(self) -> float | None:
        candidates = self.request_times[:1] + self.boosted_times[:1]
        return min(candidates) if candidates else None

    def last(self) -> float | None:
        candidates = self.request_times[-1:] + self.boosted_times[-1:]
        return max(candidates) if candidates else None


class RequestWindowLimiter:
    """Two-speed pacing against a hard hourly request cap.

    The first ``fast_request_limit`` requests in the window go out with only a
    minimal gap; after that requests are spaced ``slow_request_delay`` apart.
    At ``max_requests_per_hour - 1`` requests the limiter blocks until the
    oldest one ages out. State lives on disk, never only in memory.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._sleep = sleep

    def _load(self, session_id: str) -> RequestWindow:
        session = self._store.require_session(session_id)
        return RequestWindow.from_state(session.fetch_task.rate_limit_state)

    def _save(self, session_id: str, window: RequestWindow) -> None:
        s = self._settings
        window.prune(self._clock(), s.hour, s.max_requests_per_hour)
        self._store.update_fetch_task(session_id, rate_limit_state=window.to_state())

    async def enforce(self, session_id: str) -> None:
        """Wait until the next upstream request is allowed, then record it."""
        s = self._settings
        window = self._load(session_id)
        now = self._clock()
        window.prune(now, s.hour, s.max_requests_per_hour)

        if window.paced_count < s.fast_request_limit:
            delay = s.fast_request_delay
        else:
            delay = s.slow_request_delay
            if window.paced_count == s.fast_request_limit:
                logger.info(
                    f"Approaching rate limit ({window.total_count}/{s.max_requests_per_hour} "
                    f"requests in last hour), slowing to one request every {delay:.0f}s"
                )

        last = window.last()
        if last is not None:
            wait_time = delay - (now - last)
            if wait_time > 0:
                if delay == s.slow_request_delay:
                    logger.info(f"Rate limiting: waiting {wait_time:.0f}s before next request")
                await self._sleep(wait_time)

        while window.total_count >= s.max_requests_per_hour - 1:
            oldest = window.oldest()
            wait_time = (oldest + s.hour) - self._clock() if oldest is not None else 0
            if wait_time > 0:
                logger.warning(
                    f"At rate limit ({window.total_count}/{s.max_requests_per_hour}). "
                    f"Waiting {wait_time:.0f}s for oldest request to expire"
                )
                await self._sleep(wait_time + s.cap_safety_margin)
            window.prune(self._clock(), s.hour, s.max_requests_per_hour)

        window.request_times.append(self._clock())
        self._save(session_id, window)

    def status(self, session_id: str) -> RateLimitStatus:
        """Requests in window, slow-mode flag (with hysteresis), next allowed time."""
        s = self._settings
        window = self._load(session_id)
        now = self._clock()

        last = window.last()
        # Mode in force when the last request was made, judged on the window as it was then
        at_last = sum(1 for t in window.request_times if t < last and last - t < s.hour) if last is not None else 0
        was_slow = at_last >= s.fast_request_limit

        window.prune(now, s.hour, s.max_requests_per_hour)
        in_window = window.paced_count
        last = window.last()
        if last is None:
            return RateLimitStatus(0, False, datetime.fromtimestamp(now, tz=timezone.utc))

        is_slow = in_window >= s.fast_request_limit or (
            was_slow and in_window >= s.slow_mode_exit_threshold
        )

        next_at = last + (s.slow_request_delay if is_slow else s.fast_request_delay)
        if window.total_count >= s.max_requests_per_hour - 1:
            oldest = window.oldest()
            if oldest is not None:
                next_at = max(next_at, oldest + s.hour + s.cap_safety_margin)

        return RateLimitStatus(
            requests_in_last_hour=window.total_count,
            is_in_slow_mode=is_slow,
            next_request_available=datetime.fromtimestamp(max(next_at, now), tz=timezone.utc),
        )

    def boost(self, session_id: str, remove_count: int = 25) -> int:
        """Discount the oldest timestamps from pacing. Returns how many were moved.

        Boosted timestamps still count toward the hard hourly cap.
        """
        window = self._load(session_id)
        if window.paced_count <= remove_count:
            return 0
        moved = window.request_times[:remove_count]
        window.request_times = window.request_times[remove_count:]
        window.boosted_times = sorted(window.boosted_times + moved)
        self._save(session_id, window)
        logger.info(
            f"Boosted session {session_id}: {len(moved)} oldest requests no longer slow pacing "
            f"({window.paced_count} paced in last hour)"
        )
        return len(moved)


class DomainRateLimiter:
    """Per-domain rate limiting with adaptive delays.

    - min_delay: Base delay between requests to same domain
    - max_delay: Maximum delay after repeated failures
    - Delays increase on failures, reset on success
    """

    FAILURE_MULTIPLIER = 1.5

    def __init__(self, min_delay: float = 1.0, max_delay: float = 10.0) -> None:
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._last_request: dict[str, float] = defaultdict(float)
        self._delays: dict[str, float] = defaultdict(lambda: self.min_delay)
        self._lock = threading.Lock()

    def _get_domain(self, url: str) -> str:
        domain = urlparse(url).netloc.lower()
        if domain.startswith("www."):
            domain = domain[4:]
        return domain

    async def wait_for_domain(self, url: str) -> None:
        """Wait if needed before making request to this domain."""
        domain = self._get_domain(url)

        with self._lock:
            last = self._last_request[domain]
            delay = self._delays[domain]
            # Reserve the slot so concurrent workers queue behind each other
            now = time.monotonic()
            slot = max(now, last + delay) if last else now
            self._last_request[domain] = slot

        wait_time = slot - now
        if wait_time > 0:
            logger.debug(f"Rate limit: waiting {wait_time:.1f}s for {domain}")
            await asyncio.sleep(wait_time)

    def record_success(self, url: str) -> None:
        domain = self._get_domain(url)
        with self._lock:
            self._delays[domain] = self.min_delay

    def record_failure(self, url: str) -> None:
        domain = self._get_domain(url)
        with self._lock:
            new_delay = min(self._delays[domain] * self.FAILURE_MULTIPLIER, self.max_delay)
            if new_delay <= 0:
                new_delay = min(self.max_delay, 0.5)
            self._delays[domain] = new_delay
            logger.debug(f"Rate limit: increased delay for {domain} to {new_delay:.1f}s")

    def get_stats(self) -> dict[str, float]:
        with self._lock:
            return dict(self._delays)
