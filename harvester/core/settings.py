from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    sessions_dir: str

    # Upstream request quota
    max_requests_per_hour: int = 100
    fast_request_limit: int = 75
    fast_request_delay: float = 0.1
    slow_request_delay: float = 120.0
    slow_mode_exit_threshold: int = 50
    cap_safety_margin: float = 1.0

    # Listing pagination
    page_size: int = 1000
    shrunk_page_size: int = 100
    duplicate_page_threshold: int = 3
    max_rate_limit_retries: int = 10
    max_cursor_resets: int = 3
    rate_limit_backoff_initial: float = 1.0
    rate_limit_backoff_max: float = 1200.0
    article_limit: int | None = None

    # Content downloads
    download_concurrency: int = 3
    download_timeout: float = 20.0
    max_article_bytes: int = 25 * 1024 * 1024
    consecutive_failure_threshold: int = 5
    failure_cooldown: float = 60.0
    domain_min_delay: float = 1.0
    domain_max_delay: float = 10.0

    @property
    def hour(self) -> float:
        return 3600.0

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _opt_i(name: str) -> int | None:
            raw = os.getenv(name, "").strip()
            return int(raw) if raw else None

        return Settings(
            sessions_dir=os.getenv("HARVESTER_SESSIONS_DIR", "./sessions").strip(),
            max_requests_per_hour=_i("HARVESTER_MAX_REQUESTS_PER_HOUR", "100"),
            fast_request_limit=_i("HARVESTER_FAST_REQUEST_LIMIT", "75"),
            fast_request_delay=_f("HARVESTER_FAST_REQUEST_DELAY", "0.1"),
            slow_request_delay=_f("HARVESTER_SLOW_REQUEST_DELAY", "120"),
            slow_mode_exit_threshold=_i("HARVESTER_SLOW_MODE_EXIT_THRESHOLD", "50"),
            cap_safety_margin=_f("HARVESTER_CAP_SAFETY_MARGIN", "1.0"),
            page_size=_i("HARVESTER_PAGE_SIZE", "1000"),
            shrunk_page_size=_i("HARVESTER_SHRUNK_PAGE_SIZE", "100"),
            duplicate_page_threshold=_i("HARVESTER_DUPLICATE_PAGE_THRESHOLD", "3"),
            max_rate_limit_retries=_i("HARVESTER_MAX_RATE_LIMIT_RETRIES", "10"),
            max_cursor_resets=_i("HARVESTER_MAX_CURSOR_RESETS", "3"),
            rate_limit_backoff_initial=_f("HARVESTER_RATE_LIMIT_BACKOFF_INITIAL", "1.0"),
            rate_limit_backoff_max=_f("HARVESTER_RATE_LIMIT_BACKOFF_MAX", "1200"),
            article_limit=_opt_i("HARVESTER_ARTICLE_LIMIT"),
            download_concurrency=_i("HARVESTER_DOWNLOAD_CONCURRENCY", "3"),
            download_timeout=_f("HARVESTER_DOWNLOAD_TIMEOUT", "20"),
            max_article_bytes=int(_f("HARVESTER_MAX_ARTICLE_MB", "25") * 1024 * 1024),
            consecutive_failure_threshold=_i("HARVESTER_CONSECUTIVE_FAILURE_THRESHOLD", "5"),
            failure_cooldown=_f("HARVESTER_FAILURE_COOLDOWN", "60"),
            domain_min_delay=_f("HARVESTER_DOMAIN_MIN_DELAY", "1.0"),
            domain_max_delay=_f("HARVESTER_DOMAIN_MAX_DELAY", "10.0"),
        )
