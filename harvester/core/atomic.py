"""Crash-safe JSON and binary writes via temp-file-then-rename.

A reader never observes a partially written file: every write lands in a
hidden temp sibling first and is moved over the target with ``os.replace``.
Merge writes re-read the target, merge, and detect concurrent writers by
comparing the target's mtime before and after.
"""

from __future__ import annotations

import json
import logging
import os
import random
import secrets
import time
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

MergeFn = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


class StoreError(Exception):
    """Base exception for persistence errors."""


class ConcurrentModificationError(StoreError):
    """Target kept changing underneath a merge write."""


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Merge source into a copy of target.

    Nested dicts merge key-wise; any other incoming value replaces the old one.
    """
    output = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(output.get(key), dict):
            output[key] = deep_merge(output[key], value)
        else:
            output[key] = value
    return output


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None


def temp_path_for(path: Path) -> Path:
    """Unique hidden temp sibling of path."""
    return path.with_name(f".{path.name}.{secrets.token_hex(8)}.tmp")


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def read_record(path: str | os.PathLike[str]) -> dict[str, Any] | None:
    """Read a JSON record, or None if missing or unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable record {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def write_record(
    path: str | os.PathLike[str],
    data: dict[str, Any],
    *,
    merge: bool = False,
    retries: int = 3,
    merge_fn: MergeFn = deep_merge,
) -> dict[str, Any]:
    """Atomically write a JSON record.

    Args:
        path: Target file; parent directories are created.
        data: Record (or partial record when merging).
        merge: Merge into the existing record instead of replacing it.
        retries: Attempts before giving up on a racing writer.
        merge_fn: Function combining (existing, incoming).

    Returns:
        The record as written.

    Raises:
        ConcurrentModificationError: If the target changed during every attempt.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(1, retries + 1):
        tmp = temp_path_for(target)
        try:
            final = data
            mtime_before = None
            if merge:
                mtime_before = _mtime_ns(target)
                current = read_record(target)
                if current is not None:
                    final = merge_fn(current, data)

            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(final, f, indent=2, ensure_ascii=False)

            if merge:
                mtime_after = _mtime_ns(target)
                if mtime_before is not None and mtime_after != mtime_before:
                    _discard(tmp)
                    if attempt < retries:
                        logger.debug(f"{target} changed during merge, retrying ({attempt}/{retries})")
                        time.sleep(random.random() * 0.1)
                        continue
                    raise ConcurrentModificationError(
                        f"{target} was modified during write after {retries} attempts"
                    )

            os.replace(tmp, target)
            return final
        except BaseException:
            _discard(tmp)
            raise

    raise ConcurrentModificationError(f"{target} could not be written")


def write_bytes(path: str | os.PathLike[str], content: bytes) -> None:
    """Atomically write raw bytes (page content, images)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(target)
    try:
        tmp.write_bytes(content)
        os.replace(tmp, target)
    except BaseException:
        _discard(tmp)
        raise


def commit_temp(tmp: Path, target: Path) -> None:
    """Move a fully written temp file into place."""
    os.replace(tmp, target)


def discard_temp(tmp: Path) -> None:
    _discard(tmp)
