"""Saved-item record schema and field-level merge.

Records are stored verbatim as returned by the listing endpoint, tagged with a
schema name and version. Re-fetches are merged so that fields captured by a
richer query are never erased by a sparser one.
"""

from __future__ import annotations

from typing import Any

SCHEMA_NAME = "pocket.saved-item"
SCHEMA_VERSION = 1

# Keys unioned by "id" rather than replaced
_KEYED_LISTS = {"tags"}


def tag_record(payload: dict[str, Any]) -> dict[str, Any]:
    """Attach schema tag and version to an upstream payload."""
    record = dict(payload)
    record["_schema"] = SCHEMA_NAME
    record["_schema_version"] = SCHEMA_VERSION
    return record


def split_content(payload: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Separate embedded article HTML from the record.

    Returns the record without ``item.article`` / ``item.relatedAfterArticle``
    and the HTML, if any.
    """
    record = dict(payload)
    item = record.get("item")
    if not isinstance(item, dict):
        return record, None
    item = dict(item)
    content = item.pop("article", None)
    item.pop("relatedAfterArticle", None)
    record["item"] = item
    return record, content if isinstance(content, str) and content else None


def _union_by_id(old: list[Any], new: list[Any]) -> list[Any]:
    merged: list[Any] = []
    index: dict[Any, int] = {}
    for entry in list(old) + list(new):
        key = entry.get("id") if isinstance(entry, dict) else None
        if key is None:
            if entry not in merged:
                merged.append(entry)
            continue
        if key in index:
            prev = merged[index[key]]
            merged[index[key]] = _merge_maps(prev, entry) if isinstance(prev, dict) else entry
        else:
            index[key] = len(merged)
            merged.append(entry)
    return merged


def _merge_value(key: str, old: Any, new: Any) -> Any:
    if new is None:
        return old
    if isinstance(old, dict) and isinstance(new, dict):
        return _merge_maps(old, new)
    if isinstance(old, list) and isinstance(new, list):
        if key in _KEYED_LISTS or key == "highlights":
            return _union_by_id(old, new)
        return new if new else old
    return new


def _merge_maps(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    out = dict(old)
    for key, value in new.items():
        out[key] = _merge_value(key, old.get(key), value) if key in old else value
    return out


def merge_article(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Merge an incoming saved-item record into the stored one.

    - scalars: incoming wins unless it is null
    - ``tags`` and ``annotations.highlights``: union by ``id``
    - nested maps (``item``, ``preview``...): merged key-wise
    - other lists: replaced when the incoming list is non-empty
    """
    if existing.get("_schema") not in (None, SCHEMA_NAME):
        raise ValueError(f"Cannot merge record with schema {existing.get('_schema')!r}")
    merged = _merge_maps(existing, incoming)
    merged["_schema"] = SCHEMA_NAME
    merged["_schema_version"] = max(
        int(existing.get("_schema_version") or SCHEMA_VERSION),
        int(incoming.get("_schema_version") or SCHEMA_VERSION),
    )
    return merged
