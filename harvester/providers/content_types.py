"""Typed views over stored saved-item records."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse


@dataclass(frozen=True)
class ImageRef:
    """One image belonging to an article, with fallback URLs in order."""

    key: str  # "top", "preview" or "content_<n>"
    primary: str
    fallbacks: tuple[str, ...] = ()

    @property
    def urls(self) -> tuple[str, ...]:
        return (self.primary, *[u for u in self.fallbacks if u != self.primary])

    @property
    def filename(self) -> str:
        """File name inside the article directory.

        Top and preview images get fixed names; content images keep their
        sanitized source name, or ``image_<n>.jpg`` when it has no extension.
        """
        name = _url_basename(self.primary)
        if self.key in ("top", "preview"):
            ext = os.path.splitext(name)[1] if name else ".jpg"
            return f"{self.key}_image{ext}"
        if not name or name in _RESERVED_NAMES:
            return f"image_{self.key.rsplit('_', 1)[-1]}.jpg"
        return name


_RESERVED_NAMES = {"index.json", "original.html"}


def _url_basename(url: str) -> str:
    try:
        name = os.path.basename(urlparse(url).path)
    except ValueError:
        return ""
    if not name or "." not in name:
        return ""
    return re.sub(r"[^a-zA-Z0-9._-]", "_", name)


@dataclass(frozen=True)
class SavedArticle:
    """A saved item as recorded on disk."""

    saved_id: str
    url: str
    title: str
    created_at: datetime | None = None
    tags: tuple[str, ...] = ()
    domain: str | None = None
    excerpt: str | None = None
    item: dict[str, Any] | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> SavedArticle:
        item = record.get("item") or {}
        created = None
        if record.get("_createdAt"):
            try:
                created = datetime.fromtimestamp(int(record["_createdAt"]), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                pass

        url = record.get("url") or item.get("resolvedUrl") or item.get("givenUrl") or ""
        domain = item.get("domain") or (item.get("domainMetadata") or {}).get("name")
        if not domain and url:
            domain = urlparse(url).netloc or None

        return cls(
            saved_id=str(record["savedId"]),
            url=url,
            title=record.get("title") or item.get("title") or "Untitled",
            created_at=created,
            tags=tuple(t.get("name", "") for t in record.get("tags") or [] if isinstance(t, dict)),
            domain=domain,
            excerpt=item.get("excerpt") or (item.get("preview") or {}).get("excerpt"),
            item=item,
        )

    def image_refs(self) -> list[ImageRef]:
        """Images referenced by the record: top, content images, then preview.

        Cached copies listed under the preview image serve as fallbacks for
        whichever reference shares the preview's source URL.
        """
        item = self.item or {}
        preview_image = (item.get("preview") or {}).get("image") or {}
        cached: dict[str, tuple[str, ...]] = {}
        if preview_image.get("url"):
            urls = tuple(
                c["url"] for c in preview_image.get("cachedImages") or [] if c and c.get("url")
            )
            if urls:
                cached[preview_image["url"]] = urls

        refs: list[ImageRef] = []
        if item.get("topImageUrl"):
            top = item["topImageUrl"]
            refs.append(ImageRef("top", top, cached.get(top, ())))

        for idx, img in enumerate(item.get("images") or []):
            if img and img.get("src"):
                refs.append(ImageRef(f"content_{idx}", img["src"], cached.get(img["src"], ())))

        if preview_image.get("url"):
            url = preview_image["url"]
            refs.append(ImageRef("preview", url, cached.get(url, ())))

        return refs
