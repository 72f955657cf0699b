"""Tests for records.py and content_types.py"""

import pytest

from harvester.core.records import (
    SCHEMA_NAME,
    SCHEMA_VERSION,
    merge_article,
    split_content,
    tag_record,
)
from harvester.providers.content_types import ImageRef, SavedArticle


def _record(**overrides):
    record = {
        "savedId": "101",
        "_createdAt": 1700000000,
        "title": "Example",
        "url": "https://example.com/post",
        "tags": [{"id": "t1", "name": "python"}],
        "item": {"domain": "example.com", "excerpt": "An excerpt"},
    }
    record.update(overrides)
    return tag_record(record)


class TestSplitContent:
    """Tests for split_content."""

    def test_splits_article_html(self):
        payload = {"savedId": "1", "item": {"article": "<p>hi</p>", "relatedAfterArticle": [1], "title": "T"}}
        record, html = split_content(payload)
        assert html == "<p>hi</p>"
        assert record["item"] == {"title": "T"}
        # Input untouched
        assert "article" in payload["item"]

    def test_no_content(self):
        record, html = split_content({"savedId": "1", "item": {"title": "T"}})
        assert html is None
        assert record["item"] == {"title": "T"}

    def test_missing_item(self):
        record, html = split_content({"savedId": "1"})
        assert html is None
        assert record == {"savedId": "1"}


class TestMergeArticle:
    """Tests for merge_article."""

    def test_schema_tag(self):
        record = _record()
        assert record["_schema"] == SCHEMA_NAME
        assert record["_schema_version"] == SCHEMA_VERSION

    def test_null_does_not_erase(self):
        merged = merge_article(_record(), {"title": None, "item": {"excerpt": None}})
        assert merged["title"] == "Example"
        assert merged["item"]["excerpt"] == "An excerpt"

    def test_scalar_incoming_wins(self):
        merged = merge_article(_record(), {"title": "New title"})
        assert merged["title"] == "New title"

    def test_tags_union_by_id(self):
        merged = merge_article(_record(), {"tags": [{"id": "t2", "name": "rust"}, {"id": "t1", "name": "py"}]})
        assert [t["id"] for t in merged["tags"]] == ["t1", "t2"]
        assert merged["tags"][0]["name"] == "py"

    def test_highlights_union_by_id(self):
        existing = _record(annotations={"highlights": [{"id": "h1", "quote": "a"}]})
        merged = merge_article(existing, {"annotations": {"highlights": [{"id": "h2", "quote": "b"}]}})
        assert [h["id"] for h in merged["annotations"]["highlights"]] == ["h1", "h2"]

    def test_item_merged_keywise(self):
        merged = merge_article(_record(), {"item": {"topImageUrl": "https://img/top.png"}})
        assert merged["item"]["domain"] == "example.com"
        assert merged["item"]["topImageUrl"] == "https://img/top.png"

    def test_empty_list_keeps_old(self):
        existing = _record(item={"images": [{"src": "https://img/1.png"}]})
        merged = merge_article(existing, {"item": {"images": []}})
        assert merged["item"]["images"] == [{"src": "https://img/1.png"}]

    def test_non_empty_list_replaces(self):
        existing = _record(item={"images": [{"src": "https://img/1.png"}]})
        merged = merge_article(existing, {"item": {"images": [{"src": "https://img/2.png"}]}})
        assert merged["item"]["images"] == [{"src": "https://img/2.png"}]

    def test_foreign_schema_rejected(self):
        with pytest.raises(ValueError):
            merge_article({"_schema": "other"}, {"title": "x"})


class TestSavedArticle:
    """Tests for SavedArticle and image discovery."""

    def test_from_record(self):
        article = SavedArticle.from_record(_record())
        assert article.saved_id == "101"
        assert article.url == "https://example.com/post"
        assert article.tags == ("python",)
        assert article.domain == "example.com"
        assert article.created_at is not None

    def test_url_falls_back_to_item(self):
        article = SavedArticle.from_record({"savedId": 5, "item": {"givenUrl": "https://given.example/a"}})
        assert article.saved_id == "5"
        assert article.url == "https://given.example/a"
        assert article.title == "Untitled"

    def test_image_refs_order_and_fallbacks(self):
        item = {
            "topImageUrl": "https://img.example/top.jpg",
            "images": [{"src": "https://img.example/a.png"}, {"src": None}, {"src": "https://img.example/b"}],
            "preview": {
                "image": {
                    "url": "https://img.example/top.jpg",
                    "cachedImages": [{"url": "https://cache.example/top.webp"}],
                }
            },
        }
        refs = SavedArticle.from_record({"savedId": "1", "item": item}).image_refs()

        assert [r.key for r in refs] == ["top", "content_0", "content_2", "preview"]
        assert refs[0].urls == ("https://img.example/top.jpg", "https://cache.example/top.webp")
        assert refs[1].fallbacks == ()
        assert refs[3].urls == ("https://img.example/top.jpg", "https://cache.example/top.webp")

    def test_image_filenames(self):
        assert ImageRef("top", "https://x/path/pic.png").filename == "top_image.png"
        assert ImageRef("top", "https://x/path/pic").filename == "top_image.jpg"
        assert ImageRef("preview", "https://x/p.webp?w=1").filename == "preview_image.webp"
        assert ImageRef("content_3", "https://x/a b.gif").filename == "a_b.gif"
        assert ImageRef("content_4", "https://x/noext").filename == "image_4.jpg"
        assert ImageRef("content_5", "https://x/index.json").filename == "image_5.jpg"
