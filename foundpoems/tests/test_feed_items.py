"""
foundpoems/tests/test_feed_items.py
Feed entry normalization, content paths and the preview tree.
"""

import time
from datetime import datetime, timezone

import httpx
import pytest

from foundpoems.core.errors import FeedError
from foundpoems.features.streams import feed
from foundpoems.features.streams.feed import (
    ArrayNode,
    ObjectNode,
    ScalarNode,
    build_tree,
    content_from_paths,
    derive_guid,
    normalize_entries,
    strip_html,
    to_node,
    walk_path,
)

NOW = datetime(2030, 1, 5, 10, 0, tzinfo=timezone.utc)

ENTRY = {
    "title": "Storm Watch",
    "summary": "<p>Rain &amp; wind</p>",
    "tags": [{"term": "weather"}, {"term": "coast"}],
    "metrics": {"views": 12, "score": 4.0, "flagged": False, "note": None},
}


class TestTree:
    def test_to_node_tags_values(self):
        node = to_node(ENTRY)
        assert isinstance(node, ObjectNode)
        assert isinstance(node.fields["tags"], ArrayNode)
        assert node.fields["title"] == ScalarNode("Storm Watch")

    def test_struct_time_becomes_iso_string(self):
        node = to_node({"published_parsed": time.gmtime(0)})
        assert node.fields["published_parsed"].value == "1970-01-01T00:00:00+00:00"

    def test_walk_path(self):
        node = to_node(ENTRY)
        assert walk_path(node, "/tags/1/term") == ScalarNode("coast")
        assert walk_path(node, "/tags/9/term") is None
        assert walk_path(node, "/tags/x") is None
        assert walk_path(node, "/title/deeper") is None
        assert walk_path(node, "/missing") is None

    def test_content_from_paths_joins_leaves(self):
        node = to_node(ENTRY)
        text = content_from_paths(node, ["/title", "/tags/0/term", "/metrics/views", "/metrics/score"])
        assert text == "Storm Watch\n\nweather\n\n12\n\n4"

    def test_content_from_paths_skips_non_text(self):
        node = to_node(ENTRY)
        assert content_from_paths(node, ["/metrics/flagged", "/metrics/note", "/tags", "/nope"]) == ""

    def test_build_tree_types(self):
        tree = build_tree(to_node(ENTRY))
        children = {c["key"]: c for c in tree["children"]}
        assert children["tags"]["type"] == "array"
        assert children["tags"]["children"][0]["path"] == "/tags/0"
        metrics = {c["key"]: c for c in children["metrics"]["children"]}
        assert metrics["views"]["type"] == "number"
        assert metrics["flagged"] == {"path": "/metrics/flagged", "key": "flagged", "type": "boolean", "preview": "false"}
        assert metrics["note"]["type"] == "null"

    def test_build_tree_depth_limit(self):
        nested = {"a": {"b": {"c": {"d": {"e": {"f": {"g": {"h": "deep"}}}}}}}}
        tree = build_tree(to_node(nested))
        node = tree
        while "children" in node:
            node = node["children"][0]
        assert node["preview"] == "(depth limit)"


class TestNormalize:
    def test_strip_html(self):
        assert strip_html("<p>Rain &amp; wind</p>\n<p>  at  dawn </p>") == "Rain & wind\nat dawn"

    def test_guid_fallbacks(self):
        assert derive_guid({"id": "i", "link": "l"}, NOW) == "i"
        assert derive_guid({"link": "https://x/1"}, NOW) == "https://x/1"
        assert derive_guid({"title": "T", "published": "p"}, NOW) == "T-p"
        assert derive_guid({}, NOW) == f"item-{NOW.isoformat()}"

    def test_missing_date_falls_back_to_now(self):
        items = normalize_entries([{"id": "a", "summary": "text"}], "Fallback", [], NOW)
        assert items[0].published_at == NOW
        assert items[0].title == "Fallback"

    def test_content_field_preferred_over_summary(self):
        entry = {"id": "a", "content": [{"value": "<b>full body</b>"}], "summary": "short"}
        assert normalize_entries([entry], "F", [], NOW)[0].content == "full body"

    def test_content_paths_override_defaults(self):
        entry = dict(ENTRY, id="a")
        item = normalize_entries([entry], "F", ["/tags/0/term"], NOW)[0]
        assert item.content == "weather"


class TestFetch:
    RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Coast</title>
<item><guid>g-1</guid><title>Tide</title><description>High tide at noon</description>
<pubDate>Sat, 05 Jan 2030 09:00:00 GMT</pubDate></item>
</channel></rss>"""

    def _patch_client(self, monkeypatch, handler):
        real_client = httpx.Client

        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(feed.httpx, "Client", factory)

    def test_fetch_parses_rss(self, monkeypatch):
        self._patch_client(monkeypatch, lambda request: httpx.Response(200, content=self.RSS))
        entries = feed.fetch_feed("https://example.com/rss", timeout=5)
        items = normalize_entries(entries, "Coast", [], NOW)
        assert items[0].guid == "g-1"
        assert items[0].content == "High tide at noon"
        assert items[0].published_at == datetime(2030, 1, 5, 9, 0, tzinfo=timezone.utc)

    def test_http_error_becomes_feed_error(self, monkeypatch):
        self._patch_client(monkeypatch, lambda request: httpx.Response(503))
        with pytest.raises(FeedError):
            feed.fetch_feed("https://example.com/rss", timeout=5)

    def test_garbage_document_becomes_feed_error(self, monkeypatch):
        self._patch_client(monkeypatch, lambda request: httpx.Response(200, content=b"<<<not a feed"))
        with pytest.raises(FeedError):
            feed.fetch_feed("https://example.com/rss", timeout=5)
