"""
foundpoems/features/streams/feed.py
Feed fetching and item normalization.

Entries are converted into a closed tagged tree (ObjectNode | ArrayNode |
ScalarNode) so content-path extraction is a total walk: a malformed or missing
path yields nothing instead of raising.
"""

from __future__ import annotations

import calendar
import html
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

import feedparser
import httpx

from foundpoems.core.errors import FeedError
from foundpoems.models.stream import FeedItem

USER_AGENT = "foundpoems-feed/1.0"
TREE_DEPTH_LIMIT = 6

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"[ \t\r\f\v]+")


# Tagged tree ---------------------------------------------------------------

Scalar = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class ScalarNode:
    value: Scalar


@dataclass(frozen=True)
class ArrayNode:
    items: Tuple["Node", ...] = ()


@dataclass(frozen=True)
class ObjectNode:
    fields: Dict[str, "Node"] = field(default_factory=dict)


Node = Union[ObjectNode, ArrayNode, ScalarNode]


def to_node(value: Any) -> Node:
    """Convert a loosely-typed payload (feedparser dicts, lists, scalars) to a tree."""
    if isinstance(value, time.struct_time):
        return ScalarNode(datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc).isoformat())
    if isinstance(value, dict):
        return ObjectNode({str(k): to_node(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return ArrayNode(tuple(to_node(v) for v in value))
    if value is None or isinstance(value, (str, int, float, bool)):
        return ScalarNode(value)
    return ScalarNode(str(value))


def walk_path(node: Node, path: str) -> Optional[Node]:
    """Follow a `/`-separated path of object keys and array indices."""
    current: Optional[Node] = node
    for segment in (p for p in path.split("/") if p):
        if isinstance(current, ObjectNode):
            current = current.fields.get(segment)
        elif isinstance(current, ArrayNode):
            if not segment.isdigit() or int(segment) >= len(current.items):
                return None
            current = current.items[int(segment)]
        else:
            return None
        if current is None:
            return None
    return current


def _leaf_text(node: Optional[Node]) -> Optional[str]:
    if not isinstance(node, ScalarNode):
        return None
    value = node.value
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def content_from_paths(node: Node, paths: Sequence[str]) -> str:
    """String/number leaves at each path, in path order, separated by blank lines."""
    values = []
    for path in paths:
        text = _leaf_text(walk_path(node, path))
        if text is not None:
            values.append(text)
    return "\n\n".join(values)


def _node_type(node: Node) -> str:
    if isinstance(node, ObjectNode):
        return "object"
    if isinstance(node, ArrayNode):
        return "array"
    value = node.value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return "string"


def build_tree(node: Node, key: str = "item", path: str = "", depth: int = 0) -> dict:
    """Preview structure for picking content paths in the admin UI."""
    node_type = _node_type(node)
    if depth > TREE_DEPTH_LIMIT:
        return {"path": path, "key": key, "type": node_type, "preview": "(depth limit)"}
    if isinstance(node, ScalarNode):
        preview = "null" if node.value is None else str(node.value)
        if isinstance(node.value, bool):
            preview = "true" if node.value else "false"
        return {"path": path, "key": key, "type": node_type, "preview": preview}

    if isinstance(node, ArrayNode):
        children = [
            build_tree(child, str(i), f"{path}/{i}", depth + 1) for i, child in enumerate(node.items)
        ]
    else:
        children = [
            build_tree(child, name, f"{path}/{name}", depth + 1) for name, child in node.fields.items()
        ]
    return {"path": path, "key": key, "type": node_type, "children": children}


# Entry normalization ---------------------------------------------------------


def strip_html(value: str) -> str:
    text = html.unescape(_TAG_RE.sub(" ", value))
    lines = [_SPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def has_published_date(entry: Dict[str, Any]) -> bool:
    return any(entry.get(key) for key in ("published_parsed", "updated_parsed"))


def derive_published_at(entry: Dict[str, Any], now: datetime) -> datetime:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return now


def derive_guid(entry: Dict[str, Any], now: datetime) -> str:
    for key in ("id", "guid", "link"):
        value = entry.get(key)
        if value:
            return str(value)
    stamp = entry.get("published") or entry.get("updated") or now.isoformat()
    return f"{entry.get('title') or 'item'}-{stamp}"


def derive_content(entry: Dict[str, Any]) -> str:
    """First non-empty body field, as plain text."""
    candidates: List[str] = []
    for block in entry.get("content") or []:
        if isinstance(block, dict) and block.get("value"):
            candidates.append(block["value"])
    candidates.append(entry.get("summary") or "")
    candidates.append(entry.get("description") or "")
    for candidate in candidates:
        text = strip_html(str(candidate))
        if text:
            return text
    return ""


def normalize_entry(
    entry: Dict[str, Any],
    fallback_title: str,
    content_paths: Optional[Sequence[str]],
    now: datetime,
) -> FeedItem:
    raw = to_node(dict(entry))
    if content_paths:
        content = content_from_paths(raw, content_paths)
    else:
        content = derive_content(entry)
    return FeedItem(
        guid=derive_guid(entry, now),
        title=(entry.get("title") or "").strip() or fallback_title,
        content=content,
        published_at=derive_published_at(entry, now),
        dated=has_published_date(entry),
        raw=raw,
    )


def normalize_entries(
    entries: Sequence[Dict[str, Any]],
    fallback_title: str,
    content_paths: Optional[Sequence[str]],
    now: datetime,
) -> List[FeedItem]:
    """Normalized items with usable content, oldest first."""
    items = [normalize_entry(e, fallback_title, content_paths, now) for e in entries]
    items = [item for item in items if item.content.strip()]
    return sorted(items, key=lambda item: item.published_at)


def fetch_feed(feed_url: str, timeout: float = 15.0) -> List[Dict[str, Any]]:
    """
    Download and parse a feed.

    Raises:
        FeedError: network failure, non-2xx status, or an unparseable document
    """
    try:
        with httpx.Client(timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True) as client:
            resp = client.get(feed_url)
            resp.raise_for_status()
            raw_bytes = resp.content
    except httpx.HTTPError as exc:
        raise FeedError(f"Feed fetch failed: {exc}") from exc

    parsed = feedparser.parse(raw_bytes)
    if parsed.bozo and not parsed.entries:
        raise FeedError(f"Feed could not be parsed: {parsed.get('bozo_exception')}")
    return list(parsed.entries)


# Scheduling -------------------------------------------------------------------


def next_start_time(time_of_day: str, anchor: datetime, tz_name: str = "UTC") -> datetime:
    """
    Next occurrence of time_of_day (H:MM, local to tz_name) at or after anchor.

    Returns a UTC datetime.
    """
    hours, minutes = (int(part) for part in time_of_day.split(":"))
    tz = ZoneInfo(tz_name)
    local_anchor = anchor.astimezone(tz)
    start = local_anchor.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if start < local_anchor:
        start = start + timedelta(days=1)
    return start.astimezone(timezone.utc)
