"""Gmail Atom unread feed — the credential-free, degraded sync path.

The feed is fetched through a cookie-authenticated network partition and
parsed defensively: a missing or malformed entry field never raises, it
falls back to a default.  Only feed-level problems (failed request,
unparseable XML, or no ``fullcount`` when the count is what was asked for)
raise MalformedFeed.

Feed shape (namespace ``http://purl.org/atom/ns#``)::

    <feed>
      <fullcount>2</fullcount>
      <modified>2026-02-27T09:00:00Z</modified>
      <entry>
        <title>Subject</title>
        <summary>Snippet…</summary>
        <link rel="alternate" href="https://mail.google.com/mail?account_id=me@x&message_id=abc&…"/>
        <modified>2026-02-27T08:59:00Z</modified>
        <id>tag:gmail.google.com,2004:123</id>
        <author><name>Alice</name><email>alice@example.com</email></author>
      </entry>
    </feed>
"""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import httpx

from src.google.errors import MalformedFeed, UpstreamUnreachable
from src.google.partitions import PartitionSessions
from src.google.types import AtomThreadSummary, AtomUnreadSummary, MessageSummary

logger = logging.getLogger(__name__)


# ── Extract-with-default helpers ───────────────────────────────────────────────


def get_text(el: ET.Element, path: str, default: str | None = None) -> str | None:
    """Text content of the first element matching `path`, else `default`."""
    target = el.find(path)
    if target is None:
        return default
    return "".join(target.itertext()).strip()


def get_int(el: ET.Element, path: str, default: int | None = None) -> int | None:
    """Integer value of the element at `path`; missing or non-numeric → `default`."""
    text = get_text(el, path)
    if text is None:
        return default
    try:
        return int(text)
    except ValueError:
        return default


def get_timestamp_ms(el: ET.Element, path: str, default: int | None = None) -> int | None:
    """ISO-8601 timestamp at `path` as epoch milliseconds, else `default`.

    Naive timestamps are read as UTC.
    """
    text = get_text(el, path)
    if not text:
        return default
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def get_link_params(el: ET.Element, rel: str = "alternate") -> dict[str, str] | None:
    """Query parameters of the ``link[rel=…]`` href, or None if absent/invalid."""
    link = el.find(f"link[@rel='{rel}']")
    if link is None:
        return None
    href = link.get("href")
    if not href:
        return None
    try:
        parts = urlsplit(href)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return {key: values[0] for key, values in parse_qs(parts.query).items() if values}


def _strip_namespaces(root: ET.Element) -> ET.Element:
    """Drop ``{namespace}`` prefixes so lookups work with or without xmlns."""
    for el in root.iter():
        if isinstance(el.tag, str) and "}" in el.tag:
            el.tag = el.tag.rsplit("}", 1)[1]
    return root


def parse_feed(text: str) -> ET.Element:
    """Parse feed XML into a namespace-free tree; raises MalformedFeed."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise MalformedFeed(f"Feed is not valid XML: {exc}") from exc
    return _strip_namespaces(root)


def entry_to_thread(entry: ET.Element, now_ms: int) -> AtomThreadSummary:
    """Convert one ``<entry>`` into an AtomThreadSummary. Never raises."""
    author_email = get_text(entry, "author/email")
    sender = " ".join(
        part for part in (
            get_text(entry, "author/name"),
            f"<{author_email}>" if author_email else None,
        )
        if part
    )

    modified = get_timestamp_ms(entry, "modified", now_ms)
    params = get_link_params(entry) or {}

    return AtomThreadSummary(
        id=get_text(entry, "id"),
        history_id=str(modified),
        latest_message=MessageSummary(
            id=params.get("message_id"),
            history_id=str(modified),
            sender=sender,
            recipient=params.get("account_id"),
            subject=get_text(entry, "title", ""),
            snippet=get_text(entry, "summary", ""),
            internal_date=modified,
        ),
    )


def summarise_feed(root: ET.Element, now_ms: int) -> AtomUnreadSummary:
    """Map a parsed feed into threads plus feed-level count and timestamp."""
    return AtomUnreadSummary(
        threads=[entry_to_thread(entry, now_ms) for entry in root.iter("entry")],
        count=get_int(root, "fullcount", 0),
        timestamp=get_timestamp_ms(root, "modified", now_ms),
    )


# ── Adapter ────────────────────────────────────────────────────────────────────


class AtomFeedAdapter:
    """Reads the Gmail Atom unread feed through a cookie-isolated partition.

    Used when full API credentials are unavailable.  Thread summaries
    produced here carry timestamp history ids and must be kept apart from
    any API-sourced cache.

    Usage::

        async with PartitionSessions() as partitions:
            adapter = AtomFeedAdapter(partitions)
            summary = await adapter.fetch_unread_summary("persist:acct1", feed_url)
    """

    def __init__(
        self,
        partitions: PartitionSessions,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._partitions = partitions
        self._clock = clock

    async def fetch_unread_count(self, partition_id: str, url: str) -> int:
        """Return ``fullcount``; raises MalformedFeed when it is absent or invalid."""
        root = await self._fetch(partition_id, url)
        count = get_int(root, "fullcount")
        if count is None:
            raise MalformedFeed("Feed has no valid fullcount element")
        return count

    async def fetch_unread_summary(self, partition_id: str, url: str) -> AtomUnreadSummary:
        """Return every feed entry as a thread summary plus the unread count."""
        root = await self._fetch(partition_id, url)
        summary = summarise_feed(root, int(self._clock() * 1000))
        logger.debug(
            "Atom feed %s: %d entr(ies), count=%d", partition_id, len(summary.threads), summary.count
        )
        return summary

    async def _fetch(self, partition_id: str, url: str) -> ET.Element:
        try:
            response = await self._partitions.get(partition_id, url)
        except httpx.TransportError as exc:
            raise UpstreamUnreachable(f"Atom feed unreachable: {exc}") from exc
        if not response.is_success:
            raise MalformedFeed(f"Atom feed request failed with HTTP {response.status_code}")
        return parse_feed(response.text)
