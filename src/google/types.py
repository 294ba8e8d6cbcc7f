"""Typed records shared by the credential, change-feed and reconciliation modules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


# ── Credentials ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Credential:
    """An OAuth token pair plus the absolute expiry time (Unix seconds).

    A credential missing either token is invalid and must never be used to
    make a call.
    """

    access_token: str | None
    refresh_token: str | None
    expiry_timestamp: float = 0.0

    @property
    def is_valid(self) -> bool:
        return bool(self.access_token) and bool(self.refresh_token)

    def is_expired(self, now: float, leeway: float = 0.0) -> bool:
        """True when the access token expires within `leeway` seconds of `now`."""
        return self.expiry_timestamp - leeway <= now


@dataclass(frozen=True)
class TokenGrant:
    """A token-endpoint response stamped with the moment it was captured.

    ``expires_in`` is relative to ``captured_at`` so expiry can be computed
    without trusting the provider's clock.
    """

    access_token: str | None
    refresh_token: str | None
    expires_in: float
    captured_at: float
    raw: Mapping[str, Any] = field(default_factory=dict)


# ── Threads ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ThreadHeader:
    """Lightweight identity of a thread as returned by threads.list."""

    id: str
    history_id: str


@dataclass(frozen=True)
class MessageSummary:
    """The parts of a single message needed to render a thread row."""

    id: str | None
    history_id: str
    sender: str = ""
    recipient: str | None = None
    subject: str = ""
    snippet: str = ""
    internal_date: int = 0  # ms since epoch
    thread_id: str | None = None
    label_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ThreadSummary:
    """A fully resolved thread as of ``history_id``.

    ``history_id`` is the only cache-validity signal: the content here is the
    content at that version.
    """

    id: str
    history_id: str
    latest_message: MessageSummary | None = None
    snippet: str = ""
    message_count: int = 0

    @property
    def header(self) -> ThreadHeader:
        return ThreadHeader(id=self.id, history_id=self.history_id)


@dataclass(frozen=True)
class AtomThreadSummary:
    """A degraded thread summary synthesised from the Atom unread feed.

    ``history_id`` is a millisecond timestamp string, not an API version
    token, so these never share a cache with ``ThreadSummary`` values.
    """

    id: str | None
    history_id: str
    latest_message: MessageSummary


@dataclass(frozen=True)
class AtomUnreadSummary:
    """Feed-level result of parsing the Atom unread feed."""

    threads: list[AtomThreadSummary]
    count: int
    timestamp: int  # ms since epoch


#: Caller-owned map of thread id → last resolved summary. Read-only to the engine.
KnownThreadCache = Mapping[str, ThreadSummary]


@dataclass(frozen=True)
class ReconcileResult:
    """Output of one reconciliation pass.

    ``resolved_threads`` is in thread-header order; ``failed_ids`` lists the
    ids whose fetch failed, in the same order.
    """

    resolved_threads: list[ThreadSummary]
    failed_ids: list[str] = field(default_factory=list)

    @property
    def known_threads(self) -> KnownThreadCache:
        """A fresh read-only snapshot that supersedes the caller's cache."""
        return MappingProxyType({t.id: t for t in self.resolved_threads})

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_ids)


# ── Account / mailbox metadata ─────────────────────────────────────────────────


@dataclass(frozen=True)
class AccountProfile:
    """Basic identity from the OAuth2 userinfo endpoint."""

    id: str
    email: str
    name: str = ""
    picture: str | None = None


@dataclass(frozen=True)
class MailboxProfile:
    """Gmail users.getProfile — the mailbox-level history id lives here."""

    email_address: str
    history_id: str
    messages_total: int = 0
    threads_total: int = 0


@dataclass(frozen=True)
class Label:
    id: str
    name: str
    messages_total: int = 0
    messages_unread: int = 0
    threads_total: int = 0
    threads_unread: int = 0


@dataclass(frozen=True)
class HistoryRecord:
    id: str
    message_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class HistoryPage:
    """One page of users.history.list."""

    history_id: str
    records: list[HistoryRecord] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass(frozen=True)
class WatchRegistration:
    """Result of users.watch.

    ``already_registered`` is set when another session holds the push
    registration; the remaining fields are then empty.
    """

    history_id: str | None = None
    expiration: int | None = None  # ms since epoch
    already_registered: bool = False
