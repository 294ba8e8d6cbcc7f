"""Gmail REST client — typed async wrappers around the change-feed endpoints."""

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from src.google.errors import (
    MissingCredential,
    UpstreamRejected,
    UpstreamUnreachable,
    json_object,
    response_error_message,
)
from src.google.types import (
    AccountProfile,
    Credential,
    HistoryPage,
    HistoryRecord,
    Label,
    MailboxProfile,
    MessageSummary,
    ThreadHeader,
    ThreadSummary,
    WatchRegistration,
)

logger = logging.getLogger(__name__)

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Gmail answers users.watch with a 400 carrying this text when another
# session already holds the per-developer push registration.
_PUSH_CLIENT_CONFLICT = "Only one user push notification client allowed per developer"

# JSON-decoded body of a Gmail API response
_JsonObject = dict[str, Any]


def is_push_client_conflict(message: str | None) -> bool:
    """True when a watch rejection only means another session is registered."""
    return isinstance(message, str) and message.startswith(_PUSH_CLIENT_CONFLICT)


# ── Payload accessors (JSON null reads as the default) ─────────────────────────


def _items(data: _JsonObject, key: str) -> list[_JsonObject]:
    value = data.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _text(data: _JsonObject, key: str, default: str = "") -> str:
    value = data.get(key)
    return default if value is None else str(value)


def _optional_text(data: _JsonObject, key: str) -> str | None:
    value = data.get(key)
    return str(value) if value else None


def _count(data: _JsonObject, key: str) -> int:
    try:
        return int(data.get(key) or 0)
    except (TypeError, ValueError):
        return 0


class GmailClient:
    """Thin async wrapper around the Gmail and OAuth2 userinfo REST endpoints.

    Holds one long-lived ``httpx.AsyncClient`` supplied by the caller; the
    credential is passed per call so a refreshed token takes effect
    immediately.  Every call fails fast with MissingCredential when the
    credential is absent or incomplete, and never returns a raw payload.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_url: str = GMAIL_API_URL,
        userinfo_url: str = USERINFO_URL,
    ) -> None:
        self._http = http
        self._api_url = api_url.rstrip("/")
        self._userinfo_url = userinfo_url

    # ── Profile ────────────────────────────────────────────────────────────────

    async def fetch_account_profile(self, credential: Credential | None) -> AccountProfile:
        """Return the OAuth2 identity (id, email, name, avatar) for the account."""
        data = await self._call(credential, "GET", self._userinfo_url)
        return AccountProfile(
            id=_text(data, "id"),
            email=_text(data, "email"),
            name=_text(data, "name"),
            picture=_optional_text(data, "picture"),
        )

    async def fetch_mailbox_profile(self, credential: Credential | None) -> MailboxProfile:
        """Return the Gmail mailbox profile, including its current history id."""
        data = await self._call(credential, "GET", f"{self._api_url}/profile")
        return MailboxProfile(
            email_address=_text(data, "emailAddress"),
            history_id=_text(data, "historyId"),
            messages_total=_count(data, "messagesTotal"),
            threads_total=_count(data, "threadsTotal"),
        )

    # ── Labels & history ───────────────────────────────────────────────────────

    async def fetch_label(self, credential: Credential | None, label_id: str) -> Label:
        """Fetch a single label.

        This is the cheapest Gmail call and doubles as a "has anything
        changed" probe via the unread/total counters.
        """
        data = await self._call(credential, "GET", f"{self._api_url}/labels/{label_id}")
        return Label(
            id=_text(data, "id", label_id),
            name=_text(data, "name"),
            messages_total=_count(data, "messagesTotal"),
            messages_unread=_count(data, "messagesUnread"),
            threads_total=_count(data, "threadsTotal"),
            threads_unread=_count(data, "threadsUnread"),
        )

    async def fetch_history(
        self,
        credential: Credential | None,
        from_history_id: str,
        page_token: str | None = None,
    ) -> HistoryPage:
        """Return the change records recorded after `from_history_id`."""
        data = await self._call(
            credential,
            "GET",
            f"{self._api_url}/history",
            params={"startHistoryId": from_history_id, "pageToken": page_token},
        )
        records = [
            HistoryRecord(
                id=_text(h, "id"),
                message_ids=tuple(_text(m, "id") for m in _items(h, "messages") if m.get("id")),
            )
            for h in _items(data, "history")
        ]
        return HistoryPage(
            history_id=_text(data, "historyId"),
            records=records,
            next_page_token=_optional_text(data, "nextPageToken"),
        )

    # ── Threads ────────────────────────────────────────────────────────────────

    async def list_thread_headers(
        self,
        credential: Credential | None,
        query: str | None = None,
        label_ids: Sequence[str] | None = None,
        limit: int = 25,
    ) -> list[ThreadHeader]:
        """List thread headers in provider order (most recent first).

        The order is meaningful and must not be re-sorted by callers.
        """
        data = await self._call(
            credential,
            "GET",
            f"{self._api_url}/threads",
            params={
                "q": query,
                "labelIds": list(label_ids) if label_ids else None,
                "maxResults": limit,
            },
        )
        return [
            ThreadHeader(id=_text(t, "id"), history_id=_text(t, "historyId"))
            for t in _items(data, "threads")
            if t.get("id")
        ]

    async def fetch_thread(self, credential: Credential | None, thread_id: str) -> ThreadSummary:
        """Fetch one full thread and summarise it."""
        data = await self._call(credential, "GET", f"{self._api_url}/threads/{thread_id}")
        return self._parse_thread(data, fallback_id=thread_id)

    # ── Push notifications ─────────────────────────────────────────────────────

    async def register_watch(
        self,
        credential: Credential | None,
        topic_name: str,
        label_ids: Sequence[str] | None = None,
    ) -> WatchRegistration:
        """Register the account for Pub/Sub push notifications.

        The per-developer push-client conflict is not a failure: it means
        another session already holds the registration, so an empty
        registration is returned instead of raising.
        """
        body: _JsonObject = {"topicName": topic_name}
        if label_ids:
            body["labelIds"] = list(label_ids)
        try:
            data = await self._call(credential, "POST", f"{self._api_url}/watch", json=body)
        except UpstreamRejected as exc:
            if not is_push_client_conflict(exc.message):
                raise
            logger.info(
                "Watch registration held by another session (status %d); treating as success",
                exc.status,
            )
            return WatchRegistration(already_registered=True)

        return WatchRegistration(
            history_id=_optional_text(data, "historyId"),
            expiration=_count(data, "expiration") or None,
        )

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _call(
        self,
        credential: Credential | None,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: _JsonObject | None = None,
    ) -> _JsonObject:
        """Issue one authorised request and return the decoded JSON body.

        Raises MissingCredential (no request made), UpstreamUnreachable on
        transport errors and UpstreamRejected on any non-200 status.
        """
        if credential is None or not credential.is_valid:
            raise MissingCredential()

        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug("Gmail → %s %s %s", method, url, clean_params)
        try:
            response = await self._http.request(
                method,
                url,
                params=clean_params or None,
                json=json,
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        except httpx.TransportError as exc:
            raise UpstreamUnreachable(f"{method} {url} failed: {exc}") from exc

        if response.status_code != 200:
            raise UpstreamRejected(
                response.status_code,
                message=response_error_message(response),
                body=response.text,
                response=response,
            )

        if not response.content:
            return {}
        return json_object(response)

    @staticmethod
    def _parse_thread(data: _JsonObject, fallback_id: str = "") -> ThreadSummary:
        """Map a Gmail thread resource to a ThreadSummary.

        The latest message is the last entry of ``messages`` — Gmail returns
        them oldest first.
        """
        messages = _items(data, "messages")
        latest = GmailClient._parse_message(messages[-1]) if messages else None
        return ThreadSummary(
            id=_text(data, "id", fallback_id),
            history_id=_text(data, "historyId"),
            latest_message=latest,
            snippet=_text(data, "snippet", latest.snippet if latest else ""),
            message_count=len(messages),
        )

    @staticmethod
    def _parse_message(data: _JsonObject) -> MessageSummary:
        """Map a Gmail message resource to a MessageSummary (headers are case-insensitive)."""
        payload = data.get("payload")
        headers = {
            _text(h, "name").lower(): _text(h, "value")
            for h in _items(payload if isinstance(payload, dict) else {}, "headers")
        }
        labels = data.get("labelIds")

        return MessageSummary(
            id=_optional_text(data, "id"),
            thread_id=_optional_text(data, "threadId"),
            history_id=_text(data, "historyId"),
            sender=headers.get("from", ""),
            recipient=headers.get("to") or None,
            subject=headers.get("subject", ""),
            snippet=_text(data, "snippet"),
            internal_date=_count(data, "internalDate"),
            label_ids=tuple(str(lbl) for lbl in labels) if isinstance(labels, list) else (),
        )
