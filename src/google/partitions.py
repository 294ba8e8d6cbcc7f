"""Cookie-isolated HTTP sessions, one per network partition."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

logger = logging.getLogger(__name__)

#: Headers sent on every partition request; the Atom feed expects a browser-like client.
DEFAULT_HEADERS: dict[str, str] = {
    "Accept": "application/atom+xml, application/xml;q=0.9, */*;q=0.8",
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) mailsync/0.1",
}

_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class PartitionSessions:
    """Lazily creates one ``httpx.AsyncClient`` per partition id.

    Each client has its own cookie jar, so a partition behaves like an
    isolated browser session: cookies seeded into one never leak into
    another.  Close with ``aclose()`` or use as an async context manager.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._sessions: dict[str, httpx.AsyncClient] = {}

    async def __aenter__(self) -> PartitionSessions:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    def session(self, partition_id: str) -> httpx.AsyncClient:
        """Return the client for `partition_id`, creating it on first use."""
        client = self._sessions.get(partition_id)
        if client is None:
            client = httpx.AsyncClient(
                headers=DEFAULT_HEADERS,
                follow_redirects=True,
                timeout=_TIMEOUT,
                transport=self._transport,
            )
            self._sessions[partition_id] = client
            logger.debug("Opened network partition %r", partition_id)
        return client

    def add_cookies(self, partition_id: str, cookies: Mapping[str, str], domain: str = "") -> None:
        """Seed session cookies (e.g. from a signed-in browser) into a partition."""
        jar = self.session(partition_id).cookies
        for name, value in cookies.items():
            jar.set(name, value, domain=domain)

    async def get(self, partition_id: str, url: str) -> httpx.Response:
        """GET `url` with the partition's cookies and default headers."""
        return await self.session(partition_id).get(url)

    async def aclose(self) -> None:
        sessions, self._sessions = self._sessions, {}
        for client in sessions.values():
            await client.aclose()
