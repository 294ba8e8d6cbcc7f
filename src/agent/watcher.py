"""Core agent loop — periodically reconciles the cached thread list against Gmail."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

import httpx
from dotenv import load_dotenv

from src.google.credentials import CredentialManager, credential_from_env
from src.google.errors import MissingCredential, SyncError
from src.google.gmail_client import GmailClient
from src.google.reconciler import ThreadReconciler
from src.google.types import Credential, KnownThreadCache, ReconcileResult, WatchRegistration

logger = logging.getLogger(__name__)

# Backoff: 2^attempt seconds, capped at 5 minutes
_MAX_BACKOFF_SECONDS = 300


# ── Configuration ──────────────────────────────────────────────────────────────


def _labels_from_env(raw: str) -> list[str]:
    return [label.strip() for label in raw.split(",") if label.strip()]


@dataclass
class SyncConfig:
    """What to list on each pass and how often."""

    poll_interval: int = 60
    query: str | None = None
    label_ids: list[str] = field(default_factory=lambda: ["INBOX", "UNREAD"])
    limit: int = 25
    pass_timeout: float = 120.0
    push_topic: str | None = None

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Build SyncConfig from environment variables."""
        return cls(
            poll_interval=int(os.environ.get("POLL_INTERVAL_SECONDS", "60")),
            query=os.environ.get("GMAIL_SYNC_QUERY") or None,
            label_ids=_labels_from_env(os.environ.get("GMAIL_SYNC_LABELS", "INBOX,UNREAD")),
            limit=int(os.environ.get("GMAIL_SYNC_LIMIT", "25")),
            pass_timeout=float(os.environ.get("GMAIL_SYNC_TIMEOUT_SECONDS", "120")),
            push_topic=os.environ.get("GMAIL_PUSH_TOPIC") or None,
        )


# ── Listener interface ─────────────────────────────────────────────────────────


@runtime_checkable
class SyncListener(Protocol):
    """Receives the result of every reconciliation pass that found changes."""

    async def on_sync(self, result: ReconcileResult) -> None:
        """Consume a pass result (render, notify, persist…).

        Implementations should not raise; errors are logged and the watcher
        keeps running.
        """
        ...


class LoggingListener:
    """Default listener — logs a one-line digest of each pass."""

    async def on_sync(self, result: ReconcileResult) -> None:
        logger.info(
            "Sync: %d thread(s) resolved%s",
            len(result.resolved_threads),
            f", {len(result.failed_ids)} failed" if result.failed_ids else "",
        )
        for thread in result.resolved_threads:
            latest = thread.latest_message
            logger.debug(
                "  thread=%s history=%s from=%r subject=%r",
                thread.id,
                thread.history_id,
                latest.sender if latest else "",
                latest.subject if latest else "",
            )


# ── Watcher ────────────────────────────────────────────────────────────────────


class MailboxWatcher:
    """Runs reconciliation passes on a timer and keeps the thread snapshot current.

    Each pass refreshes the credential if needed, probes the mailbox history
    id and skips the pass when nothing changed, then lists thread headers
    and reconciles them against the current snapshot.  The snapshot is
    replaced wholesale, never patched, and only once a pass has finished
    inside its deadline: a timed-out pass is abandoned.

    Transient failures back off exponentially; a missing credential stops
    the loop because no amount of retrying fixes it.

    Usage::

        watcher = MailboxWatcher(gmail, manager, credential, LoggingListener())
        await watcher.run()
    """

    def __init__(
        self,
        gmail: GmailClient,
        credentials: CredentialManager,
        credential: Credential | None,
        listener: SyncListener | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self._gmail = gmail
        self._credentials = credentials
        self._credential = credential
        self._listener = listener or LoggingListener()
        self._config = config or SyncConfig()
        self._reconciler = ThreadReconciler(gmail)
        self._known: KnownThreadCache = MappingProxyType({})
        self._last_history_id: str | None = None
        self._stop_event = asyncio.Event()
        self._refresh: asyncio.Future[Credential] | None = None

    @property
    def known_threads(self) -> KnownThreadCache:
        return self._known

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def stop(self) -> None:
        """Signal the watcher to finish the current pass and shut down cleanly."""
        logger.info("Shutdown requested — finishing current pass then stopping")
        self._stop_event.set()

    async def run(self) -> None:
        """Poll until stop() is called or the credential turns out to be missing."""
        attempt = 0
        while not self._stop_event.is_set():
            try:
                await self._poll()
                attempt = 0
                await self._interruptible_sleep(self._config.poll_interval)
            except MissingCredential as exc:
                logger.error("Cannot sync: %s — stopping", exc)
                break
            except SyncError as exc:
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "Sync error (attempt %d): %s — retrying in %ds", attempt, exc, delay
                )
                await self._interruptible_sleep(delay)
            except Exception as exc:  # noqa: BLE001
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "Unexpected error (attempt %d): %s — retrying in %ds",
                    attempt,
                    exc,
                    delay,
                    exc_info=True,
                )
                await self._interruptible_sleep(delay)

        logger.info("Watcher stopped")

    async def renew_watch(self) -> WatchRegistration | None:
        """Re-register for push notifications; failures are logged, not raised."""
        if not self._config.push_topic:
            return None
        try:
            credential = await self._fresh_credential()
            registration = await self._gmail.register_watch(
                credential, self._config.push_topic, self._config.label_ids
            )
        except SyncError as exc:
            logger.error("Watch registration failed: %s", exc)
            return None
        logger.info(
            "Watch registered (history=%s, expiration=%s, shared=%s)",
            registration.history_id,
            registration.expiration,
            registration.already_registered,
        )
        return registration

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _poll(self) -> ReconcileResult | None:
        """Run one deadline-bounded pass and commit its result."""
        try:
            outcome = await asyncio.wait_for(self._sync_pass(), timeout=self._config.pass_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Sync pass exceeded %.0fs — abandoned, snapshot left unchanged",
                self._config.pass_timeout,
            )
            return None

        if outcome is None:
            return None

        result, history_id = outcome
        self._known = result.known_threads
        # A partial pass is retried on the next poll even if the mailbox is unchanged.
        self._last_history_id = None if result.is_partial else history_id

        try:
            await self._listener.on_sync(result)
        except Exception as exc:  # noqa: BLE001
            logger.error("Listener failed: %s", exc, exc_info=True)
        return result

    async def _sync_pass(self) -> tuple[ReconcileResult, str] | None:
        """Probe, list and reconcile. Returns None when the mailbox is unchanged."""
        credential = await self._fresh_credential()

        profile = await self._gmail.fetch_mailbox_profile(credential)
        if profile.history_id and profile.history_id == self._last_history_id:
            logger.debug("Poll: mailbox unchanged at history %s", profile.history_id)
            return None

        headers = await self._gmail.list_thread_headers(
            credential,
            query=self._config.query,
            label_ids=self._config.label_ids,
            limit=self._config.limit,
        )
        result = await self._reconciler.reconcile(credential, self._known, headers)
        return result, profile.history_id

    async def _fresh_credential(self) -> Credential:
        """Return a usable credential, joining a refresh already in flight.

        The polling pass and the watch-renewal job share one refresh so the
        token endpoint sees a single request.  The shared future is shielded:
        a pass abandoned at its deadline does not cancel the other waiter.
        """
        if self._refresh is None or self._refresh.done():
            self._refresh = asyncio.ensure_future(
                self._credentials.ensure_fresh(self._credential)
            )
        self._credential = await asyncio.shield(self._refresh)
        return self._credential

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep for `seconds` but wake immediately if stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ── Entry point ────────────────────────────────────────────────────────────────


def main() -> None:
    """Start the sync agent.  Called by the `mailsync-agent` entry point."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        asyncio.run(_amain())
    except KeyboardInterrupt:
        # Ctrl+C on Windows (no add_signal_handler) arrives here
        logger.info("Interrupted — goodbye")


async def _amain() -> None:
    """Async entry point: wire up clients, watch renewal and signal handlers."""
    from src.agent.scheduler import create_watch_scheduler

    credential = credential_from_env()
    if credential is None:
        logger.error("GOOGLE_ACCESS_TOKEN and GOOGLE_REFRESH_TOKEN must be set")
        return

    config = SyncConfig.from_env()
    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0)) as http:
        watcher = MailboxWatcher(
            GmailClient(http),
            CredentialManager.from_env(http),
            credential,
            config=config,
        )

        scheduler = None
        if config.push_topic:
            await watcher.renew_watch()
            scheduler = create_watch_scheduler(watcher.renew_watch)
            scheduler.start()

        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, watcher.stop)
        except (NotImplementedError, AttributeError):
            pass

        try:
            await watcher.run()
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
