"""Incremental thread reconciliation — re-fetch only what changed, keep header order."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from src.google.errors import MissingCredential, UpstreamRejected, UpstreamUnreachable
from src.google.types import (
    AtomThreadSummary,
    Credential,
    KnownThreadCache,
    ReconcileResult,
    ThreadHeader,
    ThreadSummary,
)

if TYPE_CHECKING:
    from src.google.gmail_client import GmailClient

logger = logging.getLogger(__name__)

#: Caller hook applied to each freshly fetched thread.
#: Must return a summary with the same ``id`` and ``history_id``.
PostProcess = Callable[[ThreadSummary], ThreadSummary]

# Per-thread failures that degrade to stale-or-missing instead of aborting the pass
_RECOVERABLE = (UpstreamRejected, UpstreamUnreachable)


def changed_thread_ids(
    known_threads: KnownThreadCache,
    thread_headers: Sequence[ThreadHeader],
) -> list[str]:
    """Ids whose header is unknown or carries a different history id.

    Header order is kept; repeated ids appear once.
    """
    changed: dict[str, None] = {}
    for header in thread_headers:
        known = known_threads.get(header.id)
        if known is None or known.history_id != header.history_id:
            changed.setdefault(header.id, None)
    return list(changed)


def merge_in_header_order(
    thread_headers: Sequence[ThreadHeader],
    fresh: dict[str, ThreadSummary],
    known_threads: KnownThreadCache,
) -> list[ThreadSummary]:
    """Resolve each header to its fresh summary, else the known one, else drop it."""
    merged: list[ThreadSummary] = []
    for header in thread_headers:
        thread = fresh.get(header.id) or known_threads.get(header.id)
        if thread is not None:
            merged.append(thread)
    return merged


class ThreadReconciler:
    """Brings a cached thread collection up to date with a fresh header list.

    Re-fetch cost is proportional to the number of changed threads, not the
    number listed.  The caller's cache is only read; the returned
    ReconcileResult carries the superseding snapshot.

    Usage::

        reconciler = ThreadReconciler(gmail)
        result = await reconciler.reconcile(credential, cache, headers)
        cache = result.known_threads
    """

    def __init__(self, gmail: GmailClient) -> None:
        self._gmail = gmail

    async def reconcile(
        self,
        credential: Credential | None,
        known_threads: KnownThreadCache,
        thread_headers: Sequence[ThreadHeader],
        post_process: PostProcess | None = None,
    ) -> ReconcileResult:
        """Run one diff → selective fetch → merge pass.

        A thread whose fetch fails keeps its previous summary (or is dropped
        when it has none) and is listed in ``failed_ids``; the pass itself
        only fails for a missing credential.
        """
        if any(isinstance(t, AtomThreadSummary) for t in known_threads.values()):
            raise ValueError("Atom feed summaries cannot be reconciled against API thread headers")

        changed = changed_thread_ids(known_threads, thread_headers)
        logger.debug(
            "Reconcile: %d header(s), %d changed", len(thread_headers), len(changed)
        )
        if not changed:
            return ReconcileResult(
                resolved_threads=merge_in_header_order(thread_headers, {}, known_threads)
            )
        if credential is None or not credential.is_valid:
            raise MissingCredential()

        # Fan out one fetch per changed id and wait for every one to settle.
        outcomes = await asyncio.gather(
            *(self._gmail.fetch_thread(credential, thread_id) for thread_id in changed),
            return_exceptions=True,
        )

        fresh: dict[str, ThreadSummary] = {}
        failed: list[str] = []
        for thread_id, outcome in zip(changed, outcomes):
            if isinstance(outcome, _RECOVERABLE):
                logger.debug("Reconcile: fetch of thread %s failed: %s", thread_id, outcome)
                failed.append(thread_id)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            fresh[thread_id] = post_process(outcome) if post_process else outcome

        if failed:
            logger.warning(
                "Reconcile: %d of %d thread fetch(es) failed; keeping cached copies: %s",
                len(failed),
                len(changed),
                ", ".join(failed),
            )

        return ReconcileResult(
            resolved_threads=merge_in_header_order(thread_headers, fresh, known_threads),
            failed_ids=failed,
        )
