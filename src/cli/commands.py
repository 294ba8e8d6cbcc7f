"""CLI command implementations — each command runs one async engine call."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import click
import httpx
from rich import box
from rich.console import Console
from rich.table import Table

from src.google.atom import AtomFeedAdapter
from src.google.credentials import CredentialManager, credential_from_env
from src.google.errors import MissingCredential, SyncError
from src.google.gmail_client import GmailClient
from src.google.partitions import PartitionSessions
from src.google.reconciler import ThreadReconciler
from src.google.types import Credential

if TYPE_CHECKING:
    from src.agent.watcher import SyncConfig

logger = logging.getLogger(__name__)
console = Console(width=200)

DEFAULT_ATOM_URL = "https://mail.google.com/mail/feed/atom"


def _http_client() -> httpx.AsyncClient:
    """HTTP client shared by the API commands of a single invocation."""
    return httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))


def _partitions() -> PartitionSessions:
    return PartitionSessions()


def _format_ms(ms: int) -> str:
    if not ms:
        return ""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _require_credential() -> Credential | None:
    credential = credential_from_env()
    if credential is None:
        console.print(
            "[red]No credential configured.[/red] "
            "Set GOOGLE_ACCESS_TOKEN and GOOGLE_REFRESH_TOKEN (see `mailsync upgrade`)."
        )
    return credential


# ── mailsync threads ─────────────────────────────────────────────────────────────


@click.command()
@click.option("--query", default=None, help="Gmail search query (e.g. 'is:unread').")
@click.option("--label", "labels", multiple=True, help="Label id filter; repeatable.")
@click.option("--limit", default=None, type=int, help="Maximum threads to list.")
@click.pass_obj
def threads(config: SyncConfig, query: str | None, labels: tuple[str, ...], limit: int | None) -> None:
    """Run one reconciliation pass and list the resolved threads."""
    credential = _require_credential()
    if credential is None:
        return
    asyncio.run(_threads_async(
        credential,
        query if query is not None else config.query,
        list(labels) or config.label_ids,
        limit or config.limit,
    ))


async def _threads_async(
    credential: Credential,
    query: str | None,
    label_ids: list[str],
    limit: int,
) -> None:
    async with _http_client() as http:
        gmail = GmailClient(http)
        try:
            credential = await CredentialManager.from_env(http).ensure_fresh(credential)
            headers = await gmail.list_thread_headers(
                credential, query=query, label_ids=label_ids, limit=limit
            )
            result = await ThreadReconciler(gmail).reconcile(credential, {}, headers)
        except SyncError as exc:
            console.print(f"[red]Gmail error: {exc}[/red]")
            return

    if not result.resolved_threads:
        console.print("[yellow]No threads match.[/yellow]")
    else:
        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim", width=3)
        table.add_column("From", max_width=30)
        table.add_column("Subject", max_width=48)
        table.add_column("Date", width=16)
        table.add_column("Msgs", width=4)
        table.add_column("Thread", style="dim")

        for i, thread in enumerate(result.resolved_threads, start=1):
            latest = thread.latest_message
            table.add_row(
                str(i),
                latest.sender if latest else "",
                latest.subject if latest else "",
                _format_ms(latest.internal_date) if latest else "",
                str(thread.message_count),
                thread.id,
            )
        console.print(table)

    if result.failed_ids:
        console.print(
            f"[yellow]{len(result.failed_ids)} thread(s) could not be fetched:[/yellow] "
            + ", ".join(result.failed_ids)
        )


# ── mailsync unread ──────────────────────────────────────────────────────────────


@click.command()
@click.argument("url", default=DEFAULT_ATOM_URL)
@click.option("--partition", default="default", show_default=True, help="Network partition id.")
@click.option("--cookie", "cookies", multiple=True, help="NAME=VALUE session cookie; repeatable.")
@click.option("--count-only", is_flag=True, help="Print only the unread count.")
def unread(url: str, partition: str, cookies: tuple[str, ...], count_only: bool) -> None:
    """Read the Atom unread feed — works without API credentials."""
    asyncio.run(_unread_async(url, partition, cookies, count_only))


async def _unread_async(url: str, partition: str, cookies: tuple[str, ...], count_only: bool) -> None:
    async with _partitions() as partitions:
        seeded = dict(c.split("=", 1) for c in cookies if "=" in c)
        if seeded:
            partitions.add_cookies(partition, seeded)
        adapter = AtomFeedAdapter(partitions)
        try:
            if count_only:
                count = await adapter.fetch_unread_count(partition, url)
                console.print(str(count))
                return
            summary = await adapter.fetch_unread_summary(partition, url)
        except SyncError as exc:
            console.print(f"[red]Feed error: {exc}[/red]")
            return

    console.print(f"[bold]{summary.count}[/bold] unread")
    for thread in summary.threads:
        msg = thread.latest_message
        console.print(
            f"  • {msg.subject or '(no subject)'} — {msg.sender} "
            f"[dim]({_format_ms(msg.internal_date)})[/dim]"
        )


# ── mailsync upgrade ─────────────────────────────────────────────────────────────


@click.command()
@click.argument("code")
@click.option("--redirect-uri", required=True, help="Redirect URI used to obtain the code.")
def upgrade(code: str, redirect_uri: str) -> None:
    """Exchange a one-time authorization code for a durable token pair."""
    asyncio.run(_upgrade_async(code, redirect_uri))


async def _upgrade_async(code: str, redirect_uri: str) -> None:
    async with _http_client() as http:
        manager = CredentialManager.from_env(http)
        try:
            grant = await manager.upgrade_authorization_code(code, redirect_uri)
            credential = manager.credential_from_upgrade_response(grant)
            account = await GmailClient(http).fetch_account_profile(credential)
        except MissingCredential:
            console.print("[red]Token endpoint did not return a refresh token.[/red]")
            return
        except SyncError as exc:
            console.print(f"[red]Upgrade failed: {exc}[/red]")
            return

    console.print(f"[green]Authorized[/green] {account.email}")
    console.print(f"GOOGLE_ACCESS_TOKEN={credential.access_token}")
    console.print(f"GOOGLE_REFRESH_TOKEN={credential.refresh_token}")
    console.print(f"GOOGLE_TOKEN_EXPIRY={credential.expiry_timestamp:.0f}")


# ── mailsync profile ─────────────────────────────────────────────────────────────


@click.command()
def profile() -> None:
    """Show the mailbox profile and current history id."""
    credential = _require_credential()
    if credential is None:
        return
    asyncio.run(_profile_async(credential))


async def _profile_async(credential: Credential) -> None:
    async with _http_client() as http:
        try:
            credential = await CredentialManager.from_env(http).ensure_fresh(credential)
            mailbox = await GmailClient(http).fetch_mailbox_profile(credential)
        except SyncError as exc:
            console.print(f"[red]Gmail error: {exc}[/red]")
            return

    console.print(f"[bold]{mailbox.email_address}[/bold]")
    console.print(f"  history id: {mailbox.history_id}")
    console.print(f"  threads:    {mailbox.threads_total}")
    console.print(f"  messages:   {mailbox.messages_total}")


# ── mailsync history ─────────────────────────────────────────────────────────────


@click.command()
@click.argument("from_history_id")
def history(from_history_id: str) -> None:
    """List change records recorded since FROM_HISTORY_ID."""
    credential = _require_credential()
    if credential is None:
        return
    asyncio.run(_history_async(credential, from_history_id))


async def _history_async(credential: Credential, from_history_id: str) -> None:
    async with _http_client() as http:
        try:
            credential = await CredentialManager.from_env(http).ensure_fresh(credential)
            page = await GmailClient(http).fetch_history(credential, from_history_id)
        except SyncError as exc:
            console.print(f"[red]Gmail error: {exc}[/red]")
            return

    if not page.records:
        console.print(f"[green]No changes since {from_history_id}.[/green] (now at {page.history_id})")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("History id")
    table.add_column("Messages")
    for record in page.records:
        table.add_row(record.id, ", ".join(record.message_ids))
    console.print(table)
    console.print(f"Now at history {page.history_id}")
