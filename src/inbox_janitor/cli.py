"""Command-line interface for InboxJanitor.

Provides commands for configuration validation, the API server, account
registration, sync, deletion suggestions and candidate review.

Usage:
    python -m inbox_janitor validate-config
    python -m inbox_janitor token-key
    python -m inbox_janitor accounts add me@gmail.com --refresh-token "$TOKEN"
    python -m inbox_janitor sync <account-id>
    python -m inbox_janitor suggest <account-id>
    python -m inbox_janitor candidates <account-id>
    python -m inbox_janitor serve
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from inbox_janitor.config import validate_config_file
from inbox_janitor.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_janitor.config_schema import AppConfig
    from inbox_janitor.db.store import DatabaseStore, MailboxAccount
    from inbox_janitor.gmail.factory import GmailMailboxFactory

console = Console()

USER_OPTION_HELP = "User id that owns the accounts (env: JANITOR_USER_ID)"

# Pauses before re-running a sync step that ended on a Gmail transport timeout
SYNC_TIMEOUT_BACKOFF_SECONDS = [5.0, 15.0, 30.0]


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    mailbox_factory: GmailMailboxFactory


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes the database and the Gmail adapter factory.
    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from inbox_janitor.config import get_config
    from inbox_janitor.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_janitor.db.store import DatabaseStore
    from inbox_janitor.gmail.factory import GmailMailboxFactory

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and fill in the "
            "[cyan]gmail[/cyan] section."
        )
        sys.exit(1)

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    return CLIDeps(config=config, store=store, mailbox_factory=GmailMailboxFactory(config))


async def _require_account(deps: CLIDeps, user_id: str, account_id: str) -> MailboxAccount:
    account = await deps.store.get_account(account_id, user_id=user_id)
    if account is None:
        console.print(
            f"[red]Account not found:[/red] {account_id}\n"
            "Run [cyan]accounts list[/cyan] to see the connected accounts."
        )
        sys.exit(1)
    return account


def _user_option(func):
    return click.option(
        "--user",
        "user_id",
        envvar="JANITOR_USER_ID",
        default="local",
        show_default=True,
        help=USER_OPTION_HELP,
    )(func)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """InboxJanitor - AI-assisted Gmail cleanup."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the API server (and the sync resume scheduler when enabled)."""
    import uvicorn

    from inbox_janitor.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API trusts the X-User-Id header. Put it behind the session layer."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("token-key")
def token_key() -> None:
    """Print a new key for encrypting stored refresh tokens."""
    from inbox_janitor.auth.google_auth import TOKEN_KEY_ENV, generate_token_key

    click.echo(generate_token_key())
    click.echo(
        f"Set it as {TOKEN_KEY_ENV} in your environment or .env. "
        "Changing it later requires reconnecting every account.",
        err=True,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@cli.group("accounts")
def accounts() -> None:
    """Manage connected Gmail accounts."""


@accounts.command("add")
@click.argument("email_address")
@click.option("--refresh-token", default=None, help="OAuth refresh token for the mailbox")
@_user_option
def accounts_add(email_address: str, refresh_token: str | None, user_id: str) -> None:
    """Connect a Gmail account."""
    asyncio.run(_run_accounts_add(email_address, refresh_token, user_id))


async def _run_accounts_add(email_address: str, refresh_token: str | None, user_id: str) -> None:
    from inbox_janitor.core.errors import MailboxAuthError

    deps = await _init_cli_deps()
    account = await deps.store.create_account(user_id, email_address)

    if refresh_token:
        try:
            deps.mailbox_factory.store_refresh_token(account.id, refresh_token)
        except MailboxAuthError as e:
            console.print(f"[red]Could not store token:[/red] {e}")
            sys.exit(1)

    console.print(f"[green]✓[/green] Connected {account.email_address} as [cyan]{account.id}[/cyan]")
    if not refresh_token:
        console.print(
            "[yellow]No refresh token stored.[/yellow] "
            "Add one with --refresh-token before syncing."
        )


@accounts.command("list")
@_user_option
def accounts_list(user_id: str) -> None:
    """List connected Gmail accounts."""
    asyncio.run(_run_accounts_list(user_id))


async def _run_accounts_list(user_id: str) -> None:
    deps = await _init_cli_deps()
    rows = await deps.store.list_accounts(user_id)
    if not rows:
        console.print("No accounts connected. Use [cyan]accounts add[/cyan].")
        return

    table = Table(title=f"Accounts for {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Email")
    table.add_column("Messages", justify="right")
    table.add_column("Last sync")
    for account in rows:
        latest = await deps.store.get_latest_sync(account.id)
        table.add_row(
            account.id,
            account.email_address,
            str(await deps.store.count_messages(account.id)),
            latest.status if latest else "never",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@cli.command("sync")
@click.argument("account_id")
@click.option("--restart", is_flag=True, help="Abandon the active run and start over")
@click.option("--once", is_flag=True, help="Run a single step instead of looping")
@_user_option
def sync(account_id: str, restart: bool, once: bool, user_id: str) -> None:
    """Sync message metadata from Gmail, resuming where the last run stopped."""
    asyncio.run(_run_sync(account_id, restart, once, user_id))


async def _run_sync(account_id: str, restart: bool, once: bool, user_id: str) -> None:
    from inbox_janitor.core.errors import (
        DatabaseError,
        MailboxAuthError,
        MailboxFeatureDisabledError,
        MailboxQuotaError,
        SyncError,
    )
    from inbox_janitor.engine.sync import SyncEngine

    deps = await _init_cli_deps()
    account = await _require_account(deps, user_id, account_id)
    engine = SyncEngine(deps.store, deps.mailbox_factory, deps.config)

    with Progress(
        TextColumn("[bold]Syncing {task.fields[email]}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total} messages"),
        console=console,
    ) as progress:
        task = progress.add_task("sync", total=None, email=account.email_address)
        try:
            result = await engine.run_sync(user_id, account.id, restart=restart)
            progress.update(task, completed=result.processed, total=result.total or None)
            timeouts = 0
            while result.has_more and not once:
                if result.error_kind == "timeout":
                    if timeouts >= len(SYNC_TIMEOUT_BACKOFF_SECONDS):
                        break
                    delay = SYNC_TIMEOUT_BACKOFF_SECONDS[timeouts]
                    timeouts += 1
                    progress.console.print(
                        f"[yellow]Gmail timed out.[/yellow] Retrying in {delay:.0f}s"
                    )
                    await asyncio.sleep(delay)
                else:
                    timeouts = 0
                result = await engine.run_sync(user_id, account.id)
                progress.update(task, completed=result.processed, total=result.total or None)
        except MailboxAuthError as e:
            console.print(f"[red]Authorization expired:[/red] {e}\nReconnect the account.")
            sys.exit(1)
        except MailboxFeatureDisabledError as e:
            console.print(f"[red]Gmail API disabled:[/red] {e}")
            if e.enable_url:
                console.print(f"Enable it at [cyan]{e.enable_url}[/cyan]")
            sys.exit(1)
        except MailboxQuotaError as e:
            console.print(
                f"[yellow]Quota exceeded:[/yellow] {e}\n"
                "Progress was saved. Run sync again later to continue."
            )
            sys.exit(1)
        except DatabaseError as e:
            console.print(
                f"[red]Database error:[/red] {e}\n"
                "Progress up to the last checkpoint was saved. Run sync again to continue."
            )
            sys.exit(1)
        except SyncError as e:
            console.print(f"[red]Sync failed:[/red] {e}")
            sys.exit(1)

    console.print(
        f"[green]✓[/green] Status: [bold]{result.status}[/bold]  "
        f"processed={result.processed} created={result.created} "
        f"updated={result.updated} errors={result.errors}"
    )
    if result.has_more and result.error_kind == "timeout" and not once:
        console.print(
            "[yellow]Gmail kept timing out.[/yellow] Progress was saved. Run sync again later."
        )
        sys.exit(1)
    if result.has_more:
        console.print("More messages remain. Run sync again to continue.")


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


@cli.command("suggest")
@click.argument("account_id")
@_user_option
def suggest(account_id: str, user_id: str) -> None:
    """Classify eligible messages and flag deletion candidates."""
    asyncio.run(_run_suggest(account_id, user_id))


async def _run_suggest(account_id: str, user_id: str) -> None:
    import anthropic

    from inbox_janitor.classifier.deletion_classifier import DeletionClassifier
    from inbox_janitor.classifier.provider import ClaudeDeletionProvider
    from inbox_janitor.classifier.sender_learning import SenderLearning
    from inbox_janitor.core.errors import ClassificationError
    from inbox_janitor.engine.suggest import SuggestEngine

    deps = await _init_cli_deps()
    account = await _require_account(deps, user_id, account_id)

    try:
        anthropic_client = anthropic.AsyncAnthropic(max_retries=3)
    except anthropic.AnthropicError as e:
        console.print(f"[red]Anthropic client error:[/red] {e}\nSet ANTHROPIC_API_KEY.")
        sys.exit(1)

    provider = ClaudeDeletionProvider(anthropic_client, deps.store, deps.config)
    classifier = DeletionClassifier(provider, SenderLearning(deps.store), deps.config)
    engine = SuggestEngine(deps.store, classifier, deps.config)

    with console.status("Classifying messages..."):
        try:
            result = await engine.run_classification(user_id, account.id)
        except ClassificationError as e:
            console.print(f"[red]Classification failed:[/red] {e}")
            sys.exit(1)

    console.print(
        f"[green]✓[/green] Evaluated {result.evaluated} messages, "
        f"[bold]{result.candidates}[/bold] deletion candidates"
    )
    if result.failed:
        console.print(
            f"[yellow]{result.failed} messages could not be classified "
            "and will be retried next run.[/yellow]"
        )


@cli.command("candidates")
@click.argument("account_id")
@click.option("--limit", default=50, type=int, help="Maximum rows to show")
@_user_option
def candidates(account_id: str, limit: int, user_id: str) -> None:
    """Show current deletion candidates, highest score first."""
    asyncio.run(_run_candidates(account_id, limit, user_id))


async def _run_candidates(account_id: str, limit: int, user_id: str) -> None:
    deps = await _init_cli_deps()
    account = await _require_account(deps, user_id, account_id)

    rows = await deps.store.get_delete_candidates(account.id, limit=limit)
    total = await deps.store.count_delete_candidates(account.id)
    if not rows:
        console.print("No deletion candidates. Run [cyan]suggest[/cyan] first.")
        return

    table = Table(title=f"Deletion candidates ({len(rows)} of {total})")
    table.add_column("Score", justify="right")
    table.add_column("Category")
    table.add_column("Sender", style="cyan")
    table.add_column("Subject", max_width=50)
    table.add_column("Reason", max_width=60)
    for message in rows:
        table.add_row(
            f"{message.ai_delete_score or 0:.2f}",
            message.ai_category,
            message.sender,
            message.subject or "",
            message.ai_delete_reason or "",
        )
    console.print(table)


def main() -> None:
    """Entry point for the CLI. Reads .env (ANTHROPIC_API_KEY, JANITOR_*) first."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
