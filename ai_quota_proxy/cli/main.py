"""
CLI interface for the AI quota proxy.

Operator commands for the SQLite store: schema setup, workspace bootstrap,
monthly limits, provider keys and the usage report.
"""

import asyncio
import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_quota_proxy.config.loader import load_encryption_secret
from ai_quota_proxy.core.errors import ConfigurationError, InfrastructureError
from ai_quota_proxy.core.key_encryption import ENCRYPTION_SECRET_ENV_VAR, encrypt_api_key
from ai_quota_proxy.core.usage_monitor import AllWorkspacesUsage, UsageMonitor
from ai_quota_proxy.providers import ADAPTERS
from ai_quota_proxy.storage.db import DEFAULT_DB_PATH, get_connection
from ai_quota_proxy.storage.models import WorkspaceLimitConfig
from ai_quota_proxy.storage.repository import (
    AppSettingsRepository,
    UsageRepository,
    WorkspaceRepository,
    api_key_setting,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

REQUIRED_TABLES = {"workspaces", "llm_usage_logs", "api_rate_limits", "app_settings"}

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")


def _monitor(db_path: str) -> UsageMonitor:
    return UsageMonitor(UsageRepository(db_path), WorkspaceRepository(db_path))


def _seal_key(api_key: str, required: bool) -> str:
    """Encrypt a key for storage, exiting on an unusable secret."""
    secret = load_encryption_secret()
    if secret is None and not required:
        console.print(f"[yellow]![/] {ENCRYPTION_SECRET_ENV_VAR} is not set; storing the key unencrypted")
        return api_key
    try:
        return encrypt_api_key(api_key, secret)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency for display; the only place costs are rounded."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI quota proxy CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Quota Proxy - Use --help to see available commands")


@app.command()
def status(db: str = DB_OPTION):
    """Check initialization status of the store."""
    try:
        conn = get_connection(db)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        console.print(f"[red]Error reading database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    missing = REQUIRED_TABLES - {row[0] for row in rows}
    if missing:
        console.print(f"[yellow]![/] Not initialized (missing tables: {', '.join(sorted(missing))})")
        console.print("Run `ai-quota-proxy init` to create them")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] AI Quota Proxy is initialized")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-workspace")
def add_workspace(
    workspace_id: str = typer.Argument(..., help="Workspace identifier"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    limit: float = typer.Option(10.0, "--limit", "-l", help="Monthly spend limit in dollars"),
    disabled: bool = typer.Option(False, "--disable-limit", help="Do not enforce the limit"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Workspace-owned provider key"),
    api_provider: Optional[str] = typer.Option(None, "--api-provider", help="Provider of --api-key"),
    db: str = DB_OPTION,
):
    """Register (or overwrite) a workspace."""
    if bool(api_key) != bool(api_provider):
        console.print("[red]Error:[/] --api-key and --api-provider must be given together")
        sys.exit(EXIT_CODE_FAIL)
    if api_provider and api_provider not in ADAPTERS:
        console.print(f"[red]Error:[/] Unsupported provider: {api_provider}")
        sys.exit(EXIT_CODE_FAIL)

    if api_key:
        api_key = _seal_key(api_key, required=False)

    try:
        WorkspaceRepository(db).upsert_workspace(WorkspaceLimitConfig(
            workspace_id=workspace_id,
            name=name,
            usage_limit_monthly=limit,
            usage_limit_enabled=not disabled,
            api_key=api_key,
            api_provider=api_provider,
        ))
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Workspace {workspace_id} saved")


@app.command("set-app-key")
def set_app_key(
    provider: str = typer.Argument(..., help="Provider the key belongs to"),
    api_key: str = typer.Argument(..., help="Centralized provider key"),
    db: str = DB_OPTION,
):
    """Store an encrypted centralized key used when the environment has none."""
    if provider not in ADAPTERS:
        console.print(f"[red]Error:[/] Unsupported provider: {provider}")
        sys.exit(EXIT_CODE_FAIL)

    sealed = _seal_key(api_key, required=True)
    try:
        AppSettingsRepository(db).set_setting(api_key_setting(provider), sealed)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Centralized {provider} key saved")


@app.command("set-limit")
def set_limit(
    workspace_id: str = typer.Argument(..., help="Workspace identifier"),
    limit: float = typer.Argument(..., help="Monthly spend limit in dollars"),
    disable: bool = typer.Option(False, "--disable", help="Store the limit but do not enforce it"),
    db: str = DB_OPTION,
):
    """Update a workspace's monthly spend limit."""
    try:
        asyncio.run(_monitor(db).update_workspace_limit(workspace_id, limit, enabled=not disable))
    except InfrastructureError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    state = "disabled" if disable else "enabled"
    console.print(f"[green]✓[/] Limit for {workspace_id} set to {_format_currency(limit)} ({state})")


@app.command()
def usage(
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Month bucket, e.g. 2025-07"),
    db: str = DB_OPTION,
):
    """Show every workspace's spend for a month."""
    try:
        report = asyncio.run(_monitor(db).get_all_workspaces_usage(month))
    except InfrastructureError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not report.workspaces:
        console.print("\n[bold yellow]No workspaces found[/]")
        console.print("Register one with `ai-quota-proxy add-workspace <id>`\n")
        sys.exit(EXIT_CODE_PASS)

    _display_usage_report(report)


def _display_usage_report(report: AllWorkspacesUsage):
    """Display the usage report as a table."""
    month_year = report.workspaces[0].month_year
    table = Table(title=f"LLM usage for {month_year}")
    table.add_column("Workspace")
    table.add_column("Spend", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Status")

    for ws in report.workspaces:
        if not ws.limit_enabled:
            state = "[dim]unlimited[/]"
        elif ws.is_over_limit:
            state = "[red]over limit[/]"
        else:
            state = "[green]ok[/]"
        table.add_row(
            ws.name or ws.workspace_id,
            _format_currency(ws.total_cost),
            _format_currency(ws.limit),
            f"{ws.percentage_used:,.1f}%",
            state,
        )

    console.print(table)
    console.print(f"Total: {_format_currency(report.total_usage)}")


if __name__ == "__main__":
    app()
