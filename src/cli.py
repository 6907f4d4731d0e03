"""Command Line Interface for txn-audit.

Read-only operator commands over the audit store: create its schema, list
audited tables and page through a table's audit records.
"""

from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from src.domain.ports import AuditStorePort
from src.infrastructure.logging_config import setup_logging
from src.infrastructure.settings import APP_VERSION, settings
from src.services.audit_query_service import AuditQueryService

app = typer.Typer(
    name="txn-audit",
    help="txn-audit: transactional change-audit trail",
    add_completion=False
)
console = Console()


def create_audit_store_cli() -> AuditStorePort:
    """Create the configured audit store (CLI wrapper)."""
    try:
        from src.main import create_audit_store
        return create_audit_store(settings.db_config, settings.audit_config)
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create audit store: {str(e)}")
        raise typer.Exit(code=1)


def _short(value: Optional[str], width: int = 60) -> str:
    if value is None:
        return "[dim]-[/dim]"
    return value if len(value) <= width else value[:width - 1] + "…"


@app.command("init-schema")
def init_schema() -> None:
    """Create the audit table and its indexes if they do not exist."""
    store = create_audit_store_cli()
    try:
        result = store.initialize_schema()
        if not result.is_success():
            console.print(f"[red]✗[/red] Schema initialization failed: {result.error}")
            raise typer.Exit(code=1)
        console.print(f"[green]✓[/green] Audit schema ready: {settings.audit_config.audit_table}")
    finally:
        store.close()


@app.command()
def tables() -> None:
    """List the tables that have audit records."""
    store = create_audit_store_cli()
    try:
        result = AuditQueryService(store).list_audited_tables()
        if not result.is_success():
            console.print(f"[red]✗[/red] {result.error}")
            raise typer.Exit(code=1)
        if not result.value:
            console.print("[dim]No audited tables yet[/dim]")
            return
        for name in result.value:
            console.print(name)
    finally:
        store.close()


@app.command()
def logs(
    table_name: str = typer.Argument(..., help="Audited table name"),
    since: str = typer.Option("24h", "--since", "-s", help="Relative range, e.g. 1h, 24h, 7d"),
    page: int = typer.Option(0, "--page", "-p", help="Zero-based page number"),
    page_size: int = typer.Option(20, "--page-size", "-n", help="Records per page (1-1000)"),
) -> None:
    """Show a page of audit records for TABLE_NAME.

    Examples:
        txn-audit logs orders
        txn-audit logs accounts --since 7d --page 1 --page-size 50
    """
    store = create_audit_store_cli()
    try:
        result = AuditQueryService(store).get_recent_logs(table_name, time_range=since, page=page, page_size=page_size)
        if not result.is_success():
            console.print(f"[red]✗[/red] {result.error}")
            raise typer.Exit(code=1)

        audit_page = result.value
        output = Table(title=f"Audit log: {table_name.lower()} (last {since})")
        output.add_column("Time", no_wrap=True)
        output.add_column("Op")
        output.add_column("Key")
        output.add_column("Actor")
        output.add_column("Old")
        output.add_column("New")
        output.add_column("Remark")
        for record in audit_page.records:
            output.add_row(
                datetime.isoformat(record.occurred_at, sep=" ", timespec="seconds"),
                record.operation.value,
                _short(record.primary_key_value, 20),
                record.actor,
                _short(record.old_value_json),
                _short(record.new_value_json),
                _short(record.remark, 40),
            )
        console.print(output)
        console.print(
            f"[dim]Page {audit_page.page} · {len(audit_page.records)} of {audit_page.total} record(s)"
            f"{' · more with --page ' + str(audit_page.page + 1) if audit_page.has_next else ''}[/dim]"
        )
    finally:
        store.close()


@app.command()
def info() -> None:
    """Display configuration."""
    audit_config = settings.audit_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Type:", settings.db_config.db_type)
    if settings.db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", settings.db_config.db_path or ":memory:")
    else:
        info_table.add_row("Database Host:", str(settings.db_config.host))
        info_table.add_row("Database Name:", str(settings.db_config.database))
    info_table.add_row("Audit Table:", audit_config.audit_table)
    info_table.add_row("Auditing:", "Enabled" if audit_config.enabled else "Disabled")
    info_table.add_row("Include Tables:", ", ".join(sorted(audit_config.include_tables or [])) or "all")
    info_table.add_row("Exclude Tables:", ", ".join(sorted(audit_config.exclude_tables or [])) or "none")
    info_table.add_row("Async Writes:", "Yes" if audit_config.async_mode else "No")
    info_table.add_row("Max Retries:", str(audit_config.max_retries))
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """txn-audit: transactional change-audit trail."""
    if version:
        console.print(f"txn-audit v{APP_VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)


if __name__ == "__main__":
    app()
