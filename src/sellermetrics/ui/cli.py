from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import json
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
import typer

from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.config import AppConfig, load_app_config_from_env
from sellermetrics.core.periods import Period, PeriodError, resolve_period
from sellermetrics.core.tenant import TenantScope
from sellermetrics.infra.clients.sp_api import SPAPIClientError
from sellermetrics.services.metrics import (
    AsinMetricsResponse,
    MetricsResponse,
    compute_asin_metrics,
    compute_metrics,
)
from sellermetrics.services.product_fees import refresh_product_fee_averages
from sellermetrics.services.sync import (
    ConnectionNotFoundError,
    SyncService,
    import_settlement_report,
)

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="sellermetrics: Amazon seller fee and sales reconciliation.",
    no_args_is_help=True,
)

console = Console()


def _config() -> AppConfig:
    try:
        return load_app_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _scope(user_id: str) -> TenantScope:
    try:
        return TenantScope(user_id)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(2) from None


def _period(
    config: AppConfig,
    period: str | None,
    start_date: str | None,
    end_date: str | None,
) -> Period:
    name = period or ("custom" if start_date or end_date else "today")
    try:
        return resolve_period(
            name,
            now=datetime.now(timezone.utc),
            start_date=start_date,
            end_date=end_date,
            clock=config.clock(),
        )
    except PeriodError as e:
        typer.echo(f"Invalid period: {e}", err=True)
        raise typer.Exit(2) from None


def _render_metrics(response: MetricsResponse) -> None:
    metrics = response.metrics
    span = f"{metrics.period.start_date} to {metrics.period.end_date}"
    table = Table(title=f"{metrics.period.label} ({span})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Orders", str(metrics.orders))
    table.add_row("Units", str(metrics.units))
    table.add_row("Sales", f"${metrics.sales:,.2f}")
    table.add_row("Refunds", f"${metrics.refunds:,.2f}")
    table.add_row("Amazon fees", f"${metrics.amazon_fees:,.2f} ({metrics.fee_source})")
    table.add_row("Service fees", f"${metrics.service_fees.total:,.2f}")
    table.add_row("Total fees", f"${metrics.total_fees:,.2f}")
    table.add_row("COGS", f"${metrics.cogs:,.2f}")
    table.add_row("Gross profit", f"${metrics.gross_profit:,.2f}")
    console.print(table)

    provenance = metrics.fee_provenance
    console.print(
        f"Items: {provenance.real} real, {provenance.historical} historical, "
        f"{provenance.estimated} estimated"
    )


def _render_asins(response: AsinMetricsResponse) -> None:
    table = Table(title=f"By ASIN: {response.period.label}")
    table.add_column("ASIN")
    table.add_column("Orders", justify="right")
    table.add_column("Units", justify="right")
    table.add_column("Sales", justify="right")
    table.add_column("Fees", justify="right")
    table.add_column("Source")
    for row in response.asins:
        table.add_row(
            row.asin or "-",
            str(row.orders),
            str(row.units),
            f"${row.sales:,.2f}",
            f"${row.amazon_fees:,.2f}",
            row.fee_source,
        )
    console.print(table)


@app.command("init-db")
def init_db(url: str | None = None) -> None:
    """Create the database tables."""
    config = _config()
    DB(url or config.database_url).create_schema()
    typer.echo(f"Initialized database at {url or config.database_url}")


@app.command("connect")
def connect(
    user_id: str,
    refresh_token: str = typer.Option(..., help="LWA refresh token for the seller"),
    marketplace_id: list[str] | None = typer.Option(  # noqa: B008
        None, help="Marketplace id (repeatable); defaults to configuration"
    ),
    region: str | None = typer.Option(None, help="SP-API region: na, eu or fe"),
) -> None:
    """Store a seller's Selling Partner API connection."""
    config = _config()
    db = DB(config.database_url)
    connection = db.save_connection(
        _scope(user_id),
        refresh_token=refresh_token,
        marketplace_ids=marketplace_id or list(config.marketplace_ids),
        region=region or config.region,
    )
    typer.echo(
        f"Saved connection for {connection.user_id} "
        f"({connection.region}, {connection.marketplace_ids})"
    )


@app.command("sync")
def sync(
    user_id: str,
    days: int = typer.Option(30, help="Days of orders and fees to pull"),
) -> None:
    """Pull orders and real fees from the Selling Partner API."""
    config = _config()
    db = DB(config.database_url)
    try:
        service = SyncService.for_tenant(db, _scope(user_id), config)
        result = service.run_full_sync(days=days)
    except ConnectionNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    except SPAPIClientError as e:
        typer.echo(f"Selling Partner API error: {e}", err=True)
        raise typer.Exit(1) from None

    table = Table(title=f"Sync for {user_id}")
    table.add_column("Job")
    table.add_column("Result")
    table.add_row(
        "orders", f"{result.orders.orders} orders, {result.orders.items} items"
    )
    for job in result.jobs:
        if job.ok and job.result is not None:
            summary = f"{job.result.updated} items updated"
        else:
            summary = f"failed: {job.error}"
        table.add_row(job.name, summary)
    table.add_row("products", f"{result.products_updated} averages refreshed")
    console.print(table)
    if not result.ok:
        raise typer.Exit(1)


@app.command("import-settlement")
def import_settlement(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),  # noqa: B008
    user_id: str = typer.Option(..., help="Seller the report belongs to"),
) -> None:
    """Apply a downloaded settlement report file and refresh fee averages."""
    config = _config()
    db = DB(config.database_url)
    scope = _scope(user_id)
    result = import_settlement_report(
        db, scope, file.read_text(encoding="utf-8", errors="replace")
    )
    updated = refresh_product_fee_averages(db, scope)
    typer.echo(
        f"Settlement fees: {result.fee_keys} keys, {result.matched} items matched, "
        f"{result.updated} updated; {updated} product averages refreshed"
    )


@app.command("refresh-fees")
def refresh_fees(user_id: str) -> None:
    """Recompute historical fee-per-unit averages from real fees."""
    config = _config()
    updated = refresh_product_fee_averages(DB(config.database_url), _scope(user_id))
    typer.echo(f"Refreshed {updated} product fee averages")


@app.command("metrics")
def metrics(
    user_id: str,
    period: str | None = typer.Option(None, help="today, yesterday, this_week, ..."),
    start_date: str | None = typer.Option(None, help="Custom start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Custom end, inclusive"),
    exclude_canceled: bool | None = typer.Option(
        None, "--exclude-canceled/--include-canceled"
    ),
    debug: bool = typer.Option(False, help="Include per-item detail"),
    as_json: bool = typer.Option(False, "--json", help="Print the JSON payload"),
) -> None:
    """Show orders, units, sales and fees for a period."""
    config = _config()
    resolved = _period(config, period, start_date, end_date)
    response = compute_metrics(
        DB(config.database_url),
        _scope(user_id),
        resolved,
        config,
        exclude_canceled=exclude_canceled,
        debug=debug,
    )
    if as_json:
        typer.echo(json.dumps(response.to_json_dict(), indent=2))
        return
    _render_metrics(response)


@app.command("by-asin")
def by_asin(
    user_id: str,
    period: str | None = typer.Option(None, help="today, yesterday, this_week, ..."),
    start_date: str | None = typer.Option(None, help="Custom start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Custom end, inclusive"),
    exclude_canceled: bool | None = typer.Option(
        None, "--exclude-canceled/--include-canceled"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the JSON payload"),
) -> None:
    """Show period totals grouped by ASIN."""
    config = _config()
    resolved = _period(config, period, start_date, end_date)
    response = compute_asin_metrics(
        DB(config.database_url),
        _scope(user_id),
        resolved,
        config,
        exclude_canceled=exclude_canceled,
    )
    if as_json:
        typer.echo(json.dumps(response.to_json_dict(), indent=2))
        return
    _render_asins(response)


def _gap_row(name: str, local: Decimal, reference: Decimal) -> tuple[str, str, str, str, str]:
    gap = local - reference
    percent = f"{gap / reference * 100:+.1f}%" if reference else "-"
    return name, f"{local:,.2f}", f"{reference:,.2f}", f"{gap:+,.2f}", percent


@app.command("compare")
def compare(
    user_id: str,
    period: str | None = typer.Option(None, help="today, yesterday, this_week, ..."),
    start_date: str | None = typer.Option(None, help="Custom start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Custom end, inclusive"),
    orders: int | None = typer.Option(None, help="Reference order count"),
    units: int | None = typer.Option(None, help="Reference unit count"),
    sales: float | None = typer.Option(None, help="Reference sales"),
    fees: float | None = typer.Option(None, help="Reference Amazon fees"),
) -> None:
    """Compare local period totals with reference numbers from another tool."""
    config = _config()
    resolved = _period(config, period, start_date, end_date)
    metrics = compute_metrics(
        DB(config.database_url), _scope(user_id), resolved, config
    ).metrics

    references: list[tuple[str, float, float | int | None]] = [
        ("Orders", metrics.orders, orders),
        ("Units", metrics.units, units),
        ("Sales", metrics.sales, sales),
        ("Amazon fees", metrics.amazon_fees, fees),
    ]
    table = Table(title=f"Gap analysis: {resolved.label}")
    table.add_column("Metric")
    table.add_column("Local", justify="right")
    table.add_column("Reference", justify="right")
    table.add_column("Gap", justify="right")
    table.add_column("Gap %", justify="right")
    compared = 0
    for name, local, reference in references:
        if reference is None:
            continue
        table.add_row(*_gap_row(name, Decimal(str(local)), Decimal(str(reference))))
        compared += 1
    if not compared:
        typer.echo("Pass at least one of --orders, --units, --sales, --fees", err=True)
        raise typer.Exit(2)
    console.print(table)
    console.print(f"Fee source: {metrics.fee_source}")


@app.command("serve")
def serve(host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the dashboard metrics HTTP API."""
    from sellermetrics.ui.api.server import main

    main(host=host, port=port)


@app.command("sync-all")
def sync_all(days: int = typer.Option(1, help="Days of orders and fees to pull")) -> None:
    """Sync every seller with an active connection."""
    config = _config()
    db = DB(config.database_url)
    failures = 0
    for scope in db.list_active_scopes():
        try:
            result = SyncService.for_tenant(db, scope, config).run_full_sync(days=days)
        except SPAPIClientError as e:
            typer.echo(f"{scope.user_id}: {e}", err=True)
            failures += 1
            continue
        status = "ok" if result.ok else "partial"
        typer.echo(f"{scope.user_id}: {result.orders.orders} orders ({status})")
    if failures:
        raise typer.Exit(1)
