"""sinapicalc CLI - SINAPI collection, flat-file imports and cost resolution.

Commands:
- init: Create database schema
- collect: Download and ingest one reference month
- collect-zip: Ingest an archive already on disk
- import-resources / import-compositions / import-prices: Flat-file imports
- resolve / tree: Cost of a composition in one region and month
- months / history: Catalogue and audit listings
- web serve: Run the FastAPI transport
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from sinapicalc.config import get_config
from sinapicalc.core.logging import configure_logging
from sinapicalc.db.connection import get_session, init_db
from sinapicalc.errors import SinapiError
from sinapicalc.ingestion.audit import list_imports
from sinapicalc.ingestion.collector import SinapiCollector
from sinapicalc.ingestion.flatfiles import import_compositions, import_prices, import_resources
from sinapicalc.models import CollectSummary, CompositionNode, PricingContext
from sinapicalc.pipeline.types import ImportResult
from sinapicalc.resolution.engine import CostResolver
from sinapicalc.resolution.queries import catalogue_stats

app = typer.Typer(
    name="sinapicalc",
    help="SINAPI reference ingestion and composition cost resolution",
    no_args_is_help=True,
)
web_cli = typer.Typer(help="Web API")
app.add_typer(web_cli, name="web")

console = Console()


@app.callback()
def _setup():
    configure_logging()


def _operator(operator: str | None) -> str:
    return operator or get_config().operator_id


def _pricing_context(region: str, month: str, quantity: float, exempt: bool) -> PricingContext:
    try:
        return PricingContext(
            region=region,
            reference_month=month,
            quantity=Decimal(str(quantity)),
            tax_exempt=exempt,
        )
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e


def _print_summary(summary: CollectSummary) -> None:
    table = Table(title=f"SINAPI {summary.reference_month} ({summary.file_name})")
    table.add_column("Records", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Imported", justify="right", style="green")

    table.add_row("Resources", str(summary.resources.total), str(summary.resources.imported))
    table.add_row("Prices", str(summary.prices.total), str(summary.prices.imported))
    table.add_row(
        "Compositions", str(summary.compositions.total), str(summary.compositions.imported)
    )
    table.add_row(
        "Breakdown items",
        str(summary.breakdown_items.total),
        str(summary.breakdown_items.imported),
    )
    console.print(table)

    if summary.error_count:
        console.print(f"[yellow]⚠[/yellow] {summary.error_count} errors")
        for err in summary.errors[:10]:
            console.print(f"  {err}", style="dim")


def _print_result(result: ImportResult) -> None:
    color = "green" if result.success else "yellow"
    console.print(
        f"[bold {color}]{result.status.value}[/bold {color}]: "
        f"{result.imported_count}/{result.total_records} imported"
    )
    if result.errors:
        console.print(f"[yellow]⚠[/yellow] {result.error_count} errors")
        for err in result.errors[:10]:
            console.print(f"  {err}", style="dim")


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables first (DESTRUCTIVE)"),
):
    """Initialize database schema."""
    if drop:
        confirm = typer.confirm("This will DROP all tables. Continue?")
        if not confirm:
            raise typer.Abort()

    console.print("[bold]Initializing database...[/bold]")
    asyncio.run(init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def collect(
    year: int = typer.Option(..., "--year", min=2000, max=2100, help="Reference year"),
    month: int = typer.Option(..., "--month", min=1, max=12, help="Reference month"),
    operator: str | None = typer.Option(None, "--operator", help="Operator recorded on the audit log"),
):
    """Download and ingest the SINAPI archive for one month."""
    console.print(f"[bold]Collecting SINAPI {year:04d}-{month:02d}[/bold]")

    async def _collect():
        async with get_session() as session:
            collector = SinapiCollector(session, progress=lambda msg: console.print(f"  {msg}"))
            return await collector.collect(year, month, _operator(operator))

    try:
        summary = asyncio.run(_collect())
    except SinapiError as e:
        console.print(f"[red]✗[/red] Collection failed: {e}")
        raise typer.Exit(1) from e

    _print_summary(summary)


@app.command(name="collect-zip")
def collect_zip(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="SINAPI ZIP archive"),
    month: str | None = typer.Option(
        None, "--month", help="Reference month YYYY-MM (default: from the workbook name)"
    ),
    operator: str | None = typer.Option(None, "--operator", help="Operator recorded on the audit log"),
):
    """Ingest a SINAPI archive already on disk."""
    console.print(f"[bold]Collecting from archive:[/bold] {path}")

    async def _collect():
        async with get_session() as session:
            collector = SinapiCollector(session, progress=lambda msg: console.print(f"  {msg}"))
            return await collector.collect_from_archive(
                path.read_bytes(), _operator(operator), reference_month=month
            )

    try:
        summary = asyncio.run(_collect())
    except SinapiError as e:
        console.print(f"[red]✗[/red] Collection failed: {e}")
        raise typer.Exit(1) from e

    _print_summary(summary)


def _run_import(importer, path: Path, operator: str | None) -> None:
    async def _import():
        async with get_session() as session:
            return await importer(
                session,
                path.name,
                path.read_bytes(),
                _operator(operator),
                get_config().ingestion,
            )

    try:
        result = asyncio.run(_import())
    except SinapiError as e:
        console.print(f"[red]✗[/red] Import failed: {e}")
        raise typer.Exit(1) from e

    _print_result(result)


@app.command(name="import-resources")
def import_resources_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Delimited resources file"),
    operator: str | None = typer.Option(None, "--operator", help="Operator recorded on the audit log"),
):
    """Import resources (code; description; unit; category)."""
    console.print(f"[bold]Importing resources:[/bold] {path}")
    _run_import(import_resources, path, operator)


@app.command(name="import-compositions")
def import_compositions_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Delimited compositions file"),
    operator: str | None = typer.Option(None, "--operator", help="Operator recorded on the audit log"),
):
    """Import compositions with their resource coefficients."""
    console.print(f"[bold]Importing compositions:[/bold] {path}")
    _run_import(import_compositions, path, operator)


@app.command(name="import-prices")
def import_prices_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Delimited prices file"),
    operator: str | None = typer.Option(None, "--operator", help="Operator recorded on the audit log"),
):
    """Import regional prices (code; region; month; price columns)."""
    console.print(f"[bold]Importing prices:[/bold] {path}")
    _run_import(import_prices, path, operator)


@app.command()
def resolve(
    code: str = typer.Argument(..., help="Composition code"),
    region: str = typer.Option(..., "--region", help="Two-letter region (UF)"),
    month: str = typer.Option(..., "--month", help="Reference month YYYY-MM"),
    quantity: float = typer.Option(1.0, "--quantity", help="Quantity to price"),
    exempt: bool = typer.Option(False, "--exempt", help="Use tax-exempt prices"),
):
    """Resolve the cost of a composition."""
    context = _pricing_context(region, month, quantity, exempt)

    async def _resolve():
        async with get_session() as session:
            resolver = CostResolver(session, max_depth=get_config().resolution.max_depth)
            return await resolver.resolve_by_code(code, context)

    try:
        resolution = asyncio.run(_resolve())
    except SinapiError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1) from e

    composition = resolution.composition
    table = Table(title=f"{composition.code} - {composition.description} ({composition.unit})")
    table.add_column("Code", style="cyan")
    table.add_column("Description")
    table.add_column("Unit")
    table.add_column("Coef.", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Cost", justify="right", style="green")

    for line in resolution.lines:
        price = f"{line.unit_price:.2f}" if line.has_price else "[red]n/a[/red]"
        table.add_row(
            line.code,
            line.description,
            line.unit,
            f"{line.coefficient}",
            price,
            f"{line.line_cost:.2f}",
        )
    for sub in resolution.sub_compositions:
        label = sub.description if sub.expanded else f"{sub.description} [dim]({sub.skip_reason.value})[/dim]"
        table.add_row(
            f"[magenta]{sub.code}[/magenta]",
            label,
            sub.unit,
            f"{sub.coefficient}",
            f"{sub.unit_cost:.2f}",
            f"{sub.line_cost:.2f}",
        )

    console.print(table)
    console.print(f"Unit cost: [bold]{resolution.unit_cost}[/bold]")
    console.print(f"Total ({context.quantity}): [bold green]{resolution.total_cost}[/bold green]")
    if resolution.missing_price_count:
        console.print(f"[yellow]⚠[/yellow] {resolution.missing_price_count} resources without price")
    if resolution.skipped_count:
        console.print(f"[yellow]⚠[/yellow] {resolution.skipped_count} sub-compositions not expanded")


def _add_node(branch: Tree, node: CompositionNode) -> None:
    for line in node.resources:
        price = f"{line.unit_price:.2f}" if line.has_price else "[red]n/a[/red]"
        branch.add(f"{line.code} {line.description} x{line.coefficient} @ {price}")
    for child in node.children:
        if child.expanded:
            sub = branch.add(
                f"[magenta]{child.code}[/magenta] {child.description} "
                f"x{child.coefficient} = {child.unit_cost}"
            )
            _add_node(sub, child)
        else:
            branch.add(
                f"[dim]{child.code} {child.description} ({child.skip_reason.value})[/dim]"
            )


@app.command()
def tree(
    code: str = typer.Argument(..., help="Composition code"),
    region: str = typer.Option(..., "--region", help="Two-letter region (UF)"),
    month: str = typer.Option(..., "--month", help="Reference month YYYY-MM"),
    quantity: float = typer.Option(1.0, "--quantity", help="Quantity to price"),
    exempt: bool = typer.Option(False, "--exempt", help="Use tax-exempt prices"),
):
    """Show the expanded composition tree with unit costs."""
    context = _pricing_context(region, month, quantity, exempt)

    async def _tree():
        async with get_session() as session:
            resolver = CostResolver(session, max_depth=get_config().resolution.max_depth)
            return await resolver.resolve_tree_by_code(code, context)

    try:
        root = asyncio.run(_tree())
    except SinapiError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1) from e

    view = Tree(f"[bold]{root.code}[/bold] {root.description} = {root.unit_cost}")
    _add_node(view, root)
    console.print(view)


@app.command()
def months():
    """List reference months with prices, and catalogue counts."""

    async def _months():
        async with get_session() as session:
            return await catalogue_stats(session)

    stats = asyncio.run(_months())

    table = Table(title="Catalogue")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Resources", str(stats.resources))
    table.add_row("Compositions", str(stats.compositions))
    table.add_row("Prices", str(stats.prices))
    console.print(table)

    if not stats.months:
        console.print("[yellow]No reference months loaded[/yellow]")
        return
    console.print("Reference months: " + ", ".join(stats.months))


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", help="Number of records"),
):
    """Show the most recent import audit records."""

    async def _history():
        async with get_session() as session:
            return await list_imports(session, limit=limit)

    entries = asyncio.run(_history())
    if not entries:
        console.print("[yellow]No imports recorded[/yellow]")
        return

    table = Table(title="Import history")
    table.add_column("When", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("File")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Total", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("By")

    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.kind,
            entry.file_name,
            str(entry.imported_count),
            str(entry.total_records),
            str(entry.error_count),
            entry.imported_by,
        )
    console.print(table)


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI transport."""
    import uvicorn

    config = get_config()
    typer.echo(f"Starting sinapicalc API on http://{host}:{port}")
    uvicorn.run(
        "sinapicalc.web.app:app",
        host=host,
        port=port,
        reload=reload,
        workers=1,
        timeout_keep_alive=config.web.stream_timeout_seconds,
    )


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
