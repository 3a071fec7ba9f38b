"""
Command line interface for the vehicle catalog pipeline.

Development and operational commands: configuration overview, offline
reconciliation of extracted JSON, response repair and single-PDF extraction.
"""
import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.table import Table

from vehicle_catalog import __version__
from vehicle_catalog.config.settings import get_environment_info, get_settings
from vehicle_catalog.exceptions import ParseFailed, PipelineError
from vehicle_catalog.logging_config import configure_logging
from vehicle_catalog.models.domain import (
    ContentType,
    DocumentKind,
    RawDocument,
    ReconciliationResult,
    Vehicle,
)
from vehicle_catalog.models.extraction_schema import ingest_payload
from vehicle_catalog.pipeline.catalog_pipeline import CatalogPipeline
from vehicle_catalog.services.response_repair import (
    extract_json_region,
    parse_structured,
    repair,
    strip_wrappers,
)
from vehicle_catalog.services.variant_reconciler import VariantReconciler
from vehicle_catalog.services.vehicle_reconciler import VehicleReconciler

console = Console()
logger = structlog.get_logger(__name__)


def _status(configured: bool) -> str:
    return "✓ Configured" if configured else "✗ Not configured"


def _price(value) -> str:
    return f"{value:,}".replace(",", " ") if value else "-"


def _print_vehicles(vehicles: list[Vehicle]) -> None:
    table = Table(title="Reconciled Vehicles")
    table.add_column("Brand", style="cyan")
    table.add_column("Vehicle", style="green")
    table.add_column("Variant")
    table.add_column("Price", justify="right", style="yellow")
    table.add_column("Privatleasing", justify="right", style="yellow")
    table.add_column("Fuel", style="dim")

    for vehicle in vehicles:
        if not vehicle.variants:
            table.add_row(vehicle.brand, vehicle.title, "-", "-", "-", "-")
        for variant in vehicle.variants:
            table.add_row(
                vehicle.brand,
                vehicle.title,
                variant.name,
                _price(variant.price),
                _price(variant.private_leasing),
                variant.fuel_type or "-",
            )
    console.print(table)


def _print_result(result: ReconciliationResult) -> None:
    attempts = Table(title="Extraction Attempts")
    attempts.add_column("Provider", style="cyan")
    attempts.add_column("Result")
    attempts.add_column("Elapsed", justify="right")
    attempts.add_column("Pages", justify="right")
    attempts.add_column("Cost (USD)", justify="right", style="yellow")
    attempts.add_column("Error", style="dim")
    for attempt in result.attempts:
        attempts.add_row(
            attempt.provider,
            "[green]ok[/green]" if attempt.succeeded else f"[red]{attempt.error_kind.value if attempt.error_kind else 'failed'}[/red]",
            f"{attempt.elapsed_ms} ms",
            str(attempt.page_count),
            f"{attempt.cost_estimate:.4f}",
            attempt.error or "",
        )
    console.print(attempts)

    _print_vehicles(result.vehicles)

    if result.issues:
        issues = Table(title="Issues")
        issues.add_column("Kind", style="red")
        issues.add_column("Provider", style="cyan")
        issues.add_column("Message")
        for issue in result.issues:
            issues.add_row(issue.kind.value, issue.provider or "", issue.message)
        console.print(issues)

    usage = result.cost.token_usage
    console.print(
        f"[bold]Total cost:[/bold] ${result.cost.total_cost.quantize(Decimal('0.0001'))}  "
        f"[dim]tokens in/out: {usage.input_tokens}/{usage.output_tokens}[/dim]"
    )


@click.group()
@click.version_option(version=__version__, prog_name="Vehicle Catalog")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, verbose):
    """
    Vehicle Catalog CLI

    Extraction-tier orchestration and reconciliation of dealer price lists.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    monitoring = get_settings().monitoring
    configure_logging(
        level="DEBUG" if verbose else monitoring.log_level,
        fmt="text" if verbose else monitoring.log_format,
    )


@cli.command()
@click.pass_context
def info(ctx):
    """Show application information and configured tiers"""
    try:
        info_data = get_environment_info()

        table = Table(title="Configuration Status")
        table.add_column("Component", style="cyan", no_wrap=True)
        table.add_column("Status", style="green")
        table.add_column("Details", style="dim")

        table.add_row("Application", info_data["app_name"], f"v{info_data['app_version']}")
        table.add_row("Environment", info_data["environment"], "")
        table.add_row(
            "Document AI custom extractor",
            _status(info_data["document_ai_custom_configured"]),
            info_data["document_ai_location"],
        )
        table.add_row(
            "Document AI OCR",
            _status(info_data["document_ai_ocr_configured"]),
            info_data["document_ai_location"],
        )
        table.add_row("Claude API", _status(info_data["claude_configured"]), info_data["claude_model"])
        table.add_row("Local PDF parser", "✓ Available", "PyMuPDF")

        console.print(table)

        if ctx.obj["verbose"]:
            console.print("\n[bold]Full Configuration:[/bold]")
            console.print_json(json.dumps(info_data, indent=2))

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("input_json", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--content-type",
    default=ContentType.CARS.value,
    type=click.Choice([c.value for c in ContentType]),
    help="Content type of the extracted payload",
)
@click.option("--threshold", default=None, type=float, help="Variant merge threshold")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write reconciled JSON here")
def reconcile(input_json, content_type, threshold, output):
    """Reconcile extracted vehicle JSON into a deduplicated catalog"""
    try:
        data = json.loads(Path(input_json).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {input_json}: {e}[/red]")
        sys.exit(1)

    ingested = ingest_payload(data, ContentType(content_type))
    for rejected in ingested.rejected:
        console.print(f"[yellow]Skipped {rejected}[/yellow]")

    settings = get_settings().pipeline
    reconciler = VehicleReconciler(
        VariantReconciler(
            threshold=threshold or settings.vehicle_merge_threshold,
            iterative=settings.iterative_variant_clustering,
        )
    )
    vehicles = reconciler.reconcile(ingested.vehicles)

    console.print(
        f"[green]{len(ingested.vehicles)} candidates reconciled into {len(vehicles)} vehicles[/green]"
    )
    _print_vehicles(vehicles)

    if output:
        Path(output).write_text(
            json.dumps([v.model_dump(mode="json") for v in vehicles], indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        console.print(f"[dim]Written to {output}[/dim]")


@cli.command("repair")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--show", is_flag=True, help="Print the repaired text")
def repair_command(input_file, show):
    """Repair truncated JSON output and report whether it parses"""
    text = Path(input_file).read_text(encoding="utf-8")

    try:
        parsed = parse_structured(text)
    except ParseFailed as e:
        if e.partial:
            console.print(f"[yellow]Partially recovered: {e.message}[/yellow]")
            if show:
                console.print_json(json.dumps(e.recovered, ensure_ascii=False))
            sys.exit(2)
        console.print(f"[red]Not repairable: {e.message}[/red]")
        sys.exit(1)

    if parsed.repaired:
        console.print("[yellow]Parsed after repair (low confidence)[/yellow]")
    else:
        console.print("[green]Parsed without repair[/green]")
    if show:
        shown = repair(extract_json_region(strip_wrappers(text))) if parsed.repaired else text
        console.print(shown, markup=False, highlight=False, soft_wrap=True)


@cli.command("extract-pdf")
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--brand", help="Vehicle brand")
@click.option("--model", "model_name", help="Model name used when the PDF does not name one")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the result JSON here")
def extract_pdf(pdf_path, brand, model_name, output):
    """Run the extraction tier chain on a local PDF"""
    path = Path(pdf_path).resolve()
    document = RawDocument(
        source_url=path.as_uri(),
        kind=DocumentKind.PDF,
        payload=path.read_bytes(),
        brand_hint=brand,
        model_hint=model_name,
    )

    async def run() -> ReconciliationResult:
        pipeline = CatalogPipeline.from_settings()
        try:
            return await pipeline.run(path.as_uri(), pdf_documents=[document], brand_hint=brand)
        finally:
            await pipeline.close()

    try:
        result = asyncio.run(run())
    except PipelineError as e:
        console.print(f"[red]Extraction error: {e}[/red]")
        sys.exit(1)

    _print_result(result)

    if output:
        Path(output).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[dim]Written to {output}[/dim]")


@cli.command()
def version():
    """Show version information"""
    console.print(f"[bold green]Vehicle Catalog Reconciliation v{__version__}[/bold green]")


if __name__ == "__main__":
    cli()
