"""CLI for ProductSense.

Commands:
    identify <image>     - Identify (or create) the product in a photo
    detect <image>       - Identify and count every product in a shelf/cart photo
    validate <hash>      - Record a human review of an identification
    metrics              - Show identification accuracy
    configs              - List threshold config versions
    retrain              - Tune and activate a new threshold config now
    init-db              - Create tables
    reset-db             - Drop and recreate tables
    serve                - Run the HTTP API
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from product_sense.db import async_session_factory, engine, init_db
from product_sense.errors import ProductSenseError
from product_sense.extraction.orchestrator import SignalExtractionOrchestrator
from product_sense.identification.grouping import MultipleDetectionGrouper
from product_sense.identification.orchestrator import ProductIdentificationOrchestrator
from product_sense.identification.schemas import ProductFallbackFields
from product_sense.models.enums import IdentificationStatus, ValidationSource
from product_sense.services.feedback import ValidationFeedbackLoop
from product_sense.services.product_lookup import ProductLookupService
from product_sense.services.threshold_configs import ThresholdConfigService
from product_sense.services.validation_log import ValidationLogService
from product_sense.utils.image_format import SUPPORTED_IMAGE_EXTENSIONS

app = typer.Typer(
    name="product-sense",
    help="ProductSense: identify catalog products from photos",
    no_args_is_help=True,
)
console = Console()

_STATUS_STYLE = {
    IdentificationStatus.IDENTIFIED: "green",
    IdentificationStatus.PARTIAL_MATCH: "yellow",
    IdentificationStatus.MULTIPLE_MATCHES: "yellow",
    IdentificationStatus.NEW_PRODUCT_CREATED: "blue",
    IdentificationStatus.ERROR: "red",
}


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def _read_image(path: Path) -> bytes:
    if not path.is_file():
        console.print(f"[red]Error:[/red] Not a file: {path}")
        raise typer.Exit(1)
    if path.suffix.lower() not in SUPPORTED_IMAGE_EXTENSIONS:
        console.print(f"[yellow]Warning:[/yellow] Unrecognized image extension {path.suffix}")
    return path.read_bytes()


def _feedback_loop(session) -> ValidationFeedbackLoop:
    return ValidationFeedbackLoop(ValidationLogService(session), ThresholdConfigService(session))


@app.callback()
def configure(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def identify(
    path: Annotated[Path, typer.Argument(help="Product photo")],
    name: Annotated[str | None, typer.Option(help="Name for a newly created product")] = None,
    category_id: Annotated[int | None, typer.Option(help="Category for a new product")] = None,
    stock: Annotated[int | None, typer.Option(help="Initial stock for a new product")] = None,
    source: Annotated[
        ValidationSource, typer.Option(help="Workflow: sale never creates products")
    ] = ValidationSource.MANUAL,
    best_effort: Annotated[
        bool, typer.Option("--best-effort", help="Suggest weak matches instead of creating")
    ] = False,
):
    """Identify the product in a photo, creating it when nothing matches."""
    data = _read_image(path)

    async def _identify():
        await init_db()
        async with async_session_factory() as session:
            orchestrator = ProductIdentificationOrchestrator(
                SignalExtractionOrchestrator(),
                ProductLookupService(session),
                ThresholdConfigService(session),
            )
            result = await orchestrator.identify_or_create(
                data,
                path.name,
                ProductFallbackFields(
                    name=name, category_id=category_id, stock_quantity=stock, source=source
                ),
                surface_best_effort=best_effort,
            )
            await session.commit()

        style = _STATUS_STYLE.get(result.status, "white")
        lines = [
            f"[bold]Status:[/bold] [{style}]{result.status.value}[/{style}]",
            f"[bold]Confidence:[/bold] {result.confidence:.2f}",
            f"[bold]Tier:[/bold] {result.match_type.value if result.match_type else '-'}",
            f"[bold]Needs review:[/bold] {'yes' if result.requires_validation else 'no'}",
            f"[bold]Details:[/bold] {result.details}",
            f"[bold]Image hash:[/bold] {result.image_hash or '-'}",
            f"[bold]Time:[/bold] {result.processing_time_ms} ms",
        ]
        if result.product is not None:
            lines.insert(0, f"[bold]Product:[/bold] {result.product.name} (#{result.product.id})")
        console.print(Panel("\n".join(lines), title=path.name))

        if result.alternative_matches:
            table = Table(title="Alternatives")
            table.add_column("Product")
            table.add_column("Tier")
            table.add_column("Confidence", justify="right")
            for alt in result.alternative_matches:
                table.add_row(
                    f"{alt.product.name} (#{alt.product.id})",
                    alt.match_type.value,
                    f"{alt.confidence:.2f}",
                )
            console.print(table)

    run_async(_identify())


@app.command()
def detect(
    path: Annotated[Path, typer.Argument(help="Shelf or cart photo")],
    no_group: Annotated[
        bool, typer.Option("--no-group", help="List every detection separately")
    ] = False,
    min_confidence: Annotated[
        float | None, typer.Option(min=0.0, max=1.0, help="Drop weaker groups")
    ] = None,
):
    """Identify and count every product in a multi-object photo."""
    data = _read_image(path)

    async def _detect():
        await init_db()
        async with async_session_factory() as session:
            extractor = SignalExtractionOrchestrator()
            orchestrator = ProductIdentificationOrchestrator(
                extractor, ProductLookupService(session), ThresholdConfigService(session)
            )
            result = await MultipleDetectionGrouper(extractor, orchestrator).detect_and_group(
                data, not no_group, min_confidence, image_format=path.name
            )
            await session.commit()

        if result.status == IdentificationStatus.ERROR:
            console.print(f"[red]Error:[/red] {result.details}")
            raise typer.Exit(1)

        table = Table(title=f"{result.total_detections} detection(s), {result.unique_products} product(s)")
        table.add_column("Product")
        table.add_column("Qty", justify="right")
        table.add_column("Avg confidence", justify="right")
        table.add_column("Confirmed")
        for group in result.product_groups:
            label = group.product.name
            if group.product.is_temporary:
                label = f"[yellow]{label} (unknown)[/yellow]"
            table.add_row(
                label,
                str(group.quantity),
                f"{group.average_confidence:.2f}",
                "[green]yes[/green]" if group.is_confirmed else "[yellow]no[/yellow]",
            )
        console.print(table)

    run_async(_detect())


@app.command()
def validate(
    image_hash: Annotated[str, typer.Argument(help="Image hash from the identification")],
    correct: Annotated[
        bool, typer.Option("--correct/--incorrect", help="Was the suggestion right?")
    ],
    suggested: Annotated[int | None, typer.Option(help="Suggested product id")] = None,
    actual: Annotated[int | None, typer.Option(help="Actual product id")] = None,
    confidence: Annotated[float, typer.Option(min=0.0, max=1.0)] = 0.0,
    match_type: Annotated[str | None, typer.Option(help="Tier that suggested it")] = None,
    notes: Annotated[str | None, typer.Option(help="Free-form feedback")] = None,
):
    """Record a human review of an identification."""

    async def _validate():
        await init_db()
        async with async_session_factory() as session:
            try:
                saved = await _feedback_loop(session).record_outcome(
                    image_hash,
                    was_correct=correct,
                    suggested_product_id=suggested,
                    actual_product_id=actual,
                    confidence=confidence,
                    match_type=match_type,
                    feedback_notes=notes,
                )
            except ProductSenseError as e:
                console.print(f"[red]Error:[/red] {e}")
                raise typer.Exit(1) from None
            await session.commit()
        console.print(
            f"[green]Recorded[/green] {saved.correction_type.value} validation #{saved.validation_id}"
        )

    run_async(_validate())


@app.command()
def metrics():
    """Show identification accuracy over all validations."""

    async def _metrics():
        await init_db()
        async with async_session_factory() as session:
            m = await _feedback_loop(session).accuracy_metrics()
        console.print(Panel(
            f"[bold]Validations:[/bold] {m.total}\n"
            f"[bold]Correct:[/bold] {m.correct}\n"
            f"[bold]False positives:[/bold] {m.false_positives}\n"
            f"[bold]False negatives:[/bold] {m.false_negatives}\n"
            f"[bold]Accuracy:[/bold] {m.accuracy:.1%}",
            title="Identification Accuracy",
        ))

    run_async(_metrics())


@app.command()
def configs():
    """List threshold config versions, most accurate first."""

    async def _configs():
        await init_db()
        async with async_session_factory() as session:
            rows = await _feedback_loop(session).configs_by_accuracy()

        if not rows:
            console.print("[yellow]No threshold configs yet.[/yellow]")
            return

        table = Table(title="Threshold Configs")
        table.add_column("Version")
        table.add_column("Active")
        table.add_column("Accuracy", justify="right")
        table.add_column("Samples", justify="right")
        table.add_column("Auto / Manual", justify="right")
        table.add_column("Brand / Vision / Vector / Tag", justify="right")
        for c in rows:
            table.add_row(
                c.model_version,
                "[green]●[/green]" if c.is_active else "",
                f"{c.accuracy:.1%}" if c.accuracy is not None else "-",
                str(c.training_samples_count),
                f"{c.auto_approve_threshold:.2f} / {c.manual_validation_threshold:.2f}",
                f"{c.brand_model_min_confidence:.2f} / {c.vision_match_min_confidence:.2f} / "
                f"{c.vector_similarity_min_confidence:.2f} / {c.tag_category_min_confidence:.2f}",
            )
        console.print(table)

    run_async(_configs())


@app.command()
def retrain():
    """Tune and activate a new threshold config from recent validations."""

    async def _retrain():
        await init_db()
        async with async_session_factory() as session:
            config = await _feedback_loop(session).trigger_retraining()
            await session.commit()
        console.print(
            f"[green]Activated[/green] config v{config.model_version} "
            f"trained on {config.training_samples_count} validation(s)"
        )

    run_async(_retrain())


@app.command("init-db")
def init_db_command():
    """Initialize the database schema (creates tables if they don't exist)."""
    async def _init():
        await init_db()
        console.print("[green]Database initialized.[/green]")

    run_async(_init())


@app.command("reset-db")
def reset_db(
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Skip confirmation prompt")
    ] = False,
):
    """Drop all tables and recreate them.

    WARNING: This destroys all products, validations and threshold configs!
    """
    if not force:
        confirm = typer.confirm(
            "This will DELETE ALL DATA. Are you sure?",
            default=False,
        )
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(0)

    async def _reset():
        from product_sense.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        console.print("[green]Database reset.[/green]")

    run_async(_reset())


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Port to listen on")] = 8000,
    reload: Annotated[bool, typer.Option(help="Reload on code changes")] = False,
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("product_sense.app:app", host=host, port=port, reload=reload)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
