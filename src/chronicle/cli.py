"""Command-line interface for chronicle."""

import functools
import importlib
import logging
from pathlib import Path
from typing import Annotated, Any, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from chronicle.base import ANY_TIMELINE, ChronicleError
from chronicle.checkpoints.store import CheckpointStore
from chronicle.config import ChronicleConfig, ConfigError, load_config
from chronicle.database import Database
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry, default_registry
from chronicle.report import HistoryReport
from chronicle.revisions.bulk import start_revisioning
from chronicle.revisions.ledger import RevisionLedger

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

app = typer.Typer(
    name="chronicle",
    help="Revision history for relational entities",
    add_completion=False,
)

UrlOption = Annotated[
    Optional[str],
    typer.Option("--url", help="Database URL (defaults to the configured one)"),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Configuration file"),
]


def error_boundary(func: F) -> F:
    """Turn chronicle and configuration errors into exit code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ChronicleError, ConfigError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    return wrapper  # type: ignore[return-value]


def _settings(url: str | None, config_file: Path | None) -> ChronicleConfig:
    config = load_config(config_file)
    if url:
        config.database_url = url
    config.apply_logging()
    return config


def _open(config: ChronicleConfig) -> Database:
    database = Database(config.to_database_config())
    database.initialize()
    return database


def _import_model(target: str, registry: EntityRegistry) -> type:
    """Resolve ``package.module:Class`` and make sure it is registered."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"Expected module:Class, got '{target}'")
    try:
        module = importlib.import_module(module_name)
        model = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise typer.BadParameter(f"Cannot import {target}: {e}") from e

    if not registry.is_revisionable(model):
        registry.register(model)
    return model


# =============================================================================
# Commands
# =============================================================================


@app.command(name="start")
@error_boundary
def start_cmd(
    model: Annotated[str, typer.Argument(help="Model to revision, as module:Class")],
    on: Annotated[
        Optional[int],
        typer.Option("--on", help="Checkpoint id to tag the initial revisions with"),
    ] = None,
    with_checkpoint: Annotated[
        bool,
        typer.Option(
            "--with-checkpoint",
            "-C",
            help="Tag the earliest checkpoint, creating one when there is none",
        ),
    ] = False,
    url: UrlOption = None,
    config_file: ConfigOption = None,
) -> None:
    """Open a lineage for every stored row of MODEL that has none."""
    config = _settings(url, config_file)
    model_class = _import_model(model, default_registry)

    with _open(config) as database:
        with database.session() as session:
            checkpoint = None
            if on is not None:
                checkpoint = CheckpointStore(session).get(on)
                if checkpoint is None:
                    typer.echo(f"Error: Checkpoint not found: {on}", err=True)
                    raise typer.Exit(1)

            result = start_revisioning(
                session,
                model_class,
                default_registry,
                checkpoint=checkpoint,
                with_checkpoint=with_checkpoint,
                chunk_size=config.chunk_size,
            )
            session.commit()

    typer.echo(f"Started {result.started} {result.entity_type} lineages")
    if result.existing:
        typer.echo(f"  Already revisioned: {result.existing}")
    if result.checkpoint_id is not None:
        typer.echo(f"  Checkpoint: {result.checkpoint_id}")


@app.command(name="history")
@error_boundary
def history_cmd(
    entity_type: Annotated[str, typer.Argument(help="Entity type, usually the table name")],
    lineage_id: Annotated[int, typer.Argument(help="Lineage id (id of the initial revision)")],
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, csv, json)"),
    ] = "console",
    url: UrlOption = None,
    config_file: ConfigOption = None,
) -> None:
    """Show every revision of one lineage."""
    if format not in ("console", "csv", "json"):
        typer.echo(f"Error: Unknown format: {format}", err=True)
        raise typer.Exit(1)

    config = _settings(url, config_file)
    with _open(config) as database:
        with database.session() as session:
            initial = session.get(Revision, lineage_id)
            if initial is None or initial.entity_type != entity_type:
                typer.echo(f"Error: No {entity_type} lineage {lineage_id}", err=True)
                raise typer.Exit(1)
            report = HistoryReport.for_lineage(RevisionLedger(session, default_registry), initial)

    if format == "csv":
        typer.echo(report.to_frame().write_csv(), nl=False)
    elif format == "json":
        typer.echo(report.to_frame().write_json())
    else:
        report.print(Console())


@app.command(name="checkpoints")
@error_boundary
def checkpoints_cmd(
    timeline: Annotated[
        Optional[int],
        typer.Option("--timeline", "-t", help="Only checkpoints of this timeline"),
    ] = None,
    url: UrlOption = None,
    config_file: ConfigOption = None,
) -> None:
    """List checkpoints in chronological order."""
    config = _settings(url, config_file)
    with _open(config) as database:
        with database.session() as session:
            store = CheckpointStore(session)
            checkpoints = store.checkpoints_of(ANY_TIMELINE if timeline is None else timeline)
            rows = [
                (c.id, c.title, c.checkpoint_date, c.timeline_id, len(store.revisions_of(c)))
                for c in checkpoints
            ]

    console = Console()
    if not rows:
        console.print("[dim]No checkpoints[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title")
    table.add_column("Date")
    table.add_column("Timeline", justify="right")
    table.add_column("Revisions", justify="right")
    for checkpoint_id, title, date, timeline_id, revisions in rows:
        table.add_row(
            str(checkpoint_id),
            title,
            date.isoformat(sep=" ", timespec="seconds"),
            "-" if timeline_id is None else str(timeline_id),
            str(revisions),
        )
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
