"""History reports for lineages and checkpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import polars as pl
from rich.console import Console
from rich.table import Table

from chronicle.checkpoints.store import CheckpointStore
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.revisions.ledger import RevisionLedger

HISTORY_SCHEMA: dict[str, pl.DataType] = {
    "id": pl.Int64,
    "entity_type": pl.Utf8,
    "entity_id": pl.Int64,
    "lineage_id": pl.Int64,
    "previous_revision_id": pl.Int64,
    "checkpoint_id": pl.Int64,
    "timeline_id": pl.Int64,
    "is_latest": pl.Boolean,
    "created_at": pl.Datetime,
}


@dataclass
class HistoryReport:
    """Revisions of one lineage or one checkpoint, oldest first."""

    title: str
    rows: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_revisions(cls, title: str, revisions: list[Revision]) -> "HistoryReport":
        rows = [
            {
                "id": r.id,
                "entity_type": r.entity_type,
                "entity_id": r.entity_id,
                "lineage_id": r.lineage_id,
                "previous_revision_id": r.previous_revision_id,
                "checkpoint_id": r.checkpoint_id,
                "timeline_id": r.timeline_id,
                "is_latest": bool(r.is_latest),
                "created_at": r.created_at,
            }
            for r in revisions
        ]
        return cls(title=title, rows=rows)

    @classmethod
    def for_lineage(cls, ledger: RevisionLedger, revision: Revision) -> "HistoryReport":
        return cls.from_revisions(
            f"{revision.entity_type} lineage {revision.lineage_id}",
            ledger.lineage(revision),
        )

    @classmethod
    def for_checkpoint(cls, store: CheckpointStore, checkpoint: Checkpoint) -> "HistoryReport":
        return cls.from_revisions(
            f"Checkpoint {checkpoint.title}",
            store.revisions_of(checkpoint),
        )

    def to_frame(self) -> pl.DataFrame:
        """One row per revision."""
        columns = {name: [row[name] for row in self.rows] for name in HISTORY_SCHEMA}
        return pl.DataFrame(columns, schema=HISTORY_SCHEMA)

    def __len__(self) -> int:
        return len(self.rows)

    def __str__(self) -> str:
        console = Console(force_terminal=True, width=100)
        with console.capture() as capture:
            self.print(console)
        return capture.get()

    def print(self, console: Console | None = None) -> None:
        """Render the report as a table."""
        console = console or Console()
        console.print(f"[bold]{self.title}[/bold]")

        if not self.rows:
            console.print("[dim]No revisions[/dim]")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Revision", justify="right", style="cyan")
        table.add_column("Entity", justify="right")
        table.add_column("Previous", justify="right")
        table.add_column("Checkpoint", justify="right")
        table.add_column("Timeline", justify="right")
        table.add_column("Created")
        table.add_column("Latest", justify="center")

        for row in self.rows:
            table.add_row(
                str(row["id"]),
                f"{row['entity_type']}#{row['entity_id']}",
                _dash(row["previous_revision_id"]),
                _dash(row["checkpoint_id"]),
                _dash(row["timeline_id"]),
                row["created_at"].isoformat(sep=" ", timespec="seconds") if row["created_at"] else "-",
                "[green]yes[/green]" if row["is_latest"] else "",
            )

        console.print(table)


def _dash(value: Any) -> str:
    return "-" if value is None else str(value)
