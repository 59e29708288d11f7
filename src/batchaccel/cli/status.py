"""batchaccel status command."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from batchaccel.accel import AppLookup, is_eligible
from batchaccel.config import AccelConfig, get_db_path, load_config, require_project_dir
from batchaccel.db import get_apps, get_batch_workunits, get_batches, get_connection
from batchaccel.models.db import BATCH_STATE_IN_PROGRESS, AppRecord, BatchRecord
from batchaccel.stats import BatchProgress, compute_batch_progress

console = Console()


def status(
    show_all: bool = typer.Option(
        False,
        "--all", "-a",
        help="Show batches in every state, not only in-progress ones",
    ),
) -> None:
    """
    Show batch progress.

    Progress is computed from the jobs as they are now; nothing is written.
    The last column tells whether the next pass would accelerate the batch.
    """
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    config = load_config(project_dir)
    db_path = get_db_path(project_dir)
    conn = get_connection(db_path)

    try:
        apps = get_apps(conn)
        batches = get_batches(conn, state=None if show_all else BATCH_STATE_IN_PROGRESS)
        rows: list[tuple[BatchRecord, BatchProgress]] = []
        for batch in batches:
            workunits = get_batch_workunits(conn, batch.id)
            rows.append((batch, compute_batch_progress(workunits)))
    finally:
        conn.close()

    _show_batch_table(rows, apps, config)


def _show_batch_table(
    rows: list[tuple[BatchRecord, BatchProgress]],
    apps: list[AppRecord],
    config: AccelConfig,
) -> None:
    """Display batches in a table."""
    if not rows:
        console.print("[dim]No batches in progress[/dim]")
        return

    lookup = AppLookup.from_apps(apps)
    app_names = {app.id: app.name for app in apps}

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("App")
    table.add_column("# jobs", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Not done", justify="right")
    table.add_column("Next pass")

    for batch, progress in rows:
        accelerate = _accelerate_label(batch, progress, lookup, config)
        table.add_row(
            str(batch.id),
            batch.name or "-",
            app_names.get(batch.app_id, f"#{batch.app_id}"),
            str(progress.njobs),
            f"{int(progress.fraction_done * 100)}%",
            str(progress.n_not_done),
            accelerate,
        )

    console.print(table)


def _accelerate_label(
    batch: BatchRecord,
    progress: BatchProgress,
    lookup: AppLookup,
    config: AccelConfig,
) -> str:
    """Describe what the next pass would do with a batch."""
    if batch.state != BATCH_STATE_IN_PROGRESS:
        return f"[dim]{batch.state}[/dim]"
    accelerable: Optional[bool] = lookup.get(batch.app_id)
    if accelerable is None:
        return "[red]unknown app[/red]"
    if progress.njobs == 0:
        return "-"
    # No job left in progress: the pass marks the batch complete and skips it
    if progress.njobs_in_prog == 0:
        return "[dim]completes[/dim]"
    eligible = is_eligible(
        progress.fraction_done,
        progress.n_not_done,
        config.min_frac_done,
        config.max_not_done,
    )
    if not eligible:
        return "[dim]no[/dim]"
    if accelerable:
        return "[green]yes[/green]"
    return "[yellow]reset[/yellow]"
