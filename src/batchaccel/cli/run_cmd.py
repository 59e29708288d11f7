# Copyright (c) Syntropy Systems
"""batchaccel run command."""
from __future__ import annotations

import logging
import signal
import sqlite3
from pathlib import Path
from threading import Event
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from batchaccel.accel import AcceleratorError, PassSummary, run_pass
from batchaccel.config import AccelConfig, get_db_path, load_config, require_project_dir
from batchaccel.db import get_connection
from batchaccel.stats import StatsRefreshError, run_stats_command

console = Console()

# Set by SIGINT/SIGTERM to stop a repeating run between passes
_shutdown_event = Event()


def _signal_handler(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    console.print("\n[yellow]Shutdown requested, finishing current pass...[/yellow]")
    _shutdown_event.set()


def _configure_logging(verbose: bool) -> None:
    """Send accelerator progress to the console."""
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger("batchaccel")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


def run(
    min_frac_done: Optional[float] = typer.Option(
        None,
        "--min-frac-done",
        envvar="BATCHACCEL_MIN_FRAC_DONE",
        help="Accelerate batches with more than this fraction of jobs done",
    ),
    max_not_done: Optional[int] = typer.Option(
        None,
        "--max-not-done",
        envvar="BATCHACCEL_MAX_NOT_DONE",
        help="Accelerate batches with fewer than this many jobs not done",
    ),
    skip_stats: bool = typer.Option(
        False,
        "--skip-stats",
        help="Do not run the configured stats command first",
    ),
    every: Optional[int] = typer.Option(
        None,
        "--every",
        help="Repeat the pass every N seconds until interrupted",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show debug output",
    ),
) -> None:
    """
    Run the batch accelerator.

    Refreshes batch stats, then finds in-progress batches that are nearly
    done and raises the priority of their remaining jobs, adding a replica
    where no recent one is outstanding.
    """
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _configure_logging(verbose)

    config = load_config(project_dir)
    if min_frac_done is not None:
        config.min_frac_done = min_frac_done
    if max_not_done is not None:
        config.max_not_done = max_not_done

    db_path = get_db_path(project_dir)

    if every is None:
        _run_once(db_path, project_dir, config, skip_stats)
        return

    if every <= 0:
        console.print("[red]Error:[/red] --every must be a positive number of seconds")
        raise typer.Exit(1)

    _shutdown_event.clear()
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    console.print(f"[dim]Running every {every}s, Ctrl+C to stop[/dim]")
    while not _shutdown_event.is_set():
        _run_once(db_path, project_dir, config, skip_stats)
        _shutdown_event.wait(every)
    console.print("[dim]Accelerator stopped[/dim]")


def _run_once(
    db_path: Path,
    project_dir: Path,
    config: AccelConfig,
    skip_stats: bool,
) -> PassSummary:
    """Refresh stats and run a single pass; exit 1 on a fatal error."""
    if config.stats_command and not skip_stats:
        try:
            run_stats_command(config.stats_command, cwd=project_dir.parent)
        except StatsRefreshError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

    conn = get_connection(db_path)
    try:
        summary = run_pass(
            conn,
            min_frac_done=config.min_frac_done,
            max_not_done=config.max_not_done,
        )
    except AcceleratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/red] Database error: {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    _print_summary(summary)
    return summary


def _print_summary(summary: PassSummary) -> None:
    """Print a one-pass summary."""
    console.print(
        f"[green]Pass complete:[/green] {summary.batches_seen} batch(es), "
        f"{summary.batches_accelerated} accelerated, {summary.batches_reset} reset"
    )
    console.print(
        f"  [dim]replicas added:[/dim] {summary.results_added}  "
        f"[dim]jobs boosted:[/dim] {summary.workunits_boosted}  "
        f"[dim]results boosted:[/dim] {summary.results_boosted}"
    )
    if summary.conflicts:
        console.print(
            f"  [yellow]{summary.conflicts} update(s) skipped, "
            "rows changed since read[/yellow]"
        )
