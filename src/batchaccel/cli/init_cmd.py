# Copyright (c) Syntropy Systems
"""batchaccel init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from batchaccel.config import DEFAULT_MAX_NOT_DONE, DEFAULT_MIN_FRAC_DONE, PROJECT_DIR_NAME
from batchaccel.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new batchaccel project.

    Creates a .batchaccel directory with configuration and job store.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)

    # Create default config
    config = {
        "min_frac_done": DEFAULT_MIN_FRAC_DONE,
        "max_not_done": DEFAULT_MAX_NOT_DONE,
        "stats_command": None,
        "interval": 3600,
    }

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    db_path = project_dir / "batchaccel.db"
    init_db(db_path)

    console.print(f"[green]Initialized batchaccel project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
