# Copyright (c) Syntropy Systems
"""Configuration management for batchaccel."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

# Accelerate a batch if more than this fraction of its jobs is done
# (success or error). Too low creates extra instances and costs throughput;
# too high leaves batches waiting on stragglers.
DEFAULT_MIN_FRAC_DONE = 0.85

# Accelerate a batch if fewer than this many jobs are unsent or in progress.
# Lets small batches finish quickly.
DEFAULT_MAX_NOT_DONE = 20

PROJECT_DIR_NAME = ".batchaccel"


@dataclass
class AccelConfig:
    """Configuration for batchaccel."""

    # Minimum completed fraction (exclusive) for a batch to be accelerated
    min_frac_done: float = DEFAULT_MIN_FRAC_DONE

    # Maximum outstanding job count (exclusive) for a batch to be accelerated
    max_not_done: int = DEFAULT_MAX_NOT_DONE

    # Command run before each pass to refresh precomputed stats (argv, no shell)
    stats_command: list[str] | None = None

    # Default interval in seconds for `batchaccel run --every`
    interval: int = 3600


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .batchaccel directory by walking up from start_path.

    Returns None if no .batchaccel directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global batchaccel config directory (~/.batchaccel)."""
    return Path.home() / PROJECT_DIR_NAME


def load_config(project_dir: Path | None = None) -> AccelConfig:
    """Load configuration from .batchaccel/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .batchaccel directory walking up
    3. ~/.batchaccel/config.yaml
    4. Defaults
    """
    config = AccelConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        min_frac_done = data.get("min_frac_done")
        if isinstance(min_frac_done, (int, float)) and not isinstance(min_frac_done, bool):
            config.min_frac_done = float(min_frac_done)
        max_not_done = data.get("max_not_done")
        if isinstance(max_not_done, (int, float)) and not isinstance(max_not_done, bool):
            config.max_not_done = int(max_not_done)
        stats_command = data.get("stats_command")
        if isinstance(stats_command, str):
            config.stats_command = stats_command.split()
        elif isinstance(stats_command, list):
            config.stats_command = [str(token) for token in cast("list[object]", stats_command)]
        interval = data.get("interval")
        if isinstance(interval, (int, float)) and not isinstance(interval, bool):
            config.interval = int(interval)

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the SQLite job store."""
    if project_dir is None:
        project_dir = find_project_dir()

    if project_dir is None:
        msg = "No .batchaccel directory found. Run 'batchaccel init' first."
        raise RuntimeError(
            msg
        )

    return project_dir / "batchaccel.db"


def require_project_dir() -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .batchaccel directory found. Run 'batchaccel init' first."
        raise RuntimeError(
            msg
        )
    return project_dir
