# Copyright (c) Syntropy Systems
"""Batch progress statistics.

Two things live here:

- the live per-batch numbers the accelerator needs (success, error and
  in-progress counts and ``fraction_done``), derived from the batch's work
  units right before the batch is evaluated;
- the hook that runs the external stats precompute (app size classes,
  long-tail hosts) before a pass.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from batchaccel.db import format_timestamp, get_batch, update_batch_progress
from batchaccel.models.db import BATCH_STATE_IN_PROGRESS

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence
    from pathlib import Path

    from batchaccel.models.db import BatchRecord, WorkunitRecord

logger = logging.getLogger(__name__)


class StatsRefreshError(RuntimeError):
    """The external stats precompute could not be run."""


@dataclass(frozen=True)
class BatchProgress:
    """Progress of a batch derived from its work units."""

    njobs: int
    njobs_success: int
    nerror_jobs: int
    njobs_in_prog: int
    fraction_done: float

    @property
    def n_not_done(self) -> int:
        """Jobs that are neither successful nor failed."""
        return self.njobs - self.njobs_success - self.nerror_jobs


def compute_batch_progress(workunits: Sequence[WorkunitRecord]) -> BatchProgress:
    """Derive batch progress from its work units.

    A job with a canonical result counts as a success; otherwise a non-zero
    error mask counts as an error; anything else is in progress.
    ``fraction_done`` weights finished jobs (success or error) by their
    estimated work, falling back to plain job counts when no estimates are
    set.
    """
    n_success = 0
    n_error = 0
    fpops_total = 0.0
    fpops_done = 0.0

    for wu in workunits:
        fpops_total += wu.rsc_fpops_est
        if wu.canonical_resultid is not None:
            n_success += 1
            fpops_done += wu.rsc_fpops_est
        elif wu.error_mask:
            n_error += 1
            fpops_done += wu.rsc_fpops_est

    njobs = len(workunits)
    n_in_prog = njobs - n_success - n_error

    if fpops_total > 0:
        fraction_done = fpops_done / fpops_total
    elif njobs > 0:
        fraction_done = (n_success + n_error) / njobs
    else:
        fraction_done = 0.0

    return BatchProgress(
        njobs=njobs,
        njobs_success=n_success,
        nerror_jobs=n_error,
        njobs_in_prog=n_in_prog,
        fraction_done=min(max(fraction_done, 0.0), 1.0),
    )


def refresh_batch_progress(
    conn: sqlite3.Connection,
    batch: BatchRecord,
    workunits: Sequence[WorkunitRecord],
    now: datetime,
) -> BatchRecord | None:
    """Store fresh progress for an in-progress batch and re-read it.

    A batch with no outstanding jobs is moved to 'complete'. Returns the
    batch as stored after the update (its state may no longer be
    in_progress), or None if the batch no longer exists.
    """
    progress = compute_batch_progress(workunits)

    completion_time = None
    if progress.njobs > 0 and progress.njobs_in_prog == 0:
        completion_time = format_timestamp(now)

    updated = update_batch_progress(
        conn,
        batch.id,
        njobs=progress.njobs,
        njobs_success=progress.njobs_success,
        nerror_jobs=progress.nerror_jobs,
        njobs_in_prog=progress.njobs_in_prog,
        fraction_done=progress.fraction_done,
        completion_time=completion_time,
    )
    if updated and completion_time is not None:
        logger.info("batch %d complete: all %d jobs done", batch.id, progress.njobs)
    elif not updated and batch.state == BATCH_STATE_IN_PROGRESS:
        logger.debug("batch %d left in_progress before its stats were stored", batch.id)

    return get_batch(conn, batch.id)


def run_stats_command(command_argv: list[str], cwd: Path | None = None) -> None:
    """Run the external stats precompute and wait for it to finish.

    Raises StatsRefreshError if the command cannot be started or exits
    non-zero; the accelerator must not run on stale stats.
    """
    logger.info("refreshing batch stats: %s", " ".join(command_argv))
    try:
        completed = subprocess.run(  # noqa: S603
            command_argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        msg = f"Could not run stats command {command_argv[0]!r}: {e}"
        raise StatsRefreshError(msg) from e

    if completed.stdout:
        for line in completed.stdout.splitlines():
            logger.debug("stats: %s", line)

    if completed.returncode != 0:
        msg = f"Stats command exited with code {completed.returncode}"
        stderr = completed.stderr.strip()
        if stderr:
            msg = f"{msg}: {stderr}"
        raise StatsRefreshError(msg)
