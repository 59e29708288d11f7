# Copyright (c) Syntropy Systems
"""Batch completion accelerator.

Large batches tend to stall on a few slow or lost jobs. Once a batch is
nearly done (or small enough), its remaining jobs are marked high priority
and, where no recent replica is outstanding, given one more replica so the
dispatcher can race the straggler.

Batches of apps that are not accelerable get their priorities reset
instead, so a job boosted before the app lost its size classes does not
stay boosted.

Every write is a single key-scoped statement that only raises priorities
or replica counts, and work unit updates are compare-and-set against the
values the decision was based on.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Optional

from batchaccel.config import DEFAULT_MAX_NOT_DONE, DEFAULT_MIN_FRAC_DONE
from batchaccel.db import (
    boost_unsent_result,
    format_timestamp,
    get_apps,
    get_batch_workunits,
    get_batches,
    get_workunit_results,
    parse_timestamp,
    reset_batch_priorities,
    update_workunit_if_unchanged,
)
from batchaccel.models.db import (
    BATCH_STATE_IN_PROGRESS,
    PRIORITY_NORMAL,
    RESULT_STATE_IN_PROGRESS,
    RESULT_STATE_UNSENT,
)
from batchaccel.stats import refresh_batch_progress

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable, Iterator, Sequence

    from batchaccel.models.db import (
        AppRecord,
        BatchRecord,
        ResultRecord,
        WorkunitRecord,
    )

logger = logging.getLogger(__name__)


class AcceleratorError(RuntimeError):
    """A batch or app the pass depends on could not be resolved."""


class AppLookup(Mapping[int, bool]):
    """Read-only map of app ID to accelerability.

    Built once per pass from a single snapshot of the app catalog.
    """

    def __init__(self, accelerable: Mapping[int, bool]) -> None:
        self._accelerable = MappingProxyType(dict(accelerable))

    @classmethod
    def from_apps(cls, apps: Iterable[AppRecord]) -> AppLookup:
        """Build the lookup from app records."""
        return cls({app.id: app.accelerable for app in apps})

    def __getitem__(self, app_id: int) -> bool:
        return self._accelerable[app_id]

    def __iter__(self) -> Iterator[int]:
        return iter(self._accelerable)

    def __len__(self) -> int:
        return len(self._accelerable)

    def accelerable(self, app_id: int) -> bool:
        """Whether the app's jobs may be given extra replicas.

        Raises AcceleratorError for an app that is not in the catalog.
        """
        try:
            return self._accelerable[app_id]
        except KeyError:
            msg = f"App {app_id} not found"
            raise AcceleratorError(msg) from None


def is_eligible(
    fraction_done: float,
    n_not_done: int,
    min_frac_done: float = DEFAULT_MIN_FRAC_DONE,
    max_not_done: int = DEFAULT_MAX_NOT_DONE,
) -> bool:
    """Whether a batch should be accelerated this pass.

    Either most of the batch is done, or few enough jobs remain that
    speeding them up is worthwhile. Both thresholds are exclusive.
    """
    return fraction_done > min_frac_done or n_not_done < max_not_done


@dataclass(frozen=True)
class WorkunitPlan:
    """What to do with one outstanding work unit."""

    add_result: bool = False
    raise_priority: bool = False
    boost_result_ids: tuple[int, ...] = ()

    @property
    def is_noop(self) -> bool:
        """True if nothing needs to be written."""
        return not (self.add_result or self.raise_priority or self.boost_result_ids)


def _result_age(result: ResultRecord, now: datetime) -> Optional[float]:
    if result.sent_time is None:
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - parse_timestamp(result.sent_time)).total_seconds()


def plan_workunit(
    workunit: WorkunitRecord,
    results: Sequence[ResultRecord],
    now: datetime,
    expire_time: float,
) -> WorkunitPlan:
    """Decide how to accelerate one unfinished work unit.

    Another result is created unless the work unit is at its result limit,
    has an unsent result (which gets boosted instead), or has an in-progress
    result sent less than expire_time seconds ago. A recent in-progress
    result only holds back the new result; the work unit is still raised to
    high priority.
    """
    boost_result_ids = tuple(
        r.id
        for r in results
        if r.server_state == RESULT_STATE_UNSENT and r.priority == PRIORITY_NORMAL
    )

    add_result = len(results) < workunit.max_total_results
    if add_result:
        for r in results:
            if r.server_state == RESULT_STATE_UNSENT:
                add_result = False
                break
            if r.server_state == RESULT_STATE_IN_PROGRESS:
                # A result with no sent time has an unknown age; treat it as stale
                age = _result_age(r, now)
                if age is not None and age < expire_time:
                    add_result = False
                    break

    return WorkunitPlan(
        add_result=add_result,
        raise_priority=workunit.priority == PRIORITY_NORMAL,
        boost_result_ids=boost_result_ids,
    )


@dataclass
class PassSummary:
    """Counts of what one accelerator pass did."""

    batches_seen: int = 0
    batches_skipped: int = 0
    batches_ineligible: int = 0
    batches_accelerated: int = 0
    batches_reset: int = 0
    workunits_examined: int = 0
    results_added: int = 0
    workunits_boosted: int = 0
    results_boosted: int = 0
    conflicts: int = 0


def accelerate_workunit(
    conn: sqlite3.Connection,
    workunit: WorkunitRecord,
    batch: BatchRecord,
    now: datetime,
    summary: PassSummary,
) -> WorkunitPlan:
    """Plan and apply acceleration for one unfinished work unit."""
    logger.info("accelerating WU %d", workunit.id)
    results = get_workunit_results(conn, workunit.id)
    plan = plan_workunit(workunit, results, now, batch.expire_time)
    summary.workunits_examined += 1

    for r in results:
        if r.server_state == RESULT_STATE_UNSENT:
            logger.info("   have unsent result %d", r.id)
            if r.priority != PRIORITY_NORMAL:
                logger.info("   already high priority")
        elif r.server_state == RESULT_STATE_IN_PROGRESS and not plan.add_result:
            age = _result_age(r, now)
            if age is not None and age < batch.expire_time:
                logger.info("   have recent in-progress result %d", r.id)

    for result_id in plan.boost_result_ids:
        logger.info("   boosting priority of result %d", result_id)
        if boost_unsent_result(conn, result_id):
            summary.results_boosted += 1
        else:
            logger.info("   result %d changed since read; leaving it", result_id)
            summary.conflicts += 1

    if not (plan.add_result or plan.raise_priority):
        return plan

    if plan.add_result:
        logger.info("   creating another instance")
    if plan.raise_priority:
        logger.info("   setting WU to high prio")

    applied = update_workunit_if_unchanged(
        conn,
        workunit,
        n_results=len(results),
        add_result=plan.add_result,
        raise_priority=plan.raise_priority,
        now=format_timestamp(now),
    )
    if applied:
        if plan.add_result:
            summary.results_added += 1
        if plan.raise_priority:
            summary.workunits_boosted += 1
    else:
        logger.info("   WU %d changed since read; will retry next pass", workunit.id)
        summary.conflicts += 1

    return plan


def accelerate_batch(
    conn: sqlite3.Connection,
    batch: BatchRecord,
    workunits: Sequence[WorkunitRecord],
    now: datetime,
    summary: PassSummary,
) -> None:
    """Accelerate the unfinished work units of an eligible batch."""
    for wu in workunits:
        if wu.finished:
            continue
        accelerate_workunit(conn, wu, batch, now, summary)


def reset_batch(conn: sqlite3.Connection, batch: BatchRecord) -> None:
    """Return a non-accelerable batch's jobs and results to normal priority."""
    logger.info("batch %d is not accelerable; resetting job priorities", batch.id)
    n_workunits, n_results = reset_batch_priorities(conn, batch.id)
    logger.debug("   reset %d WUs and %d results", n_workunits, n_results)


def process_batch(
    conn: sqlite3.Connection,
    batch: BatchRecord,
    apps: AppLookup,
    now: datetime,
    summary: PassSummary,
    min_frac_done: float = DEFAULT_MIN_FRAC_DONE,
    max_not_done: int = DEFAULT_MAX_NOT_DONE,
) -> None:
    """Refresh, evaluate and accelerate (or reset) one listed batch."""
    summary.batches_seen += 1

    # Resolve the app first so an unknown app aborts before anything is written
    accelerable = apps.accelerable(batch.app_id)

    workunits = get_batch_workunits(conn, batch.id)
    if not workunits:
        logger.info("batch %d has no jobs", batch.id)
        summary.batches_skipped += 1
        return

    refreshed = refresh_batch_progress(conn, batch, workunits, now)
    if refreshed is None:
        msg = f"Batch {batch.id} not found"
        raise AcceleratorError(msg)
    if refreshed.state != BATCH_STATE_IN_PROGRESS:
        logger.info("batch %d not in progress", batch.id)
        summary.batches_skipped += 1
        return

    n_not_done = len(workunits) - refreshed.n_done
    if not is_eligible(refreshed.fraction_done, n_not_done, min_frac_done, max_not_done):
        logger.info(
            "not doing batch %d: %.3f done, %d not done",
            batch.id,
            refreshed.fraction_done,
            n_not_done,
        )
        summary.batches_ineligible += 1
        return

    logger.info("doing batch %d", batch.id)
    if accelerable:
        accelerate_batch(conn, refreshed, workunits, now, summary)
        summary.batches_accelerated += 1
    else:
        reset_batch(conn, refreshed)
        summary.batches_reset += 1


def run_pass(
    conn: sqlite3.Connection,
    min_frac_done: float = DEFAULT_MIN_FRAC_DONE,
    max_not_done: int = DEFAULT_MAX_NOT_DONE,
    now: Optional[datetime] = None,
) -> PassSummary:
    """Run one accelerator pass over every in-progress batch.

    Stats from the external precompute must be fresh before this is called.
    Raises AcceleratorError if a batch refers to an unknown app, and lets
    sqlite3 errors propagate; nothing is resumed on the next pass.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    logger.info("starting batch accelerator: %s", format_timestamp(now))

    apps = AppLookup.from_apps(get_apps(conn))
    summary = PassSummary()

    for batch in get_batches(conn, state=BATCH_STATE_IN_PROGRESS):
        process_batch(
            conn,
            batch,
            apps,
            now,
            summary,
            min_frac_done=min_frac_done,
            max_not_done=max_not_done,
        )

    logger.info("finished batch accelerator: %s", format_timestamp(datetime.now(timezone.utc)))
    return summary
