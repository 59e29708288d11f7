"""SQLite job store with WAL mode and key-scoped atomic updates."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from batchaccel.models.db import (
    BATCH_STATE_COMPLETE,
    BATCH_STATE_IN_PROGRESS,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    RESULT_STATE_UNSENT,
    AppRecord,
    BatchRecord,
    ResultRecord,
    WorkunitRecord,
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# SQL schema for the shared job store
SCHEMA = """
-- Applications
CREATE TABLE IF NOT EXISTS apps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    n_size_classes INTEGER DEFAULT 0  -- 0 = not accelerable
);

-- Batches of jobs submitted together
CREATE TABLE IF NOT EXISTS batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    app_id INTEGER NOT NULL REFERENCES apps(id),
    state TEXT DEFAULT 'in_progress',  -- in_progress, complete, aborted, retired

    -- Derived progress, refreshed by the accelerator before each evaluation
    njobs INTEGER DEFAULT 0,
    njobs_success INTEGER DEFAULT 0,
    nerror_jobs INTEGER DEFAULT 0,
    njobs_in_prog INTEGER DEFAULT 0,
    fraction_done REAL DEFAULT 0,

    expire_time REAL DEFAULT 0,  -- seconds before a sent result is stale
    create_time TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    completion_time TEXT
);

-- Work units (jobs)
CREATE TABLE IF NOT EXISTS workunits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    batch_id INTEGER NOT NULL REFERENCES batches(id),
    app_id INTEGER NOT NULL REFERENCES apps(id),
    canonical_resultid INTEGER,      -- NULL until a validated result exists
    error_mask INTEGER DEFAULT 0,    -- non-zero = permanently failed
    target_nresults INTEGER DEFAULT 1,
    max_total_results INTEGER DEFAULT 1,
    priority INTEGER DEFAULT 0,      -- 0 normal, 1 high
    rsc_fpops_est REAL DEFAULT 0,
    transition_time TEXT             -- set to ask dispatch to re-examine the job
);

-- Results (replicas of a work unit)
CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workunit_id INTEGER NOT NULL REFERENCES workunits(id),
    batch_id INTEGER NOT NULL REFERENCES batches(id),
    server_state TEXT DEFAULT 'unsent',  -- unsent, in_progress, over
    sent_time TEXT,
    priority INTEGER DEFAULT 0
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_batches_state ON batches(state);
CREATE INDEX IF NOT EXISTS idx_workunits_batch ON workunits(batch_id);
CREATE INDEX IF NOT EXISTS idx_results_workunit ON results(workunit_id);
CREATE INDEX IF NOT EXISTS idx_results_batch ON results(batch_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode so dispatch and the accelerator can share the store
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a UTC ISO string."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return format_timestamp(datetime.now(timezone.utc))


# --- App Operations ---

def create_app(conn: sqlite3.Connection, name: str, n_size_classes: int = 0) -> int:
    """Create a new app and return its ID."""
    cursor = conn.execute(
        "INSERT INTO apps (name, n_size_classes) VALUES (?, ?)",
        (name, n_size_classes),
    )
    return cursor.lastrowid


def set_app_size_classes(conn: sqlite3.Connection, app_id: int, n_size_classes: int) -> None:
    """Record the app's size class count (written by the stats precompute)."""
    cursor = conn.execute(
        "UPDATE apps SET n_size_classes = ? WHERE id = ?",
        (n_size_classes, app_id),
    )
    if cursor.rowcount == 0:
        raise ValueError(f"App {app_id} not found")


def get_apps(conn: sqlite3.Connection) -> list[AppRecord]:
    """Get all apps."""
    rows = conn.execute("SELECT * FROM apps ORDER BY id").fetchall()
    return [AppRecord.model_validate(dict(row)) for row in rows]


# --- Batch Operations ---

def create_batch(
    conn: sqlite3.Connection,
    app_id: int,
    name: Optional[str] = None,
    expire_time: float = 0.0,
) -> int:
    """Create a new in-progress batch and return its ID."""
    cursor = conn.execute(
        "INSERT INTO batches (name, app_id, state, expire_time) VALUES (?, ?, ?, ?)",
        (name, app_id, BATCH_STATE_IN_PROGRESS, expire_time),
    )
    return cursor.lastrowid


def get_batch(conn: sqlite3.Connection, batch_id: int) -> Optional[BatchRecord]:
    """Get a batch by ID."""
    row = conn.execute(
        "SELECT * FROM batches WHERE id = ?",
        (batch_id,),
    ).fetchone()

    if row is None:
        return None

    return BatchRecord.model_validate(dict(row))


def get_batches(conn: sqlite3.Connection, state: Optional[str] = None) -> list[BatchRecord]:
    """Get batches, optionally filtered by state."""
    query = "SELECT * FROM batches WHERE 1=1"
    params: list[Any] = []

    if state:
        query += " AND state = ?"
        params.append(state)

    query += " ORDER BY id"

    rows = conn.execute(query, params).fetchall()
    return [BatchRecord.model_validate(dict(row)) for row in rows]


def set_batch_state(conn: sqlite3.Connection, batch_id: int, state: str) -> None:
    """Move a batch to a new state (abort, retire, ...)."""
    cursor = conn.execute(
        "UPDATE batches SET state = ? WHERE id = ?",
        (state, batch_id),
    )
    if cursor.rowcount == 0:
        raise ValueError(f"Batch {batch_id} not found")


def update_batch_progress(
    conn: sqlite3.Connection,
    batch_id: int,
    njobs: int,
    njobs_success: int,
    nerror_jobs: int,
    njobs_in_prog: int,
    fraction_done: float,
    completion_time: Optional[str] = None,
) -> bool:
    """
    Store derived progress for an in-progress batch.

    If completion_time is given the batch is also moved to 'complete'.
    The update only applies while the batch is still in progress, so a batch
    aborted or retired in the meantime keeps its state.

    Returns True if the row was updated.
    """
    assignments = [
        "njobs = ?",
        "njobs_success = ?",
        "nerror_jobs = ?",
        "njobs_in_prog = ?",
        "fraction_done = ?",
    ]
    params: list[Any] = [njobs, njobs_success, nerror_jobs, njobs_in_prog, fraction_done]

    if completion_time is not None:
        assignments.append("state = ?")
        params.append(BATCH_STATE_COMPLETE)
        assignments.append("completion_time = ?")
        params.append(completion_time)

    params.extend([batch_id, BATCH_STATE_IN_PROGRESS])
    cursor = conn.execute(
        f"UPDATE batches SET {', '.join(assignments)} WHERE id = ? AND state = ?",  # noqa: S608
        params,
    )
    return cursor.rowcount > 0


def reset_batch_priorities(conn: sqlite3.Connection, batch_id: int) -> tuple[int, int]:
    """
    Reset every work unit and result of a batch to normal priority.

    Returns (workunits_updated, results_updated).
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
        wu_cursor = conn.execute(
            "UPDATE workunits SET priority = ? WHERE batch_id = ?",
            (PRIORITY_NORMAL, batch_id),
        )
        result_cursor = conn.execute(
            "UPDATE results SET priority = ? WHERE batch_id = ?",
            (PRIORITY_NORMAL, batch_id),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return wu_cursor.rowcount, result_cursor.rowcount


# --- Work Unit Operations ---

def create_workunit(
    conn: sqlite3.Connection,
    batch_id: int,
    name: Optional[str] = None,
    target_nresults: int = 1,
    max_total_results: int = 1,
    priority: int = PRIORITY_NORMAL,
    rsc_fpops_est: float = 0.0,
) -> int:
    """Create a work unit in a batch and return its ID."""
    batch = get_batch(conn, batch_id)
    if batch is None:
        raise ValueError(f"Batch {batch_id} not found")

    cursor = conn.execute(
        """
        INSERT INTO workunits
            (name, batch_id, app_id, target_nresults, max_total_results, priority, rsc_fpops_est)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (name, batch_id, batch.app_id, target_nresults, max_total_results, priority, rsc_fpops_est),
    )
    conn.execute(
        "UPDATE batches SET njobs = njobs + 1 WHERE id = ?",
        (batch_id,),
    )
    return cursor.lastrowid


def get_workunit(conn: sqlite3.Connection, workunit_id: int) -> Optional[WorkunitRecord]:
    """Get a work unit by ID."""
    row = conn.execute(
        "SELECT * FROM workunits WHERE id = ?",
        (workunit_id,),
    ).fetchone()

    if row is None:
        return None

    return WorkunitRecord.model_validate(dict(row))


def get_batch_workunits(conn: sqlite3.Connection, batch_id: int) -> list[WorkunitRecord]:
    """Get all work units of a batch."""
    rows = conn.execute(
        "SELECT * FROM workunits WHERE batch_id = ? ORDER BY id",
        (batch_id,),
    ).fetchall()
    return [WorkunitRecord.model_validate(dict(row)) for row in rows]


def set_canonical_result(conn: sqlite3.Connection, workunit_id: int, result_id: int) -> None:
    """Record the validated result of a work unit."""
    conn.execute(
        "UPDATE workunits SET canonical_resultid = ? WHERE id = ?",
        (result_id, workunit_id),
    )


def set_error_mask(conn: sqlite3.Connection, workunit_id: int, error_mask: int) -> None:
    """Mark a work unit as permanently failed."""
    conn.execute(
        "UPDATE workunits SET error_mask = ? WHERE id = ?",
        (error_mask, workunit_id),
    )


def update_workunit_if_unchanged(
    conn: sqlite3.Connection,
    workunit: WorkunitRecord,
    n_results: int,
    add_result: bool,
    raise_priority: bool,
    now: str,
) -> bool:
    """
    Atomically accelerate a work unit, compare-and-set style.

    The update only applies if the work unit still has the replica counts,
    priority and result count observed when the decision was made, and is
    still unfinished. A stale snapshot matches no row and the update is
    dropped; the next pass re-evaluates the job.

    Returns True if the row was updated.
    """
    assignments: list[str] = []
    params: list[Any] = []

    if add_result:
        assignments.append("target_nresults = ?")
        params.append(workunit.target_nresults + 1)
        assignments.append("max_total_results = ?")
        params.append(workunit.max_total_results + 1)
        assignments.append("transition_time = ?")
        params.append(now)
    if raise_priority:
        assignments.append("priority = ?")
        params.append(PRIORITY_HIGH)

    if not assignments:
        return False

    query = f"""
        UPDATE workunits
        SET {', '.join(assignments)}
        WHERE id = ?
          AND target_nresults = ?
          AND max_total_results = ?
          AND priority = ?
          AND canonical_resultid IS NULL
          AND error_mask = 0
          AND (SELECT COUNT(*) FROM results WHERE workunit_id = ?) = ?
    """  # noqa: S608
    params.extend([
        workunit.id,
        workunit.target_nresults,
        workunit.max_total_results,
        workunit.priority,
        workunit.id,
        n_results,
    ])

    cursor = conn.execute(query, params)
    return cursor.rowcount > 0


# --- Result Operations ---

def create_result(
    conn: sqlite3.Connection,
    workunit_id: int,
    server_state: str = RESULT_STATE_UNSENT,
    sent_time: Optional[str] = None,
    priority: int = PRIORITY_NORMAL,
) -> int:
    """Create a result for a work unit and return its ID."""
    workunit = get_workunit(conn, workunit_id)
    if workunit is None:
        raise ValueError(f"Work unit {workunit_id} not found")

    cursor = conn.execute(
        """
        INSERT INTO results (workunit_id, batch_id, server_state, sent_time, priority)
        VALUES (?, ?, ?, ?, ?)
        """,
        (workunit_id, workunit.batch_id, server_state, sent_time, priority),
    )
    return cursor.lastrowid


def get_result(conn: sqlite3.Connection, result_id: int) -> Optional[ResultRecord]:
    """Get a result by ID."""
    row = conn.execute(
        "SELECT * FROM results WHERE id = ?",
        (result_id,),
    ).fetchone()

    if row is None:
        return None

    return ResultRecord.model_validate(dict(row))


def get_workunit_results(conn: sqlite3.Connection, workunit_id: int) -> list[ResultRecord]:
    """Get all results of a work unit."""
    rows = conn.execute(
        """
        SELECT id, workunit_id, batch_id, server_state, sent_time, priority
        FROM results
        WHERE workunit_id = ?
        ORDER BY id
        """,
        (workunit_id,),
    ).fetchall()
    return [ResultRecord.model_validate(dict(row)) for row in rows]


def boost_unsent_result(conn: sqlite3.Connection, result_id: int) -> bool:
    """
    Raise an unsent result to high priority.

    Only applies while the result is still unsent and at normal priority.
    Returns True if the row was updated.
    """
    cursor = conn.execute(
        """
        UPDATE results
        SET priority = ?
        WHERE id = ? AND server_state = ? AND priority = ?
        """,
        (PRIORITY_HIGH, result_id, RESULT_STATE_UNSENT, PRIORITY_NORMAL),
    )
    return cursor.rowcount > 0
