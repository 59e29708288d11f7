# Copyright (c) Syntropy Systems
"""Pytest fixtures for batchaccel tests."""

import os
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def accel_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary batchaccel project directory."""
    from batchaccel.db import init_db

    project_dir = temp_dir / ".batchaccel"
    project_dir.mkdir()

    # Initialize database
    db_path = project_dir / "batchaccel.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(accel_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from batchaccel.db import get_connection

    db_path = accel_project / ".batchaccel" / "batchaccel.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()
