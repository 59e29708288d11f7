# Copyright (c) Syntropy Systems
"""Pydantic models for job store records."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional, cast

from pydantic import field_validator

from .base import BatchAccelBaseModel

BatchState = Literal["in_progress", "complete", "aborted", "retired"]
ResultServerState = Literal["unsent", "in_progress", "over"]

BATCH_STATE_IN_PROGRESS: BatchState = "in_progress"
BATCH_STATE_COMPLETE: BatchState = "complete"
BATCH_STATE_ABORTED: BatchState = "aborted"
BATCH_STATE_RETIRED: BatchState = "retired"

RESULT_STATE_UNSENT: ResultServerState = "unsent"
RESULT_STATE_IN_PROGRESS: ResultServerState = "in_progress"
RESULT_STATE_OVER: ResultServerState = "over"

PRIORITY_NORMAL = 0
PRIORITY_HIGH = 1


class AppRecord(BatchAccelBaseModel):
    """Database app record."""

    id: int
    name: str
    # Number of executable size classes; zero means the app is not accelerable
    n_size_classes: int = 0

    @property
    def accelerable(self) -> bool:
        """Whether extra replicas can be scheduled for this app's jobs."""
        return self.n_size_classes > 0


class BatchRecord(BatchAccelBaseModel):
    """Database batch record."""

    id: int
    name: Optional[str] = None
    app_id: int
    state: BatchState
    njobs: int = 0
    njobs_success: int = 0
    nerror_jobs: int = 0
    njobs_in_prog: int = 0
    fraction_done: float = 0.0
    # Seconds after which a sent but unreported replica is considered stale
    expire_time: float = 0.0
    create_time: Optional[str] = None
    completion_time: Optional[str] = None

    @property
    def n_done(self) -> int:
        """Jobs that finished, successfully or not."""
        return self.njobs_success + self.nerror_jobs


class WorkunitRecord(BatchAccelBaseModel):
    """Database work unit (job) record."""

    id: int
    name: Optional[str] = None
    batch_id: int
    app_id: int
    canonical_resultid: Optional[int] = None
    error_mask: int = 0
    target_nresults: int = 1
    max_total_results: int = 1
    priority: int = PRIORITY_NORMAL
    rsc_fpops_est: float = 0.0
    transition_time: Optional[str] = None

    @property
    def finished(self) -> bool:
        """A job with a canonical result or a permanent failure is finished."""
        return self.canonical_resultid is not None or self.error_mask != 0


class ResultRecord(BatchAccelBaseModel):
    """Database result (replica) record."""

    id: int
    workunit_id: int
    batch_id: int
    server_state: ResultServerState
    sent_time: Optional[str] = None
    priority: int = PRIORITY_NORMAL

    @field_validator("sent_time", mode="before")
    @classmethod
    def _parse_datetime(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.strftime("%Y-%m-%dT%H:%M:%SZ")
        return cast(str, value)
