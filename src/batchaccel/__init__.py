"""
batchaccel - Batch completion accelerator.

Find batches that are nearly done and push their stragglers through.
"""

from batchaccel.accel import (
    AcceleratorError,
    AppLookup,
    PassSummary,
    WorkunitPlan,
    is_eligible,
    plan_workunit,
    run_pass,
)

__version__ = "0.1.0"
__all__ = [
    "AcceleratorError",
    "AppLookup",
    "PassSummary",
    "WorkunitPlan",
    "__version__",
    "is_eligible",
    "plan_workunit",
    "run_pass",
]
