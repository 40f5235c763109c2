"""Scheduling: due-operation selection, job dispatch and outcome persistence."""

from .calculator import (
    confirmation_scan,
    next_maintenance_scan,
    next_retry,
    should_resubmit_opt_out,
)
from .models import JobRunStats, SchedulerRunResult
from .outcomes import OutcomeRecorder
from .runner import OperationRunner
from .service import SchedulerService

__all__ = [
    "OperationRunner",
    "OutcomeRecorder",
    "SchedulerService",
    "SchedulerRunResult",
    "JobRunStats",
    "next_maintenance_scan",
    "next_retry",
    "confirmation_scan",
    "should_resubmit_opt_out",
]
