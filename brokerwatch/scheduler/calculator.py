"""Preferred-run-date rules for scan and opt-out operations.

All durations come from the broker's SchedulingConfig (or the configured
defaults) and are expressed in hours.
"""

from datetime import datetime
from typing import Optional

from brokerwatch.domain.models import OptOutOperationData, SchedulingConfig
from brokerwatch.utils.timestamps import earliest, ensure_utc, hours_from


def next_maintenance_scan(now: datetime, scheduling: SchedulingConfig) -> datetime:
    """Next scan after a successful one."""
    return hours_from(now, scheduling.maintenance_scan_hours)


def next_retry(now: datetime, scheduling: SchedulingConfig) -> datetime:
    """Next attempt after a failed scan or opt-out."""
    return hours_from(now, scheduling.retry_error_hours)


def confirmation_scan(
    now: datetime, current: Optional[datetime], scheduling: SchedulingConfig
) -> datetime:
    """Scan date after an opt-out was submitted.

    The scan that confirms removal runs no later than ``confirm_opt_out_hours``
    from now; an earlier scheduled scan is kept.
    """
    return earliest(current, hours_from(now, scheduling.confirm_opt_out_hours))


def should_resubmit_opt_out(
    operation: OptOutOperationData, now: datetime, scheduling: SchedulingConfig
) -> bool:
    """Whether a listing found again should get a fresh opt-out request.

    True when the previous request was submitted more than
    ``maintenance_scan_hours`` ago and nothing is pending for it.
    """
    if operation.preferred_run_date is not None or operation.submitted_date is None:
        return False
    return hours_from(operation.submitted_date, scheduling.maintenance_scan_hours) < ensure_utc(now)
