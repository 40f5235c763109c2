"""Data models for scheduler run tracking and reporting."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class JobRunStats:
    """
    Statistics for one job executed within a scheduler run.

    Attributes:
        job_kind: "scan" or "opt_out"
        broker_id: Broker the job ran against
        profile_query_id: Profile query the job was for
        extracted_profile_id: Listing being removed (opt-out jobs only)
        state: Terminal job state (completed, failed, cancelled)
        error_kind: JobError kind when the job did not complete
        match_count: Listings found (scan jobs)
        new_profiles: Listings stored for the first time (scan jobs)
        profiles_removed: Listings newly marked removed by this job's outcome
        executed_actions: Actions dispatched, retries included
        persisted: Whether the outcome was written to the store
        duration_seconds: Wall-clock time of the job
    """

    job_kind: str
    broker_id: int
    profile_query_id: int
    extracted_profile_id: Optional[int] = None
    state: str = "idle"
    error_kind: Optional[str] = None
    match_count: int = 0
    new_profiles: int = 0
    profiles_removed: int = 0
    executed_actions: int = 0
    persisted: bool = False
    duration_seconds: float = 0.0

    @property
    def had_errors(self) -> bool:
        return self.state == "failed" or (self.state == "completed" and not self.persisted)


@dataclass
class SchedulerRunResult:
    """
    Aggregate results from one scheduler tick.

    Attributes:
        run_started_at: UTC timestamp when the run began
        run_finished_at: UTC timestamp when the run completed
        total_duration_seconds: Total time for the entire run
        scans_run: Scan jobs executed
        opt_outs_run: Opt-out jobs executed
        completed: Jobs that completed
        failed: Jobs that failed
        cancelled: Jobs cancelled by shutdown
        matches_found: Listings reported by scans
        profiles_removed: Listings newly marked removed
        job_stats: Per-job statistics
        had_errors: Whether any job failed or could not be persisted
        skipped: Whether the run was skipped (previous run still in progress)
    """

    run_started_at: datetime
    run_finished_at: datetime
    total_duration_seconds: float = 0.0
    scans_run: int = 0
    opt_outs_run: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    matches_found: int = 0
    profiles_removed: int = 0
    job_stats: List[JobRunStats] = field(default_factory=list)
    had_errors: bool = False
    skipped: bool = False

    def __post_init__(self):
        """Compute aggregate statistics from job stats."""
        if self.job_stats:
            self.scans_run = sum(1 for s in self.job_stats if s.job_kind == "scan")
            self.opt_outs_run = sum(1 for s in self.job_stats if s.job_kind == "opt_out")
            self.completed = sum(1 for s in self.job_stats if s.state == "completed")
            self.failed = sum(1 for s in self.job_stats if s.state == "failed")
            self.cancelled = sum(1 for s in self.job_stats if s.state == "cancelled")
            self.matches_found = sum(s.match_count for s in self.job_stats)
            self.profiles_removed = sum(s.profiles_removed for s in self.job_stats)
            self.had_errors = any(s.had_errors for s in self.job_stats)

        if self.total_duration_seconds == 0.0:
            delta = self.run_finished_at - self.run_started_at
            self.total_duration_seconds = delta.total_seconds()
