"""Scheduler service for periodic scheduler ticks."""

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from brokerwatch.logging import get_logger

logger = get_logger(__name__, component="scheduler")

JOB_ID = "broker-operations"


class SchedulerService:
    """
    Wraps APScheduler to run the operation runner at a fixed interval.

    Uses BackgroundScheduler so ticks run in a separate thread while the main
    thread handles signals and coordinates shutdown.
    """

    def __init__(
        self,
        tick: Callable[[], Any],
        interval_seconds: int,
        shutdown_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the scheduler service.

        Args:
            tick: Function to call on each scheduled run (e.g., runner.run_once)
            interval_seconds: Interval between runs in seconds
            shutdown_event: Set on shutdown; running jobs see it and stop early
        """
        self.tick = tick
        self.interval_seconds = interval_seconds
        self.shutdown_event = shutdown_event

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,  # Never overlap ticks
                "coalesce": True,  # Collapse missed runs into one
                "misfire_grace_time": interval_seconds,
            },
            timezone=timezone.utc,
        )

    def start(self) -> None:
        """
        Start the scheduler and register the tick job.

        The first tick runs immediately; later ticks follow the interval.
        """
        trigger = IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc)

        next_run = datetime.now(timezone.utc)
        self.scheduler.add_job(
            func=self.tick,
            trigger=trigger,
            id=JOB_ID,
            name="Broker scans and opt-outs",
            replace_existing=True,
            next_run_time=next_run,
        )
        self.scheduler.start()

        logger.info(
            f"Scheduler started with interval: {self.interval_seconds} seconds",
            extra={
                "event": "scheduler.started",
                "interval_seconds": self.interval_seconds,
                "next_run_time": next_run.isoformat(),
            },
        )

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        The shutdown event is set first so an in-flight tick cancels its jobs
        (releasing their drivers) instead of running to completion.

        Args:
            wait: If True, wait for the running tick to return
        """
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.shutdown_event:
            self.shutdown_event.set()

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def trigger_now(self) -> Any:
        """Run one tick synchronously in the current thread."""
        logger.info("Triggering immediate scheduler run", extra={"event": "scheduler.trigger_now"})
        return self.tick()

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        """
        Get the next scheduled run time.

        Returns:
            Next run time, or None if not scheduled
        """
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
