"""One scheduler tick: select due operations, run them, persist outcomes."""

import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from brokerwatch.brokers.updater import BrokerUpdater
from brokerwatch.config.models import AppConfig
from brokerwatch.domain.models import DataBroker, ProfileQuery
from brokerwatch.engine.driver import DriverFactory
from brokerwatch.engine.exceptions import UnknownJobError
from brokerwatch.engine.job import JobEngine
from brokerwatch.engine.models import JobInput, JobKind, JobResult, JobState
from brokerwatch.logging import get_logger
from brokerwatch.logging.context import log_context
from brokerwatch.notifications import LoggingHooks, OutboundHooks
from brokerwatch.persistence import DataBrokerVault, PersistenceError, get_session
from brokerwatch.utils.timestamps import utc_now

from .models import JobRunStats, SchedulerRunResult
from .outcomes import OutcomeRecorder

logger = get_logger(__name__, component="scheduler")


class OperationRunner:
    """
    Runs every due scan and opt-out once per tick.

    Jobs run on a thread pool bounded by ``max_concurrency``. Jobs of the same
    broker are queued on one worker and run one after another, so a broker
    never sees two sessions at once. Each job gets its own driver.
    """

    def __init__(
        self,
        app_config: AppConfig,
        engine: JobEngine,
        driver_factory: DriverFactory,
        hooks: Optional[OutboundHooks] = None,
        updater: Optional[BrokerUpdater] = None,
        session_scope: Callable[[], AbstractContextManager] = get_session,
        clock: Callable = utc_now,
    ):
        """
        Initialize the runner.

        Args:
            app_config: Application configuration
            engine: Job engine; its cancel event also stops this runner
            driver_factory: Creates one automation driver per job
            hooks: Outbound hooks (defaults to LoggingHooks)
            updater: Broker updater, run first when ``update_brokers_each_run`` is set
            session_scope: Factory for transactional sessions
            clock: Returns the current UTC time
        """
        self.app_config = app_config
        self.engine = engine
        self.driver_factory = driver_factory
        self.hooks = hooks or LoggingHooks()
        self.updater = updater
        self.session_scope = session_scope
        self.clock = clock
        self.recorder = OutcomeRecorder(self.hooks, session_scope=session_scope, clock=clock)
        self._lock = threading.Lock()

    @property
    def cancel_event(self) -> threading.Event:
        return self.engine.cancel_event

    def should_continue(self) -> bool:
        return not self.cancel_event.is_set()

    def run_once(self) -> SchedulerRunResult:
        """
        Execute one tick.

        Returns:
            SchedulerRunResult with per-job statistics. Job failures are
            captured in the result; ``skipped`` is set when a previous tick is
            still running.
        """
        run_started_at = self.clock()
        run_id = uuid4().hex

        if not self._lock.acquire(blocking=False):
            with log_context(run_id=run_id):
                logger.warning(
                    "Scheduler run skipped: previous run still in progress",
                    extra={"event": "scheduler.run.skipped", "reason": "lock_held"},
                )
            return SchedulerRunResult(
                run_started_at=run_started_at,
                run_finished_at=self.clock(),
                skipped=True,
            )

        try:
            with log_context(run_id=run_id):
                logger.info("Scheduler run started", extra={"event": "scheduler.run.started"})

                if self.updater is not None and self.app_config.scheduling.update_brokers_each_run:
                    self._update_brokers()

                try:
                    jobs = self.collect_due_jobs(run_started_at)
                except PersistenceError as e:
                    logger.error(
                        f"Could not read due operations: {e}",
                        extra={"event": "scheduler.run.selection_failed"},
                        exc_info=True,
                    )
                    return SchedulerRunResult(
                        run_started_at=run_started_at,
                        run_finished_at=self.clock(),
                        had_errors=True,
                    )

                job_stats = self._run_jobs(jobs, run_id)

                result = SchedulerRunResult(
                    run_started_at=run_started_at,
                    run_finished_at=self.clock(),
                    job_stats=job_stats,
                )
                logger.info(
                    "Scheduler run completed",
                    extra={
                        "event": "scheduler.run.completed",
                        "duration_ms": int(result.total_duration_seconds * 1000),
                        "scans_run": result.scans_run,
                        "opt_outs_run": result.opt_outs_run,
                        "completed": result.completed,
                        "failed": result.failed,
                        "cancelled": result.cancelled,
                        "matches_found": result.matches_found,
                        "profiles_removed": result.profiles_removed,
                        "had_errors": result.had_errors,
                    },
                )
                return result
        finally:
            self._lock.release()

    def collect_due_jobs(self, now) -> List[JobInput]:
        """
        Build the jobs due at ``now``: scans first, then opt-outs.

        Opt-outs are left out when the broker is a child of a known parent
        (the parent's opt-out covers it), when the broker has no opt-out
        script, or when the broker's ``max_attempts`` has been reached.
        """
        defaults = self.app_config.scheduling.defaults()
        jobs: List[JobInput] = []

        with self.session_scope() as session:
            vault = DataBrokerVault(session)
            brokers: Dict[int, DataBroker] = {b.id: b for b in vault.fetch_all_brokers()}
            known_urls = {b.url for b in brokers.values()}
            queries: Dict[int, Optional[ProfileQuery]] = {}

            def query_for(query_id: int) -> Optional[ProfileQuery]:
                if query_id not in queries:
                    queries[query_id] = vault.fetch_profile_query(query_id)
                return queries[query_id]

            for operation in vault.fetch_due_scan_operations(now):
                broker = brokers.get(operation.broker_id)
                query = query_for(operation.profile_query_id)
                if broker is None or query is None or query.deprecated:
                    continue
                jobs.append(JobInput(kind=JobKind.SCAN, broker=broker, profile_query=query))

            for operation in vault.fetch_due_opt_out_operations(now):
                broker = brokers.get(operation.broker_id)
                if broker is None or not broker.opt_out_script:
                    continue
                if broker.is_child and broker.parent_url in known_urls:
                    logger.debug(
                        f"Skipping opt-out on {broker.url}; handled by parent {broker.parent_url}",
                        extra={"event": "scheduler.opt_out.child_skipped", "broker_id": broker.id},
                    )
                    continue
                if not broker.scheduling_or(defaults).allows_attempt(operation.attempt_count):
                    logger.debug(
                        f"Opt-out for profile {operation.extracted_profile_id} reached max attempts",
                        extra={
                            "event": "scheduler.opt_out.max_attempts",
                            "extracted_profile_id": operation.extracted_profile_id,
                            "attempt_count": operation.attempt_count,
                        },
                    )
                    continue

                profile = vault.fetch_extracted_profile(operation.extracted_profile_id)
                query = query_for(operation.profile_query_id)
                if profile is None or profile.is_removed or query is None:
                    continue
                jobs.append(
                    JobInput(
                        kind=JobKind.OPT_OUT,
                        broker=broker,
                        profile_query=query,
                        extracted_profile=profile,
                    )
                )

        logger.info(
            f"Found {len(jobs)} due job(s)",
            extra={
                "event": "scheduler.jobs.collected",
                "scan_count": sum(1 for j in jobs if j.kind is JobKind.SCAN),
                "opt_out_count": sum(1 for j in jobs if j.kind is JobKind.OPT_OUT),
            },
        )
        return jobs

    def _run_jobs(self, jobs: List[JobInput], run_id: str) -> List[JobRunStats]:
        by_broker: "OrderedDict[int, List[JobInput]]" = OrderedDict()
        for job in jobs:
            by_broker.setdefault(job.broker.id, []).append(job)

        if not by_broker:
            return []

        workers = min(self.app_config.scheduling.max_concurrency, len(by_broker))
        job_stats: List[JobRunStats] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="broker-job") as pool:
            futures = [
                pool.submit(self._run_broker_jobs, broker_jobs, run_id)
                for broker_jobs in by_broker.values()
            ]
            for future in futures:
                job_stats.extend(future.result())
        return job_stats

    def _run_broker_jobs(self, jobs: List[JobInput], run_id: str) -> List[JobRunStats]:
        """Run one broker's jobs in order on the current worker."""
        stats = []
        for job in jobs:
            if not self.should_continue():
                break
            with log_context(run_id=run_id, **job.describe()):
                stats.append(self.run_job(job))
        return stats

    def run_job(self, job: JobInput) -> JobRunStats:
        """Run a single job with a fresh driver and record its outcome."""
        scheduling = job.broker.scheduling_or(self.app_config.scheduling.defaults())

        try:
            driver = self.driver_factory()
        except Exception as e:
            logger.error(
                f"Could not create automation driver: {e}",
                extra={"event": "scheduler.driver_failed"},
                exc_info=True,
            )
            result = JobResult(kind=job.kind)
            result.error = UnknownJobError(f"Driver unavailable: {e}")
            result.transition(JobState.FAILED)
            return self.recorder.record(job, result, scheduling)

        result = self.engine.run(job, driver, should_continue=self.should_continue)
        return self.recorder.record(job, result, scheduling)

    def _update_brokers(self) -> None:
        try:
            self.updater.refresh()
        except Exception as e:
            logger.error(
                f"Broker update failed: {e}",
                extra={"event": "scheduler.broker_update_failed"},
                exc_info=True,
            )
