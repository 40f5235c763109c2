"""Persist the outcome of finished jobs.

Every completion is written in one transaction while holding the store lock,
so concurrent workers never interleave partial updates. Hooks fire only after
the transaction has committed, outside the lock.
"""

import threading
from contextlib import AbstractContextManager
from typing import Callable, List, Optional

from brokerwatch.domain.models import (
    Event,
    EventType,
    OptOutOperationData,
    SchedulingConfig,
)
from brokerwatch.engine.exceptions import JobError, StorageFailureError
from brokerwatch.engine.models import JobInput, JobKind, JobResult, JobState
from brokerwatch.logging import get_logger
from brokerwatch.notifications import Milestone, MilestoneGuard, OutboundHooks, call_hook
from brokerwatch.persistence import DataBrokerVault, PersistenceError, get_session
from brokerwatch.utils.timestamps import utc_now

from .calculator import (
    confirmation_scan,
    next_maintenance_scan,
    next_retry,
    should_resubmit_opt_out,
)
from .models import JobRunStats

logger = get_logger(__name__, component="scheduler")


class OutcomeRecorder:
    """Writes job outcomes through the vault and notifies hooks."""

    def __init__(
        self,
        hooks: OutboundHooks,
        session_scope: Callable[[], AbstractContextManager] = get_session,
        clock: Callable = utc_now,
        store_lock: Optional[threading.Lock] = None,
    ):
        """Initialize the recorder.

        Args:
            hooks: Receiver of scan, milestone and error notifications
            session_scope: Factory for transactional sessions
            clock: Returns the current UTC time
            store_lock: Serialises completion writes across workers
        """
        self.hooks = hooks
        self.milestones = MilestoneGuard(hooks)
        self.session_scope = session_scope
        self.clock = clock
        self.store_lock = store_lock or threading.Lock()

    def record(
        self, job: JobInput, result: JobResult, scheduling: SchedulingConfig
    ) -> JobRunStats:
        """Persist ``result`` and return the job's statistics.

        Cancelled jobs persist nothing. A storage failure is logged, reported
        through ``on_error`` and left for the next tick.
        """
        stats = JobRunStats(
            job_kind=job.kind.value,
            broker_id=job.broker.id,
            profile_query_id=job.profile_query.id,
            extracted_profile_id=job.extracted_profile.id if job.extracted_profile else None,
            state=result.state.value,
            error_kind=result.error.kind.value if result.error else None,
            match_count=len(result.extracted_profiles),
            executed_actions=result.executed_actions,
            duration_seconds=result.duration_seconds,
        )

        if result.state is JobState.CANCELLED:
            logger.info(
                "Job cancelled; nothing persisted",
                extra={"event": "outcome.cancelled", **job.describe()},
            )
            return stats

        milestones: List[Milestone] = []
        try:
            with self.store_lock:
                with self.session_scope() as session:
                    vault = DataBrokerVault(session)
                    if result.state is JobState.FAILED:
                        self._record_failure(vault, job, result, scheduling)
                    elif job.kind is JobKind.SCAN:
                        self._record_scan(vault, job, result, scheduling, stats)
                    else:
                        self._record_opt_out(vault, job, result, scheduling, stats)
                    if stats.new_profiles or stats.profiles_removed:
                        milestones = self.milestones.claim(
                            vault,
                            matched=bool(stats.new_profiles),
                            removed=bool(stats.profiles_removed),
                        )
        except PersistenceError as e:
            error = StorageFailureError(f"Failed to persist {job.kind.value} outcome: {e}")
            logger.error(
                error.message,
                extra={"event": "outcome.storage_failed", **job.describe()},
                exc_info=True,
            )
            stats.error_kind = error.kind.value
            stats.profiles_removed = 0
            stats.new_profiles = 0
            call_hook(self.hooks, "on_error", error.kind.value, self._error_context(job, error))
            return stats

        stats.persisted = True

        if result.state is JobState.FAILED:
            call_hook(
                self.hooks, "on_error", result.error.kind.value, self._error_context(job, result.error)
            )
        elif job.kind is JobKind.SCAN:
            call_hook(self.hooks, "on_scan_completed", job.broker.id, stats.match_count)

        self.milestones.fire(milestones)
        return stats

    def _record_scan(
        self,
        vault: DataBrokerVault,
        job: JobInput,
        result: JobResult,
        scheduling: SchedulingConfig,
        stats: JobRunStats,
    ) -> None:
        now = self.clock()
        broker_id = job.broker.id
        query_id = job.profile_query.id

        vault.append_event(
            Event(
                type=EventType.SCAN_STARTED,
                broker_id=broker_id,
                profile_query_id=query_id,
                date=result.started_at or now,
            )
        )

        known = {p.fingerprint: p for p in vault.fetch_extracted_profiles(broker_id, query_id)}
        found = set()

        for candidate in result.extracted_profiles:
            found.add(candidate.fingerprint)
            existing = known.get(candidate.fingerprint)

            if existing is None:
                saved = vault.save_extracted_profile(candidate.model_copy(update={"found_date": now}))
                self._ensure_opt_out(vault, saved.id, broker_id, query_id, now)
                stats.new_profiles += 1
                continue

            if existing.is_removed:
                vault.append_event(
                    Event(
                        type=EventType.RE_APPEARANCE,
                        broker_id=broker_id,
                        profile_query_id=query_id,
                        extracted_profile_id=existing.id,
                        date=now,
                    )
                )
                logger.warning(
                    "Removed listing found again",
                    extra={"event": "outcome.re_appearance", "extracted_profile_id": existing.id},
                )
                continue

            operation = vault.fetch_opt_out_operation(existing.id)
            if operation is None:
                self._ensure_opt_out(vault, existing.id, broker_id, query_id, now)
            elif should_resubmit_opt_out(operation, now, scheduling):
                vault.update_opt_out_run_dates(existing.id, now)
                logger.info(
                    "Listing still present long after opt-out; resubmitting",
                    extra={"event": "outcome.opt_out_rescheduled", "extracted_profile_id": existing.id},
                )

        for fingerprint, existing in known.items():
            if fingerprint in found or existing.is_removed:
                continue
            if vault.update_removed_date(existing.id, now):
                vault.append_event(
                    Event(
                        type=EventType.OPT_OUT_CONFIRMED,
                        broker_id=broker_id,
                        profile_query_id=query_id,
                        extracted_profile_id=existing.id,
                        date=now,
                    )
                )
                stats.profiles_removed += 1

        match_count = len(result.extracted_profiles)
        vault.append_event(
            Event(
                type=EventType.MATCHES_FOUND if match_count else EventType.NO_MATCH_FOUND,
                broker_id=broker_id,
                profile_query_id=query_id,
                date=now,
                detail=f"{match_count} match(es)" if match_count else None,
            )
        )
        vault.update_scan_run_dates(
            broker_id, query_id, next_maintenance_scan(now, scheduling), last_run_date=now
        )

        logger.info(
            f"Scan stored: {match_count} match(es), {stats.new_profiles} new, "
            f"{stats.profiles_removed} removed",
            extra={
                "event": "outcome.scan_recorded",
                "match_count": match_count,
                "new_profiles": stats.new_profiles,
                "profiles_removed": stats.profiles_removed,
            },
        )

    def _record_opt_out(
        self,
        vault: DataBrokerVault,
        job: JobInput,
        result: JobResult,
        scheduling: SchedulingConfig,
        stats: JobRunStats,
    ) -> None:
        now = self.clock()
        broker_id = job.broker.id
        query_id = job.profile_query.id
        profile_id = job.extracted_profile.id

        for event_type, date in (
            (EventType.OPT_OUT_STARTED, result.started_at or now),
            (EventType.OPT_OUT_REQUESTED, now),
        ):
            vault.append_event(
                Event(
                    type=event_type,
                    broker_id=broker_id,
                    profile_query_id=query_id,
                    extracted_profile_id=profile_id,
                    date=date,
                )
            )

        vault.update_opt_out_run_dates(profile_id, None, last_run_date=now, submitted_date=now)

        scan = vault.fetch_scan_operation(broker_id, query_id)
        if scan is not None:
            target = confirmation_scan(now, scan.preferred_run_date, scheduling)
            if target != scan.preferred_run_date:
                vault.update_scan_run_dates(broker_id, query_id, target)

        if result.profile_absent and vault.update_removed_date(profile_id, now):
            vault.append_event(
                Event(
                    type=EventType.OPT_OUT_CONFIRMED,
                    broker_id=broker_id,
                    profile_query_id=query_id,
                    extracted_profile_id=profile_id,
                    date=now,
                )
            )
            stats.profiles_removed += 1

        logger.info(
            "Opt-out request stored",
            extra={
                "event": "outcome.opt_out_recorded",
                "confirmed_removed": bool(stats.profiles_removed),
            },
        )

    def _record_failure(
        self,
        vault: DataBrokerVault,
        job: JobInput,
        result: JobResult,
        scheduling: SchedulingConfig,
    ) -> None:
        now = self.clock()
        error = result.error
        broker_id = job.broker.id
        query_id = job.profile_query.id
        profile_id = job.extracted_profile.id if job.extracted_profile else None

        vault.append_event(
            Event(
                type=EventType.ERROR,
                broker_id=broker_id,
                profile_query_id=query_id,
                extracted_profile_id=profile_id,
                date=now,
                detail=f"{error.kind.value}: {error.message}",
            )
        )

        retry_at = next_retry(now, scheduling)
        if job.kind is JobKind.SCAN:
            vault.update_scan_run_dates(broker_id, query_id, retry_at, last_run_date=now)
            attempts = None
        else:
            attempts = vault.increment_attempt_count(profile_id)
            vault.update_opt_out_run_dates(profile_id, retry_at, last_run_date=now)

        logger.warning(
            f"{job.kind.value} job failed with {error.kind.value}; retrying at {retry_at.isoformat()}",
            extra={
                "event": "outcome.failure_recorded",
                "error_kind": error.kind.value,
                "attempt_count": attempts,
            },
        )

    @staticmethod
    def _ensure_opt_out(
        vault: DataBrokerVault, profile_id: int, broker_id: int, query_id: int, now
    ) -> None:
        if vault.fetch_opt_out_operation(profile_id) is not None:
            return
        vault.save_opt_out_operation(
            OptOutOperationData(
                broker_id=broker_id,
                profile_query_id=query_id,
                extracted_profile_id=profile_id,
                preferred_run_date=now,
            )
        )

    @staticmethod
    def _error_context(job: JobInput, error: JobError) -> dict:
        context = job.describe()
        context["broker_url"] = job.broker.url
        context["error_message"] = error.message
        if error.action_id:
            context["action_id"] = error.action_id
        return context
