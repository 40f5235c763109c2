"""Unit tests for the scheduler package.

Tests cover:
- Preferred-run-date calculations
- Due job selection (child brokers, missing scripts, attempt limits)
- OperationRunner ticks: statistics, overlap guard, per-broker serialisation,
  driver failures, cancellation and broker refresh
- SchedulerService lifecycle on APScheduler
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from brokerwatch.domain.models import OptOutOperationData, SchedulingConfig
from brokerwatch.engine import JobEngine, JobKind, build_extracted_profile
from brokerwatch.persistence import (
    DataBrokerVault,
    PersistenceError,
    close_database,
    get_session,
    init_database,
)
from brokerwatch.scheduler import (
    OperationRunner,
    SchedulerRunResult,
    SchedulerService,
    confirmation_scan,
    next_maintenance_scan,
    next_retry,
    should_resubmit_opt_out,
)
from tests.helpers import (
    DriverPool,
    FrozenClock,
    RecordingHooks,
    ScriptedDriver,
    fast_engine_config,
    listing,
    make_app_config,
    make_broker,
    make_query,
    seed_vault,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def database(tmp_path):
    init_database(f"sqlite:///{tmp_path / 'scheduler.db'}")
    yield
    close_database()


def make_runner(driver_factory, clock=None, hooks=None, updater=None, **config):
    app_config = make_app_config(**config)
    return OperationRunner(
        app_config=app_config,
        engine=JobEngine(fast_engine_config()),
        driver_factory=driver_factory,
        hooks=hooks or RecordingHooks(),
        updater=updater,
        clock=clock or FrozenClock(NOW),
    )


def store_opt_out(broker, query, url, attempt_count=0, run_at=NOW):
    """Store a listing for ``broker`` with an opt-out due at ``run_at``."""
    with get_session() as session:
        vault = DataBrokerVault(session)
        profile = vault.save_extracted_profile(
            build_extracted_profile(broker, query, listing(profile_url=url))
        )
        vault.save_opt_out_operation(
            OptOutOperationData(
                broker_id=broker.id,
                profile_query_id=query.id,
                extracted_profile_id=profile.id,
                attempt_count=attempt_count,
                preferred_run_date=run_at,
            )
        )
    return profile


class TestCalculator:
    """Tests for preferred-run-date rules."""

    scheduling = SchedulingConfig(
        retry_error_hours=2, confirm_opt_out_hours=24, maintenance_scan_hours=100
    )

    def test_next_maintenance_scan(self):
        assert next_maintenance_scan(NOW, self.scheduling) == NOW + timedelta(hours=100)

    def test_next_retry(self):
        assert next_retry(NOW, self.scheduling) == NOW + timedelta(hours=2)

    def test_confirmation_scan_pulls_later_scan_forward(self):
        """Test a scan due after the confirmation window is moved up."""
        current = NOW + timedelta(hours=100)

        assert confirmation_scan(NOW, current, self.scheduling) == NOW + timedelta(hours=24)

    def test_confirmation_scan_keeps_earlier_scan(self):
        """Test a scan already due sooner keeps its date."""
        current = NOW + timedelta(hours=1)

        assert confirmation_scan(NOW, current, self.scheduling) == current

    def test_resubmit_only_after_maintenance_window(self):
        """Test resubmission needs an old submission and no pending run."""
        operation = OptOutOperationData(
            broker_id=1,
            profile_query_id=1,
            extracted_profile_id=1,
            submitted_date=NOW - timedelta(hours=101),
        )

        assert should_resubmit_opt_out(operation, NOW, self.scheduling)
        assert not should_resubmit_opt_out(
            operation.model_copy(update={"submitted_date": NOW - timedelta(hours=99)}),
            NOW,
            self.scheduling,
        )
        assert not should_resubmit_opt_out(
            operation.model_copy(update={"preferred_run_date": NOW}), NOW, self.scheduling
        )
        assert not should_resubmit_opt_out(
            operation.model_copy(update={"submitted_date": None}), NOW, self.scheduling
        )


class TestDueJobSelection:
    """Tests for OperationRunner.collect_due_jobs."""

    def test_scans_before_opt_outs_and_skip_rules(self, database):
        """Test opt-outs are skipped for children, empty scripts and exhausted attempts."""
        brokers, query = seed_vault(
            [
                make_broker(url="parent.example"),
                make_broker(url="child.example", parent_url="parent.example"),
                make_broker(url="noscript.example", opt_out_actions=[]),
                make_broker(
                    url="limited.example",
                    scheduling=SchedulingConfig(max_attempts=2),
                ),
            ],
            scan_at=NOW,
        )
        parent, child, noscript, limited = brokers
        wanted = store_opt_out(parent, query, "https://parent.example/p/1")
        store_opt_out(child, query, "https://child.example/p/1")
        store_opt_out(noscript, query, "https://noscript.example/p/1")
        store_opt_out(limited, query, "https://limited.example/p/1", attempt_count=2)

        jobs = make_runner(DriverPool()).collect_due_jobs(NOW)

        kinds = [job.kind for job in jobs]
        assert kinds == [JobKind.SCAN] * 4 + [JobKind.OPT_OUT]
        assert {job.broker.url for job in jobs[:4]} == {b.url for b in brokers}
        assert jobs[4].broker.url == "parent.example"
        assert jobs[4].extracted_profile.id == wanted.id

    def test_orphan_child_is_opted_out_directly(self, database):
        """Test a child whose parent is unknown gets its own opt-out."""
        (child,), query = seed_vault(
            [make_broker(url="child.example", parent_url="gone.example")], scan_at=NOW
        )
        store_opt_out(child, query, "https://child.example/p/1")

        jobs = make_runner(DriverPool()).collect_due_jobs(NOW)

        assert [job.kind for job in jobs] == [JobKind.SCAN, JobKind.OPT_OUT]

    def test_nothing_due_in_the_future(self, database):
        """Test operations scheduled later are not selected."""
        (broker,), query = seed_vault([make_broker()], scan_at=NOW + timedelta(minutes=5))
        store_opt_out(broker, query, "https://example.com/p/1", run_at=NOW + timedelta(minutes=5))

        assert make_runner(DriverPool()).collect_due_jobs(NOW) == []

    def test_attempts_below_limit_are_selected(self, database):
        """Test an opt-out under max_attempts is still due."""
        (broker,), query = seed_vault(
            [make_broker(scheduling=SchedulingConfig(max_attempts=3))], scan_at=NOW
        )
        store_opt_out(broker, query, "https://example.com/p/1", attempt_count=2)

        jobs = make_runner(DriverPool()).collect_due_jobs(NOW)

        assert [job.kind for job in jobs] == [JobKind.SCAN, JobKind.OPT_OUT]


class OverlapTracker:
    """Counts drivers in use, overall and per broker host."""

    def __init__(self):
        self.lock = threading.Lock()
        self.active = {}
        self.max_active = 0
        self.max_per_host = 0

    def enter(self, host):
        with self.lock:
            self.active[host] = self.active.get(host, 0) + 1
            self.max_active = max(self.max_active, sum(self.active.values()))
            self.max_per_host = max(self.max_per_host, self.active[host])

    def leave(self, host):
        with self.lock:
            self.active[host] -= 1


class TrackingDriver(ScriptedDriver):
    """Driver that reports its lifetime to an OverlapTracker."""

    def __init__(self, tracker):
        super().__init__()
        self.tracker = tracker
        self.host = None

    def load(self, url):
        if self.host is None:
            self.host = url.split("/")[2]
            self.tracker.enter(self.host)
        time.sleep(0.05)
        super().load(url)

    def finish(self):
        if self.host is not None:
            self.tracker.leave(self.host)
        super().finish()


class TestOperationRunner:
    """Tests for OperationRunner.run_once."""

    def test_run_once_reports_statistics(self, database):
        """Test a tick runs due scans and aggregates their outcome."""
        seed_vault([make_broker()], scan_at=NOW)
        pool = DriverPool(lambda: ScriptedDriver(profiles=[listing()]))
        hooks = RecordingHooks()

        result = make_runner(pool, hooks=hooks).run_once()

        assert isinstance(result, SchedulerRunResult)
        assert result.scans_run == 1
        assert result.opt_outs_run == 0
        assert result.completed == 1
        assert result.matches_found == 1
        assert not result.had_errors
        assert [d.finish_calls for d in pool.created] == [1]
        assert hooks.count("on_scan_completed") == 1

    def test_empty_tick(self, database):
        """Test a tick with nothing due reports zero jobs."""
        result = make_runner(DriverPool()).run_once()

        assert result.job_stats == []
        assert not result.had_errors
        assert not result.skipped

    def test_overlapping_tick_is_skipped(self, database):
        """Test run_once returns immediately while another tick holds the lock."""
        runner = make_runner(DriverPool())
        runner._lock.acquire()
        try:
            result = runner.run_once()
        finally:
            runner._lock.release()

        assert result.skipped
        assert result.job_stats == []

    def test_jobs_of_one_broker_never_overlap(self, database):
        """Test two scans on the same broker run one after the other."""
        (broker,), _ = seed_vault([make_broker()], scan_at=NOW)
        with get_session() as session:
            vault = DataBrokerVault(session)
            other = vault.save_profile_query(make_query(city="Austin"))
            vault.save_scan_operation(broker.id, other.id, NOW)
        tracker = OverlapTracker()

        result = make_runner(
            lambda: TrackingDriver(tracker), scheduling={"max_concurrency": 4}
        ).run_once()

        assert result.scans_run == 2
        assert tracker.max_per_host == 1

    def test_concurrency_is_bounded(self, database):
        """Test max_concurrency=1 runs brokers strictly in turn."""
        seed_vault(
            [make_broker(url=f"site{i}.example") for i in range(3)],
            scan_at=NOW,
        )
        tracker = OverlapTracker()

        result = make_runner(
            lambda: TrackingDriver(tracker), scheduling={"max_concurrency": 1}
        ).run_once()

        assert result.scans_run == 3
        assert tracker.max_active == 1

    def test_driver_creation_failure_is_recorded(self, database):
        """Test a failing driver factory fails the job and reschedules it."""
        (broker,), query = seed_vault([make_broker()], scan_at=NOW)
        hooks = RecordingHooks()

        def broken_factory():
            raise RuntimeError("browser missing")

        result = make_runner(broken_factory, hooks=hooks).run_once()

        assert result.failed == 1
        assert result.had_errors
        assert result.job_stats[0].error_kind == "unknown"
        assert [kind for kind, _ in hooks.args_of("on_error")] == ["unknown"]
        with get_session() as session:
            scan = DataBrokerVault(session).fetch_scan_operation(broker.id, query.id)
        assert scan.preferred_run_date == NOW + timedelta(hours=48)

    def test_cancelled_runner_starts_no_jobs(self, database):
        """Test no job starts once the cancel event is set."""
        (broker,), query = seed_vault([make_broker()], scan_at=NOW)
        pool = DriverPool()
        runner = make_runner(pool)
        runner.cancel_event.set()

        result = runner.run_once()

        assert result.job_stats == []
        assert pool.created == []
        with get_session() as session:
            scan = DataBrokerVault(session).fetch_scan_operation(broker.id, query.id)
        assert scan.last_run_date is None

    def test_selection_failure_is_reported(self, database):
        """Test a store failure while selecting jobs ends the tick with errors."""

        @contextmanager
        def broken_session():
            raise PersistenceError("database is locked")
            yield  # pragma: no cover

        runner = make_runner(DriverPool())
        runner.session_scope = broken_session

        result = runner.run_once()

        assert result.had_errors
        assert result.job_stats == []

    def test_brokers_refreshed_each_run_when_enabled(self, database):
        """Test the updater runs before job selection when configured."""
        updater = Mock()

        make_runner(
            DriverPool(), updater=updater, scheduling={"update_brokers_each_run": True}
        ).run_once()

        updater.refresh.assert_called_once_with()

    def test_brokers_not_refreshed_by_default(self, database):
        updater = Mock()

        make_runner(DriverPool(), updater=updater).run_once()

        updater.refresh.assert_not_called()

    def test_refresh_failure_does_not_stop_the_tick(self, database):
        """Test a failing broker refresh is logged and the tick continues."""
        seed_vault([make_broker()], scan_at=NOW)
        updater = Mock()
        updater.refresh.side_effect = RuntimeError("bad definitions")

        result = make_runner(
            DriverPool(), updater=updater, scheduling={"update_brokers_each_run": True}
        ).run_once()

        assert result.scans_run == 1


class TestSchedulerService:
    """Test suite for SchedulerService."""

    def test_scheduler_initialization(self):
        """Test that scheduler initializes with correct parameters."""
        tick = Mock()
        shutdown_event = threading.Event()

        scheduler = SchedulerService(tick=tick, interval_seconds=60, shutdown_event=shutdown_event)

        assert scheduler.interval_seconds == 60
        assert scheduler.tick == tick
        assert scheduler.shutdown_event == shutdown_event
        assert not scheduler.is_running()

    def test_scheduler_registers_job_with_correct_config(self):
        """Test that job defaults prevent overlapping and coalesce missed runs."""
        scheduler = SchedulerService(tick=Mock(), interval_seconds=60)

        assert scheduler.scheduler.job_defaults["max_instances"] == 1
        assert scheduler.scheduler.job_defaults["coalesce"] is True
        assert scheduler.scheduler.job_defaults["misfire_grace_time"] == 60

    def test_scheduler_start_and_shutdown(self):
        """Test start/shutdown lifecycle sets the shutdown event."""
        shutdown_event = threading.Event()
        scheduler = SchedulerService(
            tick=Mock(), interval_seconds=300, shutdown_event=shutdown_event
        )

        scheduler.start()
        assert scheduler.is_running()
        assert scheduler.get_next_run_time() is not None

        scheduler.shutdown(wait=False)
        assert not scheduler.is_running()
        assert shutdown_event.is_set()

    def test_scheduler_immediate_first_run(self):
        """Test that the first tick runs without waiting for the interval."""
        ran = threading.Event()

        scheduler = SchedulerService(tick=ran.set, interval_seconds=3600)
        scheduler.start()
        try:
            assert ran.wait(timeout=5)
        finally:
            scheduler.shutdown(wait=True)

    def test_trigger_now_runs_synchronously(self):
        """Test trigger_now calls the tick in the current thread."""
        tick = Mock(return_value="result")
        scheduler = SchedulerService(tick=tick, interval_seconds=60)

        assert scheduler.trigger_now() == "result"
        tick.assert_called_once_with()

    def test_next_run_time_none_before_start(self):
        scheduler = SchedulerService(tick=Mock(), interval_seconds=60)

        assert scheduler.get_next_run_time() is None

    def test_shutdown_before_start_is_safe(self):
        """Test shutdown without start does not raise."""
        shutdown_event = threading.Event()
        scheduler = SchedulerService(tick=Mock(), interval_seconds=60, shutdown_event=shutdown_event)

        scheduler.shutdown()

        assert shutdown_event.is_set()
