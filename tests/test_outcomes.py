"""Unit tests for persisting job outcomes.

Covers:
- Scan reconciliation (new, known, missing and re-appearing listings)
- Opt-out submission and verification
- Failure rescheduling and attempt counting
- Cancelled jobs and storage failures
- Milestone hooks firing exactly once
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from brokerwatch.domain.models import EventType, SchedulingConfig
from brokerwatch.engine import (
    JobCancelledError,
    JobInput,
    JobKind,
    JobResult,
    JobState,
    NavigationFailedError,
    build_extracted_profile,
)
from brokerwatch.persistence import (
    DataBrokerVault,
    PersistenceError,
    close_database,
    get_session,
    init_database,
)
from brokerwatch.scheduler import OutcomeRecorder
from tests.helpers import RecordingHooks, listing, make_broker, seed_vault

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
SCHEDULING = SchedulingConfig()


@pytest.fixture
def database(tmp_path):
    init_database(f"sqlite:///{tmp_path / 'outcomes.db'}")
    yield
    close_database()


@pytest.fixture
def seeded(database):
    (broker,), query = seed_vault([make_broker()], scan_at=NOW)
    return broker, query


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def recorder(hooks):
    return OutcomeRecorder(hooks, clock=lambda: NOW)


def read(fn):
    with get_session() as session:
        return fn(DataBrokerVault(session))


def scan_result(broker, query, *raws):
    return JobResult(
        kind=JobKind.SCAN,
        state=JobState.COMPLETED,
        extracted_profiles=[build_extracted_profile(broker, query, raw) for raw in raws],
    )


def scan_job(broker, query):
    return JobInput(kind=JobKind.SCAN, broker=broker, profile_query=query)


def stored_profiles(broker, query):
    return read(lambda v: v.fetch_extracted_profiles(broker.id, query.id))


def opt_out_job(broker, query, profile):
    return JobInput(
        kind=JobKind.OPT_OUT, broker=broker, profile_query=query, extracted_profile=profile
    )


class TestScanOutcomes:
    """Tests for recording completed scans."""

    def test_new_listing_is_stored_with_due_opt_out(self, seeded, recorder, hooks):
        """Test a first sighting stores the listing and schedules its opt-out now."""
        broker, query = seeded

        stats = recorder.record(scan_job(broker, query), scan_result(broker, query, listing()), SCHEDULING)

        profiles = stored_profiles(broker, query)
        assert len(profiles) == 1
        assert profiles[0].found_date == NOW
        opt_out = read(lambda v: v.fetch_opt_out_operation(profiles[0].id))
        assert opt_out.preferred_run_date == NOW
        assert opt_out.attempt_count == 0

        scan = read(lambda v: v.fetch_scan_operation(broker.id, query.id))
        assert scan.preferred_run_date == NOW + timedelta(hours=120)
        assert scan.last_run_date == NOW

        events = [e.type for e in read(lambda v: v.fetch_events(broker_id=broker.id))]
        assert events == [EventType.SCAN_STARTED, EventType.MATCHES_FOUND]

        assert stats.persisted
        assert stats.new_profiles == 1
        assert hooks.args_of("on_scan_completed") == [(broker.id, 1)]

    def test_first_match_milestone_fires_once(self, seeded, recorder, hooks):
        """Test only the first scan that stores a new listing reaches the first-match milestone."""
        broker, query = seeded
        job = scan_job(broker, query)

        recorder.record(job, scan_result(broker, query), SCHEDULING)
        assert hooks.count("on_first_match_found") == 0

        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)
        recorder.record(
            job,
            scan_result(broker, query, listing(), listing(profile_url="https://example.com/p/jane-doe-2")),
            SCHEDULING,
        )

        assert hooks.count("on_first_match_found") == 1

    def test_no_matches_records_no_match_event(self, seeded, recorder, hooks):
        """Test an empty scan logs no_match_found and still reschedules."""
        broker, query = seeded

        recorder.record(scan_job(broker, query), scan_result(broker, query), SCHEDULING)

        last = read(lambda v: v.fetch_last_event(broker.id, query.id))
        assert last.type == EventType.NO_MATCH_FOUND
        assert hooks.args_of("on_scan_completed") == [(broker.id, 0)]

    def test_repeated_scan_is_idempotent(self, seeded, recorder):
        """Test the same listing found twice stays one listing with one opt-out."""
        broker, query = seeded
        job = scan_job(broker, query)

        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)
        stats = recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)

        profiles = stored_profiles(broker, query)
        assert len(profiles) == 1
        assert stats.new_profiles == 0
        assert len(read(lambda v: v.fetch_opt_out_operations(broker.id))) == 1

    def test_listing_keeps_identity_when_its_age_changes(self, seeded, recorder, hooks):
        """Test a URL-less listing whose age ticks over is the same listing, not a removal."""
        broker, query = seeded
        job = scan_job(broker, query)
        first = listing(profile_url=None, age="40", addressCityState=["Dallas, TX"])
        older = listing(profile_url=None, age="41", addressCityState=["Dallas, TX"])

        recorder.record(job, scan_result(broker, query, first), SCHEDULING)
        stats = recorder.record(job, scan_result(broker, query, older), SCHEDULING)

        (profile,) = stored_profiles(broker, query)
        assert profile.removed_date is None
        assert stats.new_profiles == 0
        assert stats.profiles_removed == 0
        assert len(read(lambda v: v.fetch_opt_out_operations(broker.id))) == 1
        assert hooks.count("on_first_profile_removed") == 0

    def test_missing_listing_is_marked_removed(self, seeded, recorder, hooks):
        """Test a known listing absent from a scan is confirmed removed."""
        broker, query = seeded
        job = scan_job(broker, query)
        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)

        stats = recorder.record(job, scan_result(broker, query), SCHEDULING)

        (profile,) = stored_profiles(broker, query)
        assert profile.removed_date == NOW
        assert stats.profiles_removed == 1
        confirmed = read(lambda v: v.fetch_events(event_type=EventType.OPT_OUT_CONFIRMED))
        assert [e.extracted_profile_id for e in confirmed] == [profile.id]
        assert hooks.count("on_first_profile_removed") == 1
        assert hooks.count("on_all_profiles_removed") == 1

    def test_removed_listing_found_again_stays_removed(self, seeded, recorder):
        """Test a re-appearance is recorded without clearing removed_date."""
        broker, query = seeded
        job = scan_job(broker, query)
        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)
        recorder.record(job, scan_result(broker, query), SCHEDULING)

        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)

        (profile,) = stored_profiles(broker, query)
        assert profile.removed_date == NOW
        reappeared = read(lambda v: v.fetch_events(event_type=EventType.RE_APPEARANCE))
        assert len(reappeared) == 1

    def test_listing_present_long_after_opt_out_is_resubmitted(self, seeded, recorder):
        """Test an opt-out submitted beyond the maintenance window is rescheduled."""
        broker, query = seeded
        job = scan_job(broker, query)
        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)
        (profile,) = stored_profiles(broker, query)

        submitted = NOW - timedelta(hours=SCHEDULING.maintenance_scan_hours + 1)
        with get_session() as session:
            DataBrokerVault(session).update_opt_out_run_dates(
                profile.id, None, submitted_date=submitted
            )

        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)

        opt_out = read(lambda v: v.fetch_opt_out_operation(profile.id))
        assert opt_out.preferred_run_date == NOW

    def test_recent_opt_out_is_left_awaiting(self, seeded, recorder):
        """Test a recently submitted opt-out keeps waiting for confirmation."""
        broker, query = seeded
        job = scan_job(broker, query)
        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)
        (profile,) = stored_profiles(broker, query)
        with get_session() as session:
            DataBrokerVault(session).update_opt_out_run_dates(
                profile.id, None, submitted_date=NOW - timedelta(hours=1)
            )

        recorder.record(job, scan_result(broker, query, listing()), SCHEDULING)

        assert read(lambda v: v.fetch_opt_out_operation(profile.id)).preferred_run_date is None


class TestOptOutOutcomes:
    """Tests for recording completed opt-outs."""

    @pytest.fixture
    def listed(self, seeded, recorder):
        broker, query = seeded
        recorder.record(scan_job(broker, query), scan_result(broker, query, listing()), SCHEDULING)
        (profile,) = stored_profiles(broker, query)
        return broker, query, profile

    def test_submission_awaits_confirmation(self, listed, recorder):
        """Test a submitted opt-out clears its run date and pulls the scan forward."""
        broker, query, profile = listed

        recorder.record(
            opt_out_job(broker, query, profile),
            JobResult(kind=JobKind.OPT_OUT, state=JobState.COMPLETED),
            SCHEDULING,
        )

        opt_out = read(lambda v: v.fetch_opt_out_operation(profile.id))
        assert opt_out.preferred_run_date is None
        assert opt_out.submitted_date == NOW
        assert opt_out.last_run_date == NOW

        scan = read(lambda v: v.fetch_scan_operation(broker.id, query.id))
        assert scan.preferred_run_date == NOW + timedelta(hours=72)

        types = [e.type for e in read(lambda v: v.fetch_events(broker_id=broker.id))]
        assert types[-2:] == [EventType.OPT_OUT_STARTED, EventType.OPT_OUT_REQUESTED]

    def test_earlier_scan_is_not_pushed_back(self, listed, recorder):
        """Test the confirmation scan never moves an earlier scan later."""
        broker, query, profile = listed
        with get_session() as session:
            DataBrokerVault(session).update_scan_run_dates(
                broker.id, query.id, NOW + timedelta(hours=1)
            )

        recorder.record(
            opt_out_job(broker, query, profile),
            JobResult(kind=JobKind.OPT_OUT, state=JobState.COMPLETED),
            SCHEDULING,
        )

        scan = read(lambda v: v.fetch_scan_operation(broker.id, query.id))
        assert scan.preferred_run_date == NOW + timedelta(hours=1)

    def test_verified_absence_marks_removed_and_fires_milestones_once(self, listed, recorder, hooks):
        """Test a verified opt-out removes the listing and milestones fire once."""
        broker, query, profile = listed
        job = opt_out_job(broker, query, profile)
        verified = JobResult(kind=JobKind.OPT_OUT, state=JobState.COMPLETED, profile_absent=True)

        first = recorder.record(job, verified, SCHEDULING)
        second = recorder.record(job, verified, SCHEDULING)

        assert read(lambda v: v.fetch_extracted_profile(profile.id)).removed_date == NOW
        assert first.profiles_removed == 1
        assert second.profiles_removed == 0
        assert hooks.count("on_first_profile_removed") == 1
        assert hooks.count("on_all_profiles_removed") == 1

    def test_all_removed_waits_for_every_listing(self, seeded, recorder, hooks):
        """Test on_all_profiles_removed only fires once nothing is left."""
        broker, query = seeded
        recorder.record(
            scan_job(broker, query),
            scan_result(
                broker,
                query,
                listing(profile_url="https://example.com/p/1"),
                listing(profile_url="https://example.com/p/2"),
            ),
            SCHEDULING,
        )
        first, second = stored_profiles(broker, query)
        verified = JobResult(kind=JobKind.OPT_OUT, state=JobState.COMPLETED, profile_absent=True)

        recorder.record(opt_out_job(broker, query, first), verified, SCHEDULING)
        assert hooks.count("on_first_profile_removed") == 1
        assert hooks.count("on_all_profiles_removed") == 0

        recorder.record(opt_out_job(broker, query, second), verified, SCHEDULING)
        assert hooks.count("on_first_profile_removed") == 1
        assert hooks.count("on_all_profiles_removed") == 1


class TestFailuresAndCancellation:
    """Tests for failed, cancelled and unstorable outcomes."""

    def test_failed_scan_is_retried_later(self, seeded, recorder, hooks):
        """Test a failed scan records an error event and moves to the retry date."""
        broker, query = seeded
        result = JobResult(kind=JobKind.SCAN, state=JobState.FAILED)
        result.error = NavigationFailedError("503", "scan-navigate", status_code=503)

        stats = recorder.record(scan_job(broker, query), result, SCHEDULING)

        scan = read(lambda v: v.fetch_scan_operation(broker.id, query.id))
        assert scan.preferred_run_date == NOW + timedelta(hours=48)
        assert scan.last_run_date == NOW

        last = read(lambda v: v.fetch_last_event(broker.id, query.id))
        assert last.type == EventType.ERROR
        assert last.detail.startswith("navigation_failed")

        assert stats.error_kind == "navigation_failed"
        assert stats.had_errors
        ((kind, context),) = hooks.args_of("on_error")
        assert kind == "navigation_failed"
        assert context["broker_id"] == broker.id
        assert context["action_id"] == "scan-navigate"
        assert hooks.count("on_scan_completed") == 0

    def test_failed_opt_out_counts_an_attempt(self, seeded, recorder):
        """Test each failed opt-out increments attempt_count."""
        broker, query = seeded
        recorder.record(scan_job(broker, query), scan_result(broker, query, listing()), SCHEDULING)
        (profile,) = stored_profiles(broker, query)
        job = opt_out_job(broker, query, profile)

        for _ in range(2):
            result = JobResult(kind=JobKind.OPT_OUT, state=JobState.FAILED)
            result.error = NavigationFailedError("timeout", status_code=504)
            recorder.record(job, result, SCHEDULING)

        opt_out = read(lambda v: v.fetch_opt_out_operation(profile.id))
        assert opt_out.attempt_count == 2
        assert opt_out.preferred_run_date == NOW + timedelta(hours=48)
        assert opt_out.submitted_date is None

    def test_cancelled_job_persists_nothing(self, seeded, recorder, hooks):
        """Test a cancelled job leaves the store and hooks untouched."""
        broker, query = seeded
        result = JobResult(kind=JobKind.SCAN, state=JobState.CANCELLED)
        result.error = JobCancelledError("shutdown")

        stats = recorder.record(scan_job(broker, query), result, SCHEDULING)

        assert not stats.persisted
        assert read(lambda v: v.fetch_events()) == []
        scan = read(lambda v: v.fetch_scan_operation(broker.id, query.id))
        assert scan.preferred_run_date == NOW
        assert scan.last_run_date is None
        assert hooks.calls == []

    def test_storage_failure_is_reported(self, seeded, hooks):
        """Test a failing store is reported through on_error and not raised."""
        broker, query = seeded

        @contextmanager
        def broken_session():
            raise PersistenceError("disk I/O error")
            yield  # pragma: no cover

        recorder = OutcomeRecorder(hooks, session_scope=broken_session, clock=lambda: NOW)

        stats = recorder.record(scan_job(broker, query), scan_result(broker, query, listing()), SCHEDULING)

        assert not stats.persisted
        assert stats.error_kind == "storage_failure"
        assert stats.had_errors
        assert [kind for kind, _ in hooks.args_of("on_error")] == ["storage_failure"]
        assert stored_profiles(broker, query) == []

    def test_failing_hook_does_not_undo_the_outcome(self, seeded):
        """Test an exception from a hook is contained."""
        broker, query = seeded

        class ExplodingHooks(RecordingHooks):
            def on_scan_completed(self, broker_id, match_count):
                raise RuntimeError("hook down")

        recorder = OutcomeRecorder(ExplodingHooks(), clock=lambda: NOW)

        stats = recorder.record(scan_job(broker, query), scan_result(broker, query, listing()), SCHEDULING)

        assert stats.persisted
        assert len(stored_profiles(broker, query)) == 1

