"""Unit tests for domain models, versions, actions and the action interpreter."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from brokerwatch.domain.actions import (
    ClickAction,
    ExtractAction,
    FillFormAction,
    NavigateAction,
    parse_actions,
)
from brokerwatch.domain.models import (
    BrokerType,
    BrokerVersionError,
    DataBroker,
    ExtractedProfile,
    OptOutOperationData,
    SchedulingConfig,
)
from brokerwatch.domain.versions import (
    InvalidVersionError,
    compare_versions,
    is_newer,
    parse_version,
)
from brokerwatch.engine import ActionInterpreter, JobInput, JobKind, build_interpreter
from tests.helpers import make_broker, make_query


class TestVersions:
    """Tests for dotted-numeric versions."""

    def test_parse_version(self):
        assert parse_version("1.10.2") == (1, 10, 2)
        assert parse_version(" 2.0 ") == (2, 0)

    @pytest.mark.parametrize("bad", ["", "1.", "v1.0", "1.x", "1..2"])
    def test_parse_version_rejects_malformed(self, bad):
        with pytest.raises(InvalidVersionError):
            parse_version(bad)

    def test_comparison_is_numeric(self):
        """Test 1.10 is newer than 1.2 and trailing zeros are ignored."""
        assert is_newer("1.10", "1.2")
        assert not is_newer("1.2", "1.10")
        assert compare_versions("1.0", "1.0.0") == 0
        assert not is_newer("1.0.0", "1.0")


class TestActions:
    """Tests for parsing broker actions."""

    def test_parse_camel_case_actions(self):
        """Test actions parse from the broker file format into typed models."""
        actions = parse_actions(
            [
                {
                    "actionType": "navigate",
                    "id": "n",
                    "url": "https://x.example/${firstName}/${ageRange}",
                    "ageRange": ["18-30", "31+"],
                },
                {
                    "actionType": "fillForm",
                    "id": "f",
                    "selector": "form",
                    "elements": [
                        {"type": "fullName", "selector": "#name"},
                        {"type": "email", "selector": "#email"},
                    ],
                },
                {"actionType": "emailConfirmation", "id": "c", "pollingTime": 10},
            ]
        )

        navigate, fill, confirm = actions
        assert isinstance(navigate, NavigateAction)
        assert navigate.age_range == ["18-30", "31+"]
        assert navigate.required_fields() == frozenset({"firstName"})
        assert isinstance(fill, FillFormAction)
        assert fill.needs_email
        assert fill.required_fields() == frozenset({"fullName", "email"})
        assert confirm.polling_time == 10

    def test_unknown_action_type_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_actions([{"actionType": "teleport", "id": "t"}])

    def test_missing_parameters_are_rejected(self):
        """Test a click without elements fails validation."""
        with pytest.raises(ValidationError):
            parse_actions([{"actionType": "click", "id": "c", "elements": []}])

    def test_actions_are_immutable(self):
        (action,) = parse_actions([{"actionType": "extract", "id": "e", "selector": ".r"}])

        with pytest.raises(ValidationError):
            action.selector = ".other"


class TestDataBroker:
    """Tests for DataBroker."""

    def test_parent_and_child(self):
        assert make_broker().broker_type is BrokerType.PARENT
        child = make_broker(url="child.example", parent_url="example.com")
        assert child.is_child

    def test_invalid_version_is_rejected(self):
        with pytest.raises(ValidationError):
            make_broker(version="latest")

    def test_scheduling_falls_back_to_defaults(self):
        defaults = SchedulingConfig(retry_error_hours=1)
        own = SchedulingConfig(retry_error_hours=5)

        assert make_broker().scheduling_or(defaults) is defaults
        assert make_broker(scheduling=own).scheduling_or(defaults) is own

    def test_upgrade_keeps_id_and_lists_affected_opt_outs(self):
        """Test an upgrade carries the stored id and resets this broker's opt-outs."""
        stored = make_broker(version="1.0", broker_id=7)
        incoming = make_broker(version="1.2")
        opt_outs = [
            OptOutOperationData(broker_id=7, profile_query_id=1, extracted_profile_id=12),
            OptOutOperationData(broker_id=7, profile_query_id=1, extracted_profile_id=3),
            OptOutOperationData(broker_id=8, profile_query_id=1, extracted_profile_id=4),
        ]

        upgrade = stored.upgrade(incoming, opt_outs)

        assert upgrade.broker.id == 7
        assert upgrade.broker.version == "1.2"
        assert upgrade.previous_version == "1.0"
        assert upgrade.affected_opt_out_ids == [3, 12]

    def test_upgrade_requires_newer_version(self):
        stored = make_broker(version="1.2", broker_id=7)

        with pytest.raises(BrokerVersionError):
            stored.upgrade(make_broker(version="1.2"), [])

    def test_scheduling_allows_attempt(self):
        assert SchedulingConfig(max_attempts=-1).allows_attempt(1000)
        assert SchedulingConfig(max_attempts=2).allows_attempt(1)
        assert not SchedulingConfig(max_attempts=2).allows_attempt(2)


class TestProfiles:
    """Tests for ProfileQuery and ExtractedProfile."""

    def test_template_fields(self):
        query = make_query(middle_name="Ann")
        fields = query.template_fields()

        assert fields["fullName"] == "Jane Ann Doe"
        assert fields["middleName"] == "Ann"
        assert fields["birthYear"] == 1985

    def test_age(self):
        query = make_query()

        assert query.age(datetime(2025, 6, 1, tzinfo=timezone.utc)) == 40

    def test_available_fields_skip_empty_values(self):
        profile = ExtractedProfile(
            broker_id=1,
            profile_query_id=1,
            fingerprint="abc",
            name="Jane Doe",
            match_fields={"age": "40", "relatives": [], "phone": ""},
        )

        assert profile.available_fields() == {"age": "40", "name": "Jane Doe"}

    def test_naive_dates_become_utc(self):
        profile = ExtractedProfile(
            broker_id=1,
            profile_query_id=1,
            fingerprint="abc",
            found_date=datetime(2026, 1, 1, 8, 0),
        )

        assert profile.found_date.tzinfo == timezone.utc


class TestActionInterpreter:
    """Tests for the script cursor."""

    def test_yields_each_action_once_then_none(self):
        broker = make_broker()
        interpreter = ActionInterpreter(broker.scan_script)

        ids = []
        action = interpreter.next_action()
        while action is not None:
            ids.append(action.id)
            action = interpreter.next_action()

        assert ids == ["scan-navigate", "scan-extract"]
        assert interpreter.exhausted
        assert interpreter.next_action() is None

    def test_restart_rewinds(self):
        interpreter = ActionInterpreter(make_broker().scan_script)
        interpreter.next_action()

        interpreter.restart()

        assert interpreter.position == 0
        assert interpreter.next_action().id == "scan-navigate"

    def test_opt_out_narrowed_to_available_fields(self):
        """Test email form steps are dropped when no email service exists."""
        broker = make_broker(
            opt_out_actions=[
                {"actionType": "navigate", "id": "n", "url": "https://${site}/optout"},
                {
                    "actionType": "fillForm",
                    "id": "email-form",
                    "selector": "form",
                    "elements": [{"type": "email", "selector": "#e"}],
                },
                {
                    "actionType": "fillForm",
                    "id": "phone-form",
                    "selector": "form",
                    "elements": [{"type": "phone", "selector": "#p"}],
                },
                {"actionType": "click", "id": "c", "elements": [{"type": "button", "selector": "b"}]},
            ],
            broker_id=1,
        )
        profile = ExtractedProfile(
            id=2, broker_id=1, profile_query_id=3, fingerprint="f", name="Jane Doe"
        )
        job = JobInput(
            kind=JobKind.OPT_OUT,
            broker=broker,
            profile_query=make_query(query_id=3),
            extracted_profile=profile,
        )

        with_email = [a.id for a in build_interpreter(job, email_available=True).actions]
        without_email = [a.id for a in build_interpreter(job, email_available=False).actions]

        assert with_email == ["n", "email-form", "c"]
        assert without_email == ["n", "c"]

    def test_scan_script_is_never_narrowed(self):
        job = JobInput(kind=JobKind.SCAN, broker=make_broker(), profile_query=make_query())

        interpreter = build_interpreter(job, email_available=False)

        assert len(interpreter) == 2
        assert isinstance(interpreter.actions[-1], ExtractAction)


def test_click_action_defaults():
    (click,) = parse_actions(
        [{"actionType": "click", "id": "c", "elements": [{"type": "button", "selector": "b"}]}]
    )

    assert isinstance(click, ClickAction)
    assert click.elements[0].parent is None


def test_opt_out_job_requires_listing():
    with pytest.raises(ValueError):
        JobInput(kind=JobKind.OPT_OUT, broker=make_broker(), profile_query=make_query())


def test_data_broker_json_round_trip():
    broker = make_broker(verify_opt_out=True)

    restored = DataBroker.model_validate_json(broker.model_dump_json(by_alias=True))

    assert restored == broker
