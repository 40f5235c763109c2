"""Domain models for the broker protection engine."""

from .actions import (
    Action,
    ActionKind,
    ClickAction,
    EmailConfirmationAction,
    ExpectationAction,
    ExtractAction,
    FillFormAction,
    GetCaptchaInfoAction,
    NavigateAction,
    SolveCaptchaAction,
    parse_actions,
)
from .models import (
    BrokerType,
    BrokerUpgrade,
    BrokerVersionError,
    DataBroker,
    Event,
    EventType,
    ExtractedProfile,
    OptOutOperationData,
    ProfileQuery,
    ScanOperationData,
    SchedulingConfig,
)
from .versions import InvalidVersionError, compare_versions, is_newer, parse_version

__all__ = [
    # Actions
    "Action",
    "ActionKind",
    "NavigateAction",
    "ClickAction",
    "FillFormAction",
    "ExtractAction",
    "GetCaptchaInfoAction",
    "SolveCaptchaAction",
    "ExpectationAction",
    "EmailConfirmationAction",
    "parse_actions",
    # Models
    "DataBroker",
    "BrokerType",
    "BrokerUpgrade",
    "BrokerVersionError",
    "SchedulingConfig",
    "ProfileQuery",
    "ScanOperationData",
    "ExtractedProfile",
    "OptOutOperationData",
    "Event",
    "EventType",
    # Versions
    "InvalidVersionError",
    "parse_version",
    "compare_versions",
    "is_newer",
]
