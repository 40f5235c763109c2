"""Inputs and results of job runs."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from brokerwatch.domain.models import DataBroker, ExtractedProfile, ProfileQuery
from brokerwatch.utils.hashing import compute_profile_fingerprint

from .exceptions import JobError

NAME_FIELD = "name"
PROFILE_URL_FIELD = "profileUrl"
IDENTIFIER_FIELD = "identifier"
STABLE_MATCH_FIELDS = ("addressCityState", "addressFull", "relatives")


class JobKind(str, Enum):
    SCAN = "scan"
    OPT_OUT = "opt_out"


class JobState(str, Enum):
    """Lifecycle of one run."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


@dataclass
class JobInput:
    """The tuple a job works on.

    Attributes:
        kind: Scan or opt-out
        broker: Broker whose script runs
        profile_query: Query the job is for
        extracted_profile: Listing to remove (opt-out jobs only)
    """

    kind: JobKind
    broker: DataBroker
    profile_query: ProfileQuery
    extracted_profile: Optional[ExtractedProfile] = None

    def __post_init__(self):
        if self.kind is JobKind.OPT_OUT and self.extracted_profile is None:
            raise ValueError("Opt-out jobs require an extracted profile")

    @property
    def script(self):
        if self.kind is JobKind.SCAN:
            return self.broker.scan_script
        return self.broker.opt_out_script

    def available_fields(self) -> Dict[str, Any]:
        """Profile values usable by this job's actions."""
        fields = self.profile_query.template_fields()
        if self.extracted_profile is not None:
            fields.update(self.extracted_profile.available_fields())
        return fields

    def describe(self) -> Dict[str, Any]:
        context = {
            "job_kind": self.kind.value,
            "broker_id": self.broker.id,
            "profile_query_id": self.profile_query.id,
        }
        if self.extracted_profile is not None:
            context["extracted_profile_id"] = self.extracted_profile.id
        return context


@dataclass
class JobResult:
    """Outcome of ``JobEngine.run``.

    Attributes:
        kind: Scan or opt-out
        state: Terminal state (completed, failed or cancelled)
        extracted_profiles: Listings found by a scan (unsaved, fingerprinted)
        profile_absent: For opt-outs with a verification step, whether the target
            listing was no longer found; None when the script does not verify
        error: Failure, when state is failed or cancelled
        executed_actions: Actions dispatched, retries included
        transitions: Every state the run passed through, in order
    """

    kind: JobKind
    state: JobState = JobState.IDLE
    extracted_profiles: List[ExtractedProfile] = field(default_factory=list)
    profile_absent: Optional[bool] = None
    error: Optional[JobError] = None
    executed_actions: int = 0
    transitions: List[JobState] = field(default_factory=lambda: [JobState.IDLE])
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def transition(self, state: JobState) -> None:
        if self.state.is_terminal:
            raise ValueError(f"Job already ended as {self.state.value}; cannot move to {state.value}")
        self.state = state
        self.transitions.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


def build_extracted_profile(
    broker: DataBroker, query: ProfileQuery, raw: Dict[str, Any]
) -> Optional[ExtractedProfile]:
    """Turn one listing reported by the driver into an unsaved ExtractedProfile.

    Returns None when the listing has nothing to identify it by.
    """
    name = _as_text(raw.get(NAME_FIELD))
    profile_url = _as_text(raw.get(PROFILE_URL_FIELD))
    identifier = _as_text(raw.get(IDENTIFIER_FIELD))
    match_fields = {
        key: value
        for key, value in raw.items()
        if key not in (NAME_FIELD, PROFILE_URL_FIELD, IDENTIFIER_FIELD)
    }
    extra = _stable_values(match_fields)

    try:
        fingerprint = compute_profile_fingerprint(
            broker.url, identifier=identifier, profile_url=profile_url, name=name, extra=extra
        )
    except ValueError:
        return None

    return ExtractedProfile(
        broker_id=broker.id,
        profile_query_id=query.id,
        fingerprint=fingerprint,
        name=name,
        profile_url=profile_url,
        identifier=identifier,
        match_fields=match_fields,
    )


def _stable_values(match_fields: Dict[str, Any]) -> List[str]:
    """Address and relative values that fingerprint a listing without URL or identifier."""
    values = []
    for key in STABLE_MATCH_FIELDS:
        value = match_fields.get(key)
        items = value if isinstance(value, (list, tuple)) else [value]
        values.extend(text for text in map(_as_text, items) if text)
    return values


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
