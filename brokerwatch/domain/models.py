"""Core domain models for brokers, profile queries, operations and events.

This module defines the data structures used throughout the application:
- DataBroker: versioned broker definition with its scan and opt-out scripts
- ProfileQuery: one search permutation of the user's profile
- ScanOperationData / OptOutOperationData: per-tuple scheduling state
- ExtractedProfile: a listing found on a broker site
- Event: append-only history entry
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from brokerwatch.utils.timestamps import ensure_utc, utc_now

from .actions import Action
from .versions import InvalidVersionError, is_newer, parse_version


class BrokerType(str, Enum):
    """Position of a broker in a parent/child family of sites."""

    PARENT = "parent"
    CHILD = "child"


class EventType(str, Enum):
    """History event types."""

    SCAN_STARTED = "scan_started"
    NO_MATCH_FOUND = "no_match_found"
    MATCHES_FOUND = "matches_found"
    OPT_OUT_STARTED = "opt_out_started"
    OPT_OUT_REQUESTED = "opt_out_requested"
    OPT_OUT_CONFIRMED = "opt_out_confirmed"
    RE_APPEARANCE = "re_appearance"
    ERROR = "error"


class BrokerVersionError(ValueError):
    """Raised when a broker upgrade would not move the version forward."""

    pass


class SchedulingConfig(BaseModel):
    """Per-broker cadence, in hours. ``max_attempts`` of -1 means unlimited."""

    retry_error_hours: float = Field(48, gt=0)
    confirm_opt_out_hours: float = Field(72, gt=0)
    maintenance_scan_hours: float = Field(120, gt=0)
    max_attempts: int = Field(-1, ge=-1)

    def allows_attempt(self, attempt_count: int) -> bool:
        """Return True while another opt-out attempt is permitted."""
        return self.max_attempts < 0 or attempt_count < self.max_attempts


class DataBroker(BaseModel):
    """A broker definition, as loaded from disk or stored in the vault.

    ``parent_url`` names the broker whose opt-out also covers this one; a
    broker with a parent is a child and is never opted out directly.
    """

    id: Optional[int] = Field(None, description="Vault identifier (None until saved)")
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1, description="Broker URL, unique across brokers")
    version: str = Field(..., description="Dotted-numeric definition version")
    scan_script: List[Action] = Field(default_factory=list)
    opt_out_script: List[Action] = Field(default_factory=list)
    parent_url: Optional[str] = None
    scheduling: Optional[SchedulingConfig] = None
    added_at: Optional[datetime] = None

    @field_validator("name", "url")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Strip whitespace from identifying fields."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Reject versions that cannot be compared numerically."""
        try:
            parse_version(v)
        except InvalidVersionError as e:
            raise ValueError(str(e)) from e
        return v.strip()

    @field_validator("added_at")
    @classmethod
    def ensure_added_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def broker_type(self) -> BrokerType:
        return BrokerType.CHILD if self.parent_url else BrokerType.PARENT

    @property
    def is_child(self) -> bool:
        return self.broker_type is BrokerType.CHILD

    def scheduling_or(self, default: SchedulingConfig) -> SchedulingConfig:
        """Return this broker's scheduling config, falling back to ``default``."""
        return self.scheduling or default

    def upgrade(self, to: "DataBroker", opt_outs: List["OptOutOperationData"]) -> "BrokerUpgrade":
        """Compute the transition from this stored definition to a newer one.

        The incoming definition keeps this broker's id. Every opt-out of this
        broker is affected: its attempt count goes back to zero.

        Args:
            to: Incoming definition for the same broker URL
            opt_outs: Opt-out operations currently stored for this broker

        Returns:
            BrokerUpgrade describing the new definition and the opt-outs to reset

        Raises:
            BrokerVersionError: If ``to`` is not strictly newer than this definition
        """
        if not is_newer(to.version, self.version):
            raise BrokerVersionError(
                f"Cannot upgrade {self.url} from {self.version} to {to.version}: "
                "incoming version is not newer"
            )

        upgraded = to.model_copy(update={"id": self.id})
        affected = sorted(
            op.extracted_profile_id for op in opt_outs if op.broker_id == self.id
        )
        return BrokerUpgrade(
            broker=upgraded,
            previous_version=self.version,
            affected_opt_out_ids=affected,
        )

    model_config = {"json_schema_extra": {"example": {
        "name": "Example Broker",
        "url": "example.com",
        "version": "1.0",
        "scan_script": [
            {"actionType": "navigate", "id": "n1",
             "url": "https://example.com/search?name=${firstName}-${lastName}"},
            {"actionType": "extract", "id": "e1", "selector": ".result",
             "profile": {"name": {"selector": ".name"}}},
        ],
        "opt_out_script": [],
    }}}


@dataclass
class BrokerUpgrade:
    """Outcome of ``DataBroker.upgrade``.

    Attributes:
        broker: The new definition, carrying the stored broker id
        previous_version: Version being replaced
        affected_opt_out_ids: Extracted-profile ids whose opt-out attempt count resets
    """

    broker: DataBroker
    previous_version: str
    affected_opt_out_ids: List[int] = field(default_factory=list)


class ProfileQuery(BaseModel):
    """One name/address/birth-year permutation of the user's profile."""

    id: Optional[int] = None
    profile_id: int = Field(1, ge=1)
    first_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    last_name: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    birth_year: int = Field(..., ge=1900, le=2100)
    deprecated: bool = False

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)

    def age(self, today: Optional[datetime] = None) -> int:
        today = today or utc_now()
        return today.year - self.birth_year

    def template_fields(self) -> Dict[str, Any]:
        """Values available to action templates and form filling."""
        fields: Dict[str, Any] = {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
            "city": self.city,
            "state": self.state,
            "age": self.age(),
            "birthYear": self.birth_year,
        }
        if self.middle_name:
            fields["middleName"] = self.middle_name
        return fields


class ScanOperationData(BaseModel):
    """Scan scheduling state for one (broker, profile query) pair."""

    broker_id: int
    profile_query_id: int
    preferred_run_date: datetime
    last_run_date: Optional[datetime] = None

    @field_validator("preferred_run_date", "last_run_date")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class ExtractedProfile(BaseModel):
    """A listing found on a broker site for a profile query."""

    id: Optional[int] = None
    broker_id: int
    profile_query_id: int
    fingerprint: str = Field(..., min_length=1)
    name: Optional[str] = None
    profile_url: Optional[str] = None
    identifier: Optional[str] = None
    match_fields: Dict[str, Any] = Field(default_factory=dict)
    found_date: datetime = Field(default_factory=utc_now)
    removed_date: Optional[datetime] = None

    @field_validator("found_date", "removed_date")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_removed(self) -> bool:
        return self.removed_date is not None

    def available_fields(self) -> Dict[str, Any]:
        """Listing fields usable by opt-out actions (non-empty values only)."""
        fields = {
            key: value for key, value in self.match_fields.items() if value not in (None, "", [])
        }
        if self.name:
            fields["name"] = self.name
        if self.profile_url:
            fields["profileUrl"] = self.profile_url
        if self.identifier:
            fields["identifier"] = self.identifier
        return fields


class OptOutOperationData(BaseModel):
    """Opt-out scheduling state for one extracted profile.

    ``preferred_run_date`` is None while a submitted request awaits
    confirmation by a later scan.
    """

    broker_id: int
    profile_query_id: int
    extracted_profile_id: int
    attempt_count: int = Field(0, ge=0)
    preferred_run_date: Optional[datetime] = None
    last_run_date: Optional[datetime] = None
    submitted_date: Optional[datetime] = None

    @field_validator("preferred_run_date", "last_run_date", "submitted_date")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Event(BaseModel):
    """Append-only history entry."""

    id: Optional[int] = None
    type: EventType
    broker_id: int
    profile_query_id: int
    extracted_profile_id: Optional[int] = None
    date: datetime = Field(default_factory=utc_now)
    detail: Optional[str] = None

    @field_validator("date")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
