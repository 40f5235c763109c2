"""Database schema definition and ORM models.

This module defines the vault tables and the conversions between ORM rows and
domain models. Timestamps are stored as fixed-width ISO 8601 UTC strings, so
string comparison in SQL orders them chronologically.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from brokerwatch.domain.models import (
    DataBroker,
    Event,
    EventType,
    ExtractedProfile,
    OptOutOperationData,
    ProfileQuery,
    ScanOperationData,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class BrokerModel(Base):
    """ORM model for the brokers table.

    The full definition (scripts and scheduling) is kept as JSON; the columns
    next to it exist for lookups.
    """

    __tablename__ = "brokers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    url = Column(String(255), nullable=False, unique=True)
    version = Column(String(50), nullable=False)
    parent_url = Column(String(255), nullable=True)
    definition = Column(Text, nullable=False)

    __table_args__ = (Index("idx_brokers_parent_url", "parent_url"),)

    def to_domain(self) -> DataBroker:
        broker = DataBroker.model_validate_json(self.definition)
        return broker.model_copy(update={"id": self.id})

    @classmethod
    def from_domain(cls, broker: DataBroker) -> "BrokerModel":
        model = cls(id=broker.id)
        model.apply(broker)
        return model

    def apply(self, broker: DataBroker) -> None:
        """Overwrite this row with ``broker`` (the id is left untouched)."""
        self.name = broker.name
        self.url = broker.url
        self.version = broker.version
        self.parent_url = broker.parent_url
        self.definition = broker.model_dump_json(by_alias=True, exclude={"id"})


class ProfileQueryModel(Base):
    """ORM model for the profile_queries table."""

    __tablename__ = "profile_queries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(Integer, nullable=False)
    query_key = Column(String(64), nullable=False)
    first_name = Column(String(255), nullable=False)
    middle_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=False)
    city = Column(String(255), nullable=False)
    state = Column(String(64), nullable=False)
    birth_year = Column(Integer, nullable=False)
    deprecated = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("profile_id", "query_key", name="uq_profile_queries_key"),
    )

    def to_domain(self) -> ProfileQuery:
        return ProfileQuery(
            id=self.id,
            profile_id=self.profile_id,
            first_name=self.first_name,
            middle_name=self.middle_name,
            last_name=self.last_name,
            city=self.city,
            state=self.state,
            birth_year=self.birth_year,
            deprecated=bool(self.deprecated),
        )

    @classmethod
    def from_domain(cls, query: ProfileQuery, query_key: str) -> "ProfileQueryModel":
        return cls(
            id=query.id,
            profile_id=query.profile_id,
            query_key=query_key,
            first_name=query.first_name,
            middle_name=query.middle_name,
            last_name=query.last_name,
            city=query.city,
            state=query.state,
            birth_year=query.birth_year,
            deprecated=query.deprecated,
        )


class ScanOperationModel(Base):
    """ORM model for the scan_operations table.

    The composite primary key makes (broker_id, profile_query_id) unique.
    """

    __tablename__ = "scan_operations"

    broker_id = Column(
        Integer, ForeignKey("brokers.id", ondelete="CASCADE"), primary_key=True
    )
    profile_query_id = Column(
        Integer, ForeignKey("profile_queries.id", ondelete="CASCADE"), primary_key=True
    )
    preferred_run_date = Column(String(50), nullable=False)
    last_run_date = Column(String(50), nullable=True)

    __table_args__ = (Index("idx_scan_operations_preferred", "preferred_run_date"),)

    def to_domain(self) -> ScanOperationData:
        return ScanOperationData(
            broker_id=self.broker_id,
            profile_query_id=self.profile_query_id,
            preferred_run_date=_parse_datetime(self.preferred_run_date),
            last_run_date=_parse_datetime(self.last_run_date),
        )

    @classmethod
    def from_domain(cls, operation: ScanOperationData) -> "ScanOperationModel":
        return cls(
            broker_id=operation.broker_id,
            profile_query_id=operation.profile_query_id,
            preferred_run_date=_format_datetime(operation.preferred_run_date),
            last_run_date=_format_datetime(operation.last_run_date),
        )


class ExtractedProfileModel(Base):
    """ORM model for the extracted_profiles table."""

    __tablename__ = "extracted_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    broker_id = Column(Integer, ForeignKey("brokers.id", ondelete="CASCADE"), nullable=False)
    profile_query_id = Column(
        Integer, ForeignKey("profile_queries.id", ondelete="CASCADE"), nullable=False
    )
    fingerprint = Column(String(64), nullable=False)
    name = Column(Text, nullable=True)
    profile_url = Column(Text, nullable=True)
    identifier = Column(Text, nullable=True)
    match_fields = Column(Text, nullable=False, default="{}")
    found_date = Column(String(50), nullable=False)
    removed_date = Column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "broker_id", "profile_query_id", "fingerprint", name="uq_extracted_profiles_match"
        ),
        Index("idx_extracted_profiles_removed", "removed_date"),
    )

    def to_domain(self) -> ExtractedProfile:
        return ExtractedProfile(
            id=self.id,
            broker_id=self.broker_id,
            profile_query_id=self.profile_query_id,
            fingerprint=self.fingerprint,
            name=self.name,
            profile_url=self.profile_url,
            identifier=self.identifier,
            match_fields=json.loads(self.match_fields or "{}"),
            found_date=_parse_datetime(self.found_date),
            removed_date=_parse_datetime(self.removed_date),
        )

    @classmethod
    def from_domain(cls, profile: ExtractedProfile) -> "ExtractedProfileModel":
        return cls(
            id=profile.id,
            broker_id=profile.broker_id,
            profile_query_id=profile.profile_query_id,
            fingerprint=profile.fingerprint,
            name=profile.name,
            profile_url=profile.profile_url,
            identifier=profile.identifier,
            match_fields=json.dumps(profile.match_fields, default=str, sort_keys=True),
            found_date=_format_datetime(profile.found_date),
            removed_date=_format_datetime(profile.removed_date),
        )


class OptOutOperationModel(Base):
    """ORM model for the opt_out_operations table.

    Keyed by the extracted profile, so a profile can never have two opt-outs
    and every opt-out references an existing profile.
    """

    __tablename__ = "opt_out_operations"

    extracted_profile_id = Column(
        Integer, ForeignKey("extracted_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    broker_id = Column(Integer, ForeignKey("brokers.id", ondelete="CASCADE"), nullable=False)
    profile_query_id = Column(
        Integer, ForeignKey("profile_queries.id", ondelete="CASCADE"), nullable=False
    )
    attempt_count = Column(Integer, nullable=False, default=0)
    preferred_run_date = Column(String(50), nullable=True)
    last_run_date = Column(String(50), nullable=True)
    submitted_date = Column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_opt_out_operations_broker", "broker_id"),
        Index("idx_opt_out_operations_preferred", "preferred_run_date"),
    )

    def to_domain(self) -> OptOutOperationData:
        return OptOutOperationData(
            broker_id=self.broker_id,
            profile_query_id=self.profile_query_id,
            extracted_profile_id=self.extracted_profile_id,
            attempt_count=self.attempt_count,
            preferred_run_date=_parse_datetime(self.preferred_run_date),
            last_run_date=_parse_datetime(self.last_run_date),
            submitted_date=_parse_datetime(self.submitted_date),
        )

    @classmethod
    def from_domain(cls, operation: OptOutOperationData) -> "OptOutOperationModel":
        return cls(
            extracted_profile_id=operation.extracted_profile_id,
            broker_id=operation.broker_id,
            profile_query_id=operation.profile_query_id,
            attempt_count=operation.attempt_count,
            preferred_run_date=_format_datetime(operation.preferred_run_date),
            last_run_date=_format_datetime(operation.last_run_date),
            submitted_date=_format_datetime(operation.submitted_date),
        )


class EventModel(Base):
    """ORM model for the append-only events table."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False)
    broker_id = Column(Integer, nullable=False)
    profile_query_id = Column(Integer, nullable=False)
    extracted_profile_id = Column(Integer, nullable=True)
    date = Column(String(50), nullable=False)
    detail = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_events_tuple", "broker_id", "profile_query_id"),
        Index("idx_events_type", "type"),
    )

    def to_domain(self) -> Event:
        return Event(
            id=self.id,
            type=EventType(self.type),
            broker_id=self.broker_id,
            profile_query_id=self.profile_query_id,
            extracted_profile_id=self.extracted_profile_id,
            date=_parse_datetime(self.date),
            detail=self.detail,
        )

    @classmethod
    def from_domain(cls, event: Event) -> "EventModel":
        return cls(
            type=EventType(event.type).value,
            broker_id=event.broker_id,
            profile_query_id=event.profile_query_id,
            extracted_profile_id=event.extracted_profile_id,
            date=_format_datetime(event.date),
            detail=event.detail,
        )


class SettingModel(Base):
    """ORM model for key/value settings (app-version marker, one-shot flags)."""

    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(String(50), nullable=False)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as a fixed-width UTC string for storage."""
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.strftime(TIMESTAMP_FORMAT)


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if dt_str is None or dt_str == "":
        return None

    dt_str = dt_str.rstrip("Z")
    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent).

    Args:
        engine: SQLAlchemy engine instance
    """
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(tables)}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
