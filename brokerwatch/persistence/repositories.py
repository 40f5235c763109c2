"""Data access layer (repositories) for the vault tables.

Each repository wraps one table, returns domain models rather than ORM rows,
and maps SQLAlchemy failures onto the persistence exception hierarchy. None of
them commits; the surrounding ``get_session()`` block owns the transaction.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from brokerwatch.domain.models import (
    DataBroker,
    Event,
    EventType,
    ExtractedProfile,
    OptOutOperationData,
    ProfileQuery,
    ScanOperationData,
)
from brokerwatch.utils.hashing import compute_query_key
from brokerwatch.utils.timestamps import utc_now

from .exceptions import DataIntegrityError, PersistenceError, RecordNotFoundError
from .schema import (
    BrokerModel,
    EventModel,
    ExtractedProfileModel,
    OptOutOperationModel,
    ProfileQueryModel,
    ScanOperationModel,
    SettingModel,
    _format_datetime,
)

logger = logging.getLogger(__name__)


class BrokerRepository:
    """Repository for broker definitions."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_url(self, url: str) -> Optional[DataBroker]:
        """Retrieve a broker by its URL.

        Returns:
            DataBroker if found, None otherwise

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            stmt = select(BrokerModel).where(BrokerModel.url == url)
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving broker {url}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve broker: {e}") from e

    def get_by_id(self, broker_id: int) -> Optional[DataBroker]:
        try:
            model = self.session.get(BrokerModel, broker_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving broker id {broker_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve broker: {e}") from e

    def get_all(self) -> List[DataBroker]:
        try:
            stmt = select(BrokerModel).order_by(BrokerModel.id)
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving brokers: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve brokers: {e}") from e

    def get_children(self, parent_url: str) -> List[DataBroker]:
        """Retrieve brokers whose opt-out is covered by ``parent_url``."""
        try:
            stmt = (
                select(BrokerModel)
                .where(BrokerModel.parent_url == parent_url)
                .order_by(BrokerModel.id)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving children of {parent_url}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve child brokers: {e}") from e

    def insert(self, broker: DataBroker) -> int:
        """Insert a new broker.

        Returns:
            The generated broker id

        Raises:
            DataIntegrityError: If a broker with the same URL already exists
            PersistenceError: If database error occurs
        """
        try:
            model = BrokerModel.from_domain(broker.model_copy(update={"id": None}))
            self.session.add(model)
            self.session.flush()
            return model.id
        except IntegrityError as e:
            logger.error(f"Integrity error inserting broker {broker.url}: {e}", exc_info=True)
            raise DataIntegrityError(f"Broker {broker.url} already exists: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting broker {broker.url}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save broker: {e}") from e

    def replace(self, broker: DataBroker, broker_id: int) -> None:
        """Replace the stored definition of ``broker_id`` wholesale.

        Raises:
            RecordNotFoundError: If broker_id doesn't exist
            DataIntegrityError: If the new URL collides with another broker
            PersistenceError: If database error occurs
        """
        try:
            model = self.session.get(BrokerModel, broker_id)
            if model is None:
                raise RecordNotFoundError(f"Broker with id {broker_id} not found")

            model.apply(broker)
            self.session.flush()
        except RecordNotFoundError:
            raise
        except IntegrityError as e:
            logger.error(f"Integrity error updating broker {broker_id}: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to update broker: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error updating broker {broker_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update broker: {e}") from e


class ProfileQueryRepository:
    """Repository for profile query permutations."""

    def __init__(self, session: Session):
        self.session = session

    def insert_or_get(self, query: ProfileQuery) -> Tuple[ProfileQuery, bool]:
        """Insert a query unless an identical permutation is already stored.

        A stored deprecated permutation is revived rather than duplicated.

        Returns:
            Tuple of (stored query, created flag)

        Raises:
            PersistenceError: If database error occurs
        """
        key = compute_query_key(
            query.first_name,
            query.last_name,
            query.middle_name,
            query.city,
            query.state,
            query.birth_year,
        )
        try:
            stmt = select(ProfileQueryModel).where(
                ProfileQueryModel.profile_id == query.profile_id,
                ProfileQueryModel.query_key == key,
            )
            existing = self.session.execute(stmt).scalar_one_or_none()
            if existing is not None:
                if existing.deprecated and not query.deprecated:
                    existing.deprecated = False
                    self.session.flush()
                return existing.to_domain(), False

            model = ProfileQueryModel.from_domain(query.model_copy(update={"id": None}), key)
            self.session.add(model)
            self.session.flush()
            return model.to_domain(), True
        except IntegrityError as e:
            logger.error(f"Integrity error saving profile query: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to save profile query: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving profile query: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save profile query: {e}") from e

    def get_by_id(self, query_id: int) -> Optional[ProfileQuery]:
        try:
            model = self.session.get(ProfileQueryModel, query_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving profile query {query_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve profile query: {e}") from e

    def get_by_profile(
        self, profile_id: int, include_deprecated: bool = True
    ) -> List[ProfileQuery]:
        try:
            stmt = select(ProfileQueryModel).where(ProfileQueryModel.profile_id == profile_id)
            if not include_deprecated:
                stmt = stmt.where(ProfileQueryModel.deprecated.is_(False))
            stmt = stmt.order_by(ProfileQueryModel.id)
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving profile queries: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve profile queries: {e}") from e

    def get_active(self) -> List[ProfileQuery]:
        """Retrieve every non-deprecated query across profiles."""
        try:
            stmt = (
                select(ProfileQueryModel)
                .where(ProfileQueryModel.deprecated.is_(False))
                .order_by(ProfileQueryModel.id)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving active profile queries: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve profile queries: {e}") from e

    def set_deprecated(self, query_id: int, deprecated: bool = True) -> None:
        try:
            stmt = (
                update(ProfileQueryModel)
                .where(ProfileQueryModel.id == query_id)
                .values(deprecated=deprecated)
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount == 0:
                raise RecordNotFoundError(f"Profile query {query_id} not found")
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error deprecating profile query {query_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update profile query: {e}") from e


class ScanOperationRepository:
    """Repository for per-(broker, query) scan scheduling state."""

    def __init__(self, session: Session):
        self.session = session

    def insert(self, operation: ScanOperationData) -> None:
        """Insert a scan operation.

        Raises:
            DataIntegrityError: If the (broker, query) pair already has one
            PersistenceError: If database error occurs
        """
        try:
            self.session.add(ScanOperationModel.from_domain(operation))
            self.session.flush()
        except IntegrityError as e:
            logger.error(
                f"Integrity error saving scan operation "
                f"{operation.broker_id}/{operation.profile_query_id}: {e}",
                exc_info=True,
            )
            raise DataIntegrityError(f"Scan operation already exists: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving scan operation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save scan operation: {e}") from e

    def get(self, broker_id: int, profile_query_id: int) -> Optional[ScanOperationData]:
        try:
            model = self.session.get(ScanOperationModel, (broker_id, profile_query_id))
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving scan operation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve scan operation: {e}") from e

    def get_by_broker(self, broker_id: int) -> List[ScanOperationData]:
        try:
            stmt = (
                select(ScanOperationModel)
                .where(ScanOperationModel.broker_id == broker_id)
                .order_by(ScanOperationModel.profile_query_id)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving scan operations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve scan operations: {e}") from e

    def get_due(self, as_of: datetime) -> List[ScanOperationData]:
        """Retrieve scans with ``preferred_run_date <= as_of`` for active queries.

        Ordered oldest-due first so a backlog drains fairly.
        """
        try:
            stmt = (
                select(ScanOperationModel)
                .join(
                    ProfileQueryModel,
                    ProfileQueryModel.id == ScanOperationModel.profile_query_id,
                )
                .where(
                    ScanOperationModel.preferred_run_date <= _format_datetime(as_of),
                    ProfileQueryModel.deprecated.is_(False),
                )
                .order_by(
                    ScanOperationModel.preferred_run_date,
                    ScanOperationModel.broker_id,
                    ScanOperationModel.profile_query_id,
                )
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving due scan operations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve due scan operations: {e}") from e

    def update_run_dates(
        self,
        broker_id: int,
        profile_query_id: int,
        preferred_run_date: datetime,
        last_run_date: Optional[datetime] = None,
    ) -> None:
        """Set the next preferred run date, and the last run date when given.

        Raises:
            RecordNotFoundError: If the scan operation doesn't exist
            PersistenceError: If database error occurs
        """
        values = {"preferred_run_date": _format_datetime(preferred_run_date)}
        if last_run_date is not None:
            values["last_run_date"] = _format_datetime(last_run_date)

        try:
            stmt = (
                update(ScanOperationModel)
                .where(
                    ScanOperationModel.broker_id == broker_id,
                    ScanOperationModel.profile_query_id == profile_query_id,
                )
                .values(**values)
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount == 0:
                raise RecordNotFoundError(
                    f"Scan operation {broker_id}/{profile_query_id} not found"
                )
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error updating scan operation dates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update scan operation: {e}") from e


class ExtractedProfileRepository:
    """Repository for listings found on broker sites."""

    def __init__(self, session: Session):
        self.session = session

    def insert(self, profile: ExtractedProfile) -> ExtractedProfile:
        """Insert a newly found listing.

        Returns:
            The stored profile, with its generated id

        Raises:
            DataIntegrityError: If the same fingerprint is already stored for the tuple
            PersistenceError: If database error occurs
        """
        try:
            model = ExtractedProfileModel.from_domain(profile.model_copy(update={"id": None}))
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            logger.error(f"Integrity error saving extracted profile: {e}", exc_info=True)
            raise DataIntegrityError(f"Extracted profile already exists: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving extracted profile: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save extracted profile: {e}") from e

    def get_by_id(self, profile_id: int) -> Optional[ExtractedProfile]:
        try:
            model = self.session.get(ExtractedProfileModel, profile_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving extracted profile {profile_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve extracted profile: {e}") from e

    def get_by_broker(
        self, broker_id: int, profile_query_id: Optional[int] = None
    ) -> List[ExtractedProfile]:
        try:
            stmt = select(ExtractedProfileModel).where(
                ExtractedProfileModel.broker_id == broker_id
            )
            if profile_query_id is not None:
                stmt = stmt.where(ExtractedProfileModel.profile_query_id == profile_query_id)
            stmt = stmt.order_by(ExtractedProfileModel.id)
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(
                f"Error retrieving extracted profiles for broker {broker_id}: {e}",
                exc_info=True,
            )
            raise PersistenceError(f"Failed to retrieve extracted profiles: {e}") from e

    def update_removed_date(self, profile_id: int, removed_date: datetime) -> bool:
        """Mark a listing as removed.

        ``removed_date`` is terminal: an already-removed listing is left as is.

        Returns:
            True if the listing was newly marked, False if it was already removed

        Raises:
            RecordNotFoundError: If the listing doesn't exist
            PersistenceError: If database error occurs
        """
        try:
            model = self.session.get(ExtractedProfileModel, profile_id)
            if model is None:
                raise RecordNotFoundError(f"Extracted profile {profile_id} not found")

            if model.removed_date is not None:
                return False

            model.removed_date = _format_datetime(removed_date)
            self.session.flush()
            return True
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error updating removed date for {profile_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update removed date: {e}") from e

    def count(self, removed: Optional[bool] = None) -> int:
        """Count listings, optionally only removed (True) or still present (False)."""
        try:
            stmt = select(func.count()).select_from(ExtractedProfileModel)
            if removed is True:
                stmt = stmt.where(ExtractedProfileModel.removed_date.is_not(None))
            elif removed is False:
                stmt = stmt.where(ExtractedProfileModel.removed_date.is_(None))
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting extracted profiles: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count extracted profiles: {e}") from e


class OptOutOperationRepository:
    """Repository for per-listing opt-out scheduling state."""

    def __init__(self, session: Session):
        self.session = session

    def insert(self, operation: OptOutOperationData) -> None:
        """Insert an opt-out operation.

        Raises:
            DataIntegrityError: If the listing already has an opt-out, or doesn't exist
            PersistenceError: If database error occurs
        """
        try:
            self.session.add(OptOutOperationModel.from_domain(operation))
            self.session.flush()
        except IntegrityError as e:
            logger.error(
                f"Integrity error saving opt-out for profile "
                f"{operation.extracted_profile_id}: {e}",
                exc_info=True,
            )
            raise DataIntegrityError(f"Failed to save opt-out operation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving opt-out operation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save opt-out operation: {e}") from e

    def get(self, extracted_profile_id: int) -> Optional[OptOutOperationData]:
        try:
            model = self.session.get(OptOutOperationModel, extracted_profile_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving opt-out operation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve opt-out operation: {e}") from e

    def get_by_broker(self, broker_id: int) -> List[OptOutOperationData]:
        try:
            stmt = (
                select(OptOutOperationModel)
                .where(OptOutOperationModel.broker_id == broker_id)
                .order_by(OptOutOperationModel.extracted_profile_id)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving opt-out operations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve opt-out operations: {e}") from e

    def get_due(self, as_of: datetime) -> List[OptOutOperationData]:
        """Retrieve opt-outs due by ``as_of`` whose listing is not yet removed.

        Operations awaiting confirmation (no preferred run date) are never due.
        """
        try:
            stmt = (
                select(OptOutOperationModel)
                .join(
                    ExtractedProfileModel,
                    ExtractedProfileModel.id == OptOutOperationModel.extracted_profile_id,
                )
                .where(
                    and_(
                        OptOutOperationModel.preferred_run_date.is_not(None),
                        OptOutOperationModel.preferred_run_date <= _format_datetime(as_of),
                        ExtractedProfileModel.removed_date.is_(None),
                    )
                )
                .order_by(
                    OptOutOperationModel.preferred_run_date,
                    OptOutOperationModel.extracted_profile_id,
                )
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving due opt-out operations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve due opt-out operations: {e}") from e

    def set_attempt_count(
        self,
        count: int,
        broker_id: int,
        profile_query_id: int,
        extracted_profile_id: int,
    ) -> None:
        try:
            stmt = (
                update(OptOutOperationModel)
                .where(
                    OptOutOperationModel.broker_id == broker_id,
                    OptOutOperationModel.profile_query_id == profile_query_id,
                    OptOutOperationModel.extracted_profile_id == extracted_profile_id,
                )
                .values(attempt_count=count)
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount == 0:
                raise RecordNotFoundError(
                    f"Opt-out operation for profile {extracted_profile_id} not found"
                )
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error updating attempt count: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update attempt count: {e}") from e

    def increment_attempt_count(self, extracted_profile_id: int) -> int:
        """Add one to the attempt count and return the new value."""
        try:
            model = self.session.get(OptOutOperationModel, extracted_profile_id)
            if model is None:
                raise RecordNotFoundError(
                    f"Opt-out operation for profile {extracted_profile_id} not found"
                )

            model.attempt_count = (model.attempt_count or 0) + 1
            self.session.flush()
            return model.attempt_count
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error incrementing attempt count: {e}", exc_info=True)
            raise PersistenceError(f"Failed to increment attempt count: {e}") from e

    def update_run_dates(
        self,
        extracted_profile_id: int,
        preferred_run_date: Optional[datetime],
        last_run_date: Optional[datetime] = None,
        submitted_date: Optional[datetime] = None,
    ) -> None:
        """Set the preferred run date (None clears it) plus any given dates.

        Raises:
            RecordNotFoundError: If the opt-out operation doesn't exist
            PersistenceError: If database error occurs
        """
        values = {"preferred_run_date": _format_datetime(preferred_run_date)}
        if last_run_date is not None:
            values["last_run_date"] = _format_datetime(last_run_date)
        if submitted_date is not None:
            values["submitted_date"] = _format_datetime(submitted_date)

        try:
            stmt = (
                update(OptOutOperationModel)
                .where(OptOutOperationModel.extracted_profile_id == extracted_profile_id)
                .values(**values)
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount == 0:
                raise RecordNotFoundError(
                    f"Opt-out operation for profile {extracted_profile_id} not found"
                )
        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error updating opt-out run dates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update opt-out operation: {e}") from e


class EventRepository:
    """Repository for the append-only history log."""

    def __init__(self, session: Session):
        self.session = session

    def append(self, event: Event) -> Event:
        try:
            model = EventModel.from_domain(event)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error appending {event.type} event: {e}", exc_info=True)
            raise PersistenceError(f"Failed to append event: {e}") from e

    def find(
        self,
        broker_id: Optional[int] = None,
        profile_query_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
    ) -> List[Event]:
        """Retrieve events in insertion order, filtered by any given field."""
        try:
            stmt = select(EventModel)
            if broker_id is not None:
                stmt = stmt.where(EventModel.broker_id == broker_id)
            if profile_query_id is not None:
                stmt = stmt.where(EventModel.profile_query_id == profile_query_id)
            if event_type is not None:
                stmt = stmt.where(EventModel.type == EventType(event_type).value)
            stmt = stmt.order_by(EventModel.id)
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving events: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve events: {e}") from e

    def last(self, broker_id: int, profile_query_id: int) -> Optional[Event]:
        try:
            stmt = (
                select(EventModel)
                .where(
                    EventModel.broker_id == broker_id,
                    EventModel.profile_query_id == profile_query_id,
                )
                .order_by(EventModel.id.desc())
                .limit(1)
            )
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving last event: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve last event: {e}") from e


class SettingRepository:
    """Repository for key/value settings."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        try:
            model = self.session.get(SettingModel, key)
            return model.value if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error reading setting {key}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to read setting: {e}") from e

    def set(self, key: str, value: str) -> None:
        try:
            now = _format_datetime(utc_now())
            model = self.session.get(SettingModel, key)
            if model is None:
                self.session.add(SettingModel(key=key, value=value, updated_at=now))
            else:
                model.value = value
                model.updated_at = now
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error writing setting {key}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to write setting: {e}") from e
