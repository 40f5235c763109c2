"""The vault: a single store API over the per-table repositories.

Components above the persistence layer (updater, scheduler, profile service)
talk to ``DataBrokerVault`` only. One vault wraps one session, so every call
made through it inside a ``get_session()`` block lands in the same transaction.
"""

from datetime import datetime
from typing import List, Optional

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

from .repositories import (
    BrokerRepository,
    EventRepository,
    ExtractedProfileRepository,
    OptOutOperationRepository,
    ProfileQueryRepository,
    ScanOperationRepository,
    SettingRepository,
)

LAST_CHECKED_APP_VERSION = "last_checked_app_version"
FIRST_MATCH_FOUND_FLAG = "milestone.first_match_found"
FIRST_PROFILE_REMOVED_FLAG = "milestone.first_profile_removed"
ALL_PROFILES_REMOVED_FLAG = "milestone.all_profiles_removed"


class DataBrokerVault:
    """Store API used by the updater, the scheduler and the profile service.

    Example:
        >>> with get_session() as session:
        ...     vault = DataBrokerVault(session)
        ...     due = vault.fetch_due_scan_operations(utc_now())
    """

    def __init__(self, session: Session):
        self.session = session
        self.brokers = BrokerRepository(session)
        self.profile_queries = ProfileQueryRepository(session)
        self.scans = ScanOperationRepository(session)
        self.extracted_profiles = ExtractedProfileRepository(session)
        self.opt_outs = OptOutOperationRepository(session)
        self.events = EventRepository(session)
        self.settings = SettingRepository(session)

    # Brokers

    def fetch_broker(self, url: str) -> Optional[DataBroker]:
        return self.brokers.get_by_url(url)

    def fetch_broker_by_id(self, broker_id: int) -> Optional[DataBroker]:
        return self.brokers.get_by_id(broker_id)

    def fetch_all_brokers(self) -> List[DataBroker]:
        return self.brokers.get_all()

    def fetch_child_brokers(self, parent_url: str) -> List[DataBroker]:
        return self.brokers.get_children(parent_url)

    def save_broker(self, broker: DataBroker) -> int:
        return self.brokers.insert(broker)

    def update_broker(self, broker: DataBroker, broker_id: int) -> None:
        self.brokers.replace(broker, broker_id)

    # Profile queries

    def save_profile_query(self, query: ProfileQuery) -> ProfileQuery:
        """Store a query permutation, returning the stored row (new or existing)."""
        stored, _ = self.profile_queries.insert_or_get(query)
        return stored

    def fetch_profile_query(self, query_id: int) -> Optional[ProfileQuery]:
        return self.profile_queries.get_by_id(query_id)

    def fetch_all_profile_queries(
        self, profile_id: int, include_deprecated: bool = True
    ) -> List[ProfileQuery]:
        return self.profile_queries.get_by_profile(profile_id, include_deprecated)

    def fetch_active_profile_queries(self) -> List[ProfileQuery]:
        return self.profile_queries.get_active()

    def deprecate_profile_query(self, query_id: int) -> None:
        self.profile_queries.set_deprecated(query_id, True)

    # Scan operations

    def save_scan_operation(
        self, broker_id: int, profile_query_id: int, preferred_run_date: datetime
    ) -> ScanOperationData:
        operation = ScanOperationData(
            broker_id=broker_id,
            profile_query_id=profile_query_id,
            preferred_run_date=preferred_run_date,
        )
        self.scans.insert(operation)
        return operation

    def fetch_scan_operation(
        self, broker_id: int, profile_query_id: int
    ) -> Optional[ScanOperationData]:
        return self.scans.get(broker_id, profile_query_id)

    def fetch_scan_operations(self, broker_id: int) -> List[ScanOperationData]:
        return self.scans.get_by_broker(broker_id)

    def fetch_due_scan_operations(self, as_of: datetime) -> List[ScanOperationData]:
        return self.scans.get_due(as_of)

    def update_scan_run_dates(
        self,
        broker_id: int,
        profile_query_id: int,
        preferred_run_date: datetime,
        last_run_date: Optional[datetime] = None,
    ) -> None:
        self.scans.update_run_dates(
            broker_id, profile_query_id, preferred_run_date, last_run_date
        )

    # Extracted profiles

    def save_extracted_profile(self, profile: ExtractedProfile) -> ExtractedProfile:
        return self.extracted_profiles.insert(profile)

    def fetch_extracted_profile(self, extracted_profile_id: int) -> Optional[ExtractedProfile]:
        return self.extracted_profiles.get_by_id(extracted_profile_id)

    def fetch_extracted_profiles(
        self, broker_id: int, profile_query_id: Optional[int] = None
    ) -> List[ExtractedProfile]:
        return self.extracted_profiles.get_by_broker(broker_id, profile_query_id)

    def update_removed_date(self, extracted_profile_id: int, removed_date: datetime) -> bool:
        return self.extracted_profiles.update_removed_date(extracted_profile_id, removed_date)

    def has_matches(self) -> bool:
        return self.extracted_profiles.count() > 0

    def all_profiles_removed(self) -> bool:
        """True when at least one listing exists and every listing is removed."""
        return self.has_matches() and self.extracted_profiles.count(removed=False) == 0

    # Opt-out operations

    def save_opt_out_operation(self, operation: OptOutOperationData) -> None:
        self.opt_outs.insert(operation)

    def fetch_opt_out_operation(
        self, extracted_profile_id: int
    ) -> Optional[OptOutOperationData]:
        return self.opt_outs.get(extracted_profile_id)

    def fetch_opt_out_operations(self, broker_id: int) -> List[OptOutOperationData]:
        return self.opt_outs.get_by_broker(broker_id)

    def fetch_due_opt_out_operations(self, as_of: datetime) -> List[OptOutOperationData]:
        return self.opt_outs.get_due(as_of)

    def update_attempt_count(
        self,
        count: int,
        broker_id: int,
        profile_query_id: int,
        extracted_profile_id: int,
    ) -> None:
        self.opt_outs.set_attempt_count(count, broker_id, profile_query_id, extracted_profile_id)

    def increment_attempt_count(self, extracted_profile_id: int) -> int:
        return self.opt_outs.increment_attempt_count(extracted_profile_id)

    def update_opt_out_run_dates(
        self,
        extracted_profile_id: int,
        preferred_run_date: Optional[datetime],
        last_run_date: Optional[datetime] = None,
        submitted_date: Optional[datetime] = None,
    ) -> None:
        self.opt_outs.update_run_dates(
            extracted_profile_id, preferred_run_date, last_run_date, submitted_date
        )

    # Events

    def append_event(self, event: Event) -> Event:
        return self.events.append(event)

    def fetch_events(
        self,
        broker_id: Optional[int] = None,
        profile_query_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
    ) -> List[Event]:
        return self.events.find(broker_id, profile_query_id, event_type)

    def fetch_last_event(self, broker_id: int, profile_query_id: int) -> Optional[Event]:
        return self.events.last(broker_id, profile_query_id)

    # Settings

    def get_setting(self, key: str) -> Optional[str]:
        return self.settings.get(key)

    def set_setting(self, key: str, value: str) -> None:
        self.settings.set(key, value)
