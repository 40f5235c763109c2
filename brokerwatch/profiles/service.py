"""Turn the configured user profile into stored profile queries."""

from contextlib import AbstractContextManager
from dataclasses import dataclass
from itertools import product
from typing import Callable, List

from brokerwatch.config.models import ProfileConfig
from brokerwatch.domain.models import ProfileQuery
from brokerwatch.logging import get_logger
from brokerwatch.persistence import DataBrokerVault, get_session
from brokerwatch.utils.timestamps import utc_now

logger = get_logger(__name__, component="profiles")

DEFAULT_PROFILE_ID = 1


def expand_profile(profile: ProfileConfig, profile_id: int = DEFAULT_PROFILE_ID) -> List[ProfileQuery]:
    """Every name/address permutation of ``profile`` as an unsaved ProfileQuery."""
    return [
        ProfileQuery(
            profile_id=profile_id,
            first_name=name.first,
            middle_name=name.middle,
            last_name=name.last,
            city=address.city,
            state=address.state,
            birth_year=profile.birth_year,
        )
        for name, address in product(profile.names, profile.addresses)
    ]


@dataclass
class ProfileSyncResult:
    """Outcome of ``ProfileService.save_profile``.

    Attributes:
        active_queries: Queries in effect after the sync
        deprecated_queries: Previously active queries no longer in the profile
        scans_created: Scan operations seeded for (broker, query) pairs lacking one
    """

    active_queries: List[ProfileQuery]
    deprecated_queries: List[ProfileQuery]
    scans_created: int = 0


class ProfileService:
    """Keeps stored profile queries in step with the configured profile."""

    def __init__(
        self,
        session_scope: Callable[[], AbstractContextManager] = get_session,
        clock: Callable = utc_now,
        profile_id: int = DEFAULT_PROFILE_ID,
    ):
        self.session_scope = session_scope
        self.clock = clock
        self.profile_id = profile_id

    def save_profile(self, profile: ProfileConfig) -> ProfileSyncResult:
        """Store the profile's queries in a single transaction.

        New permutations are inserted, permutations dropped from the profile
        are deprecated (their history is kept), and every active query gets a
        due-now scan on each known broker that has none yet. Saving the same
        profile twice changes nothing.
        """
        now = self.clock()
        expanded = expand_profile(profile, self.profile_id)

        with self.session_scope() as session:
            vault = DataBrokerVault(session)
            previously_active = vault.fetch_all_profile_queries(
                self.profile_id, include_deprecated=False
            )

            active = [vault.save_profile_query(query) for query in expanded]
            active_ids = {query.id for query in active}

            deprecated = []
            for query in previously_active:
                if query.id not in active_ids:
                    vault.deprecate_profile_query(query.id)
                    deprecated.append(query)

            scans_created = 0
            for broker in vault.fetch_all_brokers():
                for query in active:
                    if vault.fetch_scan_operation(broker.id, query.id) is None:
                        vault.save_scan_operation(broker.id, query.id, preferred_run_date=now)
                        scans_created += 1

        logger.info(
            f"Profile saved: {len(active)} active queries, {len(deprecated)} deprecated",
            extra={
                "event": "profiles.saved",
                "profile_id": self.profile_id,
                "active_count": len(active),
                "deprecated_count": len(deprecated),
                "scans_created": scans_created,
            },
        )
        return ProfileSyncResult(
            active_queries=active, deprecated_queries=deprecated, scans_created=scans_created
        )
