"""Reconcile bundled broker definitions with the vault.

The updater is idempotent: a broker is inserted once, replaced only when the
bundled version is numerically newer, and left alone otherwise. The full pass
is gated by a stored "last checked app version" marker, so it runs once per
application upgrade rather than on every start.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Union

from brokerwatch.domain.models import DataBroker
from brokerwatch.domain.versions import InvalidVersionError, is_newer
from brokerwatch.logging import get_logger
from brokerwatch.persistence import (
    LAST_CHECKED_APP_VERSION,
    DataBrokerVault,
    PersistenceError,
    get_session,
)
from brokerwatch.utils.timestamps import utc_now

from .loader import BrokerDefinitionError, load_broker_definitions

logger = get_logger(__name__, component="broker_updater")

SessionScope = Callable[[], AbstractContextManager]


@dataclass
class BrokerUpdateResult:
    """Outcome of one reconciliation pass.

    Attributes:
        skipped: True when the app-version marker made the pass unnecessary
        inserted: URLs of brokers seen for the first time
        upgraded: URLs of brokers replaced by a newer definition
        unchanged: URLs of brokers whose stored version is current
        failed: URLs of brokers whose reconciliation raised
        load_failures: Definition files that could not be loaded
        reset_opt_out_count: Opt-out attempt counters reset by upgrades
    """

    skipped: bool = False
    inserted: List[str] = field(default_factory=list)
    upgraded: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    load_failures: List[BrokerDefinitionError] = field(default_factory=list)
    reset_opt_out_count: int = 0

    @property
    def had_errors(self) -> bool:
        return bool(self.failed or self.load_failures)


class BrokerUpdater:
    """Seeds and upgrades broker definitions in the vault."""

    def __init__(
        self,
        brokers_dir: Union[str, Path],
        session_scope: SessionScope = get_session,
        clock: Callable = utc_now,
    ):
        """Initialize the updater.

        Args:
            brokers_dir: Directory holding bundled ``*.json`` definitions
            session_scope: Factory for transactional sessions
            clock: Returns the current UTC time (overridable in tests)
        """
        self.brokers_dir = Path(brokers_dir)
        self.session_scope = session_scope
        self.clock = clock

    def check_for_updates(self, app_version: str) -> BrokerUpdateResult:
        """Run the reconciliation pass if the application version moved forward.

        The pass runs when no marker is stored, when the stored marker is
        unreadable, or when ``app_version`` is strictly newer than it. The
        marker is written only after the pass, so an interrupted pass is
        retried on the next start.

        Args:
            app_version: Dotted-numeric version of the running application

        Returns:
            BrokerUpdateResult (``skipped`` is True when nothing needed doing)
        """
        with self.session_scope() as session:
            last_checked = DataBrokerVault(session).get_setting(LAST_CHECKED_APP_VERSION)

        if last_checked is not None and not self._version_moved(app_version, last_checked):
            logger.info(
                f"Broker definitions already checked for app version {last_checked}",
                extra={"event": "broker_updater.skipped", "app_version": app_version},
            )
            return BrokerUpdateResult(skipped=True)

        result = self.refresh()

        with self.session_scope() as session:
            DataBrokerVault(session).set_setting(LAST_CHECKED_APP_VERSION, app_version)

        return result

    def refresh(self) -> BrokerUpdateResult:
        """Load every bundled definition and reconcile it, ignoring the marker."""
        loaded = load_broker_definitions(self.brokers_dir)
        result = self.update_brokers(loaded.brokers)
        result.load_failures = list(loaded.failures)
        return result

    def update_brokers(self, definitions: List[DataBroker]) -> BrokerUpdateResult:
        """Insert or upgrade each definition in its own transaction.

        A failure on one broker is logged and recorded; the rest continue.
        """
        result = BrokerUpdateResult()

        for definition in definitions:
            try:
                with self.session_scope() as session:
                    outcome = self._reconcile(DataBrokerVault(session), definition, result)
            except PersistenceError as e:
                logger.error(
                    f"Failed to reconcile broker {definition.url}: {e}",
                    extra={"event": "broker_updater.broker_failed", "broker_url": definition.url},
                    exc_info=True,
                )
                result.failed.append(definition.url)
                continue

            getattr(result, outcome).append(definition.url)

        logger.info(
            f"Broker reconciliation finished: {len(result.inserted)} inserted, "
            f"{len(result.upgraded)} upgraded, {len(result.unchanged)} unchanged, "
            f"{len(result.failed)} failed",
            extra={
                "event": "broker_updater.completed",
                "inserted_count": len(result.inserted),
                "upgraded_count": len(result.upgraded),
                "unchanged_count": len(result.unchanged),
                "failed_count": len(result.failed),
            },
        )
        return result

    def _reconcile(
        self, vault: DataBrokerVault, definition: DataBroker, result: BrokerUpdateResult
    ) -> str:
        stored = vault.fetch_broker(definition.url)

        if stored is None:
            broker_id = vault.save_broker(definition)
            created = self._seed_scan_operations(vault, broker_id)
            logger.info(
                f"Added broker {definition.url} v{definition.version}",
                extra={
                    "event": "broker_updater.broker_added",
                    "broker_id": broker_id,
                    "scan_operations_created": created,
                },
            )
            return "inserted"

        if not is_newer(definition.version, stored.version):
            return "unchanged"

        upgrade = stored.upgrade(definition, vault.fetch_opt_out_operations(stored.id))
        vault.update_broker(upgrade.broker, stored.id)

        for extracted_profile_id in upgrade.affected_opt_out_ids:
            operation = vault.fetch_opt_out_operation(extracted_profile_id)
            if operation is None:
                continue
            vault.update_attempt_count(
                0, operation.broker_id, operation.profile_query_id, extracted_profile_id
            )
        result.reset_opt_out_count += len(upgrade.affected_opt_out_ids)

        logger.info(
            f"Upgraded broker {definition.url} from v{upgrade.previous_version} "
            f"to v{definition.version}",
            extra={
                "event": "broker_updater.broker_upgraded",
                "broker_id": stored.id,
                "reset_opt_outs": len(upgrade.affected_opt_out_ids),
            },
        )
        return "upgraded"

    def _seed_scan_operations(self, vault: DataBrokerVault, broker_id: int) -> int:
        """Create a due-now scan for every active profile query of a new broker."""
        now = self.clock()
        created = 0
        for query in vault.fetch_active_profile_queries():
            if vault.fetch_scan_operation(broker_id, query.id) is not None:
                continue
            vault.save_scan_operation(broker_id, query.id, preferred_run_date=now)
            created += 1
        return created

    @staticmethod
    def _version_moved(app_version: str, last_checked: str) -> bool:
        try:
            return is_newer(app_version, last_checked)
        except InvalidVersionError:
            logger.warning(
                f"Unreadable app version marker {last_checked!r}; rechecking brokers",
                extra={"event": "broker_updater.marker_invalid"},
            )
            return True

