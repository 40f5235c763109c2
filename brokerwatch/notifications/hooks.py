"""Outbound hooks: the calls this engine makes to user-facing collaborators.

Delivery (push notifications, telemetry pixels, UI badges) lives outside this
package. The scheduler only ever calls an ``OutboundHooks`` implementation;
``LoggingHooks`` is the default when the host supplies none.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from brokerwatch.logging import get_logger

logger = get_logger(__name__, component="hooks")


class OutboundHooks(ABC):
    """Receiver for scan results, match and removal milestones, and job errors."""

    @abstractmethod
    def on_scan_completed(self, broker_id: int, match_count: int) -> None:
        """Called after a scan's outcome has been stored."""

    @abstractmethod
    def on_first_match_found(self) -> None:
        """Called once, the first time any scan stores a new listing."""

    @abstractmethod
    def on_first_profile_removed(self) -> None:
        """Called once, the first time any listing is confirmed removed."""

    @abstractmethod
    def on_all_profiles_removed(self) -> None:
        """Called once, when every known listing has been removed."""

    @abstractmethod
    def on_error(self, kind: str, context: Dict[str, Any]) -> None:
        """Called for every failed job.

        Args:
            kind: JobError kind, e.g. ``navigation_failed``
            context: Broker, query and listing ids plus the error message
        """


class LoggingHooks(OutboundHooks):
    """Writes every hook call to the log."""

    def on_scan_completed(self, broker_id: int, match_count: int) -> None:
        logger.info(
            f"Scan completed for broker {broker_id} with {match_count} match(es)",
            extra={"event": "hooks.scan_completed", "broker_id": broker_id, "match_count": match_count},
        )

    def on_first_match_found(self) -> None:
        logger.info(
            "First listing found on a broker site",
            extra={"event": "hooks.first_match_found"},
        )

    def on_first_profile_removed(self) -> None:
        logger.info(
            "First listing confirmed removed",
            extra={"event": "hooks.first_profile_removed"},
        )

    def on_all_profiles_removed(self) -> None:
        logger.info(
            "All known listings confirmed removed",
            extra={"event": "hooks.all_profiles_removed"},
        )

    def on_error(self, kind: str, context: Dict[str, Any]) -> None:
        logger.warning(
            f"Job failed: {kind}",
            extra={"event": "hooks.error", "error_kind": kind, **context},
        )


def call_hook(hooks: OutboundHooks, name: str, *args: Any) -> bool:
    """Invoke ``hooks.<name>(*args)``, logging rather than raising on failure.

    A misbehaving collaborator must not undo or abort work that is already
    stored.

    Returns:
        True if the hook returned normally
    """
    try:
        getattr(hooks, name)(*args)
    except Exception as e:
        logger.error(
            f"Outbound hook {name} failed: {e}",
            extra={"event": "hooks.failed", "hook": name, "error_type": type(e).__name__},
            exc_info=True,
        )
        return False
    return True
