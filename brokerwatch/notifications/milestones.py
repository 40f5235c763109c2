"""One-shot milestones guarded by persisted flags."""

from enum import Enum
from typing import List

from brokerwatch.logging import get_logger
from brokerwatch.persistence.vault import (
    ALL_PROFILES_REMOVED_FLAG,
    FIRST_MATCH_FOUND_FLAG,
    FIRST_PROFILE_REMOVED_FLAG,
    DataBrokerVault,
)
from brokerwatch.utils.timestamps import format_timestamp, utc_now

from .hooks import OutboundHooks, call_hook

logger = get_logger(__name__, component="hooks")


class Milestone(str, Enum):
    FIRST_MATCH_FOUND = "first_match_found"
    FIRST_PROFILE_REMOVED = "first_profile_removed"
    ALL_PROFILES_REMOVED = "all_profiles_removed"


_FLAGS = {
    Milestone.FIRST_MATCH_FOUND: FIRST_MATCH_FOUND_FLAG,
    Milestone.FIRST_PROFILE_REMOVED: FIRST_PROFILE_REMOVED_FLAG,
    Milestone.ALL_PROFILES_REMOVED: ALL_PROFILES_REMOVED_FLAG,
}

_HOOKS = {
    Milestone.FIRST_MATCH_FOUND: "on_first_match_found",
    Milestone.FIRST_PROFILE_REMOVED: "on_first_profile_removed",
    Milestone.ALL_PROFILES_REMOVED: "on_all_profiles_removed",
}


class MilestoneGuard:
    """Makes each milestone hook fire at most once over the store's lifetime.

    Claiming and firing are split: ``claim`` sets the flags inside the same
    transaction that recorded the match or removal, and ``fire`` runs after
    that transaction commits. A rolled-back transaction therefore leaves the
    flag unset and the hook unfired.
    """

    def __init__(self, hooks: OutboundHooks):
        self.hooks = hooks

    def claim(
        self, vault: DataBrokerVault, matched: bool = False, removed: bool = False
    ) -> List[Milestone]:
        """Set the flags of milestones reached and not yet claimed.

        Args:
            vault: Store inside the transaction that wrote the outcome
            matched: A new listing was stored through ``vault``
            removed: A listing was marked removed through ``vault``

        Returns:
            Milestones newly claimed, in firing order
        """
        reached = []
        if matched:
            reached.append(Milestone.FIRST_MATCH_FOUND)
        if removed:
            reached.append(Milestone.FIRST_PROFILE_REMOVED)
            if vault.all_profiles_removed():
                reached.append(Milestone.ALL_PROFILES_REMOVED)

        claimed = []
        now = format_timestamp(utc_now())
        for milestone in reached:
            flag = _FLAGS[milestone]
            if vault.get_setting(flag) is None:
                vault.set_setting(flag, now)
                claimed.append(milestone)
        return claimed

    def fire(self, milestones: List[Milestone]) -> None:
        for milestone in milestones:
            logger.info(
                f"Milestone reached: {milestone.value}",
                extra={"event": "milestone.reached", "milestone": milestone.value},
            )
            call_hook(self.hooks, _HOOKS[milestone])
