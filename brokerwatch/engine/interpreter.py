"""Cursor over a broker script."""

from typing import AbstractSet, List, Optional, Sequence

from brokerwatch.domain.actions import Action


class ActionInterpreter:
    """Yields the actions of one script in order, once each.

    The cursor only moves forward. ``restart`` rewinds it to the first action
    (used when the page is invalidated); ``narrowed`` builds a new interpreter
    over the actions whose required fields are all available.
    """

    def __init__(self, actions: Sequence[Action]):
        self._actions: List[Action] = list(actions)
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def actions(self) -> List[Action]:
        return list(self._actions)

    @property
    def position(self) -> int:
        """Number of actions handed out since the last restart."""
        return self._cursor

    @property
    def exhausted(self) -> bool:
        return self._cursor >= len(self._actions)

    def next_action(self) -> Optional[Action]:
        """Return the next pending action and advance, or None when exhausted."""
        if self.exhausted:
            return None
        action = self._actions[self._cursor]
        self._cursor += 1
        return action

    def restart(self) -> None:
        self._cursor = 0

    def narrowed(self, available_fields: AbstractSet[str]) -> "ActionInterpreter":
        """Return a fresh interpreter without actions that need missing fields."""
        return ActionInterpreter(
            [a for a in self._actions if a.required_fields() <= set(available_fields)]
        )
