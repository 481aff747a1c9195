"""
Roster change detection.

Each roster category keeps the ids seen on the previous poll. The very
first poll only establishes that baseline, so a process restart does not
re-announce everybody already pending.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class KnownSetState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


@dataclass(slots=True)
class KnownSet:
    state: KnownSetState = KnownSetState.UNINITIALIZED
    ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(slots=True)
class Classification:
    new_ids: list[str]
    all_ids: list[str]

    @property
    def has_new(self) -> bool:
        return bool(self.new_ids)


class ChangeDetector:
    """Classifies each poll's ids into already known and new."""

    def __init__(self):
        self._known: dict[str, KnownSet] = {}

    def classify(
        self, category: str, current_ids: Iterable[str], force: bool = False
    ) -> Classification:
        """
        Compare the current ids with the previous poll of the same category.

        The known set is replaced by ``current_ids`` afterwards, so an id that
        disappears and comes back later counts as new again.

        Args:
            category: Roster category (e.g., "preboarding")
            current_ids: Ids in the current poll, in roster order
            force: Report every current id as new
        """
        all_ids = list(dict.fromkeys(current_ids))
        known = self._known.get(category) or KnownSet()

        if force:
            new_ids = list(all_ids)
        elif known.state is KnownSetState.UNINITIALIZED:
            new_ids = []
        else:
            new_ids = [record_id for record_id in all_ids if record_id not in known.ids]

        self._known[category] = KnownSet(state=KnownSetState.INITIALIZED, ids=frozenset(all_ids))
        return Classification(new_ids=new_ids, all_ids=all_ids)

    def is_initialized(self, category: str) -> bool:
        known = self._known.get(category)
        return known is not None and known.state is KnownSetState.INITIALIZED

    def known_ids(self, category: str) -> frozenset[str]:
        known = self._known.get(category)
        return known.ids if known else frozenset()
