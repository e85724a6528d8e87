"""
Mission derivation.

Every ``threshold`` mistakes in a category unlock one lesson slot. A category
is pending while it has more unlocked slots than archived lessons.
"""

from typing import Dict, List, Mapping, Set

MISSION_THRESHOLD = 3


def unlocked_slots(count: int, threshold: int = MISSION_THRESHOLD) -> int:
    """Number of lesson slots a mistake count has unlocked."""
    if threshold <= 0:
        raise ValueError("threshold must be positive")
    return count // threshold


def pending(
    counters: Mapping[str, int],
    archived_counts: Mapping[str, int],
    threshold: int = MISSION_THRESHOLD,
) -> Set[str]:
    """Categories that currently qualify for a new lesson."""
    return {
        category
        for category, count in counters.items()
        if unlocked_slots(count, threshold) > archived_counts.get(category, 0)
    }


class MissionDeriver:
    """Binds the threshold so callers don't pass it around."""

    def __init__(self, threshold: int = MISSION_THRESHOLD) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold

    def pending(
        self, counters: Mapping[str, int], archived_counts: Mapping[str, int]
    ) -> Set[str]:
        return pending(counters, archived_counts, self.threshold)

    def ordered(
        self, counters: Mapping[str, int], archived_counts: Mapping[str, int]
    ) -> List[str]:
        """Pending categories in the counters' first-seen order, for display."""
        open_set = self.pending(counters, archived_counts)
        return [category for category in counters if category in open_set]

    def backlog(
        self, counters: Mapping[str, int], archived_counts: Mapping[str, int]
    ) -> Dict[str, int]:
        """Unclaimed slots per pending category."""
        return {
            category: unlocked_slots(counters[category], self.threshold)
            - archived_counts.get(category, 0)
            for category in self.ordered(counters, archived_counts)
        }
