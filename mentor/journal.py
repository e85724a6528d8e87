"""
Mistake journal: per-category counters plus the chronological mistake log.

The counters are a denormalised view of the log and always equal the number
of records per category.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .schemas import CorrectionItem, JournalState, MistakeRecord


@dataclass(frozen=True)
class JournalPolicy:
    """Accuracy score parameters."""

    accuracy_floor: int = 40
    per_mistake_penalty: int = 2


class MistakeJournal:
    """Tracks every mistake the tutor has pointed out."""

    def __init__(self, policy: Optional[JournalPolicy] = None) -> None:
        self.policy = policy or JournalPolicy()
        # dict keeps first-seen order, which is the tie-breaker in top_categories
        self._counters: Dict[str, int] = {}
        self._records: List[MistakeRecord] = []

    def ingest(self, corrections: Iterable[CorrectionItem], now: datetime) -> int:
        """Log each correction and bump its category. Returns how many were added."""
        added = 0
        for item in corrections:
            self._records.append(
                MistakeRecord(
                    original_text=item.original_text,
                    corrected_text=item.corrected_text,
                    category=item.category,
                    timestamp=now,
                )
            )
            self._counters[item.category] = self._counters.get(item.category, 0) + 1
            added += 1
        return added

    def clear(self) -> None:
        self._counters = {}
        self._records = []

    @property
    def counters(self) -> Dict[str, int]:
        return dict(self._counters)

    @property
    def records(self) -> List[MistakeRecord]:
        return list(self._records)

    def count_for(self, category: str) -> int:
        return self._counters.get(category, 0)

    def total_count(self) -> int:
        return sum(self._counters.values())

    def accuracy_score(self) -> int:
        """100 minus a penalty per mistake, never below the floor."""
        return max(
            self.policy.accuracy_floor,
            100 - self.total_count() * self.policy.per_mistake_penalty,
        )

    def top_categories(self, n: int) -> List[Tuple[str, int]]:
        """Most frequent categories first; ties keep first-seen order."""
        if n <= 0:
            return []
        ranked = sorted(self._counters.items(), key=lambda kv: -kv[1])
        return ranked[:n]

    def recent_records(self, n: int) -> List[MistakeRecord]:
        """Last ``n`` records, newest first."""
        if n <= 0:
            return []
        return list(reversed(self._records[-n:]))

    def records_for(self, category: str, limit: Optional[int] = None) -> List[MistakeRecord]:
        """Records of one category in chronological order, optionally the last ``limit``."""
        matching = [r for r in self._records if r.category == category]
        if limit is not None:
            matching = matching[-limit:] if limit > 0 else []
        return matching

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def to_state(self) -> JournalState:
        return JournalState(counters=dict(self._counters), records=list(self._records))

    @classmethod
    def from_state(
        cls, state: JournalState, policy: Optional[JournalPolicy] = None
    ) -> "MistakeJournal":
        journal = cls(policy)
        journal._records = list(state.records)
        # Rebuild from the log so counters can never drift from the records;
        # keep the stored order for categories so ties rank the same way.
        rebuilt: Dict[str, int] = {category: 0 for category in state.counters}
        for record in journal._records:
            rebuilt[record.category] = rebuilt.get(record.category, 0) + 1
        journal._counters = {c: n for c, n in rebuilt.items() if n > 0}
        return journal
