"""Quick review quiz built from past mistakes."""

import random
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .schemas import MistakeRecord

REVIEW_SIZE = 5


def _normalize(text: str) -> str:
    return text.strip().lower()


@dataclass
class ReviewQuiz:
    """
    Asks the learner to rewrite past mistakes correctly.

    Questions are answered in order; ``answer`` returns whether the attempt
    matched the stored correction.
    """

    questions: List[MistakeRecord]
    index: int = 0
    score: int = 0
    results: List[bool] = field(default_factory=list)

    @classmethod
    def from_records(
        cls,
        records: Sequence[MistakeRecord],
        rng: Optional[random.Random] = None,
        size: int = REVIEW_SIZE,
    ) -> "ReviewQuiz":
        """Pick up to ``size`` distinct mistakes at random."""
        rng = rng or random.Random()
        unique = []
        seen = set()
        for record in records:
            key = (record.original_text, record.corrected_text)
            if key not in seen:
                seen.add(key)
                unique.append(record)
        picked = rng.sample(unique, min(size, len(unique)))
        return cls(questions=picked)

    @property
    def finished(self) -> bool:
        return self.index >= len(self.questions)

    @property
    def current(self) -> Optional[MistakeRecord]:
        if self.finished:
            return None
        return self.questions[self.index]

    def answer(self, text: str) -> bool:
        if self.finished:
            raise IndexError("The review is already finished")
        correct = _normalize(text) == _normalize(self.questions[self.index].corrected_text)
        if correct:
            self.score += 1
        self.results.append(correct)
        self.index += 1
        return correct
