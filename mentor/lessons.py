"""Archive of coach lessons the learner has already worked through."""

import logging
from typing import Dict, Iterable, List

from .schemas import CoachLesson

logger = logging.getLogger(__name__)


class LessonArchive:
    """Insertion-ordered set of lessons keyed by id."""

    def __init__(self, lessons: Iterable[CoachLesson] = ()) -> None:
        self._lessons: Dict[str, CoachLesson] = {}
        for lesson in lessons:
            self.archive(lesson)

    def archive(self, lesson: CoachLesson) -> bool:
        """
        Add ``lesson`` unless its id is already archived.

        Returns True when the lesson was added. A repeated "Got it" on the
        same lesson is a no-op.
        """
        if lesson.id in self._lessons:
            logger.debug("Lesson %s already archived", lesson.id)
            return False
        self._lessons[lesson.id] = lesson
        logger.info("Archived lesson %s (%s)", lesson.id, lesson.category)
        return True

    def __contains__(self, lesson_id: object) -> bool:
        return lesson_id in self._lessons

    def __len__(self) -> int:
        return len(self._lessons)

    def get(self, lesson_id: str) -> CoachLesson:
        return self._lessons[lesson_id]

    def all(self) -> List[CoachLesson]:
        """Archived lessons, oldest first."""
        return list(self._lessons.values())

    def count_for(self, category: str) -> int:
        return sum(1 for lesson in self._lessons.values() if lesson.category == category)

    def counts_by_category(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for lesson in self._lessons.values():
            counts[lesson.category] = counts.get(lesson.category, 0) + 1
        return counts

    def clear(self) -> None:
        self._lessons = {}
