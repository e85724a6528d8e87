"""
Session orchestrator: the single entry point the UI talks to.

One turn runs ``Idle -> Debiting -> AwaitingTutor -> Ingesting -> Idle``, or
ends in ``Failed`` when the tutor cannot answer. Sparks are debited before the
tutor is called and are not refunded when the call fails; the user message
stays in the thread and an error bubble is appended instead of an answer.
Only one turn per conversation may await the tutor at a time.

The tutor collaborator is any object with these coroutines:

    correct(text, language, history) -> CorrectionPayload | dict | str
    create_lesson(category, mistakes, language) -> LessonDraft | dict | str
    deep_dive(context, language) -> str

and optionally a ``reset()`` method that drops any cached chat session.
"""

import asyncio
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .conversations import TITLE_MAX_LENGTH, ConversationStore
from .credits import CreditLedger, CreditPolicy
from .exceptions import (
    ConfigurationFault,
    InsufficientCredit,
    MalformedTutorPayload,
    MentorError,
    MissionNotPending,
    TurnInProgress,
    TutorUnavailable,
    UnknownConversation,
    UnknownLesson,
)
from .journal import JournalPolicy, MistakeJournal
from .lessons import LessonArchive
from .localization import (
    DEFAULT_LANGUAGE,
    fallback_payload,
    normalize_language,
    suggestions_for,
)
from .missions import MISSION_THRESHOLD, MissionDeriver, unlocked_slots
from .review import ReviewQuiz
from .schemas import (
    CoachLesson,
    Conversation,
    CorrectionPayload,
    LessonDraft,
    Message,
    MistakeRecord,
    Role,
    SessionState,
    Tier,
)

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

LESSON_MISTAKE_SAMPLE = 3
DASHBOARD_TOP_CATEGORIES = 5
DASHBOARD_RECENT_RECORDS = 5


class TurnState(str, Enum):
    """Where a conversation's current turn stands."""

    IDLE = "idle"
    DEBITING = "debiting"
    AWAITING_TUTOR = "awaiting_tutor"
    INGESTING = "ingesting"
    FAILED = "failed"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"  # thread vanished (deleted or replaced) mid-turn


@dataclass
class TurnResult:
    """What a ``send`` call did."""

    conversation_id: str
    outcome: TurnOutcome
    user_message: Message
    model_message: Optional[Message] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Tutor attempts per turn and the linear backoff step between them."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0


class CancelToken:
    """Fired by the UI to abandon a turn that is waiting on the tutor."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class _Cancelled(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_model(raw: Any, model: Type[M]) -> M:
    """Validate raw tutor output against ``model``."""
    if isinstance(raw, model):
        return raw
    try:
        if isinstance(raw, (str, bytes)):
            return model.model_validate_json(raw)
        if isinstance(raw, BaseModel):
            return model.model_validate(raw.model_dump())
        return model.model_validate(raw)
    except ValidationError as e:
        raise MalformedTutorPayload(
            f"Tutor output is not a valid {model.__name__}: {e.error_count()} error(s)"
        ) from e


def _parse_text(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedTutorPayload("Tutor returned an empty explanation")
    return raw


class SessionOrchestrator:
    """Owns the ledger, journal, lesson archive and conversations of one learner."""

    def __init__(
        self,
        tutor: Any,
        *,
        ledger: Optional[CreditLedger] = None,
        journal: Optional[MistakeJournal] = None,
        archive: Optional[LessonArchive] = None,
        conversations: Optional[ConversationStore] = None,
        credit_policy: Optional[CreditPolicy] = None,
        journal_policy: Optional[JournalPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        mission_threshold: int = MISSION_THRESHOLD,
        title_max_length: int = TITLE_MAX_LENGTH,
        language: str = DEFAULT_LANGUAGE,
        refund_on_cancel: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tutor = tutor
        self.credit_policy = credit_policy or (ledger.policy if ledger else CreditPolicy())
        self.journal_policy = journal_policy or (journal.policy if journal else JournalPolicy())
        self.ledger = ledger or CreditLedger(self.credit_policy)
        self.journal = journal or MistakeJournal(self.journal_policy)
        self.archive = archive or LessonArchive()
        self.title_max_length = title_max_length
        self.conversations = conversations or ConversationStore(title_max_length)
        self.missions = MissionDeriver(mission_threshold)
        self.retry_policy = retry_policy or RetryPolicy()
        self.language = normalize_language(language)
        self.refund_on_cancel = refund_on_cancel
        self._clock = clock or _utcnow
        self._sleep = sleep

        self._states: Dict[str, TurnState] = {}
        self._in_flight: Set[str] = set()
        self._open_lessons: Dict[str, CoachLesson] = {}
        self._listeners: List[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` after every state mutation (used for persistence)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _now(self) -> datetime:
        return self._clock()

    def _transition(self, conversation_id: str, state: TurnState) -> None:
        logger.debug("Turn %s -> %s", conversation_id, state.value)
        if state == TurnState.IDLE:
            self._states.pop(conversation_id, None)
        else:
            self._states[conversation_id] = state

    def state_of(self, conversation_id: str) -> TurnState:
        return self._states.get(conversation_id, TurnState.IDLE)

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    # -------------------------------------------------------------------------
    # Tutor calls
    # -------------------------------------------------------------------------

    def _before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Tutor attempt %s failed (%s), retrying", retry_state.attempt_number, exc
        )
        if isinstance(exc, MalformedTutorPayload):
            reset = getattr(self.tutor, "reset", None)
            if callable(reset):
                reset()

    async def _call_once(self, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except MentorError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected tutor failure")
            raise TutorUnavailable(str(e)) from e

    async def _call_tutor(
        self, call: Callable[[], Awaitable[Any]], parse: Callable[[Any], Any]
    ) -> Any:
        """Run a tutor call with the retry policy; ConfigurationFault is never retried."""
        step = self.retry_policy.backoff_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.retry_policy.max_attempts)),
            wait=wait_incrementing(start=step, increment=step),
            retry=retry_if_exception_type(TutorUnavailable),
            before_sleep=self._before_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return parse(await self._call_once(call))

    async def _cancellable(self, awaitable: Awaitable[Any], token: Optional[CancelToken]) -> Any:
        if token is None:
            return await awaitable
        if token.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        with suppress(asyncio.CancelledError):
            await work
        raise _Cancelled()

    # -------------------------------------------------------------------------
    # Sending messages
    # -------------------------------------------------------------------------

    async def send(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> TurnResult:
        """
        Submit a learner sentence.

        Raises:
            ValueError: If the text is empty
            TurnInProgress: If the conversation is already awaiting the tutor
            InsufficientCredit: If the balance cannot cover the message; nothing changes
            ConfigurationFault: If the tutor is misconfigured; the debit and the
                user message are kept, no error bubble is added
        """
        text = text.strip()
        if not text:
            raise ValueError("Message cannot be empty")

        if conversation_id is None:
            conversation_id = self.conversations.active_id
        if conversation_id is not None:
            self.conversations.get(conversation_id)
            if conversation_id in self._in_flight:
                raise TurnInProgress(conversation_id)
            self._transition(conversation_id, TurnState.DEBITING)

        now = self._now()
        self.ledger.tick(now)
        cost = self.ledger.cost
        if not self.ledger.try_debit(cost):
            if conversation_id is not None:
                self._transition(conversation_id, TurnState.IDLE)
            raise InsufficientCredit(self.ledger.balance, cost)

        if conversation_id is None:
            conversation_id = self.conversations.create_conversation(now)

        self._in_flight.add(conversation_id)
        try:
            history = self.conversations.messages(conversation_id)
            user_message = self.conversations.append_message(
                conversation_id, Role.USER, text, now
            )
            self._transition(conversation_id, TurnState.AWAITING_TUTOR)
            self._changed()
            return await self._await_correction(
                conversation_id, user_message, history, cost, cancel_token
            )
        finally:
            self._in_flight.discard(conversation_id)
            self._transition(conversation_id, TurnState.IDLE)

    async def _await_correction(
        self,
        conversation_id: str,
        user_message: Message,
        history: List[Message],
        cost: int,
        cancel_token: Optional[CancelToken],
    ) -> TurnResult:
        language = self.language
        try:
            payload = await self._cancellable(
                self._call_tutor(
                    lambda: self.tutor.correct(user_message.content, language, history),
                    lambda raw: _parse_model(raw, CorrectionPayload),
                ),
                cancel_token,
            )
        except _Cancelled:
            logger.info("Turn in %s cancelled", conversation_id)
            if self.refund_on_cancel:
                self.ledger.refund(cost)
                self._changed()
            return TurnResult(conversation_id, TurnOutcome.CANCELLED, user_message)
        except ConfigurationFault:
            logger.error("Tutor configuration fault, turn aborted")
            self._transition(conversation_id, TurnState.FAILED)
            raise
        except TutorUnavailable as e:
            logger.error("Tutor unavailable after retries: %s", e)
            self._transition(conversation_id, TurnState.FAILED)
            if conversation_id not in self.conversations:
                return TurnResult(conversation_id, TurnOutcome.DISCARDED, user_message, error=e)
            fallback = fallback_payload(language)
            error_message = self.conversations.append_message(
                conversation_id,
                Role.MODEL,
                fallback.notes,
                self._now(),
                payload=fallback,
                is_error=True,
            )
            self._changed()
            return TurnResult(
                conversation_id, TurnOutcome.FAILED, user_message, error_message, error=e
            )

        if conversation_id not in self.conversations:
            logger.warning("Conversation %s vanished while awaiting the tutor", conversation_id)
            return TurnResult(conversation_id, TurnOutcome.DISCARDED, user_message)

        # No await between the append and the ingest: both land or neither does.
        self._transition(conversation_id, TurnState.INGESTING)
        now = self._now()
        model_message = self.conversations.append_message(
            conversation_id, Role.MODEL, payload.corrected_text, now, payload=payload
        )
        self.journal.ingest(payload.corrections, now)
        self._changed()
        return TurnResult(
            conversation_id, TurnOutcome.COMPLETED, user_message, model_message
        )

    # -------------------------------------------------------------------------
    # Conversation commands
    # -------------------------------------------------------------------------

    def new_conversation(self, title: Optional[str] = None) -> str:
        conversation_id = self.conversations.create_conversation(self._now(), title)
        self._changed()
        return conversation_id

    def select_conversation(self, conversation_id: str) -> None:
        self.conversations.set_active(conversation_id)
        self._changed()

    def rename(self, conversation_id: str, title: str) -> None:
        self.conversations.rename(conversation_id, title)
        self._changed()

    def delete(self, conversation_id: str) -> None:
        self.conversations.delete(conversation_id)
        self._changed()

    def set_language(self, language: str) -> str:
        self.language = normalize_language(language)
        self._changed()
        return self.language

    def upgrade_tier(self, tier: Tier = Tier.PRO) -> None:
        self.ledger.change_tier(tier, self._now())
        self._changed()

    def wipe_history(self) -> None:
        """Forget every conversation, mistake and lesson. Sparks and tier stay."""
        self.conversations.clear()
        self.journal.clear()
        self.archive.clear()
        self._open_lessons = {}
        reset = getattr(self.tutor, "reset", None)
        if callable(reset):
            reset()
        self._changed()

    async def deep_dive(self, conversation_id: str, message_id: int) -> Message:
        """Attach a structured explanation to a tutor answer."""
        message = next(
            (m for m in self.conversations.messages(conversation_id) if m.id == message_id),
            None,
        )
        if message is None or message.role != Role.MODEL or message.payload is None:
            raise ValueError(f"Message {message_id} is not a tutor answer")
        if message.deep_dive:
            return message

        payload = message.payload
        context = "; ".join(
            [payload.corrected_text]
            + [
                f"{c.original_text} -> {c.corrected_text} ({c.category}): {c.explanation}"
                for c in payload.corrections
            ]
        )
        self.conversations.update_message(conversation_id, message_id, is_pending=True)
        self._changed()
        language = self.language
        try:
            text = await self._call_tutor(
                lambda: self.tutor.deep_dive(context, language), _parse_text
            )
        except BaseException:
            # Failure or cancellation: never leave the pending flag behind.
            if conversation_id in self.conversations:
                self.conversations.update_message(conversation_id, message_id, is_pending=False)
                self._changed()
            raise
        if conversation_id not in self.conversations:
            return message.model_copy(update={"deep_dive": text})
        updated = self.conversations.update_message(
            conversation_id, message_id, is_pending=False, deep_dive=text
        )
        self._changed()
        return updated

    # -------------------------------------------------------------------------
    # Missions and lessons
    # -------------------------------------------------------------------------

    def pending(self) -> Set[str]:
        return self.missions.pending(self.journal.counters, self.archive.counts_by_category())

    def pending_missions(self) -> List[str]:
        """Pending categories in first-seen order."""
        return self.missions.ordered(self.journal.counters, self.archive.counts_by_category())

    async def generate_lesson(self, category: str) -> CoachLesson:
        """
        Ask the tutor for a lesson on a pending category. The lesson is not archived yet.

        A category holds at most one open lesson; asking again returns it.
        """
        if category not in self.pending():
            raise MissionNotPending(category)
        existing = self._open_lesson_for(category)
        if existing is not None:
            return existing
        mistakes = self.journal.records_for(category, limit=LESSON_MISTAKE_SAMPLE)
        language = self.language
        draft = await self._call_tutor(
            lambda: self.tutor.create_lesson(category, mistakes, language),
            lambda raw: _parse_model(raw, LessonDraft),
        )
        # Another request for the same category may have finished first.
        existing = self._open_lesson_for(category)
        if existing is not None:
            return existing
        fields = draft.model_dump()
        if not fields['mistakes']:
            fields['mistakes'] = [record.original_text for record in mistakes]
        lesson = CoachLesson(
            id=uuid.uuid4().hex, category=category, created_at=self._now(), **fields
        )
        self._open_lessons[lesson.id] = lesson
        return lesson

    def _open_lesson_for(self, category: str) -> Optional[CoachLesson]:
        return next(
            (lesson for lesson in self._open_lessons.values() if lesson.category == category),
            None,
        )

    def open_lessons(self) -> List[CoachLesson]:
        return list(self._open_lessons.values())

    def dismiss_lesson(self, lesson_id: str) -> bool:
        """
        Archive a generated lesson.

        Returns False if it was already archived, or if its category has no
        unlocked slot left (the lesson is dropped).
        """
        if lesson_id in self.archive:
            self._open_lessons.pop(lesson_id, None)
            return False
        try:
            lesson = self._open_lessons.pop(lesson_id)
        except KeyError:
            raise UnknownLesson(lesson_id) from None
        slots = unlocked_slots(self.journal.count_for(lesson.category), self.missions.threshold)
        if self.archive.count_for(lesson.category) >= slots:
            logger.info("Dropping lesson %s: no open %s slot", lesson_id, lesson.category)
            return False
        self.archive.archive(lesson)
        self._changed()
        return True

    def archived_lessons(self) -> List[CoachLesson]:
        """Archived lessons, oldest first; reverse for the library view."""
        return self.archive.all()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def balance(self) -> int:
        if self.ledger.tick(self._now()):
            self._changed()
        return self.ledger.balance

    @property
    def tier(self) -> Tier:
        return self.ledger.tier

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self.conversations.active_id

    def active_messages(self) -> List[Message]:
        return self.conversations.active_messages()

    def suggestions(self) -> List[str]:
        """Starter sentences offered on an empty conversation."""
        return suggestions_for(self.language)

    def conversation_list(self) -> List[Conversation]:
        """Conversations, newest first, as the sidebar lists them."""
        return list(reversed(self.conversations.conversations()))

    def top_categories(self, n: int = DASHBOARD_TOP_CATEGORIES) -> List[Tuple[str, int]]:
        return self.journal.top_categories(n)

    def recent_mistakes(self, n: int = DASHBOARD_RECENT_RECORDS) -> List[MistakeRecord]:
        return self.journal.recent_records(n)

    def accuracy_score(self) -> int:
        return self.journal.accuracy_score()

    def start_review(self, rng=None) -> ReviewQuiz:
        return ReviewQuiz.from_records(self.journal.records, rng)

    def dashboard(self) -> Dict[str, Any]:
        """Everything the progress screen shows, in one read."""
        return {
            'total_mistakes': self.journal.total_count(),
            'balance': self.balance,
            'tier': self.ledger.tier.value,
            'accuracy': self.accuracy_score(),
            'top_categories': self.top_categories(),
            'recent_mistakes': self.recent_mistakes(),
            'pending_missions': self.pending_missions(),
            'archived_lessons': list(reversed(self.archived_lessons())),
        }

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def snapshot(self) -> SessionState:
        return SessionState(
            language=self.language,
            ledger=self.ledger.to_state(),
            journal=self.journal.to_state(),
            lessons=self.archive.all(),
            conversations=self.conversations.to_state(),
        )

    def apply_snapshot(self, state: Union[SessionState, Dict[str, Any]]) -> None:
        """
        Replace the whole session with an authoritative snapshot.

        Nothing is merged field by field; the incoming snapshot wins.
        """
        if not isinstance(state, SessionState):
            state = SessionState.model_validate(state)
        self.language = normalize_language(state.language)
        self.ledger = CreditLedger.from_state(state.ledger, self.credit_policy)
        self.journal = MistakeJournal.from_state(state.journal, self.journal_policy)
        self.archive = LessonArchive(state.lessons)
        self.conversations = ConversationStore.from_state(
            state.conversations, self.title_max_length
        )
        logger.info(
            "Applied snapshot: %d conversations, %d mistakes, %d lessons",
            len(self.conversations),
            self.journal.total_count(),
            len(self.archive),
        )
        self._changed()

    @classmethod
    def from_snapshot(
        cls, state: Union[SessionState, Dict[str, Any]], tutor: Any, **kwargs: Any
    ) -> "SessionOrchestrator":
        orchestrator = cls(tutor, **kwargs)
        orchestrator.apply_snapshot(state)
        return orchestrator
