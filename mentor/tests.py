"""
Tests for the session orchestrator: turns, retries, missions and snapshots.

The tutor is replaced by AsyncMock coroutines; backoff sleeps are mocked so
retries run instantly.
"""

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, call

from django.test import SimpleTestCase

from mentor.credits import CreditLedger, CreditPolicy
from mentor.exceptions import (
    ConfigurationFault,
    InsufficientCredit,
    MalformedTutorPayload,
    MissionNotPending,
    TurnInProgress,
    TutorUnavailable,
    UnknownConversation,
    UnknownLesson,
)
from mentor.orchestrator import (
    CancelToken,
    RetryPolicy,
    SessionOrchestrator,
    TurnOutcome,
    TurnState,
)
from mentor.schemas import (
    CorrectionItem,
    CorrectionPayload,
    LessonDraft,
    Role,
    SessionState,
    Tier,
)

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_payload(*categories, corrected_text="Je suis allé au cinéma hier."):
    return CorrectionPayload(
        corrected_text=corrected_text,
        translation="I went to the cinema yesterday.",
        corrections=[
            CorrectionItem(
                original_text=f"faute {i}",
                corrected_text=f"correction {i}",
                explanation="Explanation",
                category=category,
            )
            for i, category in enumerate(categories)
        ],
        notes="Watch the auxiliary.",
    )


def make_draft(**overrides):
    fields = {
        'title': "Le verbe 'Aller' au passé",
        'why_you_made_it': "English uses 'have' for every past tense.",
        'the_rule': "Verbs of movement take être.",
        'mental_trick': "DR MRS VANDERTRAMP",
        'conjugation_table': {'je': 'vais', 'tu': 'vas'},
    }
    fields.update(overrides)
    return LessonDraft(**fields)


class OrchestratorTestCase(SimpleTestCase):
    """Shared fixture: a fake tutor, a movable clock and a full free ledger."""

    def setUp(self) -> None:
        self.now = START
        self.tutor = MagicMock()
        self.tutor.correct = AsyncMock(return_value=make_payload("Grammar"))
        self.tutor.create_lesson = AsyncMock(return_value=make_draft())
        self.tutor.deep_dive = AsyncMock(return_value="**Passé composé**\n1. être")
        self.sleep = AsyncMock()
        self.policy = CreditPolicy(free_cost=2, pro_cost=1, free_cap=10, pro_cap=999)

    def clock(self) -> datetime:
        return self.now

    def make_orchestrator(self, balance: int = 10, **kwargs) -> SessionOrchestrator:
        kwargs.setdefault(
            'ledger', CreditLedger(self.policy, balance=balance, last_refill_at=START)
        )
        kwargs.setdefault('retry_policy', RetryPolicy(max_attempts=3, backoff_seconds=1.0))
        return SessionOrchestrator(
            self.tutor,
            credit_policy=self.policy,
            clock=self.clock,
            sleep=self.sleep,
            **kwargs,
        )


class SendTest(OrchestratorTestCase):
    """A single learner turn from debit to ingest."""

    async def test_successful_turn(self) -> None:
        """Test a full turn from debit to ingest."""
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("j'ai aller au cinema hier")

        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        self.assertEqual(orchestrator.ledger.balance, 8)
        messages = orchestrator.active_messages()
        self.assertEqual([m.role for m in messages], [Role.USER, Role.MODEL])
        self.assertEqual(messages[1].content, "Je suis allé au cinéma hier.")
        self.assertEqual(messages[1].payload.notes, "Watch the auxiliary.")
        self.assertEqual(orchestrator.journal.counters, {"Grammar": 1})
        self.assertEqual(orchestrator.state_of(result.conversation_id), TurnState.IDLE)
        self.tutor.correct.assert_awaited_once_with("j'ai aller au cinema hier", "English", [])

    async def test_first_send_creates_conversation_with_derived_title(self) -> None:
        """Test that the first message opens a titled conversation."""
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Il faut que je vais partir maintenant")
        conversation = orchestrator.conversations.get(result.conversation_id)
        self.assertEqual(orchestrator.active_conversation_id, result.conversation_id)
        self.assertEqual(conversation.title, "Il faut que je vais partir mai...")

    async def test_history_and_language_are_passed_to_tutor(self) -> None:
        """Test that earlier turns and the language reach the tutor."""
        orchestrator = self.make_orchestrator()
        orchestrator.set_language("French")
        first = await orchestrator.send("Bonjour")
        await orchestrator.send("Je mange une pomme", first.conversation_id)
        args = self.tutor.correct.await_args.args
        self.assertEqual(args[0], "Je mange une pomme")
        self.assertEqual(args[1], "French")
        self.assertEqual([m.content for m in args[2]], ["Bonjour", "Je suis allé au cinéma hier."])

    async def test_insufficient_credit_changes_nothing(self) -> None:
        """Test that a rejected debit leaves the session untouched."""
        orchestrator = self.make_orchestrator(balance=1)
        listener = MagicMock()
        orchestrator.add_listener(listener)

        with self.assertRaises(InsufficientCredit) as ctx:
            await orchestrator.send("Bonjour")

        self.assertEqual(ctx.exception.balance, 1)
        self.assertEqual(ctx.exception.cost, 2)
        self.assertEqual(orchestrator.ledger.balance, 1)
        self.assertEqual(len(orchestrator.conversations), 0)
        self.tutor.correct.assert_not_awaited()
        listener.assert_not_called()

    async def test_insufficient_credit_in_existing_conversation(self) -> None:
        """Test a rejected debit inside an existing conversation."""
        orchestrator = self.make_orchestrator(balance=1)
        cid = orchestrator.new_conversation()
        with self.assertRaises(InsufficientCredit):
            await orchestrator.send("Bonjour", cid)
        self.assertEqual(orchestrator.conversations.messages(cid), [])
        self.assertEqual(orchestrator.state_of(cid), TurnState.IDLE)

    async def test_empty_text_rejected(self) -> None:
        """Test that blank input is refused before any debit."""
        orchestrator = self.make_orchestrator()
        with self.assertRaises(ValueError):
            await orchestrator.send("   ")
        self.assertEqual(orchestrator.ledger.balance, 10)

    async def test_unknown_conversation(self) -> None:
        """Test that an unknown conversation id is rejected."""
        orchestrator = self.make_orchestrator()
        with self.assertRaises(UnknownConversation):
            await orchestrator.send("Bonjour", "missing")
        self.assertEqual(orchestrator.ledger.balance, 10)

    async def test_refill_applied_before_debit(self) -> None:
        """Test that an elapsed window refills before the debit."""
        orchestrator = self.make_orchestrator(balance=0)
        self.now = START + timedelta(hours=25)
        await orchestrator.send("Bonjour")
        self.assertEqual(orchestrator.ledger.balance, 8)
        self.assertEqual(orchestrator.ledger.last_refill_at, self.now)

    async def test_three_conjugation_mistakes_unlock_a_mission(self) -> None:
        """Test that three Conjugation corrections open a mission."""
        self.tutor.correct.return_value = make_payload(
            "Conjugation", "Conjugation", "Conjugation"
        )
        orchestrator = self.make_orchestrator()
        await orchestrator.send("Nous allont au marché")
        self.assertEqual(orchestrator.journal.counters["Conjugation"], 3)
        self.assertIn("Conjugation", orchestrator.pending())

    async def test_listener_notified(self) -> None:
        """Test change listeners around a turn."""
        orchestrator = self.make_orchestrator()
        listener = MagicMock()
        orchestrator.add_listener(listener)
        await orchestrator.send("Bonjour")
        self.assertGreaterEqual(listener.call_count, 2)
        orchestrator.remove_listener(listener)
        listener.reset_mock()
        orchestrator.new_conversation()
        listener.assert_not_called()


class TutorFailureTest(OrchestratorTestCase):
    """Retries, error bubbles and configuration faults."""

    async def test_transient_failure_is_retried(self) -> None:
        """Test that a transient tutor failure is retried with backoff."""
        self.tutor.correct.side_effect = [TutorUnavailable("503"), make_payload("Gender")]
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("la problème")

        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        self.assertEqual(self.tutor.correct.await_count, 2)
        self.sleep.assert_awaited_once_with(1.0)
        self.assertEqual(orchestrator.journal.counters, {"Gender": 1})

    async def test_exhausted_retries_append_error_bubble_without_refund(self) -> None:
        """Test the error bubble after the last failed attempt."""
        self.tutor.correct.side_effect = TutorUnavailable("network down")
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Bonjour")

        self.assertEqual(result.outcome, TurnOutcome.FAILED)
        self.assertIsInstance(result.error, TutorUnavailable)
        self.assertEqual(self.tutor.correct.await_count, 3)
        self.assertEqual(self.sleep.await_args_list, [call(1.0), call(2.0)])
        self.assertEqual(orchestrator.ledger.balance, 8)
        messages = orchestrator.active_messages()
        self.assertEqual(len(messages), 2)
        self.assertEqual(messages[0].content, "Bonjour")
        self.assertTrue(messages[1].is_error)
        self.assertEqual(messages[1].payload.corrected_text, "Désolé")
        self.assertEqual(orchestrator.journal.total_count(), 0)
        self.assertEqual(orchestrator.state_of(result.conversation_id), TurnState.IDLE)

    async def test_error_bubble_follows_language(self) -> None:
        """Test that the error bubble uses the chosen language."""
        self.tutor.correct.side_effect = TutorUnavailable("down")
        orchestrator = self.make_orchestrator(language="French")
        result = await orchestrator.send("Bonjour")
        self.assertIn("problème technique", result.model_message.content)

    async def test_unexpected_exception_is_treated_as_unavailable(self) -> None:
        """Test that unknown tutor exceptions are retried like outages."""
        self.tutor.correct.side_effect = [RuntimeError("socket closed"), make_payload()]
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Bonjour")
        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)

    async def test_malformed_payload_resets_tutor_and_retries(self) -> None:
        """Test that an invalid payload resets the tutor before retrying."""
        self.tutor.correct.side_effect = [
            "this is not json",
            make_payload("Vocabulary").model_dump(),
        ]
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Je suis excité")

        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        self.tutor.reset.assert_called_once()
        self.assertEqual(orchestrator.journal.counters, {"Vocabulary": 1})

    async def test_payload_as_json_string_is_accepted(self) -> None:
        """Test tutor output delivered as a JSON string."""
        self.tutor.correct.return_value = make_payload("Grammar").model_dump_json()
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Bonjour")
        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        self.tutor.reset.assert_not_called()

    async def test_configuration_fault_is_not_retried(self) -> None:
        """Test that a configuration fault aborts the turn at once."""
        self.tutor.correct.side_effect = ConfigurationFault("GEMINI_API_KEY is missing")
        orchestrator = self.make_orchestrator()

        with self.assertRaises(ConfigurationFault):
            await orchestrator.send("Bonjour")

        self.assertEqual(self.tutor.correct.await_count, 1)
        self.sleep.assert_not_awaited()
        messages = orchestrator.active_messages()
        self.assertEqual([m.role for m in messages], [Role.USER])
        self.assertEqual(orchestrator.ledger.balance, 8)
        self.assertFalse(orchestrator.is_busy(orchestrator.active_conversation_id))

    def test_malformed_payload_is_a_transient_failure(self) -> None:
        """Test the exception hierarchy used by the retry policy."""
        self.assertTrue(issubclass(MalformedTutorPayload, TutorUnavailable))


class ConcurrencyTest(OrchestratorTestCase):
    """Single-flight turns and cancellation."""

    def gated_tutor(self):
        gate = asyncio.Event()

        async def slow_correct(text, language, history):
            await gate.wait()
            return make_payload("Grammar")

        self.tutor.correct = AsyncMock(side_effect=slow_correct)
        return gate

    async def test_second_send_while_awaiting_is_rejected(self) -> None:
        """Test single-flight turns within one conversation."""
        gate = self.gated_tutor()
        orchestrator = self.make_orchestrator()
        cid = orchestrator.new_conversation()

        first = asyncio.ensure_future(orchestrator.send("Bonjour", cid))
        await asyncio.sleep(0)
        self.assertTrue(orchestrator.is_busy(cid))
        self.assertEqual(orchestrator.state_of(cid), TurnState.AWAITING_TUTOR)

        with self.assertRaises(TurnInProgress):
            await orchestrator.send("Encore", cid)
        self.assertEqual(orchestrator.ledger.balance, 8)

        gate.set()
        result = await first
        self.assertEqual(result.outcome, TurnOutcome.COMPLETED)
        self.assertFalse(orchestrator.is_busy(cid))
        self.assertEqual(len(orchestrator.conversations.messages(cid)), 2)

    async def test_other_conversation_can_send_concurrently(self) -> None:
        """Test that separate conversations do not block each other."""
        gate = self.gated_tutor()
        orchestrator = self.make_orchestrator()
        first_cid = orchestrator.new_conversation()
        second_cid = orchestrator.new_conversation()

        first = asyncio.ensure_future(orchestrator.send("Bonjour", first_cid))
        second = asyncio.ensure_future(orchestrator.send("Salut", second_cid))
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(first, second)

        self.assertEqual([r.outcome for r in results], [TurnOutcome.COMPLETED] * 2)
        self.assertEqual(orchestrator.ledger.balance, 6)

    async def test_cancel_keeps_debit_by_default(self) -> None:
        """Test cancelling a turn without a refund."""
        self.gated_tutor()
        orchestrator = self.make_orchestrator()
        token = CancelToken()

        task = asyncio.ensure_future(orchestrator.send("Bonjour", cancel_token=token))
        await asyncio.sleep(0)
        token.cancel()
        result = await task

        self.assertEqual(result.outcome, TurnOutcome.CANCELLED)
        self.assertEqual(orchestrator.ledger.balance, 8)
        self.assertEqual(
            [m.role for m in orchestrator.active_messages()], [Role.USER]
        )
        self.assertFalse(orchestrator.is_busy(result.conversation_id))
        self.assertEqual(orchestrator.journal.total_count(), 0)

    async def test_cancel_refunds_when_configured(self) -> None:
        """Test cancelling a turn with refunds enabled."""
        self.gated_tutor()
        orchestrator = self.make_orchestrator(refund_on_cancel=True)
        token = CancelToken()

        task = asyncio.ensure_future(orchestrator.send("Bonjour", cancel_token=token))
        await asyncio.sleep(0)
        token.cancel()
        result = await task

        self.assertEqual(result.outcome, TurnOutcome.CANCELLED)
        self.assertEqual(orchestrator.ledger.balance, 10)

    async def test_already_cancelled_token(self) -> None:
        """Test that a cancelled token skips the tutor call."""
        orchestrator = self.make_orchestrator()
        token = CancelToken()
        token.cancel()
        result = await orchestrator.send("Bonjour", cancel_token=token)
        self.assertEqual(result.outcome, TurnOutcome.CANCELLED)
        self.tutor.correct.assert_not_awaited()

    async def test_conversation_deleted_mid_turn_is_discarded(self) -> None:
        """Test a turn whose conversation is deleted while waiting."""
        gate = self.gated_tutor()
        orchestrator = self.make_orchestrator()
        cid = orchestrator.new_conversation()

        task = asyncio.ensure_future(orchestrator.send("Bonjour", cid))
        await asyncio.sleep(0)
        orchestrator.delete(cid)
        gate.set()
        result = await task

        self.assertEqual(result.outcome, TurnOutcome.DISCARDED)
        self.assertEqual(orchestrator.journal.total_count(), 0)
        self.assertNotIn(cid, orchestrator.conversations)


class LessonTest(OrchestratorTestCase):
    """Mission lessons are generated on demand and archived on dismiss."""

    async def orchestrator_with_mistakes(self, *categories):
        self.tutor.correct.return_value = make_payload(*categories)
        orchestrator = self.make_orchestrator()
        await orchestrator.send("Des fautes")
        return orchestrator

    async def test_generate_and_dismiss(self) -> None:
        """Test generating and archiving lessons slot by slot."""
        orchestrator = await self.orchestrator_with_mistakes(*["Grammar"] * 7)
        self.assertEqual(orchestrator.pending(), {"Grammar"})

        lesson = await orchestrator.generate_lesson("Grammar")
        self.assertEqual(lesson.category, "Grammar")
        self.assertEqual(lesson.conjugation_table, {'je': 'vais', 'tu': 'vas'})
        self.assertEqual(lesson.mistakes, ["faute 4", "faute 5", "faute 6"])
        self.assertEqual(orchestrator.archived_lessons(), [])
        self.assertEqual(orchestrator.open_lessons(), [lesson])
        self.assertEqual(orchestrator.ledger.balance, 8)

        mistakes = self.tutor.create_lesson.await_args.args[1]
        self.assertEqual(len(mistakes), 3)

        self.assertTrue(orchestrator.dismiss_lesson(lesson.id))
        self.assertFalse(orchestrator.dismiss_lesson(lesson.id))
        self.assertEqual([item.id for item in orchestrator.archived_lessons()], [lesson.id])
        # 7 mistakes unlock two slots; one is now used.
        self.assertEqual(orchestrator.pending(), {"Grammar"})

        second = await orchestrator.generate_lesson("Grammar")
        orchestrator.dismiss_lesson(second.id)
        self.assertEqual(orchestrator.pending(), set())

    async def test_generate_for_category_that_is_not_pending(self) -> None:
        """Test lesson generation for a category below the threshold."""
        orchestrator = await self.orchestrator_with_mistakes("Grammar", "Grammar")
        with self.assertRaises(MissionNotPending):
            await orchestrator.generate_lesson("Grammar")
        self.tutor.create_lesson.assert_not_awaited()

    async def test_draft_mistakes_are_kept_when_provided(self) -> None:
        """Test that tutor-provided mistakes are kept on the lesson."""
        self.tutor.create_lesson.return_value = make_draft(mistakes=["j'ai aller"])
        orchestrator = await self.orchestrator_with_mistakes(*["Conjugation"] * 3)
        lesson = await orchestrator.generate_lesson("Conjugation")
        self.assertEqual(lesson.mistakes, ["j'ai aller"])

    async def test_lesson_generation_failure_propagates(self) -> None:
        """Test that lesson generation errors reach the caller."""
        self.tutor.create_lesson.side_effect = TutorUnavailable("down")
        orchestrator = await self.orchestrator_with_mistakes(*["Grammar"] * 3)
        with self.assertRaises(TutorUnavailable):
            await orchestrator.generate_lesson("Grammar")
        self.assertEqual(self.tutor.create_lesson.await_count, 3)
        self.assertEqual(orchestrator.pending(), {"Grammar"})

    async def test_repeated_generation_reuses_open_lesson(self) -> None:
        """Test that one unlocked slot yields a single open lesson."""
        orchestrator = await self.orchestrator_with_mistakes(*["Grammar"] * 3)
        first = await orchestrator.generate_lesson("Grammar")
        second = await orchestrator.generate_lesson("Grammar")

        self.assertEqual(first.id, second.id)
        self.tutor.create_lesson.assert_awaited_once()
        self.assertTrue(orchestrator.dismiss_lesson(first.id))
        self.assertFalse(orchestrator.dismiss_lesson(second.id))
        self.assertEqual(orchestrator.archive.count_for("Grammar"), 1)

        # Three more mistakes unlock the second slot.
        await orchestrator.send("Encore des fautes")
        self.assertEqual(orchestrator.journal.count_for("Grammar"), 6)
        self.assertEqual(orchestrator.pending(), {"Grammar"})

    async def test_concurrent_generation_yields_one_lesson(self) -> None:
        """Test that overlapping requests for a category share one lesson."""
        gate = asyncio.Event()

        async def slow_lesson(category, mistakes, language):
            await gate.wait()
            return make_draft()

        self.tutor.create_lesson = AsyncMock(side_effect=slow_lesson)
        orchestrator = await self.orchestrator_with_mistakes(*["Grammar"] * 3)

        first = asyncio.ensure_future(orchestrator.generate_lesson("Grammar"))
        second = asyncio.ensure_future(orchestrator.generate_lesson("Grammar"))
        await asyncio.sleep(0)
        gate.set()
        lessons = await asyncio.gather(first, second)

        self.assertEqual(lessons[0].id, lessons[1].id)
        self.assertEqual(len(orchestrator.open_lessons()), 1)

    async def test_dismiss_without_free_slot_drops_lesson(self) -> None:
        """Test that dismissing never archives past the unlocked slots."""
        orchestrator = await self.orchestrator_with_mistakes(*["Grammar"] * 3)
        lesson = await orchestrator.generate_lesson("Grammar")
        orchestrator.archive.archive(lesson.model_copy(update={'id': 'from-other-device'}))

        self.assertFalse(orchestrator.dismiss_lesson(lesson.id))
        self.assertEqual(orchestrator.archive.count_for("Grammar"), 1)
        self.assertEqual(orchestrator.open_lessons(), [])

    def test_dismiss_unknown_lesson(self) -> None:
        """Test dismissing a lesson id that was never generated."""
        orchestrator = self.make_orchestrator()
        with self.assertRaises(UnknownLesson):
            orchestrator.dismiss_lesson("missing")


class CommandTest(OrchestratorTestCase):
    """Conversation commands, deep dives, tier changes and the dashboard."""

    async def test_deep_dive_attaches_explanation(self) -> None:
        """Test attaching a deep dive to a tutor answer."""
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("j'ai aller")
        updated = await orchestrator.deep_dive(result.conversation_id, result.model_message.id)

        self.assertEqual(updated.deep_dive, "**Passé composé**\n1. être")
        self.assertFalse(updated.is_pending)
        context = self.tutor.deep_dive.await_args.args[0]
        self.assertIn("faute 0 -> correction 0 (Grammar)", context)
        self.assertEqual(orchestrator.ledger.balance, 8)

        # A second request reuses the stored explanation.
        await orchestrator.deep_dive(result.conversation_id, result.model_message.id)
        self.tutor.deep_dive.assert_awaited_once()

    async def test_deep_dive_failure_clears_pending(self) -> None:
        """Test that a failed deep dive clears the pending flag."""
        self.tutor.deep_dive.side_effect = TutorUnavailable("down")
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("j'ai aller")

        with self.assertRaises(TutorUnavailable):
            await orchestrator.deep_dive(result.conversation_id, result.model_message.id)

        message = orchestrator.active_messages()[1]
        self.assertFalse(message.is_pending)
        self.assertIsNone(message.deep_dive)

    async def test_cancelled_deep_dive_clears_pending(self) -> None:
        """Test that cancelling a deep dive does not leave the message pending."""
        gate = asyncio.Event()

        async def slow_dive(context, language):
            await gate.wait()
            return "never used"

        self.tutor.deep_dive = AsyncMock(side_effect=slow_dive)
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("j'ai aller")

        task = asyncio.ensure_future(
            orchestrator.deep_dive(result.conversation_id, result.model_message.id)
        )
        await asyncio.sleep(0)
        self.assertTrue(orchestrator.active_messages()[1].is_pending)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        message = orchestrator.active_messages()[1]
        self.assertFalse(message.is_pending)
        self.assertIsNone(message.deep_dive)

    async def test_deep_dive_on_user_message_rejected(self) -> None:
        """Test that deep dives only apply to tutor answers."""
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("j'ai aller")
        with self.assertRaises(ValueError):
            await orchestrator.deep_dive(result.conversation_id, result.user_message.id)

    async def test_wipe_history_keeps_sparks(self) -> None:
        """Test wiping history while keeping the balance."""
        self.tutor.correct.return_value = make_payload(*["Grammar"] * 3)
        orchestrator = self.make_orchestrator()
        await orchestrator.send("Des fautes")
        lesson = await orchestrator.generate_lesson("Grammar")
        orchestrator.dismiss_lesson(lesson.id)

        orchestrator.wipe_history()

        self.assertEqual(len(orchestrator.conversations), 0)
        self.assertEqual(orchestrator.journal.total_count(), 0)
        self.assertEqual(orchestrator.archived_lessons(), [])
        self.assertEqual(orchestrator.ledger.balance, 8)
        self.tutor.reset.assert_called_once()

    def test_upgrade_tier(self) -> None:
        """Test upgrading to the pro tier."""
        orchestrator = self.make_orchestrator(balance=3)
        self.now = START + timedelta(hours=1)
        orchestrator.upgrade_tier()
        self.assertEqual(orchestrator.tier, Tier.PRO)
        self.assertEqual(orchestrator.balance, 999)
        self.assertEqual(orchestrator.ledger.cost, 1)

    def test_conversation_commands(self) -> None:
        """Test creating, selecting, renaming and deleting conversations."""
        orchestrator = self.make_orchestrator()
        first = orchestrator.new_conversation()
        second = orchestrator.new_conversation("Travel")
        self.assertEqual([c.id for c in orchestrator.conversation_list()], [second, first])

        orchestrator.select_conversation(first)
        self.assertEqual(orchestrator.active_conversation_id, first)
        orchestrator.rename(first, "Restaurant")
        self.assertEqual(orchestrator.conversations.get(first).title, "Restaurant")

        orchestrator.delete(first)
        self.assertEqual(orchestrator.active_conversation_id, second)

    def test_set_language_normalizes(self) -> None:
        """Test language selection with unsupported values."""
        orchestrator = self.make_orchestrator()
        self.assertEqual(orchestrator.set_language("arabic"), "Arabic")
        self.assertEqual(orchestrator.set_language("Klingon"), "English")

    def test_suggestions_follow_language(self) -> None:
        """Test starter sentences for an empty conversation."""
        orchestrator = self.make_orchestrator()
        self.assertIn("J'ai aller au cinema hier", orchestrator.suggestions())
        orchestrator.set_language("French")
        self.assertIn(
            "Comment dit-on 'I need to book a table' en français ?",
            orchestrator.suggestions(),
        )

    async def test_dashboard(self) -> None:
        """Test the progress dashboard read."""
        self.tutor.correct.return_value = make_payload("Gender", "Grammar", "Gender", "Gender")
        orchestrator = self.make_orchestrator()
        await orchestrator.send("la problème")
        dashboard = orchestrator.dashboard()

        self.assertEqual(dashboard['total_mistakes'], 4)
        self.assertEqual(dashboard['balance'], 8)
        self.assertEqual(dashboard['tier'], "free")
        self.assertEqual(dashboard['accuracy'], 92)
        self.assertEqual(dashboard['top_categories'], [("Gender", 3), ("Grammar", 1)])
        self.assertEqual(dashboard['pending_missions'], ["Gender"])
        self.assertEqual(len(dashboard['recent_mistakes']), 4)
        self.assertEqual(dashboard['archived_lessons'], [])

    async def test_start_review(self) -> None:
        """Test starting a review quiz from the journal."""
        self.tutor.correct.return_value = make_payload("Gender", "Grammar")
        orchestrator = self.make_orchestrator()
        await orchestrator.send("la problème")
        quiz = orchestrator.start_review(random.Random(3))
        self.assertEqual(len(quiz.questions), 2)


class SnapshotTest(OrchestratorTestCase):
    """Snapshots restore an equivalent session."""

    async def test_round_trip_through_json(self) -> None:
        """Test restoring a session from a JSON snapshot."""
        self.tutor.correct.return_value = make_payload(
            "Grammar", "Gender", "Grammar", "Grammar", "Vocabulary"
        )
        orchestrator = self.make_orchestrator()
        result = await orchestrator.send("Des fautes")
        lesson = await orchestrator.generate_lesson("Grammar")
        orchestrator.dismiss_lesson(lesson.id)
        orchestrator.set_language("French")

        raw = json.loads(json.dumps(orchestrator.snapshot().model_dump(mode="json")))
        restored = SessionOrchestrator.from_snapshot(
            raw, self.tutor, credit_policy=self.policy, clock=self.clock, sleep=self.sleep
        )

        self.assertEqual(restored.pending(), orchestrator.pending())
        self.assertEqual(restored.top_categories(), orchestrator.top_categories())
        self.assertEqual(restored.balance, orchestrator.balance)
        self.assertEqual(restored.language, "French")
        self.assertEqual(restored.active_conversation_id, result.conversation_id)
        self.assertEqual(restored.active_messages(), orchestrator.active_messages())
        self.assertEqual(
            [item.id for item in restored.archived_lessons()], [lesson.id]
        )

    async def test_apply_snapshot_replaces_state(self) -> None:
        """Test that an incoming snapshot replaces local state."""
        orchestrator = self.make_orchestrator()
        await orchestrator.send("Bonjour")
        other = self.make_orchestrator(balance=5)
        other.upgrade_tier()

        orchestrator.apply_snapshot(other.snapshot())

        self.assertEqual(len(orchestrator.conversations), 0)
        self.assertEqual(orchestrator.tier, Tier.PRO)
        self.assertEqual(orchestrator.journal.total_count(), 0)

    def test_snapshot_is_versioned(self) -> None:
        """Test the snapshot version field."""
        state = self.make_orchestrator().snapshot()
        self.assertIsInstance(state, SessionState)
        self.assertEqual(state.version, 1)
