"""
Unit tests for the spark ledger, mistake journal, missions, lesson archive,
conversation store and review quiz.

None of these touch the database, so they run on ``SimpleTestCase``.
"""

import random
from datetime import datetime, timedelta, timezone

from django.test import SimpleTestCase

from mentor.conversations import DEFAULT_TITLE, ConversationStore, derive_title
from mentor.credits import CreditLedger, CreditPolicy
from mentor.exceptions import UnknownConversation
from mentor.journal import JournalPolicy, MistakeJournal
from mentor.lessons import LessonArchive
from mentor.localization import (
    FRENCH,
    fallback_payload,
    normalize_language,
    translate_category,
)
from mentor.missions import MissionDeriver, pending
from mentor.review import ReviewQuiz
from mentor.schemas import CoachLesson, CorrectionItem, MistakeRecord, Role, Tier

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def correction(category: str, original: str = "j'ai aller", corrected: str = "je suis allé"):
    return CorrectionItem(
        original_text=original,
        corrected_text=corrected,
        explanation="Aller takes être in the passé composé.",
        category=category,
    )


def lesson(lesson_id: str, category: str) -> CoachLesson:
    return CoachLesson(
        id=lesson_id,
        category=category,
        title=f"Lesson {lesson_id}",
        why_you_made_it="Habit from English.",
        the_rule="Use être with verbs of movement.",
        mental_trick="DR MRS VANDERTRAMP",
        created_at=NOW,
    )


class CreditLedgerTest(SimpleTestCase):
    """Debits, refills and tier changes."""

    def setUp(self) -> None:
        self.policy = CreditPolicy(free_cost=2, pro_cost=1, free_cap=10, pro_cap=999)

    def test_policy_costs_and_caps(self) -> None:
        """Test per-tier costs, caps and windows."""
        self.assertEqual(self.policy.cost_for(Tier.FREE), 2)
        self.assertEqual(self.policy.cost_for(Tier.PRO), 1)
        self.assertEqual(self.policy.cap_for(Tier.FREE), 10)
        self.assertEqual(self.policy.window_for(Tier.PRO), timedelta(days=30))

    def test_debit_within_balance(self) -> None:
        """Test a debit the balance covers."""
        ledger = CreditLedger(self.policy, balance=5, last_refill_at=NOW)
        self.assertTrue(ledger.try_debit(2))
        self.assertEqual(ledger.balance, 3)

    def test_debit_rejected_without_mutation(self) -> None:
        """Test that a rejected debit keeps the balance."""
        ledger = CreditLedger(self.policy, balance=1, last_refill_at=NOW)
        self.assertFalse(ledger.try_debit(2))
        self.assertEqual(ledger.balance, 1)

    def test_balance_never_negative(self) -> None:
        """Test that debits never drive the balance below zero."""
        ledger = CreditLedger(self.policy, balance=7, last_refill_at=NOW)
        for cost in [2, 3, 5, 1, 1, 4, 2, 1]:
            ledger.try_debit(cost)
            self.assertGreaterEqual(ledger.balance, 0)
        self.assertEqual(ledger.balance, 0)

    def test_debit_uses_tier_cost_by_default(self) -> None:
        """Test the default debit amount for the tier."""
        ledger = CreditLedger(self.policy, tier=Tier.PRO, balance=3, last_refill_at=NOW)
        self.assertTrue(ledger.try_debit())
        self.assertEqual(ledger.balance, 2)

    def test_negative_balance_rejected_at_construction(self) -> None:
        """Test that a negative starting balance is refused."""
        with self.assertRaises(ValueError):
            CreditLedger(self.policy, balance=-1)

    def test_first_tick_seeds_window_and_fills(self) -> None:
        """Test the first refill of a fresh ledger."""
        ledger = CreditLedger(self.policy)
        self.assertTrue(ledger.tick(NOW))
        self.assertEqual(ledger.balance, 10)
        self.assertEqual(ledger.last_refill_at, NOW)

    def test_tick_within_window_is_noop(self) -> None:
        """Test that ticks inside the window change nothing."""
        ledger = CreditLedger(self.policy)
        ledger.tick(NOW)
        ledger.try_debit(2)
        self.assertFalse(ledger.tick(NOW + timedelta(hours=1)))
        self.assertFalse(ledger.tick(NOW + timedelta(hours=23)))
        self.assertEqual(ledger.balance, 8)
        self.assertEqual(ledger.last_refill_at, NOW)

    def test_tick_after_window_refills_to_cap(self) -> None:
        """Test the refill once the window has elapsed."""
        ledger = CreditLedger(self.policy, balance=2, last_refill_at=NOW)
        later = NOW + timedelta(hours=24)
        self.assertTrue(ledger.tick(later))
        self.assertEqual(ledger.balance, 10)
        self.assertEqual(ledger.last_refill_at, later)
        self.assertFalse(ledger.tick(later + timedelta(minutes=5)))

    def test_pro_window_is_monthly(self) -> None:
        """Test the pro refill window."""
        ledger = CreditLedger(self.policy, tier=Tier.PRO, balance=0, last_refill_at=NOW)
        self.assertFalse(ledger.tick(NOW + timedelta(days=29)))
        self.assertEqual(ledger.balance, 0)
        self.assertTrue(ledger.tick(NOW + timedelta(days=30)))
        self.assertEqual(ledger.balance, 999)

    def test_refill_never_lowers_balance_above_cap(self) -> None:
        """Test that a refill never lowers a balance above the cap."""
        ledger = CreditLedger(self.policy, balance=50, last_refill_at=NOW)
        self.assertFalse(ledger.tick(NOW + timedelta(days=2)))
        self.assertEqual(ledger.balance, 50)

    def test_upgrade_is_immediate_one_time_credit(self) -> None:
        """Test the top-up granted on a tier change."""
        ledger = CreditLedger(self.policy, balance=4, last_refill_at=NOW)
        upgrade_time = NOW + timedelta(hours=2)
        ledger.change_tier(Tier.PRO, upgrade_time)
        self.assertEqual(ledger.tier, Tier.PRO)
        self.assertEqual(ledger.balance, 999)
        self.assertEqual(ledger.last_refill_at, upgrade_time)
        self.assertEqual(ledger.cost, 1)

    def test_refund(self) -> None:
        """Test refunding sparks."""
        ledger = CreditLedger(self.policy, balance=4, last_refill_at=NOW)
        ledger.refund(2)
        self.assertEqual(ledger.balance, 6)

    def test_state_round_trip(self) -> None:
        """Test restoring from a state snapshot."""
        ledger = CreditLedger(self.policy, tier=Tier.PRO, balance=17, last_refill_at=NOW)
        restored = CreditLedger.from_state(ledger.to_state(), self.policy)
        self.assertEqual(restored.balance, 17)
        self.assertEqual(restored.tier, Tier.PRO)
        self.assertEqual(restored.last_refill_at, NOW)


class MistakeJournalTest(SimpleTestCase):
    """Counters, accuracy and ordering of the mistake log."""

    def test_ingest_counts_each_correction(self) -> None:
        """Test that every correction becomes one record."""
        journal = MistakeJournal()
        added = journal.ingest([correction("Conjugation")] * 3, NOW)
        self.assertEqual(added, 3)
        self.assertEqual(journal.counters, {"Conjugation": 3})
        self.assertEqual(journal.total_count(), 3)
        self.assertEqual(len(journal.records), 3)
        self.assertTrue(all(r.timestamp == NOW for r in journal.records))

    def test_counters_match_records(self) -> None:
        """Test that counters agree with the records."""
        journal = MistakeJournal()
        journal.ingest([correction("Grammar"), correction("Gender")], NOW)
        journal.ingest([correction("Grammar")], NOW + timedelta(minutes=1))
        for category, count in journal.counters.items():
            self.assertEqual(
                count, sum(1 for r in journal.records if r.category == category)
            )

    def test_unknown_categories_are_kept(self) -> None:
        """Test categories outside the known list."""
        journal = MistakeJournal()
        journal.ingest([correction("Liaison")], NOW)
        self.assertEqual(journal.count_for("Liaison"), 1)

    def test_accuracy_score_clamps_at_floor(self) -> None:
        """Test the accuracy score and its floor."""
        journal = MistakeJournal(JournalPolicy(accuracy_floor=40, per_mistake_penalty=2))
        self.assertEqual(journal.accuracy_score(), 100)
        journal.ingest([correction("Grammar")] * 5, NOW)
        self.assertEqual(journal.accuracy_score(), 90)
        journal.ingest([correction("Grammar")] * 50, NOW)
        self.assertEqual(journal.accuracy_score(), 40)

    def test_top_categories_ties_keep_first_seen_order(self) -> None:
        """Test ranking of categories with ties."""
        journal = MistakeJournal()
        journal.ingest(
            [
                correction("Vocabulary"),
                correction("Gender"),
                correction("Grammar"),
                correction("Grammar"),
                correction("Gender"),
            ],
            NOW,
        )
        self.assertEqual(
            journal.top_categories(3),
            [("Gender", 2), ("Grammar", 2), ("Vocabulary", 1)],
        )
        self.assertEqual(journal.top_categories(1), [("Gender", 2)])

    def test_top_categories_non_positive_count(self) -> None:
        """Test top categories for a zero or negative count."""
        journal = MistakeJournal()
        journal.ingest([correction("Grammar"), correction("Gender")], NOW)
        self.assertEqual(journal.top_categories(0), [])
        self.assertEqual(journal.top_categories(-1), [])

    def test_recent_records_newest_first(self) -> None:
        """Test the order of recent records."""
        journal = MistakeJournal()
        for minute in range(6):
            journal.ingest(
                [correction("Grammar", original=f"m{minute}")],
                NOW + timedelta(minutes=minute),
            )
        recent = journal.recent_records(3)
        self.assertEqual([r.original_text for r in recent], ["m5", "m4", "m3"])
        self.assertEqual(len(journal.records), 6)
        self.assertEqual(journal.recent_records(0), [])

    def test_records_for_category(self) -> None:
        """Test the per-category record window."""
        journal = MistakeJournal()
        journal.ingest(
            [
                correction("Grammar", original="a"),
                correction("Gender", original="b"),
                correction("Grammar", original="c"),
                correction("Grammar", original="d"),
            ],
            NOW,
        )
        self.assertEqual(
            [r.original_text for r in journal.records_for("Grammar", limit=2)], ["c", "d"]
        )

    def test_state_round_trip_rebuilds_counters(self) -> None:
        """Test that restored counters are rebuilt from records."""
        journal = MistakeJournal()
        journal.ingest([correction("Gender"), correction("Grammar")], NOW)
        state = journal.to_state()
        state.counters["Gender"] = 99  # stale denormalised value
        restored = MistakeJournal.from_state(state)
        self.assertEqual(restored.counters, {"Gender": 1, "Grammar": 1})
        self.assertEqual(restored.top_categories(2), journal.top_categories(2))

    def test_clear(self) -> None:
        """Test clearing the journal."""
        journal = MistakeJournal()
        journal.ingest([correction("Grammar")], NOW)
        journal.clear()
        self.assertEqual(journal.total_count(), 0)
        self.assertEqual(journal.records, [])


class MissionDeriverTest(SimpleTestCase):
    """Lesson slots unlock every three mistakes."""

    def test_grammar_with_seven_mistakes(self) -> None:
        """Test mission slots for seven Grammar mistakes."""
        counters = {"Grammar": 7}
        self.assertIn("Grammar", pending(counters, {}))
        self.assertIn("Grammar", pending(counters, {"Grammar": 1}))
        self.assertNotIn("Grammar", pending(counters, {"Grammar": 2}))

    def test_below_threshold_not_pending(self) -> None:
        """Test a category below the threshold."""
        self.assertEqual(pending({"Gender": 2}, {}), set())

    def test_three_conjugation_mistakes_unlock_mission(self) -> None:
        """Test that three mistakes unlock one slot."""
        self.assertEqual(pending({"Conjugation": 3}, {}), {"Conjugation"})

    def test_deterministic(self) -> None:
        """Test that derivation depends only on its inputs."""
        counters = {"Grammar": 6, "Gender": 3, "Vocabulary": 1}
        archived = {"Gender": 1}
        deriver = MissionDeriver()
        self.assertEqual(deriver.pending(counters, archived), deriver.pending(counters, archived))
        self.assertEqual(deriver.pending(counters, archived), {"Grammar"})

    def test_ordered_and_backlog(self) -> None:
        """Test display order and unclaimed slots."""
        deriver = MissionDeriver(threshold=3)
        counters = {"Vocabulary": 3, "Grammar": 9, "Gender": 1}
        self.assertEqual(deriver.ordered(counters, {}), ["Vocabulary", "Grammar"])
        self.assertEqual(
            deriver.backlog(counters, {"Grammar": 1}), {"Vocabulary": 1, "Grammar": 2}
        )

    def test_threshold_must_be_positive(self) -> None:
        """Test that a zero threshold is refused."""
        with self.assertRaises(ValueError):
            MissionDeriver(threshold=0)


class LessonArchiveTest(SimpleTestCase):
    """Archiving is an idempotent insert keyed by lesson id."""

    def test_archive_twice_changes_all_once(self) -> None:
        """Test that archiving the same lesson twice is idempotent."""
        archive = LessonArchive()
        self.assertTrue(archive.archive(lesson("l1", "Grammar")))
        self.assertFalse(archive.archive(lesson("l1", "Grammar")))
        self.assertEqual([item.id for item in archive.all()], ["l1"])

    def test_insertion_order_and_counts(self) -> None:
        """Test archive order and per-category counts."""
        archive = LessonArchive(
            [lesson("l1", "Grammar"), lesson("l2", "Gender"), lesson("l3", "Grammar")]
        )
        self.assertEqual([item.id for item in archive.all()], ["l1", "l2", "l3"])
        self.assertEqual(archive.count_for("Grammar"), 2)
        self.assertEqual(archive.count_for("Vocabulary"), 0)
        self.assertEqual(archive.counts_by_category(), {"Grammar": 2, "Gender": 1})
        self.assertIn("l2", archive)


class ConversationStoreTest(SimpleTestCase):
    """Threads, titles and the active pointer."""

    def setUp(self) -> None:
        self.counter = 0

        def next_id() -> str:
            self.counter += 1
            return f"c{self.counter}"

        self.store = ConversationStore(id_factory=next_id)

    def test_create_makes_active(self) -> None:
        """Test that a new conversation becomes active."""
        first = self.store.create_conversation(NOW)
        self.assertEqual(self.store.active_id, first)
        self.assertEqual(self.store.get(first).title, DEFAULT_TITLE)
        second = self.store.create_conversation(NOW)
        self.assertEqual(self.store.active_id, second)

    def test_title_derived_from_first_user_message(self) -> None:
        """Test the title taken from the first user message."""
        cid = self.store.create_conversation(NOW)
        self.store.append_message(
            cid, Role.USER, "Il faut que je vais partir maintenant, vite", NOW
        )
        self.assertEqual(self.store.get(cid).title, "Il faut que je vais partir mai...")
        self.store.append_message(cid, Role.USER, "Bonjour", NOW)
        self.assertEqual(self.store.get(cid).title, "Il faut que je vais partir mai...")

    def test_short_title_not_truncated(self) -> None:
        """Test that short titles are kept whole."""
        self.assertEqual(derive_title("Bonjour"), "Bonjour")

    def test_rename_is_not_overwritten(self) -> None:
        """Test that a renamed title survives later messages."""
        cid = self.store.create_conversation(NOW)
        self.store.rename(cid, "Restaurant practice")
        self.store.append_message(cid, Role.USER, "Je voudrais une table", NOW)
        self.assertEqual(self.store.get(cid).title, "Restaurant practice")

    def test_explicit_initial_title_is_kept(self) -> None:
        """Test a conversation created with a title."""
        cid = self.store.create_conversation(NOW, initial_title="Travel")
        self.store.append_message(cid, Role.USER, "Où est la gare ?", NOW)
        self.assertEqual(self.store.get(cid).title, "Travel")

    def test_message_ids_monotonic_within_conversation(self) -> None:
        """Test that message ids only grow."""
        cid = self.store.create_conversation(NOW)
        ids = [
            self.store.append_message(cid, Role.USER, f"msg {i}", NOW).id for i in range(4)
        ]
        self.assertEqual(ids, sorted(ids))
        self.assertEqual(len(set(ids)), 4)

    def test_delete_active_picks_most_recent_survivor(self) -> None:
        """Test the active pointer after deleting the active conversation."""
        first = self.store.create_conversation(NOW)
        second = self.store.create_conversation(NOW)
        third = self.store.create_conversation(NOW)
        self.store.set_active(second)
        self.store.delete(second)
        self.assertEqual(self.store.active_id, third)
        self.store.delete(third)
        self.assertEqual(self.store.active_id, first)

    def test_delete_inactive_keeps_active(self) -> None:
        """Test deleting a conversation that is not active."""
        first = self.store.create_conversation(NOW)
        second = self.store.create_conversation(NOW)
        self.store.delete(first)
        self.assertEqual(self.store.active_id, second)

    def test_delete_last_conversation_leaves_nothing_active(self) -> None:
        """Test deleting the only conversation."""
        cid = self.store.create_conversation(NOW)
        self.store.append_message(cid, Role.USER, "Salut", NOW)
        self.store.delete(cid)
        self.assertIsNone(self.store.active_id)
        self.assertEqual(self.store.active_messages(), [])

    def test_ids_not_reused_after_delete(self) -> None:
        """Test that deleted ids are not handed out again."""
        first = self.store.create_conversation(NOW)
        self.store.delete(first)
        second = self.store.create_conversation(NOW)
        self.assertNotEqual(first, second)

    def test_unknown_conversation(self) -> None:
        """Test that an unknown conversation id is rejected."""
        with self.assertRaises(UnknownConversation):
            self.store.set_active("missing")
        with self.assertRaises(UnknownConversation):
            self.store.append_message("missing", Role.USER, "x", NOW)

    def test_update_message_enrichment(self) -> None:
        """Test replacing a message with an enriched copy."""
        cid = self.store.create_conversation(NOW)
        message = self.store.append_message(cid, Role.MODEL, "Bonjour.", NOW)
        updated = self.store.update_message(cid, message.id, deep_dive="## Greetings")
        self.assertEqual(updated.deep_dive, "## Greetings")
        self.assertEqual(self.store.messages(cid)[0].deep_dive, "## Greetings")
        self.assertIsNone(message.deep_dive)

    def test_state_round_trip(self) -> None:
        """Test restoring from a state snapshot."""
        first = self.store.create_conversation(NOW)
        self.store.append_message(first, Role.USER, "Je mange", NOW)
        second = self.store.create_conversation(NOW)
        self.store.set_active(first)
        restored = ConversationStore.from_state(self.store.to_state())
        self.assertEqual(restored.active_id, first)
        self.assertEqual(
            [c.id for c in restored.conversations()], [first, second]
        )
        self.assertEqual(restored.active_messages()[0].content, "Je mange")


class ReviewQuizTest(SimpleTestCase):
    """Review questions drawn from past mistakes."""

    def setUp(self) -> None:
        self.records = [
            MistakeRecord(
                original_text=f"faute {i}",
                corrected_text=f"Correction {i}",
                category="Grammar",
                timestamp=NOW,
            )
            for i in range(8)
        ]

    def test_picks_at_most_five_distinct(self) -> None:
        """Test the size and uniqueness of review questions."""
        quiz = ReviewQuiz.from_records(self.records + self.records, random.Random(7))
        self.assertEqual(len(quiz.questions), 5)
        self.assertEqual(len({q.original_text for q in quiz.questions}), 5)

    def test_answers_are_case_and_space_insensitive(self) -> None:
        """Test answer matching and scoring."""
        quiz = ReviewQuiz.from_records(self.records[:2], random.Random(1))
        first = quiz.current
        self.assertTrue(quiz.answer(f"  {first.corrected_text.upper()} "))
        self.assertFalse(quiz.answer("wrong"))
        self.assertTrue(quiz.finished)
        self.assertEqual(quiz.score, 1)
        self.assertEqual(quiz.results, [True, False])
        with self.assertRaises(IndexError):
            quiz.answer("again")

    def test_empty_history(self) -> None:
        """Test a review with no past mistakes."""
        quiz = ReviewQuiz.from_records([], random.Random(1))
        self.assertTrue(quiz.finished)
        self.assertIsNone(quiz.current)


class LocalizationTest(SimpleTestCase):
    def test_fallback_payload_follows_language(self) -> None:
        """Test the localized error payload."""
        payload = fallback_payload(FRENCH)
        self.assertEqual(payload.corrections, [])
        self.assertIn("problème technique", payload.notes)

    def test_translate_category_passes_unknown_through(self) -> None:
        """Test category labels per language."""
        self.assertEqual(translate_category("Conjugation", "French"), "Conjugaison")
        self.assertEqual(translate_category("Orthographe", "English"), "Spelling")
        self.assertEqual(translate_category("Liaison", "French"), "Liaison")

    def test_normalize_language(self) -> None:
        """Test language normalization."""
        self.assertEqual(normalize_language("arabic"), "Arabic")
        self.assertEqual(normalize_language("Klingon"), "English")
