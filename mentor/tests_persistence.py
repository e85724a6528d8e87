"""
Tests for snapshot persistence, multi-device sync, settings glue and the
``session_report`` management command.
"""

import asyncio
import json
from io import StringIO
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone

from mentor import conf
from mentor.admin import SavedSessionAdmin
from mentor.ai_service import TutorService
from mentor.models import SavedSession
from mentor.orchestrator import SessionOrchestrator
from mentor.persistence import DjangoSnapshotStore, SessionSync
from mentor.schemas import CorrectionItem, CorrectionPayload, Tier


def make_payload(*categories: str) -> CorrectionPayload:
    return CorrectionPayload(
        corrected_text="Je suis allé au marché.",
        translation="I went to the market.",
        corrections=[
            CorrectionItem(
                original_text=f"faute {i}",
                corrected_text=f"correction {i}",
                explanation="Explanation",
                category=category,
            )
            for i, category in enumerate(categories)
        ],
    )


def make_tutor(*categories: str) -> MagicMock:
    tutor = MagicMock()
    tutor.correct = AsyncMock(return_value=make_payload(*categories))
    return tutor


async def settle() -> None:
    """Let callbacks scheduled with call_soon_threadsafe run."""
    for _ in range(3):
        await asyncio.sleep(0)


class MemorySnapshotStore:
    """In-process store with the same interface as DjangoSnapshotStore."""

    def __init__(self) -> None:
        self.data: Dict[str, Dict[str, Any]] = {}
        self.writers: Dict[str, str] = {}
        self.subscribers: List[Tuple[str, Callable]] = []

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        return self.data.get(key)

    async def save(self, key: str, snapshot: Dict[str, Any], writer: str = "") -> None:
        self.data[key] = snapshot
        self.writers[key] = writer
        for subscribed_key, callback in list(self.subscribers):
            if subscribed_key == key:
                callback(snapshot, writer)

    def subscribe(self, key: str, on_change: Callable) -> Callable[[], None]:
        entry = (key, on_change)
        self.subscribers.append(entry)
        return lambda: self.subscribers.remove(entry)


class DjangoSnapshotStoreTest(TransactionTestCase):
    """SavedSession-backed store."""

    async def test_save_and_load(self) -> None:
        """Test saving, loading and deleting snapshots."""
        store = DjangoSnapshotStore()
        self.assertIsNone(await store.load('user:1'))

        await store.save('user:1', {'version': 1, 'language': 'French'}, writer='phone')
        await store.save('user:1', {'version': 1, 'language': 'Arabic'}, writer='laptop')

        self.assertEqual(await store.load('user:1'), {'version': 1, 'language': 'Arabic'})
        row = await SavedSession.objects.aget(key='user:1')
        self.assertEqual(row.writer, 'laptop')
        self.assertEqual(await SavedSession.objects.acount(), 1)

        await store.delete('user:1')
        self.assertIsNone(await store.load('user:1'))

    def test_subscribe_only_receives_its_key(self) -> None:
        """Test post_save notifications per key."""
        store = DjangoSnapshotStore()
        received = []
        unsubscribe = store.subscribe('user:1', lambda s, w: received.append((s, w)))

        SavedSession.objects.create(key='user:1', payload={'version': 1}, writer='phone')
        SavedSession.objects.create(key='user:2', payload={'version': 1}, writer='phone')
        self.assertEqual(received, [({'version': 1}, 'phone')])

        unsubscribe()
        SavedSession.objects.filter(key='user:1').update(writer='x')
        row = SavedSession.objects.get(key='user:1')
        row.save()
        self.assertEqual(len(received), 1)

    async def test_devices_sync_through_database(self) -> None:
        """Test two devices syncing through the database."""
        store = DjangoSnapshotStore()
        phone = SessionOrchestrator(make_tutor("Grammar"))
        laptop = SessionOrchestrator(make_tutor())
        phone_sync = SessionSync(phone, store, 'user:1', device_id='phone')
        laptop_sync = SessionSync(laptop, store, 'user:1', device_id='laptop')
        phone_sync.attach()
        laptop_sync.attach()

        try:
            await phone.send("Je mange")
            await phone_sync.flush()
            await settle()

            self.assertEqual(laptop.journal.counters, {"Grammar": 1})
            self.assertEqual(len(laptop.conversations), 1)
            self.assertEqual(laptop.ledger.balance, phone.ledger.balance)
        finally:
            phone_sync.detach()
            laptop_sync.detach()


class SessionSyncTest(SimpleTestCase):
    """Background saves, echo suppression and remote replacement."""

    async def test_restore_missing_snapshot(self) -> None:
        """Test restoring when nothing is stored."""
        store = MemorySnapshotStore()
        sync = SessionSync(SessionOrchestrator(make_tutor()), store, 'user:1')
        self.assertFalse(await sync.restore())

    async def test_local_changes_are_saved(self) -> None:
        """Test that local changes are saved in the background."""
        store = MemorySnapshotStore()
        orchestrator = SessionOrchestrator(make_tutor("Gender"))
        sync = SessionSync(orchestrator, store, 'user:1', device_id='phone')
        sync.attach()

        await orchestrator.send("la problème")
        await sync.flush()

        saved = store.data['user:1']
        self.assertEqual(saved['journal']['counters'], {"Gender": 1})
        self.assertEqual(store.writers['user:1'], 'phone')
        sync.detach()

    async def test_restore_then_continue(self) -> None:
        """Test continuing a restored session."""
        store = MemorySnapshotStore()
        first = SessionOrchestrator(make_tutor("Grammar"))
        await first.send("Bonjour")
        await store.save('user:1', first.snapshot().model_dump(mode="json"))

        second = SessionOrchestrator(make_tutor())
        sync = SessionSync(second, store, 'user:1')
        self.assertTrue(await sync.restore())
        self.assertEqual(second.journal.counters, {"Grammar": 1})
        self.assertEqual(second.active_conversation_id, first.active_conversation_id)

    async def test_own_writes_are_not_reapplied(self) -> None:
        """Test that a device ignores its own writes."""
        store = MemorySnapshotStore()
        orchestrator = SessionOrchestrator(make_tutor())
        sync = SessionSync(orchestrator, store, 'user:1', device_id='phone')
        sync.attach()
        orchestrator.apply_snapshot = MagicMock(wraps=orchestrator.apply_snapshot)

        orchestrator.new_conversation()
        await sync.flush()
        await settle()

        orchestrator.apply_snapshot.assert_not_called()
        sync.detach()

    async def test_remote_snapshot_replaces_state_without_echo(self) -> None:
        """Test applying snapshots written by another device."""
        store = MemorySnapshotStore()
        phone = SessionOrchestrator(make_tutor())
        laptop = SessionOrchestrator(make_tutor())
        phone_sync = SessionSync(phone, store, 'user:1', device_id='phone')
        laptop_sync = SessionSync(laptop, store, 'user:1', device_id='laptop')
        phone_sync.attach()
        laptop_sync.attach()

        phone.new_conversation("Travel")
        await phone_sync.flush()
        await settle()
        self.assertEqual(len(laptop.conversations), 1)

        laptop.upgrade_tier(Tier.PRO)
        await laptop_sync.flush()
        await settle()

        self.assertEqual(phone.tier, Tier.PRO)
        self.assertEqual(phone.conversation_list()[0].title, "Travel")
        # Applying the laptop's snapshot must not trigger a save from the phone.
        await phone_sync.flush()
        self.assertEqual(store.writers['user:1'], 'laptop')

        phone_sync.detach()
        laptop_sync.detach()

    async def test_detach_stops_saving(self) -> None:
        """Test that a detached sync stops saving."""
        store = MemorySnapshotStore()
        orchestrator = SessionOrchestrator(make_tutor())
        sync = SessionSync(orchestrator, store, 'user:1')
        sync.attach()
        sync.detach()

        orchestrator.new_conversation()
        await sync.flush()
        self.assertEqual(store.data, {})
        self.assertEqual(store.subscribers, [])


class ConfTest(SimpleTestCase):
    """Settings are turned into policies."""

    @override_settings(
        MENTOR_SPARKS={'free_cost': 3, 'pro_cost': 1, 'free_cap': 12, 'pro_cap': 500},
        MENTOR_REFILL_WINDOWS={'free_hours': 12, 'pro_hours': 24 * 7},
    )
    def test_credit_policy(self) -> None:
        """Test the credit policy read from settings."""
        policy = conf.credit_policy()
        self.assertEqual(policy.cost_for(Tier.FREE), 3)
        self.assertEqual(policy.cap_for(Tier.PRO), 500)
        self.assertEqual(policy.window_for(Tier.FREE).total_seconds(), 12 * 3600)

    @override_settings(MENTOR_TUTOR_MAX_ATTEMPTS=5, MENTOR_TUTOR_RETRY_BACKOFF=0.5)
    def test_retry_policy(self) -> None:
        """Test the retry policy read from settings."""
        policy = conf.retry_policy()
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.backoff_seconds, 0.5)

    @override_settings(MENTOR_DEFAULT_LANGUAGE='French', MENTOR_REFUND_ON_CANCEL=True)
    def test_build_orchestrator(self) -> None:
        """Test building an orchestrator from settings."""
        tutor = make_tutor()
        orchestrator = conf.build_orchestrator(tutor)
        self.assertIs(orchestrator.tutor, tutor)
        self.assertEqual(orchestrator.language, 'French')
        self.assertTrue(orchestrator.refund_on_cancel)

        overridden = conf.build_orchestrator(tutor, language='Arabic')
        self.assertEqual(overridden.language, 'Arabic')

    @override_settings(GEMINI_API_KEY='abc', MENTOR_TUTOR_MODEL='gemini-2.5-pro')
    def test_build_tutor(self) -> None:
        """Test building the tutor from settings."""
        tutor = conf.build_tutor()
        self.assertIsInstance(tutor, TutorService)
        self.assertEqual(tutor.api_key, 'abc')
        self.assertEqual(tutor.model_name, 'gemini-2.5-pro')

    def test_session_key(self) -> None:
        """Test the session key derived from a user."""
        self.assertEqual(conf.session_key(MagicMock(pk=42)), 'user:42')


class OpenSessionTest(TransactionTestCase):
    async def test_open_session_restores_and_syncs(self) -> None:
        """Test opening a stored session and saving changes."""
        seed = conf.build_orchestrator(make_tutor("Grammar"))
        await seed.send("Bonjour")
        await DjangoSnapshotStore().save('user:7', seed.snapshot().model_dump(mode="json"))

        orchestrator, sync = await conf.open_session('user:7', tutor=make_tutor())
        try:
            self.assertEqual(orchestrator.journal.counters, {"Grammar": 1})
            orchestrator.rename(orchestrator.active_conversation_id, "Greetings")
            await sync.flush()
        finally:
            sync.detach()

        row = await SavedSession.objects.aget(key='user:7')
        titles = [c['title'] for c in row.payload['conversations']['conversations']]
        self.assertEqual(titles, ["Greetings"])
        self.assertEqual(row.writer, sync.device_id)


class SessionReportCommandTest(TestCase):
    """The ``session_report`` management command."""

    def setUp(self) -> None:
        orchestrator = conf.build_orchestrator(make_tutor())
        now = timezone.now()
        orchestrator.ledger.tick(now)
        orchestrator.ledger.try_debit(2)
        orchestrator.journal.ingest(
            make_payload("Conjugation", "Conjugation", "Conjugation", "Gender").corrections,
            now,
        )
        self.row = SavedSession.objects.create(
            key='user:1', payload=orchestrator.snapshot().model_dump(mode="json")
        )

    def test_text_report(self) -> None:
        """Test the text dashboard report."""
        out = StringIO()
        call_command('session_report', 'user:1', stdout=out)
        output = out.getvalue()
        self.assertIn("Sparks: 8", output)
        self.assertIn("Total mistakes: 4", output)
        self.assertIn("Accuracy: 92%", output)
        self.assertIn("Conjugation: 3", output)
        self.assertIn("New missions: Conjugation", output)
        self.assertIn("0 lessons in the library", output)

    def test_report_uses_requested_language(self) -> None:
        """Test the report in another language."""
        out = StringIO()
        call_command('session_report', 'user:1', '--language', 'French', stdout=out)
        self.assertIn("Conjugaison: 3", out.getvalue())

    def test_json_report(self) -> None:
        """Test the JSON dashboard report."""
        out = StringIO()
        call_command('session_report', 'user:1', '--json', stdout=out)
        data = json.loads(out.getvalue())
        self.assertEqual(data['total_mistakes'], 4)
        self.assertEqual(data['pending_missions'], ["Conjugation"])
        self.assertEqual(data['top_categories'][0], ["Conjugation", 3])

    def test_unknown_key(self) -> None:
        """Test the report for a missing session."""
        with self.assertRaises(CommandError):
            call_command('session_report', 'user:404', stdout=StringIO())

    def test_admin_balance_column(self) -> None:
        """Test the admin balance column."""
        self.assertEqual(SavedSessionAdmin.balance(self.row), "8")
        self.assertEqual(self.row.snapshot_version, 1)
