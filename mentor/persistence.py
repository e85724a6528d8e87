"""
Snapshot persistence for learner sessions.

``DjangoSnapshotStore`` keeps one JSON snapshot per key in ``SavedSession``
and notifies subscribers through Django's ``post_save`` signal.
``SessionSync`` binds an orchestrator to such a store: local changes are
saved in the background, and snapshots written by another device replace the
local state wholesale (last writer wins).
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Set

from django.db.models.signals import post_save

from .models import SavedSession
from .orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]
ChangeCallback = Callable[[Snapshot, str], None]


class DjangoSnapshotStore:
    """Key/value snapshot store backed by the ``SavedSession`` table."""

    async def load(self, key: str) -> Optional[Snapshot]:
        row = await SavedSession.objects.filter(key=key).afirst()
        if row is None:
            return None
        return dict(row.payload)

    async def save(self, key: str, snapshot: Snapshot, writer: str = "") -> None:
        await SavedSession.objects.aupdate_or_create(
            key=key, defaults={'payload': snapshot, 'writer': writer}
        )

    async def delete(self, key: str) -> None:
        await SavedSession.objects.filter(key=key).adelete()

    def subscribe(self, key: str, on_change: ChangeCallback) -> Callable[[], None]:
        """
        Call ``on_change(snapshot, writer)`` whenever ``key`` is saved.

        The callback runs in whichever thread performed the save.
        Returns a function that cancels the subscription.
        """
        dispatch_uid = f"mentor-snapshot-{key}-{uuid.uuid4().hex}"

        def receiver(sender: Any, instance: SavedSession, **kwargs: Any) -> None:
            if instance.key == key:
                on_change(dict(instance.payload), instance.writer)

        post_save.connect(
            receiver, sender=SavedSession, weak=False, dispatch_uid=dispatch_uid
        )

        def unsubscribe() -> None:
            post_save.disconnect(sender=SavedSession, dispatch_uid=dispatch_uid)

        return unsubscribe


class SessionSync:
    """Keeps an orchestrator and a snapshot store in step."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        store: Any,
        key: str,
        device_id: Optional[str] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.key = key
        self.device_id = device_id or uuid.uuid4().hex[:12]
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: Set[asyncio.Task] = set()
        self._applying_remote = False

    async def restore(self) -> bool:
        """Load the stored snapshot, if any, as the authoritative state."""
        snapshot = await self.store.load(self.key)
        if snapshot is None:
            return False
        self._apply(snapshot)
        return True

    async def persist(self) -> None:
        snapshot = self.orchestrator.snapshot().model_dump(mode="json")
        await self.store.save(self.key, snapshot, writer=self.device_id)

    def attach(self) -> None:
        """Start saving local changes and listening for remote ones."""
        self._loop = asyncio.get_running_loop()
        self.orchestrator.add_listener(self._on_local_change)
        subscribe = getattr(self.store, "subscribe", None)
        if callable(subscribe):
            self._unsubscribe = subscribe(self.key, self._on_remote_change)

    def detach(self) -> None:
        self.orchestrator.remove_listener(self._on_local_change)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._loop = None

    async def flush(self) -> None:
        """Wait for every background save scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def _on_local_change(self) -> None:
        if self._applying_remote or self._loop is None:
            return
        task = self._loop.create_task(self.persist())
        self._pending.add(task)
        task.add_done_callback(self._save_done)

    def _save_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Saving session %s failed: %s", self.key, task.exception())

    def _on_remote_change(self, snapshot: Snapshot, writer: str) -> None:
        if writer == self.device_id or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._apply, snapshot)

    def _apply(self, snapshot: Snapshot) -> None:
        self._applying_remote = True
        try:
            self.orchestrator.apply_snapshot(snapshot)
        finally:
            self._applying_remote = False
