"""
Settings glue: turns ``MENTOR_*`` Django settings into domain objects.

The domain modules take plain policy objects so they can be used and tested
without Django; this is the only place that reads ``django.conf.settings``
for them.
"""

from datetime import timedelta
from typing import Any, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from .ai_service import DEFAULT_MODEL_NAME, TutorService
from .credits import CreditPolicy
from .journal import JournalPolicy
from .missions import MISSION_THRESHOLD
from .orchestrator import RetryPolicy, SessionOrchestrator
from .persistence import DjangoSnapshotStore, SessionSync
from .schemas import Tier


def _setting(name: str, default: Any) -> Any:
    return getattr(settings, name, default)


def credit_policy() -> CreditPolicy:
    sparks = _setting('MENTOR_SPARKS', {})
    windows = _setting('MENTOR_REFILL_WINDOWS', {})
    defaults = CreditPolicy()
    return CreditPolicy(
        free_cost=int(sparks.get('free_cost', defaults.free_cost)),
        pro_cost=int(sparks.get('pro_cost', defaults.pro_cost)),
        free_cap=int(sparks.get('free_cap', defaults.free_cap)),
        pro_cap=int(sparks.get('pro_cap', defaults.pro_cap)),
        refill_windows={
            Tier.FREE: timedelta(hours=float(windows.get('free_hours', 24))),
            Tier.PRO: timedelta(hours=float(windows.get('pro_hours', 30 * 24))),
        },
    )


def journal_policy() -> JournalPolicy:
    return JournalPolicy(
        accuracy_floor=int(_setting('MENTOR_ACCURACY_FLOOR', 40)),
        per_mistake_penalty=int(_setting('MENTOR_ACCURACY_PENALTY', 2)),
    )


def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(_setting('MENTOR_TUTOR_MAX_ATTEMPTS', 3)),
        backoff_seconds=float(_setting('MENTOR_TUTOR_RETRY_BACKOFF', 1.0)),
    )


def build_tutor() -> TutorService:
    return TutorService(
        api_key=_setting('GEMINI_API_KEY', None),
        model_name=_setting('MENTOR_TUTOR_MODEL', DEFAULT_MODEL_NAME),
    )


def build_orchestrator(tutor: Optional[Any] = None, **overrides: Any) -> SessionOrchestrator:
    """Create an orchestrator configured from settings; keyword args win."""
    options = {
        'credit_policy': credit_policy(),
        'journal_policy': journal_policy(),
        'retry_policy': retry_policy(),
        'mission_threshold': int(_setting('MENTOR_MISSION_THRESHOLD', MISSION_THRESHOLD)),
        'title_max_length': int(_setting('MENTOR_TITLE_MAX_LENGTH', 30)),
        'language': _setting('MENTOR_DEFAULT_LANGUAGE', 'English'),
        'refund_on_cancel': bool(_setting('MENTOR_REFUND_ON_CANCEL', False)),
        'clock': timezone.now,
    }
    options.update(overrides)
    return SessionOrchestrator(tutor if tutor is not None else build_tutor(), **options)


def session_key(user: Any) -> str:
    return f"user:{user.pk}"


async def open_session(
    key: str,
    tutor: Optional[Any] = None,
    store: Optional[Any] = None,
    device_id: Optional[str] = None,
) -> Tuple[SessionOrchestrator, SessionSync]:
    """Build an orchestrator, restore its stored snapshot and start syncing."""
    orchestrator = build_orchestrator(tutor)
    sync = SessionSync(orchestrator, store or DjangoSnapshotStore(), key, device_id)
    await sync.restore()
    sync.attach()
    return orchestrator, sync
