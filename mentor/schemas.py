"""
Pydantic models for the tutoring session state.

These models describe the correction payload returned by the tutor, the
mistake log, coach lessons and chat threads. ``SessionState`` is the
plain-data snapshot that the persistence layer stores and restores.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

SNAPSHOT_VERSION = 1


class Role(str, Enum):
    """Author of a chat message."""

    USER = "user"
    MODEL = "model"


class Tier(str, Enum):
    """Subscription tier."""

    FREE = "free"
    PRO = "pro"


class CorrectionItem(BaseModel):
    """A single mistake spotted by the tutor."""

    original_text: str = Field(..., description="The incorrect fragment")
    corrected_text: str = Field(..., description="The corrected fragment")
    explanation: str = Field(..., description="Why it was wrong")
    category: str = Field(
        ..., description="Free-form mistake category (e.g. 'Grammar', 'Conjugation')"
    )


class CorrectionPayload(BaseModel):
    """Structured answer of the tutor for one user sentence."""

    corrected_text: str = Field(..., description="The corrected French sentence")
    translation: str = Field(..., description="Natural English translation")
    corrections: List[CorrectionItem] = Field(
        default_factory=list, description="Substantive errors only"
    )
    notes: str = Field(default="", description="Two to four sentences of tutor notes")


class Message(BaseModel):
    """One entry of a conversation. Only the pending/deep-dive fields change."""

    model_config = ConfigDict(frozen=True)

    id: int
    role: Role
    content: str
    payload: Optional[CorrectionPayload] = None
    created_at: datetime
    is_error: bool = False
    is_pending: bool = False
    deep_dive: Optional[str] = None


class Conversation(BaseModel):
    """An independent chat thread."""

    id: str
    title: str
    title_locked: bool = False
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime
    next_message_id: int = 1


class MistakeRecord(BaseModel):
    """Append-only log entry, one per ingested CorrectionItem."""

    model_config = ConfigDict(frozen=True)

    original_text: str
    corrected_text: str
    category: str
    timestamp: datetime


class LessonDraft(BaseModel):
    """Coach lesson content as produced by the tutor."""

    title: str = Field(..., description="Simple, indicative title")
    mistakes: List[str] = Field(default_factory=list)
    why_you_made_it: str = Field(..., description="Brief insight into the cause")
    the_rule: str = Field(..., description="A clear, simple rule")
    mental_trick: str = Field(..., description="A mnemonic")
    conjugation_table: Optional[Dict[str, str]] = Field(
        default=None, description="Present tense forms when a verb is central"
    )


class CoachLesson(BaseModel):
    """A generated lesson for one mistake category."""

    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    title: str
    mistakes: List[str] = Field(default_factory=list)
    why_you_made_it: str
    the_rule: str
    mental_trick: str
    conjugation_table: Optional[Dict[str, str]] = None
    created_at: datetime


class LedgerState(BaseModel):
    balance: int = Field(..., ge=0)
    last_refill_at: Optional[datetime] = None
    tier: Tier = Tier.FREE


class JournalState(BaseModel):
    counters: Dict[str, int] = Field(default_factory=dict)
    records: List[MistakeRecord] = Field(default_factory=list)


class ConversationsState(BaseModel):
    conversations: List[Conversation] = Field(default_factory=list)
    active_id: Optional[str] = None


class SessionState(BaseModel):
    """Whole-session snapshot exchanged with the persistence collaborator."""

    version: int = SNAPSHOT_VERSION
    language: str = "English"
    ledger: LedgerState
    journal: JournalState = Field(default_factory=JournalState)
    lessons: List[CoachLesson] = Field(default_factory=list)
    conversations: ConversationsState = Field(default_factory=ConversationsState)
