"""
Conversation store: independent chat threads and the active-thread pointer.

Threads keep creation order. Untitled threads take their title from the
first user message; an explicit rename always wins.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .exceptions import UnknownConversation
from .schemas import Conversation, ConversationsState, Message, Role

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 30


def derive_title(content: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """Truncate a message into a sidebar title."""
    text = " ".join(content.split())
    if len(text) <= max_length:
        return text or DEFAULT_TITLE
    return text[:max_length] + "..."


def _new_id() -> str:
    return uuid.uuid4().hex


class ConversationStore:
    """Owns every conversation of a session."""

    def __init__(
        self,
        title_max_length: int = TITLE_MAX_LENGTH,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self.title_max_length = title_max_length
        self._id_factory = id_factory
        self._conversations: Dict[str, Conversation] = {}
        self._active_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def create_conversation(
        self, now: datetime, initial_title: Optional[str] = None
    ) -> str:
        """Create an empty conversation and make it active."""
        conversation_id = self._id_factory()
        while conversation_id in self._conversations:
            conversation_id = self._id_factory()
        self._conversations[conversation_id] = Conversation(
            id=conversation_id,
            title=initial_title or DEFAULT_TITLE,
            title_locked=bool(initial_title),
            created_at=now,
        )
        self._active_id = conversation_id
        return conversation_id

    def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        now: datetime,
        **fields,
    ) -> Message:
        """Append a new message and return it with its assigned id."""
        conversation = self.get(conversation_id)
        message = Message(
            id=conversation.next_message_id,
            role=role,
            content=content,
            created_at=now,
            **fields,
        )
        conversation.messages.append(message)
        conversation.next_message_id += 1

        if role == Role.USER and not conversation.title_locked:
            is_first_user_message = (
                sum(1 for m in conversation.messages if m.role == Role.USER) == 1
            )
            if is_first_user_message:
                conversation.title = derive_title(content, self.title_max_length)
        return message

    def update_message(self, conversation_id: str, message_id: int, **changes) -> Message:
        """Replace a message with a copy carrying ``changes`` (pending/deep-dive flags)."""
        conversation = self.get(conversation_id)
        for index, message in enumerate(conversation.messages):
            if message.id == message_id:
                updated = message.model_copy(update=changes)
                conversation.messages[index] = updated
                return updated
        raise KeyError(f"Unknown message {message_id} in conversation {conversation_id}")

    def rename(self, conversation_id: str, title: str) -> None:
        conversation = self.get(conversation_id)
        conversation.title = title.strip() or DEFAULT_TITLE
        conversation.title_locked = True

    def delete(self, conversation_id: str) -> None:
        """Remove a conversation; the newest survivor becomes active if needed."""
        if conversation_id not in self._conversations:
            raise UnknownConversation(conversation_id)
        del self._conversations[conversation_id]
        if self._active_id == conversation_id:
            self._active_id = next(reversed(self._conversations), None)

    def set_active(self, conversation_id: str) -> None:
        if conversation_id not in self._conversations:
            raise UnknownConversation(conversation_id)
        self._active_id = conversation_id

    def clear(self) -> None:
        self._conversations = {}
        self._active_id = None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get(self, conversation_id: str) -> Conversation:
        try:
            return self._conversations[conversation_id]
        except KeyError:
            raise UnknownConversation(conversation_id) from None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def conversations(self) -> List[Conversation]:
        """All conversations, oldest first."""
        return list(self._conversations.values())

    def messages(self, conversation_id: str) -> List[Message]:
        return list(self.get(conversation_id).messages)

    def active_messages(self) -> List[Message]:
        if self._active_id is None:
            return []
        return self.messages(self._active_id)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def to_state(self) -> ConversationsState:
        return ConversationsState(
            conversations=[c.model_copy(deep=True) for c in self._conversations.values()],
            active_id=self._active_id,
        )

    @classmethod
    def from_state(
        cls, state: ConversationsState, title_max_length: int = TITLE_MAX_LENGTH
    ) -> "ConversationStore":
        store = cls(title_max_length=title_max_length)
        for conversation in state.conversations:
            store._conversations[conversation.id] = conversation.model_copy(deep=True)
        if state.active_id is None or state.active_id in store._conversations:
            store._active_id = state.active_id
        else:
            store._active_id = next(reversed(store._conversations), None)
        return store
