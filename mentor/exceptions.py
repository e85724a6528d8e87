"""
Exceptions raised by the tutoring session core.

The UI layer reacts differently to each family: credit problems open the
upgrade prompt, tutor problems become an error bubble in the chat, and
configuration faults block the whole screen.
"""


class MentorError(Exception):
    """Base exception for all session errors."""
    pass


class InsufficientCredit(MentorError):
    """Raised when the balance cannot cover the cost of a message."""

    def __init__(self, balance: int, cost: int):
        self.balance = balance
        self.cost = cost
        super().__init__(f"Not enough sparks: balance {balance}, cost {cost}")


class TurnInProgress(MentorError):
    """Raised when a conversation already has a message awaiting the tutor."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} already has a turn in flight")


class UnknownConversation(MentorError, KeyError):
    """Raised for a conversation id the store does not hold."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Unknown conversation: {conversation_id}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownLesson(MentorError, KeyError):
    """Raised when dismissing a lesson that was never generated."""

    def __init__(self, lesson_id: str):
        self.lesson_id = lesson_id
        super().__init__(f"Unknown lesson: {lesson_id}")

    def __str__(self) -> str:
        return self.args[0]


class MissionNotPending(MentorError):
    """Raised when a lesson is requested for a category with no open mission."""

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"No pending mission for category '{category}'")


# =============================================================================
# Tutor Exceptions
# =============================================================================


class TutorError(MentorError):
    """Base class for failures of the external tutor."""
    pass


class TutorUnavailable(TutorError):
    """Transient tutor failure; the call may be retried."""
    pass


class MalformedTutorPayload(TutorUnavailable):
    """The tutor answered with something that is not a valid correction payload."""
    pass


class ConfigurationFault(TutorError):
    """Fatal tutor misconfiguration, such as a missing API key. Never retried."""
    pass
