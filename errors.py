"""
Exceptions raised by the decision engine.

Policy outcomes (automation disabled, deny-listed sender, breaker open)
are not exceptions; they come back as ordinary OrchestratorResults.
"""


class DecisionEngineError(Exception):
    """Base class for decision engine errors."""


class InvalidTransition(DecisionEngineError):
    """A conversation state change that is not an edge of the transition graph."""

    def __init__(self, current: str, requested: str, allowed=(), message: str = None):
        self.current = current
        self.requested = requested
        self.allowed = tuple(allowed)
        if message is None:
            allowed_str = ", ".join(self.allowed) or "none"
            message = f"Invalid state transition: {current} -> {requested}. Allowed: {allowed_str}"
        super().__init__(message)


class ConcurrentUpdateError(InvalidTransition):
    """The conversation changed between read and conditional write."""

    def __init__(self, thread_id: str, current: str, requested: str):
        self.thread_id = thread_id
        super().__init__(
            current,
            requested,
            message=(
                f"Conversation {thread_id} moved away from '{current}' before "
                f"transition to '{requested}' could be applied"
            ),
        )


class ConversationNotFound(DecisionEngineError):
    pass


class CollaboratorFailure(DecisionEngineError):
    """An external collaborator (classifier, calendar, mail, store) failed or timed out."""

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator} failed: {message}")


class AuditWriteFailure(DecisionEngineError):
    pass


class AuditEntryNotFound(DecisionEngineError):
    pass
