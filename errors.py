"""Failure taxonomy for the queue engine.

Engine operations raise one of these instead of returning partial results.
The HTTP layer in ``main.py`` is the only place that turns them into
status codes.
"""


class QueueError(Exception):
    """Base class for every failure raised by the engine."""


class ValidationError(QueueError):
    """Malformed or missing input (for example an empty name)."""


class NotFoundError(QueueError):
    """No entry carries the requested token."""

    def __init__(self, token: int):
        super().__init__(f"No queue entry with token {token}")
        self.token = token


class ConflictError(QueueError):
    """The requested transition is not allowed from the current state."""


class PersistenceError(QueueError):
    """The snapshot store failed.  The in-memory change is already live."""
