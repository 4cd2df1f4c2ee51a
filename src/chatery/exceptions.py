"""Exception hierarchy for chatery.

Session-level operations never let these escape to their caller: they are
folded into a ``Result`` carrying the exception's ``code``. The HTTP layer
maps that code to a status.
"""


class ChateryError(Exception):
    """Base exception for all chatery errors."""

    code = "error"


class NotConnectedError(ChateryError):
    """Operation attempted while the session is not connected."""

    code = "not_connected"


class NotFoundError(ChateryError):
    """Unknown session or chat."""

    code = "not_found"


class ValidationError(ChateryError):
    """Malformed session id or missing required fields."""

    code = "validation"


class ConflictError(ChateryError):
    """Session already exists in a state that forbids the request."""

    code = "conflict"


class TransportError(ChateryError):
    """The transport collaborator failed a command."""

    code = "transport"


class PersistenceWarning(ChateryError):
    """Snapshot read or write failed. Logged, never escalated."""

    code = "persistence"
