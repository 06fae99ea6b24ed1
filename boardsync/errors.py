"""
Error taxonomy for the board sync stack.

A column or task id pointing at a missing document is not an error: the
view renders it as nothing.
"""


class BoardSyncError(Exception):
    """Base class for all boardsync errors."""


class Unauthenticated(BoardSyncError):
    """Raised when an operation needs an identity and none is active."""


class NotFound(BoardSyncError):
    """Raised by updates/deletes that require the target document to exist."""

    def __init__(self, path: str):
        super().__init__(f"Document not found: {path}")
        self.path = path


class AlreadyExists(BoardSyncError):
    """Raised by create_document when the document is already present."""

    def __init__(self, path: str):
        super().__init__(f"Document already exists: {path}")
        self.path = path


class TransientNetworkError(BoardSyncError):
    """Store temporarily unreachable. Callers rely on redelivery, not retries."""


class UnknownReference(BoardSyncError, KeyError):
    """The UI referenced a column or task id the view state does not know."""

    def __str__(self):
        return Exception.__str__(self)


class ConfigError(BoardSyncError):
    """Raised when configuration is invalid or incomplete."""
