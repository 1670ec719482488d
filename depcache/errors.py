"""Exceptions raised by depcache."""

from typing import Optional


class DepCacheError(Exception):
    """Base class for all depcache errors."""


class ConnectionUnavailable(DepCacheError):
    """The pool is closed or exhausted, or the backend cannot be reached."""


class BackendCommandError(DepCacheError):
    """The backend rejected a command."""

    def __init__(self, message: str, command: Optional[str] = None):
        super().__init__(message)
        self.command = command


class TransactionAborted(BackendCommandError):
    """A queued command inside a MULTI/EXEC block failed.

    The first error reported by the backend is kept in ``__cause__``.
    """


class ScriptUnknownHandle(BackendCommandError):
    """EVALSHA was called with a handle the backend does not know (NOSCRIPT)."""


class ScriptRegistrationFailed(DepCacheError):
    """SCRIPT LOAD failed, the script cannot be executed."""
