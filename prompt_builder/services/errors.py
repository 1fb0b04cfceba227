"""Exception hierarchy shared by the configuration and history stores."""

from __future__ import annotations


class PromptBuilderError(RuntimeError):
    """Base class for every error raised by the persistence services."""


class NotFoundError(PromptBuilderError, LookupError):
    """Raised when a section, item, history id or image path does not exist."""


class ValidationError(PromptBuilderError, ValueError):
    """Raised when caller supplied data is rejected before touching disk."""


class StorageError(PromptBuilderError):
    """Raised when reading, writing or renaming a backing file fails."""

    def __init__(self, message: str, path: object | None = None):
        if path is not None:
            message = f"{message}: {path}"
        super().__init__(message)
        self.path = path


class LockUnavailableError(PromptBuilderError):
    """Raised when a store lock cannot be acquired for a request."""
