"""Persistence and rendering helpers behind the HTTP layer."""

from __future__ import annotations

from .config_store import ConfigStore, ItemConfig, SectionConfig  # noqa: F401
from .errors import (  # noqa: F401
    LockUnavailableError,
    NotFoundError,
    PromptBuilderError,
    StorageError,
    ValidationError,
)
from .history_store import HistoryEntry, HistoryStore  # noqa: F401
from .renderer import NO_SELECTION, RenderEntry, render_prompt  # noqa: F401

__all__ = [
    "ConfigStore",
    "HistoryEntry",
    "HistoryStore",
    "ItemConfig",
    "LockUnavailableError",
    "NO_SELECTION",
    "NotFoundError",
    "PromptBuilderError",
    "RenderEntry",
    "SectionConfig",
    "StorageError",
    "ValidationError",
    "render_prompt",
]
