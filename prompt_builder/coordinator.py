"""Shared per-application state used by the request handlers.

Each store sits behind its own lock. No handler holds both locks at once; the
copy action reads the debounce setting under the configuration lock and
releases it before taking the history lock.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from flask import current_app

from .services.config_store import ConfigStore
from .services.errors import LockUnavailableError
from .services.history_store import HistoryStore
from .shell import HostShell, NullShell

LOGGER = logging.getLogger(__name__)

EXTENSION_KEY = "coordinator"
DEFAULT_LOCK_TIMEOUT_SEC = 10.0


class Coordinator:
    def __init__(
        self,
        config_store: ConfigStore,
        history_store: HistoryStore,
        *,
        shell: Optional[HostShell] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.shell = shell or NullShell()
        self.lock_timeout = lock_timeout
        self._config_store = config_store
        self._history_store = history_store
        self._config_lock = threading.Lock()
        self._history_lock = threading.Lock()
        self._clock = clock
        self._revision = 0
        self._last_copy_prompt = ""
        self._last_copy_at: Optional[float] = None
        # Settings are never edited over HTTP, so these are read once.
        self.server_port = config_store.history_server_port
        self.history_confirm_delete = config_store.history_confirm_delete

    @contextmanager
    def config(self) -> Iterator[ConfigStore]:
        with self._locked(self._config_lock, "config"):
            yield self._config_store

    @contextmanager
    def history(self) -> Iterator[HistoryStore]:
        with self._locked(self._history_lock, "history"):
            yield self._history_store

    @property
    def revision(self) -> int:
        return self._revision

    def bump_revision(self) -> int:
        # Only called with the history lock held; readers go lock-free.
        self._revision += 1
        return self._revision

    def render_views(self, history: HistoryStore) -> None:
        history.regenerate_views(self.server_port, confirm_delete=self.history_confirm_delete)

    def regenerate_views(self) -> None:
        with self.history() as history:
            self.render_views(history)

    def copy_prompt(self, prompt: str) -> bool:
        """Record a copy of ``prompt``; returns ``False`` when it is skipped.

        A repeat of the last accepted prompt is skipped while fewer than
        ``copy_debounce_sec`` seconds have passed since it was accepted.
        """

        cleaned = (prompt or "").strip()
        if not cleaned:
            return False

        with self.config() as config:
            debounce = config.copy_debounce_sec

        with self.history() as history:
            now = self._clock()
            if (
                cleaned == self._last_copy_prompt
                and self._last_copy_at is not None
                and debounce > now - self._last_copy_at
            ):
                LOGGER.debug("Skipped duplicate copy within %.2fs", debounce)
                return False

            self.shell.set_clipboard_text(cleaned)
            history.append(cleaned)
            self.render_views(history)
            self._last_copy_prompt = cleaned
            self._last_copy_at = now
            self.bump_revision()
        return True

    @contextmanager
    def _locked(self, lock: threading.Lock, name: str) -> Iterator[None]:
        if not lock.acquire(timeout=self.lock_timeout):
            raise LockUnavailableError(f"{name} store lock error")
        try:
            yield
        finally:
            lock.release()


def get_coordinator() -> Coordinator:
    return current_app.extensions[EXTENSION_KEY]
