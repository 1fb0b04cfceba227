"""Host integration points (window, file opening, clipboard)."""

from __future__ import annotations

import logging
import webbrowser
from abc import ABC, abstractmethod
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class HostShell(ABC):
    @abstractmethod
    def open_window(self, url: str) -> None:
        """Show the UI served at ``url``."""

    @abstractmethod
    def open_path(self, path: Path) -> None:
        """Open a local file with the user's default handler."""

    @abstractmethod
    def set_clipboard_text(self, text: str) -> None:
        """Place ``text`` on the system clipboard."""


class NullShell(HostShell):
    """Shell used for tests and headless runs; every call is a no-op."""

    def open_window(self, url: str) -> None:
        LOGGER.debug("open_window(%s) ignored", url)

    def open_path(self, path: Path) -> None:
        LOGGER.debug("open_path(%s) ignored", path)

    def set_clipboard_text(self, text: str) -> None:
        LOGGER.debug("set_clipboard_text ignored (%d chars)", len(text))


class BrowserShell(HostShell):
    """Shell backed by the default web browser.

    The UI page writes to the clipboard itself through the browser clipboard
    API, so :meth:`set_clipboard_text` only records the call.
    """

    def open_window(self, url: str) -> None:
        if not webbrowser.open(url, new=1):
            LOGGER.warning("No browser available to open %s", url)

    def open_path(self, path: Path) -> None:
        uri = Path(path).resolve().as_uri()
        if not webbrowser.open(uri, new=2):
            raise OSError(f"no browser available to open {path}")

    def set_clipboard_text(self, text: str) -> None:
        """Record the copy without touching the clipboard.

        A browser has no server-side clipboard. The page has already written
        ``text`` with ``navigator.clipboard`` before it posts ``/app/copy``,
        so writing it again from here is neither possible nor needed.
        """
        LOGGER.debug("Clipboard handled by the page (%d chars)", len(text))
