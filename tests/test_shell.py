import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from prompt_builder import shell
from prompt_builder.shell import BrowserShell


@pytest.fixture
def opened(monkeypatch):
    calls = []

    def fake_open(url, new=0):
        calls.append((url, new))
        return True

    monkeypatch.setattr(shell.webbrowser, "open", fake_open)
    return calls


def test_browser_clipboard_only_logs(opened, caplog):
    with caplog.at_level("DEBUG", logger="prompt_builder.shell"):
        BrowserShell().set_clipboard_text("a cat")

    assert opened == []
    assert "Clipboard handled by the page (5 chars)" in caplog.text


def test_browser_open_path_uses_file_uri(opened, tmp_path):
    page = tmp_path / "History.html"
    page.write_text("<html></html>", encoding="utf-8")

    BrowserShell().open_path(page)

    assert opened == [(page.resolve().as_uri(), 2)]


def test_browser_open_path_without_browser(monkeypatch, tmp_path):
    monkeypatch.setattr(shell.webbrowser, "open", lambda url, new=0: False)

    with pytest.raises(OSError):
        BrowserShell().open_path(tmp_path / "History.html")
