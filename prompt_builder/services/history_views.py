"""Static HTML pages for the history log.

Pages are rendered with the package's Jinja templates outside of any Flask
request, because the store rewrites them after every mutation and at startup.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Iterable, Sequence

from jinja2 import Environment, PackageLoader, select_autoescape

if TYPE_CHECKING:  # pragma: no cover
    from .history_store import HistoryEntry

PAGE_TEMPLATE = "history/page.html"
REVISION_POLL_MS = 1000


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("prompt_builder", "templates"),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def build_history_page(
    entries: Iterable["HistoryEntry"],
    *,
    title: str,
    api_base: str,
    archive_date_keys: Sequence[str] = (),
    confirm_delete: bool = True,
    poll_revision: bool = False,
) -> str:
    ordered = sorted(entries, key=lambda entry: entry.id, reverse=True)
    cards = [
        {
            "id": entry.id,
            "ts": entry.ts,
            "prompt": entry.prompt,
            "image": entry.images[0] if entry.images else "",
        }
        for entry in ordered
    ]
    archive_links = [f"History_{date_key}.html" for date_key in archive_date_keys]
    return _environment().get_template(PAGE_TEMPLATE).render(
        title=title,
        entries=cards,
        api_base=api_base,
        archive_links=archive_links,
        confirm_delete=confirm_delete,
        poll_revision=poll_revision,
        poll_ms=REVISION_POLL_MS,
    )
