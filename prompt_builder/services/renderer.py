from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

NO_SELECTION = "指定なし"


@dataclass
class RenderEntry:
    label: str
    selected: str
    free_text: str = ""


def render_prompt(entries: Iterable[RenderEntry]) -> str:
    """Build the prompt text, one ``[label]：value`` line per filled item.

    Confirmed free text wins over the selected choice. Items left on
    :data:`NO_SELECTION` are omitted.
    """

    lines = []
    for entry in entries:
        free_text = (entry.free_text or "").strip()
        value = free_text or (entry.selected or "").strip()
        if not value or value == NO_SELECTION:
            continue
        lines.append(f"[{entry.label}]：{value}")
    return "\n".join(lines)
