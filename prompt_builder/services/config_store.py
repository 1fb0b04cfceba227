"""TOML backed store for categories, choice lists and selection state.

The document is kept as the plain ``dict``/``list`` tree produced by
:mod:`tomllib`. Every load normalizes the tree in place and writes it back,
so a hand-edited or partially broken file heals on first read::

    [settings]          global settings, always the first block
    [[sections]]        ordered categories, each with [[sections.items]]
    [state.<section>]   "<key>_selected" / "<key>_free_text" pairs

Blocks the store does not know about are kept after ``state``.
"""

from __future__ import annotations

import logging
import math
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import tomli_w

from .errors import NotFoundError, StorageError
from .renderer import NO_SELECTION
from .storage import atomic_write_text

LOGGER = logging.getLogger(__name__)

DEFAULT_SECTION_NAME = "prompt"
DEFAULT_DELIMITER = ", "
DEFAULT_COPY_DEBOUNCE_SEC = 2.0
DEFAULT_SERVER_PORT = 3000
DEFAULT_HISTORY_MAX_ENTRIES = 300
DEFAULT_TEMPLATE = "{value}"

SETTINGS_KEY = "settings"
SECTIONS_KEY = "sections"
STATE_KEY = "state"
LEGACY_SETTINGS_KEY = "app"

_BLOCK_ORDER = (SETTINGS_KEY, SECTIONS_KEY, STATE_KEY)

STARTER_DOCUMENT: Dict[str, Any] = {
    SETTINGS_KEY: {},
    SECTIONS_KEY: [
        {
            "name": DEFAULT_SECTION_NAME,
            "label": "Prompt",
            "items": [
                {"key": "subject", "label": "Subject", "choices": ["robot", "cat"]},
                {"key": "style", "label": "Style", "choices": ["watercolor", "photograph"]},
                {"key": "composition", "label": "Composition", "choices": ["close-up", "wide shot"]},
            ],
        }
    ],
    STATE_KEY: {},
}


@dataclass
class SectionConfig:
    name: str
    label: str


@dataclass
class ItemConfig:
    section_name: str
    key: str
    label: str
    choices: List[str] = field(default_factory=list)
    allow_free_text: bool = True
    template: str = DEFAULT_TEMPLATE

    @property
    def item_id(self) -> str:
        return f"{self.section_name}:{self.key}"


class ConfigStore:
    def __init__(self, path: Path, document: Dict[str, Any]):
        self.path = Path(path)
        self._document = document

    @classmethod
    def load(cls, path: Path | str) -> "ConfigStore":
        """Read, normalize and re-save the document at ``path``."""

        path = Path(path)
        if not path.exists():
            raise StorageError("config file not found", path)
        try:
            text = path.read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise StorageError("failed to read config", path) from exc
        try:
            document = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise StorageError(f"failed to parse TOML ({exc})", path) from exc

        store = cls(path, document)
        store._normalize()
        store.save()
        LOGGER.debug("Loaded configuration from %s", path)
        return store

    @classmethod
    def initialize(cls, path: Path | str) -> bool:
        """Write a starter document when ``path`` does not exist yet."""

        path = Path(path)
        if path.exists():
            return False
        atomic_write_text(path, tomli_w.dumps(STARTER_DOCUMENT))
        LOGGER.info("Created starter configuration at %s", path)
        return True

    def save(self) -> None:
        atomic_write_text(self.path, tomli_w.dumps(self._ordered_document()))

    # settings -----------------------------------------------------------

    @property
    def delimiter(self) -> str:
        return _delimiter(self._settings())

    @property
    def confirm_delete(self) -> bool:
        return _flag(self._settings(), "confirm_delete")

    @property
    def copy_debounce_sec(self) -> float:
        return _copy_debounce_sec(self._settings())

    @property
    def history_server_port(self) -> int:
        return _server_port(self._settings())

    @property
    def history_confirm_delete(self) -> bool:
        return _flag(self._settings(), "history_confirm_delete")

    @property
    def history_max_entries(self) -> int:
        return _history_max_entries(self._settings())

    def settings_snapshot(self) -> Dict[str, Any]:
        return {
            "delimiter": self.delimiter,
            "confirm_delete": self.confirm_delete,
            "copy_debounce_sec": self.copy_debounce_sec,
            "history_server_port": self.history_server_port,
            "history_confirm_delete": self.history_confirm_delete,
            "history_max_entries": self.history_max_entries,
        }

    # sections and items -------------------------------------------------

    def sections(self) -> List[SectionConfig]:
        result = []
        for section in self._document.get(SECTIONS_KEY) or []:
            if not isinstance(section, dict):
                continue
            name = section.get("name")
            if not isinstance(name, str) or not name:
                continue
            label = section.get("label")
            result.append(SectionConfig(name=name, label=label if isinstance(label, str) else name))
        return result

    def get_items(self, section_name: str) -> List[ItemConfig]:
        items: List[ItemConfig] = []
        for section in self._document.get(SECTIONS_KEY) or []:
            if not isinstance(section, dict) or section.get("name") != section_name:
                continue
            section_items = section.get("items")
            if not isinstance(section_items, list):
                continue
            for item in section_items:
                if not isinstance(item, dict):
                    continue
                key = _to_text(item.get("key", "")).strip()
                if not key:
                    continue
                label = item.get("label")
                template = item.get("template")
                allow_free_text = item.get("allow_free_text")
                items.append(
                    ItemConfig(
                        section_name=section_name,
                        key=key,
                        label=label if isinstance(label, str) else key,
                        choices=normalize_choices(item.get("choices")),
                        allow_free_text=allow_free_text if isinstance(allow_free_text, bool) else True,
                        template=template if isinstance(template, str) else DEFAULT_TEMPLATE,
                    )
                )
        return items

    def find_item(self, section_name: str, key: str) -> Optional[ItemConfig]:
        for item in self.get_items(section_name):
            if item.key == key:
                return item
        return None

    def add_choice(self, section_name: str, key: str, value: str) -> bool:
        normalized = (value or "").strip()
        if not normalized or normalized == NO_SELECTION:
            return False

        item = self._require_item_table(section_name, key)
        choices = normalize_choices(item.get("choices"))
        if normalized in choices:
            return False

        choices.append(normalized)
        item["choices"] = choices
        self.save()
        return True

    def remove_choice(self, section_name: str, key: str, value: str) -> bool:
        normalized = (value or "").strip()
        if not normalized or normalized == NO_SELECTION:
            return False

        item = self._require_item_table(section_name, key)
        choices = normalize_choices(item.get("choices"))
        if normalized not in choices:
            return False

        item["choices"] = [choice for choice in choices if choice != normalized]
        self.save()
        return True

    # selection state ----------------------------------------------------

    def get_item_state(self, section_name: str, key: str) -> Tuple[str, str]:
        state = self._document.get(STATE_KEY)
        section_state = state.get(section_name) if isinstance(state, dict) else None
        if not isinstance(section_state, dict):
            section_state = {}

        selected = section_state.get(f"{key}_selected")
        selected = selected.strip() if isinstance(selected, str) else ""
        free_text = section_state.get(f"{key}_free_text")
        free_text = free_text.strip() if isinstance(free_text, str) else ""
        return selected or NO_SELECTION, free_text

    def set_item_state(self, section_name: str, key: str, selected: str, free_text: str) -> None:
        selected_value = (selected or "").strip() or NO_SELECTION
        section_state = _ensure_table(_ensure_table(self._document, STATE_KEY), section_name)
        section_state[f"{key}_selected"] = selected_value
        section_state[f"{key}_free_text"] = (free_text or "").strip()
        self.save()

    def clear_section_state(self, section_name: str) -> None:
        _ensure_table(self._document, STATE_KEY)[section_name] = {}
        self.save()

    # internals ----------------------------------------------------------

    def _settings(self) -> Dict[str, Any]:
        settings = self._document.get(SETTINGS_KEY)
        return settings if isinstance(settings, dict) else {}

    def _require_item_table(self, section_name: str, key: str) -> Dict[str, Any]:
        for section in _ensure_array(self._document, SECTIONS_KEY):
            if not isinstance(section, dict) or section.get("name") != section_name:
                continue
            items = section.get("items")
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict) and item.get("key") == key:
                    return item
        raise NotFoundError(f"item not found: {section_name}.{key}")

    def _normalize(self) -> None:
        document = self._document
        if SETTINGS_KEY not in document and isinstance(document.get(LEGACY_SETTINGS_KEY), dict):
            LOGGER.info("Migrating legacy [%s] table to [%s]", LEGACY_SETTINGS_KEY, SETTINGS_KEY)
            document[SETTINGS_KEY] = document.pop(LEGACY_SETTINGS_KEY)

        settings = _ensure_table(document, SETTINGS_KEY)
        settings["delimiter"] = _delimiter(settings)
        settings["confirm_delete"] = _flag(settings, "confirm_delete")
        settings["copy_debounce_sec"] = _copy_debounce_sec(settings)
        settings["history_server_port"] = _server_port(settings)
        settings["history_confirm_delete"] = _flag(settings, "history_confirm_delete")
        settings["history_max_entries"] = _history_max_entries(settings)

        sections = _ensure_array(document, SECTIONS_KEY)
        for index, section in enumerate(sections):
            if not isinstance(section, dict):
                section = sections[index] = {}
            _normalize_section(section)

        _ensure_table(document, STATE_KEY)
        self._document = self._ordered_document()

    def _ordered_document(self) -> Dict[str, Any]:
        ordered = {key: self._document[key] for key in _BLOCK_ORDER if key in self._document}
        # An empty array would be emitted as a root key ahead of [settings].
        if not ordered.get(SECTIONS_KEY):
            ordered.pop(SECTIONS_KEY, None)
            self._document.pop(SECTIONS_KEY, None)
        for key, value in self._document.items():
            if key not in ordered:
                ordered[key] = value
        return ordered


def normalize_choices(value: Any) -> List[str]:
    """Return ``value`` as a deduplicated choice list led by the sentinel."""

    choices: List[str] = [NO_SELECTION]
    if isinstance(value, list):
        for raw in value:
            text = _to_text(raw).strip()
            if text and text not in choices:
                choices.append(text)
    return choices


def _normalize_section(section: Dict[str, Any]) -> None:
    name = section.get("name")
    name = name.strip() if isinstance(name, str) else ""
    name = name or DEFAULT_SECTION_NAME
    section["name"] = name
    if not isinstance(section.get("label"), str):
        section["label"] = name

    items = _ensure_array(section, "items")
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            item = items[index] = {}
        key = _to_text(item["key"]).strip() if "key" in item else ""
        item["key"] = key
        if not isinstance(item.get("label"), str):
            item["label"] = key
        if not isinstance(item.get("allow_free_text"), bool):
            item["allow_free_text"] = True
        if not isinstance(item.get("template"), str):
            item["template"] = DEFAULT_TEMPLATE
        item["choices"] = normalize_choices(item.get("choices"))


def _ensure_table(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = parent[key] = {}
    return value


def _ensure_array(parent: Dict[str, Any], key: str) -> List[Any]:
    value = parent.get(key)
    if not isinstance(value, list):
        value = parent[key] = []
    return value


def _delimiter(settings: Dict[str, Any]) -> str:
    value = settings.get("delimiter")
    return value if isinstance(value, str) else DEFAULT_DELIMITER


def _flag(settings: Dict[str, Any], key: str) -> bool:
    value = settings.get(key)
    return value if isinstance(value, bool) else True


def _copy_debounce_sec(settings: Dict[str, Any]) -> float:
    value = _to_float(settings.get("copy_debounce_sec"))
    if value is None or value < 0:
        return DEFAULT_COPY_DEBOUNCE_SEC
    return value


def _server_port(settings: Dict[str, Any]) -> int:
    value = _to_int(settings.get("history_server_port"))
    if value is None or not 1 <= value <= 65535:
        return DEFAULT_SERVER_PORT
    return value


def _history_max_entries(settings: Dict[str, Any]) -> int:
    value = _to_int(settings.get("history_max_entries"))
    if value is None or value <= 0:
        return DEFAULT_HISTORY_MAX_ENTRIES
    return value


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return result if math.isfinite(result) else None


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
