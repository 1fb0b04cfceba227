from __future__ import annotations

from typing import Any, Dict, Tuple

from flask import current_app, jsonify, render_template, request

from ..coordinator import get_coordinator
from ..services.config_store import ConfigStore, ItemConfig
from ..services.errors import NotFoundError, ValidationError
from ..services.renderer import NO_SELECTION, RenderEntry, render_prompt
from . import bp


def build_ui_snapshot(config: ConfigStore) -> Dict[str, Any]:
    """Rows, preview text and delete confirmation flag for the main UI."""

    rows = []
    render_entries = []
    seen_sections = set()
    for section in config.sections():
        if section.name in seen_sections:
            continue
        seen_sections.add(section.name)

        for item in config.get_items(section.name):
            selected, free_text = config.get_item_state(section.name, item.key)
            if selected not in item.choices:
                selected = NO_SELECTION
            render_entries.append(RenderEntry(label=item.label, selected=selected, free_text=free_text))
            rows.append(
                {
                    "item_id": item.item_id,
                    "section": section.name,
                    "section_label": section.label,
                    "label": item.label,
                    "choices": item.choices,
                    "allow_free_text": item.allow_free_text,
                    "selected": selected,
                    "free_text": free_text,
                }
            )

    return {
        "rows": rows,
        "preview": render_prompt(render_entries),
        "confirm_delete": config.confirm_delete,
    }


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key, "")
    return value if isinstance(value, str) else str(value or "")


def _split_item_id(item_id: str) -> Tuple[str, str]:
    section, sep, key = (item_id or "").partition(":")
    section, key = section.strip(), key.strip()
    if not sep or not section or not key:
        raise ValidationError("invalid item_id")
    return section, key


def _require_item(config: ConfigStore, section: str, key: str) -> ItemConfig:
    item = config.find_item(section, key)
    if item is None:
        raise NotFoundError("item not found")
    return item


def _valid_selection(item: ItemConfig, selected: str) -> str:
    selected = selected.strip()
    return selected if selected and selected in item.choices else NO_SELECTION


def _snapshot_response(config: ConfigStore):
    return jsonify({"ok": True, **build_ui_snapshot(config)})


@bp.route("/")
def index():
    return render_template("main/index.html")


@bp.route("/ping")
def ping():
    return jsonify({"ok": True})


@bp.route("/app/init")
def app_init():
    with get_coordinator().config() as config:
        payload = build_ui_snapshot(config)
        payload["settings"] = config.settings_snapshot()
    return jsonify({"ok": True, **payload})


@bp.route("/app/history-revision")
def history_revision():
    return jsonify({"ok": True, "revision": get_coordinator().revision})


@bp.route("/app/combo-change", methods=["POST"])
def combo_change():
    payload = _payload()
    section, key = _split_item_id(_text(payload, "item_id"))

    with get_coordinator().config() as config:
        item = _require_item(config, section, key)
        config.set_item_state(section, key, _valid_selection(item, _text(payload, "selected")), "")
        return _snapshot_response(config)


@bp.route("/app/free-confirm", methods=["POST"])
def free_confirm():
    payload = _payload()
    section, key = _split_item_id(_text(payload, "item_id"))
    incoming = _text(payload, "value").strip()

    with get_coordinator().config() as config:
        item = _require_item(config, section, key)
        if not incoming or incoming == NO_SELECTION:
            config.set_item_state(section, key, _valid_selection(item, _text(payload, "selected")), "")
        else:
            config.add_choice(section, key, incoming)
            config.set_item_state(section, key, incoming, incoming)
        return _snapshot_response(config)


@bp.route("/app/delete-choice", methods=["POST"])
def delete_choice():
    payload = _payload()
    section, key = _split_item_id(_text(payload, "item_id"))
    selected = _text(payload, "selected").strip()

    with get_coordinator().config() as config:
        if selected and selected != NO_SELECTION and config.remove_choice(section, key, selected):
            _, free_text = config.get_item_state(section, key)
            config.set_item_state(section, key, NO_SELECTION, "" if free_text == selected else free_text)
        return _snapshot_response(config)


@bp.route("/app/reset", methods=["POST"])
def reset():
    section = _text(_payload(), "section").strip()

    with get_coordinator().config() as config:
        names = [section] if section else [entry.name for entry in config.sections()]
        for name in dict.fromkeys(names):
            config.clear_section_state(name)
        return _snapshot_response(config)


@bp.route("/app/copy", methods=["POST"])
def copy_prompt():
    accepted = get_coordinator().copy_prompt(_text(_payload(), "prompt"))
    return jsonify({"ok": True, "skipped": not accepted})


@bp.route("/app/open-history", methods=["POST"])
def open_history():
    coordinator = get_coordinator()
    with coordinator.history() as history:
        path = history.active_page_path

    if not path.exists():
        return jsonify({"ok": False, "error": f"History.html not found: {path}"}), 404

    try:
        coordinator.shell.open_path(path)
    except OSError as exc:
        current_app.logger.exception("Unable to open %s", path)
        return jsonify({"ok": False, "error": f"open history failed: {exc}"}), 500
    return jsonify({"ok": True})
