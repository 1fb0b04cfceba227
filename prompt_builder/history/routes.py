from __future__ import annotations

from typing import Any, Dict

from flask import Response, current_app, jsonify, request

from ..coordinator import get_coordinator
from ..services.errors import NotFoundError, ValidationError
from . import bp


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _history_id(value: Any) -> str:
    history_id = value.strip() if isinstance(value, str) else ""
    if not history_id:
        raise ValidationError("history_id is required")
    return history_id


@bp.route("/history/<history_id>")
def history_entry(history_id: str):
    with get_coordinator().history() as history:
        entry = history.find(history_id)
    if entry is None:
        raise NotFoundError(f"history id not found: {history_id}")
    return jsonify({"ok": True, "entry": entry.to_dict()})


@bp.route("/image")
def image():
    with get_coordinator().history() as history:
        data, content_type = history.read_image(request.args.get("path", ""))
    return Response(data, mimetype=content_type)


@bp.route("/delete", methods=["POST"])
def delete():
    history_id = _history_id(_payload().get("history_id"))

    coordinator = get_coordinator()
    with coordinator.history() as history:
        if not history.delete(history_id):
            raise NotFoundError(f"history id not found: {history_id}")
        coordinator.render_views(history)

    current_app.logger.info("Deleted history entry %s", history_id)
    return jsonify({"ok": True})


@bp.route("/update", methods=["POST"])
def update():
    payload = _payload()
    history_id = _history_id(payload.get("history_id"))
    prompt = payload.get("prompt")
    cleaned = prompt.strip() if isinstance(prompt, str) else ""
    if not cleaned:
        raise ValidationError("prompt is empty")

    coordinator = get_coordinator()
    with coordinator.history() as history:
        if not history.update_prompt(history_id, cleaned):
            raise NotFoundError(f"history id not found: {history_id}")
        coordinator.render_views(history)

    return jsonify({"ok": True, "prompt": cleaned})


@bp.route("/upload", methods=["POST"])
def upload():
    history_id = _history_id(request.form.get("history_id"))
    upload_file = request.files.get("file")
    if upload_file is None or not upload_file.filename:
        raise ValidationError("file is required")

    data = upload_file.read()
    coordinator = get_coordinator()
    with coordinator.history() as history:
        image_path = history.append_image(history_id, upload_file.filename, data)
        coordinator.render_views(history)

    current_app.logger.info("Attached %s to history entry %s", image_path, history_id)
    return jsonify({"ok": True, "image_path": image_path})
