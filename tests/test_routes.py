import io
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from prompt_builder import create_app
from prompt_builder.config import TestConfig
from prompt_builder.coordinator import EXTENSION_KEY
from prompt_builder.services.errors import LockUnavailableError
from prompt_builder.services.renderer import NO_SELECTION
from prompt_builder.shell import NullShell


CONFIG_TEXT = """
[settings]
confirm_delete = false

[[sections]]
name = "prompt"
label = "Prompt"

[[sections.items]]
key = "subject"
label = "Subject"
choices = ["robot", "cat"]

[[sections.items]]
key = "style"
label = "Style"
choices = ["watercolor"]
template = "in {value} style"

[[sections]]
name = "scene"
label = "Scene"

[[sections.items]]
key = "place"
label = "Place"
choices = ["forest"]
"""


class RecordingShell(NullShell):
    def __init__(self):
        self.opened = []

    def open_path(self, path):
        self.opened.append(path)


@pytest.fixture
def shell():
    return RecordingShell()


@pytest.fixture
def app_instance(tmp_path, shell):
    config_path = tmp_path / "config.txt"
    config_path.write_text(CONFIG_TEXT, encoding="utf-8")
    app = create_app(
        TestConfig,
        overrides={"PROMPT_CONFIG_PATH": str(config_path), "HISTORY_DIR": str(tmp_path / "history")},
        shell=shell,
    )
    return app


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


def _row(snapshot, item_id):
    return next(row for row in snapshot["rows"] if row["item_id"] == item_id)


def _copy_and_get_id(app_instance, client, prompt):
    response = client.post("/app/copy", json={"prompt": prompt})
    assert response.get_json() == {"ok": True, "skipped": False}
    with app_instance.extensions[EXTENSION_KEY].history() as history:
        return history.entries()[-1].id


def test_index_and_ping(client):
    assert client.get("/").status_code == 200
    assert b"/app/init" in client.get("/").data
    assert client.get("/ping").get_json() == {"ok": True}


def test_init_returns_rows_and_settings(client):
    data = client.get("/app/init").get_json()

    assert data["ok"] is True
    assert [row["item_id"] for row in data["rows"]] == ["prompt:subject", "prompt:style", "scene:place"]
    subject = _row(data, "prompt:subject")
    assert subject["section_label"] == "Prompt"
    assert subject["choices"] == [NO_SELECTION, "robot", "cat"]
    assert subject["selected"] == NO_SELECTION
    assert subject["free_text"] == ""
    assert data["preview"] == ""
    assert data["confirm_delete"] is False
    assert data["settings"]["history_max_entries"] == 300


def test_select_free_text_and_reset_flow(client):
    data = client.post("/app/combo-change", json={"item_id": "prompt:subject", "selected": "robot"}).get_json()
    assert data["preview"] == "[Subject]：robot"

    data = client.post(
        "/app/free-confirm",
        json={"item_id": "prompt:subject", "selected": "robot", "value": " blue robot "},
    ).get_json()
    subject = _row(data, "prompt:subject")
    assert data["preview"] == "[Subject]：blue robot"
    assert subject["choices"] == [NO_SELECTION, "robot", "cat", "blue robot"]
    assert subject["selected"] == "blue robot"
    assert subject["free_text"] == "blue robot"

    data = client.post("/app/combo-change", json={"item_id": "prompt:style", "selected": "watercolor"}).get_json()
    assert data["preview"] == "[Subject]：blue robot\n[Style]：watercolor"

    data = client.post("/app/reset", json={}).get_json()
    assert data["preview"] == ""
    assert _row(data, "prompt:subject")["selected"] == NO_SELECTION


def test_reset_single_section(client):
    client.post("/app/combo-change", json={"item_id": "prompt:subject", "selected": "cat"})
    client.post("/app/combo-change", json={"item_id": "scene:place", "selected": "forest"})

    data = client.post("/app/reset", json={"section": "prompt"}).get_json()

    assert data["preview"] == "[Place]：forest"


def test_blank_free_text_keeps_selection(client):
    client.post("/app/free-confirm", json={"item_id": "prompt:subject", "selected": "cat", "value": "big cat"})

    data = client.post(
        "/app/free-confirm",
        json={"item_id": "prompt:subject", "selected": "cat", "value": "  "},
    ).get_json()

    subject = _row(data, "prompt:subject")
    assert subject["selected"] == "cat"
    assert subject["free_text"] == ""


def test_unknown_selection_becomes_sentinel(client):
    data = client.post("/app/combo-change", json={"item_id": "prompt:subject", "selected": "dragon"}).get_json()

    assert _row(data, "prompt:subject")["selected"] == NO_SELECTION


def test_delete_choice_clears_selection(client):
    client.post("/app/free-confirm", json={"item_id": "prompt:subject", "selected": "robot", "value": "tiny robot"})

    data = client.post("/app/delete-choice", json={"item_id": "prompt:subject", "selected": "tiny robot"}).get_json()

    subject = _row(data, "prompt:subject")
    assert "tiny robot" not in subject["choices"]
    assert subject["selected"] == NO_SELECTION
    assert subject["free_text"] == ""


def test_invalid_item_requests(client):
    response = client.post("/app/combo-change", json={"item_id": "no-colon", "selected": "x"})
    assert response.status_code == 400
    assert response.get_json()["ok"] is False

    response = client.post("/app/combo-change", json={"item_id": "prompt:missing", "selected": "x"})
    assert response.status_code == 404

    response = client.post("/app/delete-choice", json={"item_id": "prompt:missing", "selected": "x"})
    assert response.status_code == 404


def test_copy_is_debounced_and_bumps_revision(client):
    assert client.get("/app/history-revision").get_json()["revision"] == 0

    assert client.post("/app/copy", json={"prompt": "a cat"}).get_json() == {"ok": True, "skipped": False}
    assert client.post("/app/copy", json={"prompt": "a cat"}).get_json() == {"ok": True, "skipped": True}
    assert client.post("/app/copy", json={"prompt": " "}).get_json() == {"ok": True, "skipped": True}

    assert client.get("/app/history-revision").get_json()["revision"] == 1


def test_open_history(client, shell):
    response = client.post("/app/open-history", json={})
    assert response.status_code == 404

    client.post("/app/copy", json={"prompt": "a cat"})
    response = client.post("/app/open-history", json={})

    assert response.get_json() == {"ok": True}
    assert [path.name for path in shell.opened] == ["History.html"]


def test_history_update_and_delete(app_instance, client):
    history_id = _copy_and_get_id(app_instance, client, "first draft")

    response = client.post("/update", json={"history_id": history_id, "prompt": "  final  "})
    assert response.get_json() == {"ok": True, "prompt": "final"}
    assert client.get(f"/history/{history_id}").get_json()["entry"]["prompt"] == "final"

    assert client.post("/update", json={"history_id": history_id, "prompt": ""}).status_code == 400
    assert client.post("/delete", json={}).status_code == 400
    assert client.post("/delete", json={"history_id": history_id}).get_json() == {"ok": True}
    assert client.post("/delete", json={"history_id": history_id}).status_code == 404
    assert client.get(f"/history/{history_id}").status_code == 404


def test_upload_and_read_image(app_instance, client, tmp_path):
    history_id = _copy_and_get_id(app_instance, client, "with picture")

    response = client.post(
        "/upload",
        data={"history_id": history_id, "file": (io.BytesIO(b"\x89PNG-data"), "shot.png")},
        content_type="multipart/form-data",
    )
    image_path = response.get_json()["image_path"]
    assert image_path.startswith("images/")
    assert image_path in (tmp_path / "history" / "History.html").read_text(encoding="utf-8")

    response = client.get("/image", query_string={"path": image_path})
    assert response.status_code == 200
    assert response.data == b"\x89PNG-data"
    assert response.mimetype == "image/png"


def test_upload_rejections(app_instance, client):
    history_id = _copy_and_get_id(app_instance, client, "prompt")

    response = client.post(
        "/upload",
        data={"history_id": history_id, "file": (io.BytesIO(b"GIF89a"), "anim.gif")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400

    response = client.post(
        "/upload",
        data={"history_id": "20000101_000000_0001", "file": (io.BytesIO(b"data"), "a.png")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 404

    response = client.post("/upload", data={"history_id": history_id}, content_type="multipart/form-data")
    assert response.status_code == 400


@pytest.mark.parametrize("bad_path", ["../secret.txt", "/etc/passwd", "history.json"])
def test_image_path_is_confined(client, bad_path):
    response = client.get("/image", query_string={"path": bad_path})

    assert response.status_code == 400


def test_cors_allows_loopback_origins(client):
    response = client.get("/ping", headers={"Origin": "http://127.0.0.1:5000"})
    assert response.headers.get("Access-Control-Allow-Origin") == "http://127.0.0.1:5000"

    response = client.get("/ping", headers={"Origin": "https://example.com"})
    assert "Access-Control-Allow-Origin" not in response.headers


def test_store_errors_map_to_json_500(app_instance, client, monkeypatch):
    coordinator = app_instance.extensions[EXTENSION_KEY]

    def locked_out(prompt):
        raise LockUnavailableError("history store lock error")

    monkeypatch.setattr(coordinator, "copy_prompt", locked_out)
    response = client.post("/app/copy", json={"prompt": "a cat"})

    assert response.status_code == 500
    assert response.get_json() == {"ok": False, "error": "history store lock error"}
