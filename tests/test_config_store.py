import sys
import tomllib
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from prompt_builder.services.config_store import (
    DEFAULT_COPY_DEBOUNCE_SEC,
    DEFAULT_HISTORY_MAX_ENTRIES,
    DEFAULT_SERVER_PORT,
    ConfigStore,
    normalize_choices,
)
from prompt_builder.services.errors import NotFoundError, StorageError
from prompt_builder.services.renderer import NO_SELECTION


SAMPLE_CONFIG = """
[[sections]]
name = "prompt"
label = "Prompt"

[[sections.items]]
key = "subject"
label = "Subject"
choices = ["robot", "", "robot", "cat", "指定なし"]

[[sections.items]]
key = "style"
choices = ["watercolor"]
allow_free_text = false

[settings]
confirm_delete = false
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def store(config_path):
    return ConfigStore.load(config_path)


def test_normalize_choices_puts_sentinel_first_and_dedupes():
    assert normalize_choices(["b", " ", "a", "b", NO_SELECTION, 3]) == [NO_SELECTION, "b", "a", "3"]
    assert normalize_choices(None) == [NO_SELECTION]
    assert normalize_choices("robot") == [NO_SELECTION]


def test_load_normalizes_items(store):
    items = store.get_items("prompt")

    assert [item.key for item in items] == ["subject", "style"]
    subject, style = items
    assert subject.choices == [NO_SELECTION, "robot", "cat"]
    assert subject.item_id == "prompt:subject"
    assert style.label == "style"
    assert style.allow_free_text is False
    assert style.template == "{value}"
    assert store.confirm_delete is False


def test_load_writes_settings_before_sections(store, config_path):
    text = config_path.read_text(encoding="utf-8")

    assert text.index("[settings]") < text.index("[[sections]]")


def test_load_is_idempotent(store, config_path):
    first = config_path.read_bytes()
    ConfigStore.load(config_path)

    assert config_path.read_bytes() == first


def test_settings_are_defaulted_and_clamped(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text(
        "[settings]\n"
        "copy_debounce_sec = -1\n"
        "history_server_port = 70000\n"
        "history_max_entries = 0\n"
        'delimiter = 5\n'
        'confirm_delete = "yes"\n',
        encoding="utf-8",
    )

    store = ConfigStore.load(path)

    assert store.copy_debounce_sec == DEFAULT_COPY_DEBOUNCE_SEC
    assert store.history_server_port == DEFAULT_SERVER_PORT
    assert store.history_max_entries == DEFAULT_HISTORY_MAX_ENTRIES
    assert store.delimiter == ", "
    assert store.confirm_delete is True
    assert store.settings_snapshot()["history_confirm_delete"] is True


def test_numeric_strings_are_accepted(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text('[settings]\ncopy_debounce_sec = "0.5"\nhistory_server_port = "4100"\n', encoding="utf-8")

    store = ConfigStore.load(path)

    assert store.copy_debounce_sec == 0.5
    assert store.history_server_port == 4100


def test_legacy_app_table_is_migrated(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text("[app]\nhistory_max_entries = 5\n", encoding="utf-8")

    store = ConfigStore.load(path)
    document = tomllib.loads(path.read_text(encoding="utf-8"))

    assert store.history_max_entries == 5
    assert "app" not in document
    assert document["settings"]["history_max_entries"] == 5


def test_missing_config_raises_storage_error(tmp_path):
    with pytest.raises(StorageError):
        ConfigStore.load(tmp_path / "missing.txt")


def test_invalid_toml_raises_storage_error(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text("[[sections]\nname = ", encoding="utf-8")

    with pytest.raises(StorageError):
        ConfigStore.load(path)


def test_initialize_writes_starter_document_once(tmp_path):
    path = tmp_path / "nested" / "config.txt"

    assert ConfigStore.initialize(path) is True
    assert ConfigStore.initialize(path) is False

    store = ConfigStore.load(path)
    assert [section.name for section in store.sections()] == ["prompt"]
    assert store.find_item("prompt", "subject").choices == [NO_SELECTION, "robot", "cat"]


def test_add_and_remove_choice_persist(store, config_path):
    assert store.add_choice("prompt", "subject", "  dog ") is True
    assert store.add_choice("prompt", "subject", "dog") is False
    assert store.add_choice("prompt", "subject", NO_SELECTION) is False
    assert store.add_choice("prompt", "subject", "   ") is False

    reloaded = ConfigStore.load(config_path)
    assert reloaded.find_item("prompt", "subject").choices == [NO_SELECTION, "robot", "cat", "dog"]

    assert store.remove_choice("prompt", "subject", "robot") is True
    assert store.remove_choice("prompt", "subject", "robot") is False
    assert store.remove_choice("prompt", "subject", NO_SELECTION) is False
    assert ConfigStore.load(config_path).find_item("prompt", "subject").choices == [NO_SELECTION, "cat", "dog"]


def test_choice_changes_on_unknown_item_raise(store):
    with pytest.raises(NotFoundError):
        store.add_choice("prompt", "missing", "value")
    with pytest.raises(NotFoundError):
        store.remove_choice("other", "subject", "robot")


def test_item_state_defaults_and_round_trip(store, config_path):
    assert store.get_item_state("prompt", "subject") == (NO_SELECTION, "")

    store.set_item_state("prompt", "subject", "  robot ", " blue robot ")
    assert store.get_item_state("prompt", "subject") == ("robot", "blue robot")

    store.set_item_state("prompt", "style", "", "")
    assert store.get_item_state("prompt", "style") == (NO_SELECTION, "")

    reloaded = ConfigStore.load(config_path)
    assert reloaded.get_item_state("prompt", "subject") == ("robot", "blue robot")


def test_clear_section_state(store):
    store.set_item_state("prompt", "subject", "cat", "")
    store.clear_section_state("prompt")

    assert store.get_item_state("prompt", "subject") == (NO_SELECTION, "")


def test_unknown_blocks_are_kept(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text('[extra]\nnote = "keep"\n\n[settings]\n', encoding="utf-8")

    ConfigStore.load(path)
    document = tomllib.loads(path.read_text(encoding="utf-8"))

    assert document["extra"] == {"note": "keep"}
    assert list(document)[0] == "settings"
