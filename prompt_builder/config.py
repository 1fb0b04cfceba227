import os
from pathlib import Path

from .services.history_store import MAX_IMAGE_BYTES

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_FILE_NAME = "config.txt"

CONFIG_PATH_ENV = "PROMPT_BUILDER_CONFIG"
HISTORY_DIR_ENV = "PROMPT_BUILDER_HISTORY_DIR"
TRACE_ENV = "PROMPT_BUILDER_TRACE"


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _config_candidates(base_dir: Path) -> list[Path]:
    return [base_dir / CONFIG_FILE_NAME, base_dir / "config" / CONFIG_FILE_NAME]


def get_base_dir() -> Path:
    """Install directory, or the working directory if only it has a config."""

    for candidate in (BASE_DIR, Path.cwd()):
        if any(path.exists() for path in _config_candidates(candidate)):
            return candidate
    return BASE_DIR


def resolve_config_path(raw: str | None, base_dir: Path) -> Path:
    """Absolute overrides are used as-is; relative ones resolve against the CWD."""

    if raw and raw.strip():
        path = Path(raw.strip())
        return path if path.is_absolute() else Path.cwd() / path

    for candidate in _config_candidates(base_dir):
        if candidate.exists():
            return candidate
    return base_dir / CONFIG_FILE_NAME


class Config:
    """Base configuration shared across environments."""

    LOCK_TIMEOUT_SEC = float(os.environ.get("PROMPT_BUILDER_LOCK_TIMEOUT", "10"))
    MAX_CONTENT_LENGTH = MAX_IMAGE_BYTES + 200_000
    CORS_ORIGINS = ["null", r"http://127\.0\.0\.1:\d+", r"http://localhost:\d+"]
    JSON_SORT_KEYS = False


class TestConfig(Config):
    TESTING = True
    TRACE_ENABLED = False
    LOCK_TIMEOUT_SEC = 1.0
