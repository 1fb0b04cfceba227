from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from dotenv import load_dotenv
from werkzeug.exceptions import RequestEntityTooLarge

from .config import (
    BASE_DIR,
    CONFIG_PATH_ENV,
    HISTORY_DIR_ENV,
    TRACE_ENV,
    Config,
    env_flag,
    get_base_dir,
    resolve_config_path,
)
from .coordinator import EXTENSION_KEY, Coordinator
from .extensions import cors
from .services.config_store import ConfigStore
from .services.errors import LockUnavailableError, NotFoundError, StorageError, ValidationError
from .services.history_store import HistoryStore
from .shell import HostShell

load_dotenv(BASE_DIR / ".env")

LOGGER_NAME = "prompt_builder"


def create_app(
    config_class: type[Config] = Config,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    shell: Optional[HostShell] = None,
) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    if not app.config.get("PROMPT_CONFIG_PATH"):
        app.config["PROMPT_CONFIG_PATH"] = str(
            resolve_config_path(os.environ.get(CONFIG_PATH_ENV), get_base_dir())
        )
    if not app.config.get("HISTORY_DIR"):
        env_history_dir = os.environ.get(HISTORY_DIR_ENV)
        app.config["HISTORY_DIR"] = env_history_dir or str(Path(app.config["PROMPT_CONFIG_PATH"]).parent)
    if "TRACE_ENABLED" not in app.config:
        app.config["TRACE_ENABLED"] = env_flag(TRACE_ENV)

    configure_logging(app)
    register_extensions(app)
    register_stores(app, shell)
    register_blueprints(app)
    register_error_handlers(app)

    return app


def configure_logging(app: Flask) -> None:
    logger = logging.getLogger(LOGGER_NAME)
    if app.config["TRACE_ENABLED"]:
        logger.setLevel(logging.DEBUG)
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            logger.addHandler(handler)
    else:
        logger.setLevel(logging.INFO)


def register_extensions(app: Flask) -> None:
    cors.init_app(
        app,
        origins=app.config["CORS_ORIGINS"],
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )


def register_stores(app: Flask, shell: Optional[HostShell]) -> None:
    config_store = ConfigStore.load(app.config["PROMPT_CONFIG_PATH"])
    history_store = HistoryStore(app.config["HISTORY_DIR"], config_store.history_max_entries)
    app.extensions[EXTENSION_KEY] = Coordinator(
        config_store,
        history_store,
        shell=shell,
        lock_timeout=app.config["LOCK_TIMEOUT_SEC"],
    )


def register_blueprints(app: Flask) -> None:
    from .history import bp as history_bp
    from .main import bp as main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(history_bp)


def register_error_handlers(app: Flask) -> None:
    def _error(message: str, status: int):
        return jsonify({"ok": False, "error": message}), status

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return _error(str(exc), 400)

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError):
        return _error(str(exc), 404)

    @app.errorhandler(StorageError)
    def handle_storage_error(exc: StorageError):
        app.logger.error("Storage failure: %s", exc)
        return _error(str(exc), 500)

    @app.errorhandler(LockUnavailableError)
    def handle_lock_error(exc: LockUnavailableError):
        app.logger.error("Lock unavailable: %s", exc)
        return _error(str(exc), 500)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc: RequestEntityTooLarge):
        return _error("file size exceeds 20MB", 413)
