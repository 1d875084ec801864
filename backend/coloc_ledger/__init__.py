from __future__ import annotations

from typing import Any, Mapping, Optional

from flask import Flask
from flask_cors import CORS

from coloc_ledger.api.routes import MEMORY_REPO_KEY, api_bp
from coloc_ledger.config import Config
from coloc_ledger.db.memory import InMemoryLedgerRepository
from coloc_ledger.logging_config import configure_logging


def create_app(config: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    configure_logging(app.config["LOG_LEVEL"], json=app.config["LOG_JSON"])
    CORS(app)  # ok for MVP; tighten later

    if not app.config.get("DATABASE_URL"):
        # no database configured: keep the ledger in process memory
        app.extensions[MEMORY_REPO_KEY] = InMemoryLedgerRepository()

    app.register_blueprint(api_bp)
    return app
