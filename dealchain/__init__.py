"""
Dealchain — Opportunity → Proposal → Contract → Engagement → Milestone core.
Flask Application Factory.

Usage:
    from dealchain import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config

    with app.app_context():
        from dealchain.services import proposal_negotiator
        proposal_negotiator.submit(opportunity_id, initiator_id, terms)
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate

from dealchain.config import config
from dealchain.models import db
from dealchain.logging_config import configure_logging

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def init_collaborators(app, *, party_resolver=None, dispatcher=None):
    """
    Register the external collaborators the core consumes.

    Args:
        party_resolver: object exposing ``resolve_party_role(party_id)``.
        dispatcher:     object exposing ``dispatch(event: dict)``.

    Either may be omitted to keep the currently registered one.
    """
    from dealchain.services.notification import LoggingDispatcher
    from dealchain.services.party_resolver import StaticPartyResolver

    ext = app.extensions.setdefault("dealchain", {})
    if party_resolver is not None:
        ext["party_resolver"] = party_resolver
    else:
        ext.setdefault("party_resolver", StaticPartyResolver({}))
    if dispatcher is not None:
        ext["dispatcher"] = dispatcher
    else:
        ext.setdefault("dispatcher", LoggingDispatcher())
    return ext


def create_app(config_name=None, *, party_resolver=None, dispatcher=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        party_resolver: Optional party/identity collaborator.
        dispatcher: Optional domain-event dispatcher.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # ProductionConfig validates required env vars in __init__
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── External collaborators ───────────────────────────────────────────
    init_collaborators(app, party_resolver=party_resolver, dispatcher=dispatcher)

    # ── Import all models so Alembic can detect them ─────────────────────
    from dealchain.models import scope as _scope_models              # noqa: F401
    from dealchain.models import opportunity as _opportunity_models  # noqa: F401
    from dealchain.models import proposal as _proposal_models        # noqa: F401
    from dealchain.models import contract as _contract_models        # noqa: F401
    from dealchain.models import engagement as _engagement_models    # noqa: F401
    from dealchain.models import milestone as _milestone_models      # noqa: F401
    from dealchain.models import event as _event_models              # noqa: F401

    if app.config.get("AUTO_CREATE_TABLES"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    return app
