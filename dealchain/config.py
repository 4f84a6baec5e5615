"""
Dealchain
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'dealchain_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_flag(name, default):
    return os.getenv(name, default).lower() == "true"


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }
    AUTO_CREATE_TABLES = False

    # Negotiation rules
    PROPOSAL_VERSION_COMMENT_MIN_LENGTH = int(
        os.getenv("PROPOSAL_VERSION_COMMENT_MIN_LENGTH", "10")
    )
    AUTO_GENERATE_CONTRACTS = _env_flag("AUTO_GENERATE_CONTRACTS", "true")
    AUTO_CLOSE_ON_FINAL_ACCEPT = _env_flag("AUTO_CLOSE_ON_FINAL_ACCEPT", "false")
    # SPV contracts only for packages of at least this value
    SPV_MIN_CONTRACT_VALUE = float(os.getenv("SPV_MIN_CONTRACT_VALUE", "50000000"))

    # Party resolution: unverified parties may not mutate anything
    REQUIRE_VERIFIED_PARTIES = _env_flag("REQUIRE_VERIFIED_PARTIES", "true")

    # Domain events (outbox)
    DOMAIN_EVENTS_ENABLED = _env_flag("DOMAIN_EVENTS_ENABLED", "true")
    # Failed deliveries before an event is dead-lettered
    OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    SQLALCHEMY_ENGINE_OPTIONS = {} if not _raw_db_url else Config.SQLALCHEMY_ENGINE_OPTIONS
    AUTO_CREATE_TABLES = True


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite uses a single static connection; no pool tuning
    SQLALCHEMY_ENGINE_OPTIONS = {}
    AUTO_CLOSE_ON_FINAL_ACCEPT = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
