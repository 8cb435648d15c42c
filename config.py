"""Application configuration module.

This module reads environment variables to configure the Flask application,
the database and the business rules of the lecture and payroll engine. When
deployed on Heroku the platform provides a ``DATABASE_URL`` environment
variable that points to a Postgres database. SQLAlchemy expects the URL to
start with ``postgresql://`` rather than ``postgres://`` so the prefix is
normalised here. Variables defined in a local ``.env`` file are loaded when
running locally.

Business-rule values defined here are only defaults: any of them can be
overridden at runtime through the ``settings`` table (see
:mod:`business_rules`).
"""

import os
from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    return int(raw)


class Config:
    """Base configuration class.

    The :class:`~flask_sqlalchemy.SQLAlchemy` instance uses the
    ``SQLALCHEMY_DATABASE_URI`` attribute to connect to the database. If no
    database URL is provided the application falls back to a local SQLite
    database so the app still runs in development.
    """

    # Load environment variables from a .env file if present. On Heroku
    # variables are set via ``heroku config``.
    load_dotenv()

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # Only replace the first occurrence so paths are left untouched.
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///courses.db'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # External calls must surface failure instead of hanging.
    DB_TIMEOUT_SECONDS = _env_int('DB_TIMEOUT_SECONDS', 5)
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_timeout': DB_TIMEOUT_SECONDS,
        'connect_args': {'timeout': DB_TIMEOUT_SECONDS} if SQLALCHEMY_DATABASE_URI.startswith('sqlite')
        else {'connect_timeout': DB_TIMEOUT_SECONDS},
    }

    # Request logging: share of requests logged and response body cap.
    REQUEST_LOG_SAMPLE_RATE = float(os.environ.get('REQUEST_LOG_SAMPLE_RATE', '1.0'))
    RESPONSE_BODY_MAX_BYTES = _env_int('RESPONSE_BODY_MAX_BYTES', 2048)

    # Trainer compensation (currency units).
    RATE_PER_LECTURE = _env_int('RATE_PER_LECTURE', 4000)
    RENEWAL_UNIT = _env_int('RENEWAL_UNIT', 5000)
    VOLUME_TIER1_THRESHOLD = _env_int('VOLUME_TIER1_THRESHOLD', 60)
    VOLUME_TIER1_AMOUNT = _env_int('VOLUME_TIER1_AMOUNT', 30000)
    VOLUME_TIER2_THRESHOLD = _env_int('VOLUME_TIER2_THRESHOLD', 80)
    VOLUME_TIER2_AMOUNT = _env_int('VOLUME_TIER2_AMOUNT', 80000)
    COMPETITION_UNIT = _env_int('COMPETITION_UNIT', 20000)
    COMPETITION_WINNERS = _env_int('COMPETITION_WINNERS', 3)

    # Lecture lifecycle. MAX_POSTPONEMENTS=0 means unlimited.
    MAX_POSTPONEMENTS = _env_int('MAX_POSTPONEMENTS', 3)
    EVALUATION_INTERVAL = _env_int('EVALUATION_INTERVAL', 5)
    RENEWAL_ALERT_PERCENT = _env_int('RENEWAL_ALERT_PERCENT', 75)


class TestingConfig(Config):
    """Configuration used by the test-suite."""

    __test__ = False

    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REQUEST_LOG_SAMPLE_RATE = 1.0
