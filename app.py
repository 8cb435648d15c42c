"""Flask application for the course lecture and trainer payroll engine.

This module wires together the configuration, the database models, the
observability middleware and the API routes.

* :mod:`lecture_api` – courses, lectures, postponements, evaluations and
  renewals under ``/api/courses`` and ``/api/lectures``.
* :mod:`payroll_api` – monthly payroll, payment bookkeeping and business-rule
  settings under ``/api/payroll`` and ``/api/settings``.
* ``GET /health`` – liveness probe.

CLI commands (``flask --app app <command>``):

* ``seed`` – drop, recreate and fill the database with demo data.
* ``payroll --month M --year Y`` – print the month's payroll as JSON.
"""

from __future__ import annotations

import json
import os

import click
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError

from actors import SYSTEM
from app_logging import get_logger
from config import Config
from correlation_id_middleware import init_correlation_id
from db_utils import retry_with_backoff
from errors import init_error_handlers
from lecture_api import init_lecture_routes
from models import db
from payroll import compute_payroll
from payroll_api import init_payroll_routes
from request_logging_middleware import init_request_logging

_logger = get_logger("app")


def _init_tables(app: Flask) -> None:
    """Create missing tables before the first request is served."""

    state = {'ready': False}

    @app.before_request
    def _create_tables() -> None:
        if state['ready']:
            return
        try:
            retry_with_backoff(db.create_all)
        except SQLAlchemyError as exc:
            # Keep serving; the failing request surfaces a 503 through the
            # database error handler.
            _logger.warning("Database unavailable during table creation", extra={"error": str(exc)})
            return
        state['ready'] = True


def _init_cli(app: Flask) -> None:

    @app.cli.command('seed')
    def seed_command() -> None:
        """Drop, recreate and seed the database with demo data."""
        from seed import seed_data

        counts = seed_data()
        click.echo(f'Database seeded successfully: {counts}')

    @app.cli.command('payroll')
    @click.option('--month', type=int, required=True)
    @click.option('--year', type=int, required=True)
    def payroll_command(month: int, year: int) -> None:
        """Compute and print the payroll for a month."""
        db.create_all()
        result = compute_payroll(month, year, SYSTEM)
        db.session.commit()
        click.echo(json.dumps(result, indent=2, ensure_ascii=False))


def create_app(config_object: type = Config) -> Flask:
    """Application factory used by the server, the CLI and the tests."""
    app = Flask(__name__)
    app.config.from_object(config_object)
    db.init_app(app)

    init_correlation_id(app)
    init_request_logging(app)
    init_error_handlers(app)
    _init_tables(app)

    @app.route('/health')
    def healthcheck():
        """Lightweight endpoint used by load balancer health checks."""
        return jsonify({'status': 'ok'}), 200

    init_lecture_routes(app)
    init_payroll_routes(app)
    _init_cli(app)
    return app


app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG') == '1')
