"""Payroll and settings endpoints.

* ``GET /api/payroll?month=&year=`` - recompute the month's payroll.
* ``PUT /api/payroll/<trainer_id>/bonus-deduction`` - signed manual adjustment.
* ``PUT /api/payroll/<trainer_id>/bonus-selection`` - bonus toggles.
* ``PUT /api/payroll/<trainer_id>/payment-method`` - payout account.
* ``POST /api/payroll/<trainer_id>/paid`` and ``/unpaid`` - payment status.
* ``GET /api/payroll/<trainer_id>/ledger?month=&year=`` - bookkeeping history.
* ``GET /api/settings`` and ``PUT /api/settings`` - business-rule overrides.

Payroll endpoints are limited to the ``admin`` and ``finance`` roles and
settings to ``admin``.
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify, request

from actors import current_actor, require_role
from business_rules import load_business_rules, update_settings
from db_utils import unit_of_work
from errors import ValidationError
from payroll import (
    compute_payroll,
    ledger,
    mark_paid,
    mark_unpaid,
    set_bonus_deduction,
    set_bonus_selection,
    set_payment_method,
)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Missing JSON object payload')
    return data


def _query_period():
    month = request.args.get('month', type=int)
    year = request.args.get('year', type=int)
    if month is None or year is None:
        raise ValidationError('month and year query parameters are required')
    return month, year


def init_payroll_routes(app: Flask) -> None:
    """Register the payroll and settings API on ``app``."""

    @app.route('/api/payroll', methods=['GET'])
    def api_compute_payroll():
        actor = current_actor()
        month, year = _query_period()
        with unit_of_work():
            result = compute_payroll(month, year, actor)
        return jsonify(result)

    @app.route('/api/payroll/<int:trainer_id>/bonus-deduction', methods=['PUT'])
    def api_bonus_deduction(trainer_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            record = set_bonus_deduction(trainer_id, data.get('month'), data.get('year'),
                                         data.get('amount'), data.get('notes'), actor)
        return jsonify(record.to_dict())

    @app.route('/api/payroll/<int:trainer_id>/bonus-selection', methods=['PUT'])
    def api_bonus_selection(trainer_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            record = set_bonus_selection(trainer_id, data.get('month'), data.get('year'), data, actor)
        return jsonify(record.to_dict())

    @app.route('/api/payroll/<int:trainer_id>/payment-method', methods=['PUT'])
    def api_payment_method(trainer_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            record = set_payment_method(
                trainer_id, data.get('method'), data.get('account_number'), actor,
                pin=data.get('pin'), month=data.get('month'), year=data.get('year'),
            )
        return jsonify(record.to_dict())

    @app.route('/api/payroll/<int:trainer_id>/paid', methods=['POST'])
    def api_mark_paid(trainer_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            record = mark_paid(trainer_id, data.get('month'), data.get('year'), actor)
        return jsonify(record.to_dict())

    @app.route('/api/payroll/<int:trainer_id>/unpaid', methods=['POST'])
    def api_mark_unpaid(trainer_id: int):
        actor = current_actor()
        data = _json_body()
        with unit_of_work():
            record = mark_unpaid(trainer_id, data.get('month'), data.get('year'), actor)
        return jsonify(record.to_dict())

    @app.route('/api/payroll/<int:trainer_id>/ledger', methods=['GET'])
    def api_payroll_ledger(trainer_id: int):
        actor = current_actor()
        month, year = _query_period()
        return jsonify([entry.to_dict() for entry in ledger(trainer_id, month, year, actor)])

    @app.route('/api/settings', methods=['GET'])
    def api_get_settings():
        require_role(current_actor(), ('admin',), 'read settings')
        return jsonify(load_business_rules().to_dict())

    @app.route('/api/settings', methods=['PUT'])
    def api_update_settings():
        require_role(current_actor(), ('admin',), 'change settings')
        data = _json_body()
        with unit_of_work():
            rules = update_settings(data)
        return jsonify(rules.to_dict())


__all__ = ['init_payroll_routes']
