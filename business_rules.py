"""Effective business rules: configuration defaults plus stored overrides.

Rates, bonus tiers and lifecycle limits ship as :class:`config.Config`
defaults. Operators can change any of them at runtime by writing a row to the
``setting`` table; :func:`load_business_rules` overlays those rows on the
configured values for every request, so no redeployment is needed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping

from flask import current_app

from app_logging import get_logger
from errors import ValidationError
from models import Setting, db

_logger = get_logger("app.rules")


@dataclass(frozen=True)
class BusinessRules:
    rate_per_lecture: int = 4000
    renewal_unit: int = 5000
    volume_tier1_threshold: int = 60
    volume_tier1_amount: int = 30000
    volume_tier2_threshold: int = 80
    volume_tier2_amount: int = 80000
    competition_unit: int = 20000
    competition_winners: int = 3
    max_postponements: int = 3
    evaluation_interval: int = 5
    renewal_alert_percent: int = 75

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


RULE_NAMES = tuple(f.name for f in fields(BusinessRules))


def _from_config(config: Mapping[str, Any]) -> Dict[str, int]:
    values: Dict[str, int] = {}
    for name in RULE_NAMES:
        key = name.upper()
        if key in config:
            values[name] = int(config[key])
    return values


def load_business_rules() -> BusinessRules:
    """Return the rules in force: config defaults overlaid with settings.

    The merged rules are validated as a whole, so a bad environment value
    (``EVALUATION_INTERVAL=0``, say) is rejected here instead of failing
    deep inside a calculation.
    """

    values = _from_config(current_app.config)
    for setting in Setting.query.filter(Setting.key.in_(RULE_NAMES)).all():
        try:
            values[setting.key] = int(setting.value)
        except ValueError:
            _logger.warning("ignoring non-numeric setting",
                            extra={"key": setting.key, "value": setting.value})
    rules = BusinessRules(**values)
    try:
        _validate_rules(rules)
    except ValidationError as exc:
        _logger.error("invalid business rules", extra={"error": exc.message})
        raise
    return rules


def _validate_rules(rules: BusinessRules) -> None:
    if rules.volume_tier2_threshold <= rules.volume_tier1_threshold:
        raise ValidationError("volume_tier2_threshold must be greater than volume_tier1_threshold")
    if rules.evaluation_interval <= 0:
        raise ValidationError("evaluation_interval must be positive")
    if not 0 < rules.renewal_alert_percent < 100:
        raise ValidationError("renewal_alert_percent must be between 1 and 99")
    for name in RULE_NAMES:
        if getattr(rules, name) < 0:
            raise ValidationError(f"{name} cannot be negative")


def update_settings(changes: Mapping[str, Any]) -> BusinessRules:
    """Persist rule overrides; the caller commits.

    Unknown keys and non-integer values are rejected before anything is
    written, and the resulting rule set is validated as a whole.
    """

    if not changes:
        raise ValidationError("No settings supplied")
    parsed: Dict[str, int] = {}
    for key, value in changes.items():
        if key not in RULE_NAMES:
            raise ValidationError(f"Unknown setting '{key}'", allowed=list(RULE_NAMES))
        if isinstance(value, bool):
            raise ValidationError(f"Setting '{key}' must be an integer")
        try:
            parsed[key] = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Setting '{key}' must be an integer")

    current = load_business_rules().to_dict()
    current.update(parsed)
    _validate_rules(BusinessRules(**current))

    for key, value in parsed.items():
        setting = db.session.get(Setting, key)
        if setting is None:
            db.session.add(Setting(key=key, value=str(value)))
        else:
            setting.value = str(value)
    _logger.info("business rules updated", extra={"changes": parsed})
    return BusinessRules(**current)


__all__ = ["BusinessRules", "RULE_NAMES", "load_business_rules", "update_settings"]
