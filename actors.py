"""Caller identity and role checks.

Authentication happens upstream; the gateway forwards the caller's role in
``X-Actor-Role`` (and, for trainers, their trainer id in ``X-Trainer-Id``).
Engine functions always receive an explicit :class:`Actor` instead of reading
request state themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from flask import request

from app_logging import merge_request_context
from errors import AuthorizationError

ROLE_HEADER = "X-Actor-Role"
TRAINER_HEADER = "X-Trainer-Id"

ROLES = ("admin", "customer_service", "finance", "trainer")

# Roles allowed to override trainer conflicts and drive course lifecycle.
LECTURE_PRIVILEGED = ("admin", "customer_service")
# Roles allowed to compute payroll and change payment bookkeeping.
PAYROLL_ROLES = ("admin", "finance")
# Roles allowed to write attendance and postpone lectures.
LECTURE_EDITORS = ("admin", "customer_service", "trainer")


@dataclass(frozen=True)
class Actor:
    role: str
    trainer_id: Optional[int] = None

    @property
    def is_trainer(self) -> bool:
        return self.role == "trainer"

    @property
    def can_force(self) -> bool:
        return self.role in LECTURE_PRIVILEGED


SYSTEM = Actor(role="admin")


def current_actor() -> Actor:
    """Build the actor for the current request from its headers."""

    role = request.headers.get(ROLE_HEADER, "").strip().lower()
    if role not in ROLES:
        raise AuthorizationError("A valid actor role is required", allowed_roles=list(ROLES))
    trainer_id = None
    if role == "trainer":
        raw = request.headers.get(TRAINER_HEADER, "").strip()
        if not raw.isdigit():
            raise AuthorizationError("Trainer requests must identify the trainer")
        trainer_id = int(raw)
    merge_request_context(actor_role=role)
    return Actor(role=role, trainer_id=trainer_id)


def require_role(actor: Actor, allowed: Iterable[str], action: str) -> None:
    allowed = tuple(allowed)
    if actor.role not in allowed:
        raise AuthorizationError(
            f"Role '{actor.role}' may not {action}", allowed_roles=list(allowed)
        )


def require_course_access(actor: Actor, course, action: str) -> None:
    """Trainers may only act on their own courses."""

    if actor.is_trainer and course.trainer_id != actor.trainer_id:
        raise AuthorizationError(f"Trainers may only {action} on their own courses")


__all__ = [
    "Actor",
    "LECTURE_EDITORS",
    "LECTURE_PRIVILEGED",
    "PAYROLL_ROLES",
    "ROLES",
    "SYSTEM",
    "current_actor",
    "require_course_access",
    "require_role",
]
