"""Database resilience and transaction helpers."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import IntegrityError

from app_logging import DBTimer, get_logger
from errors import ConflictError
from models import db

T = TypeVar("T")

_logger = get_logger("app.db")


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_total_delay: float = 2.0,
) -> T:
    """Retry ``func`` with exponential backoff.

    Used for start-up work such as table creation. The total delay never
    exceeds ``max_total_delay`` so a dead database surfaces quickly.
    """

    last_exc: Exception | None = None
    total_delay = 0.0
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as exc:
            last_exc = exc
            _logger.warning(
                "transient operation failed", extra={"attempt": attempt, "error": str(exc)}
            )
            if attempt >= attempts or total_delay >= max_total_delay:
                break
            delay = min(base_delay * (2 ** (attempt - 1)), max_total_delay - total_delay)
            if delay <= 0:
                continue
            time.sleep(delay)
            total_delay += delay
    if last_exc:
        raise last_exc
    raise RuntimeError("retry_with_backoff failed without exception")


@contextmanager
def unit_of_work() -> Iterator[None]:
    """Run a read-modify-write as one transaction.

    Commits when the block exits normally. Any exception rolls the session
    back so no partial write survives. Integrity violations raised at commit
    time (two requests racing for the same makeup slot, for instance) are
    reported as :class:`~errors.ConflictError`.
    """

    with DBTimer():
        try:
            yield
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            _logger.warning("transaction rejected by constraint", extra={"error": str(exc.orig)})
            raise ConflictError("The record was changed by another request; reload and retry.") from exc
        except Exception:
            db.session.rollback()
            raise


__all__ = ["retry_with_backoff", "unit_of_work"]
