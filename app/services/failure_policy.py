"""Explicit failure policies for persistence-backed operations.

Every operation that touches the database declares how a persistence error is
handled instead of relying on ad-hoc try/except blocks:

- FAIL_OPEN: availability-critical read. Log, roll back the operation's
  savepoint, return the fallback. Used by tenant resolution and quota checks
  so an infrastructure hiccup never denies service.
- SWALLOW: best-effort write. Log, roll back the operation's savepoint, return
  the fallback. Used by usage recording where a lost increment is acceptable.
- FAIL_CLOSED: correctness-critical write. Roll back the whole session and
  raise PersistenceError. Used by payment reconciliation where a partial or
  doubled effect is not acceptable.

FAIL_OPEN and SWALLOW bodies run inside ``db.begin_nested()``, so a failure
discards only that operation and keeps the caller's earlier work in the same
transaction (a created task, a stored file row, a claimed event id).
"""

from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.errors import PersistenceError
from app.logging_config import get_logger

logger = get_logger("failure_policy")


class FailurePolicy(str, Enum):
    FAIL_OPEN = "fail_open"
    SWALLOW = "swallow"
    FAIL_CLOSED = "fail_closed"


def with_failure_policy(
    policy: FailurePolicy,
    operation: str,
    fallback: Optional[Callable[..., Any]] = None,
):
    """Decorate a service function whose first argument is a SQLAlchemy session.

    On SQLAlchemyError FAIL_CLOSED rolls back the session and raises
    PersistenceError. The others roll back only their own savepoint and return
    ``fallback(db, *args, **kwargs)`` (or None when no fallback is given).
    """

    def decorator(func):
        if policy == FailurePolicy.FAIL_CLOSED:

            @wraps(func)
            def wrapper(db, *args, **kwargs):
                try:
                    return func(db, *args, **kwargs)
                except SQLAlchemyError as exc:
                    _log_failure(operation, policy, exc)
                    safe_rollback(db)
                    raise PersistenceError(f"{operation} failed: {exc}") from exc

        else:

            @wraps(func)
            def wrapper(db, *args, **kwargs):
                try:
                    savepoint = db.begin_nested()
                except SQLAlchemyError as exc:
                    _log_failure(operation, policy, exc)
                    safe_rollback(db)
                    return _fallback(db, *args, **kwargs)

                try:
                    result = func(db, *args, **kwargs)
                    if savepoint.is_active:
                        savepoint.commit()
                    return result
                except SQLAlchemyError as exc:
                    _log_failure(operation, policy, exc)
                    _rollback_savepoint(db, savepoint)
                    return _fallback(db, *args, **kwargs)
                except Exception:
                    _rollback_savepoint(db, savepoint)
                    raise

        def _fallback(db, *args, **kwargs):
            if fallback is None:
                return None
            return fallback(db, *args, **kwargs)

        wrapper.failure_policy = policy
        return wrapper

    return decorator


def _log_failure(operation: str, policy: FailurePolicy, exc: Exception) -> None:
    logger.error(
        f"{operation} failed",
        extra={"context": {"policy": policy.value, "error": str(exc)}},
    )


def _rollback_savepoint(db, savepoint) -> None:
    """Undo one operation; fall back to a full rollback when the savepoint itself is gone."""
    try:
        savepoint.rollback()
    except SQLAlchemyError as exc:
        logger.warning(f"Savepoint rollback failed: {exc}")
        safe_rollback(db)


def safe_rollback(db) -> None:
    try:
        db.rollback()
    except SQLAlchemyError as exc:
        logger.warning(f"Rollback failed: {exc}")
