"""Conflict detection and retry for write units of work.

SQLite reports a lost writer race as "database is locked"; PostgreSQL as a
serialization failure or deadlock.  Both become ``TransactionConflictError``.
"""

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError

from gelatin_erp.middleware.exceptions import TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFLICT_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not serialize access",
    "deadlock detected",
)


def is_conflict(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


def as_conflict(exc: OperationalError) -> Exception:
    """Map a lock/serialization failure to the domain error, else pass it through."""
    if is_conflict(exc):
        return TransactionConflictError()
    return exc


async def retry_on_conflict(
    unit_of_work: Callable[[], Awaitable[T]],
    attempts: int = 2,
) -> T:
    """Run ``unit_of_work``, re-running it when it loses a write race.

    For callers that own their transaction (CLI commands, workers, tests).
    Request handlers do not retry; a conflict there reaches the client as a
    409 TRANSACTION_CONFLICT.  ``unit_of_work`` must open its own
    session/transaction so each attempt starts from a fresh read.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await unit_of_work()
        except TransactionConflictError:
            if attempt == attempts:
                raise
            logger.warning("Write conflict, retrying (attempt %d/%d)", attempt + 1, attempts)
        except OperationalError as exc:
            mapped = as_conflict(exc)
            if mapped is exc:
                raise
            if attempt == attempts:
                raise mapped from exc
            logger.warning("Write conflict, retrying (attempt %d/%d)", attempt + 1, attempts)
    raise TransactionConflictError()
