### app/utils/concurrency.py

# Standard library imports
import functools

# Third party imports
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

# Local imports
from app.core.config import settings
from app.core.exceptions import ConcurrencyConflictException
from app.utils.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_ERRORS = (ConcurrencyConflictException, StaleDataError, IntegrityError)

# MySQL ER_DUP_ENTRY
MYSQL_DUPLICATE_KEY = 1062
UNIQUE_VIOLATION_MARKERS = ("unique constraint failed", "duplicate entry", "duplicate key")


def is_unique_violation(error: IntegrityError) -> bool:
    """True when the driver reports a duplicate key rather than a CHECK/NOT NULL/FK failure"""
    orig = getattr(error, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and args[0] == MYSQL_DUPLICATE_KEY:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(marker in message for marker in UNIQUE_VIOLATION_MARKERS)


def is_retryable(error: Exception) -> bool:
    """Whether a failed attempt lost a write race and may simply be run again"""
    if isinstance(error, IntegrityError):
        return is_unique_violation(error)
    return isinstance(error, RETRYABLE_ERRORS)


def with_concurrency_retry(func):
    """
    Re-run a service method from scratch when it loses a write race.

    The wrapped method must belong to an object with a `db` session and must
    own its transaction (commit on success). Each failed attempt is rolled
    back before the next; after `concurrency_max_retries` attempts a generic
    ConcurrencyConflictException surfaces. Integrity errors other than a
    duplicate key are data errors and propagate on the first attempt.
    """
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        attempts = max(settings.concurrency_max_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await func(self, *args, **kwargs)
            except RETRYABLE_ERRORS as e:
                if not is_retryable(e):
                    raise
                await self.db.rollback()
                logger.warning(
                    "Concurrent write conflict, retrying",
                    operation=func.__qualname__, attempt=attempt, max_attempts=attempts,
                    error=str(e).splitlines()[0] if str(e) else type(e).__name__,
                )
        logger.error("Giving up after repeated write conflicts", operation=func.__qualname__, attempts=attempts)
        raise ConcurrencyConflictException()

    return wrapper
