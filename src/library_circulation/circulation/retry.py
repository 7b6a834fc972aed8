"""Retry of write conflicts reported by the database."""

import functools
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import OperationalError

from ..errors import CirculationError, ErrorKind

logger = logging.getLogger(__name__)


def retry_on_conflict(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Retry a manager operation when the database reports a write conflict.

    The decorated method's owner must expose ``session`` and ``config``. Each
    failed attempt is rolled back before the next one; when every attempt
    conflicts, the failure surfaces as ``TRANSIENT_CONFLICT`` rather than as
    a policy error.
    """

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        attempts = self.config.conflict_retries
        last_error: OperationalError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except OperationalError as e:
                self.session.rollback()
                last_error = e
                logger.warning(
                    "Write conflict in %s (attempt %d/%d): %s", func.__name__, attempt, attempts, e
                )
        raise CirculationError(
            ErrorKind.TRANSIENT_CONFLICT,
            f"{func.__name__} failed after {attempts} attempts due to write conflicts",
            reason="write_conflict",
        ) from last_error

    return wrapper
