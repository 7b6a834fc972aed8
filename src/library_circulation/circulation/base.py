"""Shared plumbing for the circulation managers."""

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.session import safe_commit
from ..errors import policy_violation
from ..observability import trace_operation
from .locks import BookLockRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def new_id(prefix: str) -> str:
    """Generate a prefixed record id such as ``loan_3f9c2a1b7d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def append_note(existing: str | None, label: str, note: str | None) -> str | None:
    if not note:
        return existing
    entry = f"{label}: {note}"
    return f"{existing}\n{entry}" if existing else entry


class CirculationComponent:
    """
    Base class for the loan manager, reservation queue manager and fine ledger.

    Each public operation runs inside ``_operation``: the record's lock is
    taken, a span is opened, the session's identity map is expired so reads
    see what other sessions committed, and any failure rolls the transaction
    back before it propagates.
    """

    component = "circulation"

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        locks: BookLockRegistry,
        clock: Clock | None = None,
    ):
        self.session = session
        self.config = config
        self.locks = locks
        self.clock = clock or datetime.now

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.clock().date()

    @contextmanager
    def _operation(self, lock_key: str, name: str, **attributes) -> Iterator:
        with self.locks.hold(lock_key), trace_operation(self.component, name, **attributes) as span:
            self.session.expire_all()
            try:
                yield span
            except Exception:
                self.session.rollback()
                raise

    def _commit(self, operation: str) -> None:
        """Commit, mapping a unique index violation to a duplicate-record policy error."""
        try:
            safe_commit(self.session, operation)
        except IntegrityError as e:
            logger.warning("Constraint violation during %s: %s", operation, e.orig)
            raise policy_violation(
                f"{operation} conflicts with an existing active record", "duplicate_active_record"
            ) from e
