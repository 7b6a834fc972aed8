"""
Circulation engine facade.

``CirculationEngine`` wires the ledger, fine calculator, fine ledger, loan
manager and reservation queue manager around one SQLAlchemy session. It is
the single entry point for the tool handlers and the scheduler:

```python
with engine_scope() as engine:
    loan = engine.checkout("user_1001", "book_9780134685479")
    engine.checkin(loan.id)
```

Async callers go through ``run_engine_operation``, which runs the same unit of
work in a worker thread.
"""

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import TypeVar

from sqlalchemy.orm import Session

from ..config import CirculationConfig, get_config
from ..database.session import get_session
from ..models.circulation import ActingUser, CheckinCondition, Loan, Reservation
from ..models.fine import Fine
from .base import Clock
from .fines import FineCalculator, FineLedger
from .ledger import ResourceLedger
from .loans import LoanManager
from .locks import BookLockRegistry, get_lock_registry
from .providers import (
    EntitlementProvider,
    NotificationProvider,
    SubscriptionEntitlementProvider,
    build_notifier,
)
from .reservations import ReservationQueueManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CirculationEngine:
    """One unit of work over the circulation components."""

    def __init__(
        self,
        session: Session,
        config: CirculationConfig | None = None,
        *,
        locks: BookLockRegistry | None = None,
        clock: Clock | None = None,
        entitlements: EntitlementProvider | None = None,
        notifier: NotificationProvider | None = None,
        calculator: FineCalculator | None = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.locks = locks if locks is not None else get_lock_registry()
        self.clock = clock or datetime.now
        self.calculator = calculator or FineCalculator.from_config(self.config)
        self.notifier = (
            notifier
            if notifier is not None
            else build_notifier(self.config.notification_channel, session)
        )
        self.entitlements = entitlements or SubscriptionEntitlementProvider(session, self.clock)

        self.ledger = ResourceLedger(session)
        self.fines = FineLedger(session, self.config, self.locks, self.clock)
        self.loans = LoanManager(
            session,
            self.config,
            self.locks,
            ledger=self.ledger,
            fines=self.fines,
            calculator=self.calculator,
            entitlements=self.entitlements,
            notifier=self.notifier,
            clock=self.clock,
        )
        self.reservations = ReservationQueueManager(
            session,
            self.config,
            self.locks,
            ledger=self.ledger,
            loans=self.loans,
            notifier=self.notifier,
            clock=self.clock,
        )
        self.loans.promote_next = self.reservations.promote_next

    # === Loans ===

    def checkout(self, user_id: str, book_id: str, requested_days: int | None = None) -> Loan:
        return self.loans.checkout(user_id, book_id, requested_days)

    def checkin(
        self,
        loan_id: str,
        condition: CheckinCondition = CheckinCondition.RETURNED,
        notes: str | None = None,
    ) -> Loan:
        return self.loans.checkin(loan_id, condition, notes)

    def renew_checkout(
        self, loan_id: str, extension_days: int | None = None, notes: str | None = None
    ) -> Loan:
        return self.loans.renew_checkout(loan_id, extension_days, notes)

    def run_overdue_sweep(self) -> int:
        return self.loans.run_overdue_sweep()

    def send_due_date_reminders(self, days_ahead: int | None = None) -> int:
        return self.loans.send_due_date_reminders(days_ahead)

    # === Reservations ===

    def create_reservation(
        self, user_id: str, book_id: str, notes: str | None = None
    ) -> Reservation:
        return self.reservations.create_reservation(user_id, book_id, notes)

    def cancel_reservation(
        self, reservation_id: str, acting_user: ActingUser | str
    ) -> Reservation:
        return self.reservations.cancel_reservation(reservation_id, acting_user)

    def fulfill_reservation(self, reservation_id: str, notes: str | None = None) -> Loan:
        return self.reservations.fulfill_reservation(reservation_id, notes)

    def promote_next(self, book_id: str) -> Reservation | None:
        return self.reservations.promote_next(book_id)

    def expire_old_reservations(self) -> int:
        return self.reservations.expire_old_reservations()

    # === Fines ===

    def mark_fine_as_paid(
        self, fine_id: str, amount_paid: Decimal, transaction_ref: str | None = None
    ) -> Fine:
        return self.fines.mark_fine_as_paid(fine_id, amount_paid, transaction_ref)

    def waive_fine(self, fine_id: str, admin_user_id: str, reason: str) -> Fine:
        return self.fines.waive_fine(fine_id, admin_user_id, reason)


@contextmanager
def engine_scope(**kwargs) -> Iterator[CirculationEngine]:
    """Open a session, build an engine around it and close the session afterwards."""
    session = get_session()
    try:
        yield CirculationEngine(session, **kwargs)
    finally:
        session.close()


async def run_engine_operation(operation: Callable[[CirculationEngine], T]) -> T:
    """
    Run one unit of work in a worker thread.

    Database I/O and waits on a book's lock happen off the event loop, so a
    contended book never stalls other tool calls or the scheduler.
    """

    def work() -> T:
        with engine_scope() as engine:
            return operation(engine)

    return await asyncio.to_thread(work)
