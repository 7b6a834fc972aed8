"""
Loan manager: checkout, check-in, renewal and the overdue sweep.

The loan manager is the main consumer of the resource ledger. A checkout
claims a copy and opens a loan in one transaction; a check-in closes the
loan, records any fines, returns the copy and then hands the book to the
reservation queue so the next patron in line gets it.
"""

import logging
from collections.abc import Callable
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.circulation_repository import LoanRepository
from ..database.schema import Loan as LoanRow
from ..database.schema import LoanStatusEnum
from ..errors import CirculationError, ErrorKind, invalid_transition, not_found, policy_violation
from ..models.circulation import CheckinCondition, Loan, LoanStatus, Reservation
from ..models.entitlement import Entitlement
from ..models.fine import FineType
from ..observability import record_circulation_event, trace_operation
from .base import CirculationComponent, Clock, append_note, new_id
from .fines import FineCalculator, FineLedger
from .ledger import ResourceLedger
from .locks import BookLockRegistry
from .providers import EntitlementProvider, NotificationProvider, dispatch
from .retry import retry_on_conflict

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (LoanStatusEnum.CHECKED_OUT, LoanStatusEnum.OVERDUE)


class LoanManager(CirculationComponent):
    """
    Orchestrates the loan lifecycle.

    ``promote_next`` is wired by the engine to the reservation queue manager;
    without it a check-in simply leaves the returned copy available.
    """

    component = "loans"

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        locks: BookLockRegistry,
        ledger: ResourceLedger,
        fines: FineLedger,
        calculator: FineCalculator,
        entitlements: EntitlementProvider,
        notifier: NotificationProvider | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, config, locks, clock)
        self.ledger = ledger
        self.fine_ledger = fines
        self.calculator = calculator
        self.entitlements = entitlements
        self.notifier = notifier
        self.loans = LoanRepository(session)
        self.promote_next: Callable[[str], Reservation | None] | None = None

    # === Helpers ===

    def _require_loan(self, loan_id: str) -> LoanRow:
        loan = self.loans.get_row(loan_id)
        if loan is None:
            raise not_found("Loan", loan_id)
        return loan

    def _book_of(self, loan_id: str) -> str:
        return self._require_loan(loan_id).book_id

    def _require_entitlement(self, user_id: str) -> Entitlement:
        entitlement = self.entitlements.get_active_entitlement(user_id)
        if entitlement is None:
            raise CirculationError(
                ErrorKind.ENTITLEMENT_MISSING,
                f"User {user_id} has no active subscription",
                reason="no_active_subscription",
            )
        return entitlement

    def _loan_days(self, requested_days: int | None, entitlement: Entitlement) -> int:
        if requested_days is None:
            return entitlement.max_days_per_book
        if requested_days <= 0:
            raise policy_violation("Requested loan period must be positive", "invalid_loan_period")
        return min(requested_days, entitlement.max_days_per_book)

    def open_loan(
        self,
        user_id: str,
        book_id: str,
        requested_days: int | None = None,
        claim: bool = True,
        reservation_id: str | None = None,
    ) -> LoanRow:
        """
        Check the borrowing rules and stage a new loan without committing.

        Rules are checked in a fixed order so the first failing precondition
        is the one reported. With ``claim=False`` the copy is assumed to be
        already earmarked for the user (reservation fulfilment). The caller
        must hold the book's lock.
        """
        entitlement = self._require_entitlement(user_id)

        book = self.ledger.require_book(book_id)
        if not book.active:
            raise policy_violation(
                f"Book {book_id} is not available for circulation", "book_inactive"
            )

        if self.loans.find_active(user_id, book_id) is not None:
            raise policy_violation(
                f"User {user_id} already has an active loan for book {book_id}",
                "duplicate_active_loan",
            )

        active = self.loans.count_active(user_id)
        if active >= entitlement.max_books_allowed:
            raise policy_violation(
                f"User {user_id} has reached the limit of {entitlement.max_books_allowed} "
                f"active loans for plan '{entitlement.plan_name}'",
                "loan_limit_reached",
            )

        today = self.today()
        overdue = self.loans.count_overdue(user_id, today)
        if overdue:
            raise policy_violation(
                f"User {user_id} has {overdue} overdue loan(s); return them before borrowing",
                "overdue_loans_outstanding",
            )

        days = self._loan_days(requested_days, entitlement)

        if claim and not self.ledger.try_claim(book_id):
            raise CirculationError(
                ErrorKind.RESOURCE_UNAVAILABLE,
                f"No copies of '{book.title}' are currently available",
                reason="no_copy_available",
            )

        loan = LoanRow(
            id=new_id("loan"),
            user_id=user_id,
            book_id=book_id,
            reservation_id=reservation_id,
            checkout_date=today,
            due_date=today + timedelta(days=days),
            status=LoanStatusEnum.CHECKED_OUT,
            renewal_count=0,
            max_renewals=self.config.default_max_renewals,
            is_overdue=False,
            overdue_days=0,
        )
        try:
            self.loans.add(loan)
        except IntegrityError as e:
            raise policy_violation(
                f"User {user_id} already has an active loan for book {book_id}",
                "duplicate_active_loan",
            ) from e
        return loan

    # === Operations ===

    @retry_on_conflict
    def checkout(self, user_id: str, book_id: str, requested_days: int | None = None) -> Loan:
        """
        Lend a copy of a book to a user.

        Raises:
            CirculationError: ENTITLEMENT_MISSING, NOT_FOUND, POLICY_VIOLATION
                or RESOURCE_UNAVAILABLE, whichever rule fails first
        """
        with self._operation(book_id, "checkout", user_id=user_id, book_id=book_id):
            loan = self.open_loan(user_id, book_id, requested_days)
            self._commit("checkout")

        record_circulation_event("checkout", book_id)
        logger.info(
            "Loan %s: %s checked out %s until %s", loan.id, user_id, book_id, loan.due_date
        )
        return self.loans.to_model(loan)

    @retry_on_conflict
    def checkin(
        self,
        loan_id: str,
        condition: CheckinCondition = CheckinCondition.RETURNED,
        notes: str | None = None,
    ) -> Loan:
        """
        Close an active loan.

        Late returns get their overdue fine recorded. Lost copies are written
        off instead of released and carry a penalty; damaged copies carry a
        penalty and go back into circulation. After a release is committed
        the next reservation for the book is promoted.
        """
        condition = CheckinCondition(condition)
        book_id = self._book_of(loan_id)
        overdue_notice = None

        with self._operation(book_id, "checkin", loan_id=loan_id, condition=condition.value):
            loan = self._require_loan(loan_id)
            if loan.status not in ACTIVE_STATUSES:
                raise invalid_transition(
                    f"Loan {loan_id} is not active (status: {loan.status.value})", "loan_not_active"
                )

            book = self.ledger.require_book(book_id)
            today = self.today()
            loan.return_date = today
            loan.status = LoanStatusEnum[condition.name]
            loan.is_overdue = False
            loan.notes = append_note(loan.notes, "Return", notes)

            if today > loan.due_date:
                loan.overdue_days = self.calculator.overdue_days(loan.due_date, today)
                amount = self.calculator.fine(loan.due_date, today)
                self.fine_ledger.record_overdue_fine(loan, amount)
                if loan.overdue_days > 0:
                    overdue_notice = (loan.user_id, book.title, loan.overdue_days, amount)

            if condition == CheckinCondition.LOST:
                self.fine_ledger.record_penalty(
                    loan, FineType.LOST, self.calculator.lost_book_penalty, "Lost book"
                )
            else:
                if condition == CheckinCondition.DAMAGED:
                    self.fine_ledger.record_penalty(
                        loan, FineType.DAMAGED, self.calculator.damaged_book_penalty, "Damaged book"
                    )
                self.ledger.release(book_id)

            self._commit("checkin")
            result = self.loans.to_model(loan)

            # Still under the book lock, so no direct checkout can take the
            # returned copy ahead of the queue.
            if condition != CheckinCondition.LOST and self.promote_next is not None:
                try:
                    self.promote_next(book_id)
                except CirculationError:
                    logger.exception("Promotion after check-in of loan %s failed", loan_id)

        record_circulation_event(f"checkin_{condition.value}", book_id)
        logger.info("Loan %s checked in as %s", loan_id, condition.value)

        if overdue_notice is not None:
            user_id, title, days, amount = overdue_notice
            dispatch(
                self.notifier,
                "notify_overdue",
                user_id=user_id,
                book_title=title,
                overdue_days=days,
                fine_amount=amount,
            )
        return result

    @retry_on_conflict
    def renew_checkout(
        self, loan_id: str, extension_days: int | None = None, notes: str | None = None
    ) -> Loan:
        """
        Extend the due date of a loan that is not overdue.

        Raises:
            CirculationError: POLICY_VIOLATION with reason ``overdue_must_return``
                or ``renewal_limit_reached``; INVALID_STATE_TRANSITION for
                closed loans
        """
        book_id = self._book_of(loan_id)
        with self._operation(book_id, "renew_checkout", loan_id=loan_id):
            loan = self._require_loan(loan_id)
            if loan.status not in ACTIVE_STATUSES:
                raise invalid_transition(
                    f"Loan {loan_id} is not active (status: {loan.status.value})", "loan_not_active"
                )
            if (
                loan.status == LoanStatusEnum.OVERDUE
                or loan.is_overdue
                or loan.due_date < self.today()
            ):
                raise policy_violation(
                    f"Loan {loan_id} is overdue; the book must be returned, not renewed",
                    "overdue_must_return",
                )
            if loan.renewal_count >= loan.max_renewals:
                raise policy_violation(
                    f"Renewal limit reached ({loan.max_renewals}) for loan {loan_id}",
                    "renewal_limit_reached",
                )

            days = (
                extension_days if extension_days is not None else self.config.default_renewal_days
            )
            if days <= 0:
                raise policy_violation("Extension days must be positive", "invalid_extension")

            loan.due_date = loan.due_date + timedelta(days=days)
            loan.renewal_count += 1
            loan.notes = append_note(loan.notes, "Renewal", notes)
            self._commit("renew_checkout")

        record_circulation_event("renewal", book_id)
        logger.info(
            "Loan %s renewed (%d/%d), due %s",
            loan_id,
            loan.renewal_count,
            loan.max_renewals,
            loan.due_date,
        )
        return self.loans.to_model(loan)

    def run_overdue_sweep(self) -> int:
        """
        Mark past-due loans OVERDUE and bring their fines up to date.

        Days and fines are recomputed from the due date every run, so running
        the sweep twice on the same day changes nothing the second time. Each
        loan is updated under its book's lock in its own transaction, so a
        concurrent check-in is never overwritten.

        Returns:
            Number of loans that became overdue in this run
        """
        today = self.today()
        newly_overdue = 0

        with trace_operation(self.component, "run_overdue_sweep") as span:
            self.session.expire_all()
            candidates = [(loan.id, loan.book_id) for loan in self.loans.past_due(today)]
            span.set_attribute("sweep.candidates", len(candidates))

            for loan_id, book_id in candidates:
                became_overdue, notice = self._sweep_loan(loan_id, book_id)
                if became_overdue:
                    newly_overdue += 1
                if notice is not None:
                    user_id, title, days, amount = notice
                    dispatch(
                        self.notifier,
                        "notify_overdue",
                        user_id=user_id,
                        book_title=title,
                        overdue_days=days,
                        fine_amount=amount,
                    )
            span.set_attribute("sweep.newly_overdue", newly_overdue)

        if newly_overdue:
            logger.info("Overdue sweep marked %d loan(s) overdue", newly_overdue)
        return newly_overdue

    @retry_on_conflict
    def _sweep_loan(
        self, loan_id: str, book_id: str
    ) -> tuple[bool, tuple[str, str, int, Decimal] | None]:
        today = self.today()
        with self._operation(book_id, "sweep_loan", loan_id=loan_id):
            loan = self._require_loan(loan_id)
            if loan.status not in ACTIVE_STATUSES or loan.due_date >= today:
                return False, None

            became_overdue = loan.status == LoanStatusEnum.CHECKED_OUT
            loan.status = LoanStatusEnum.OVERDUE
            loan.is_overdue = True

            days = self.calculator.overdue_days(loan.due_date, today)
            amount = self.calculator.fine(loan.due_date, today)
            changed = became_overdue or days != loan.overdue_days
            loan.overdue_days = days
            self.fine_ledger.record_overdue_fine(loan, amount)
            title = self.ledger.require_book(book_id).title
            self._commit("run_overdue_sweep")

        if became_overdue:
            record_circulation_event("overdue", book_id)
        notice = (loan.user_id, title, days, amount) if changed and days > 0 else None
        return became_overdue, notice

    def send_due_date_reminders(self, days_ahead: int | None = None) -> int:
        """Remind users whose checked-out loans fall due within ``days_ahead`` days."""
        days_ahead = self.config.due_reminder_days if days_ahead is None else days_ahead
        today = self.today()

        with trace_operation(self.component, "send_due_date_reminders", days_ahead=days_ahead):
            self.session.expire_all()
            loans = self.loans.due_between(today, today + timedelta(days=days_ahead))
            sent = 0
            for loan in loans:
                title = self.ledger.require_book(loan.book_id).title
                if dispatch(
                    self.notifier,
                    "notify_due_soon",
                    user_id=loan.user_id,
                    book_title=title,
                    due_date=loan.due_date,
                ):
                    sent += 1

        logger.info("Sent %d due date reminder(s)", sent)
        return sent

    # === Queries ===

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.to_model(self._require_loan(loan_id))

    def loans_for_user(self, user_id: str, status: LoanStatus | None = None) -> list[Loan]:
        rows = self.loans.for_user(
            user_id, LoanStatusEnum[LoanStatus(status).name] if status else None
        )
        return [self.loans.to_model(row) for row in rows]

    def days_until_due(self, loan_id: str) -> int:
        """Days until the loan is due, negative when past due."""
        loan = self._require_loan(loan_id)
        return (loan.due_date - self.today()).days
