"""
Fine calculation and the fine ledger.

``FineCalculator`` is pure: the same due date and as-of date always produce
the same amount. ``FineLedger`` records fines against loans and applies
payments and waivers.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.circulation_repository import LoanRepository
from ..database.fine_repository import FineRepository
from ..database.schema import Fine as FineRow
from ..database.schema import FineStatusEnum, FineTypeEnum
from ..database.schema import Loan as LoanRow
from ..errors import invalid_transition, not_found, policy_violation
from ..models.fine import Fine, FineStatus, FineType
from ..observability.metrics import record_fine
from .base import CirculationComponent, Clock, new_id
from .locks import BookLockRegistry
from .retry import retry_on_conflict

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce to a two-place Decimal."""
    return Decimal(str(value)).quantize(CENTS)


class FineCalculator:
    """Overdue fine policy.

    ``fine`` is zero up to and including the due date, then grows by
    ``per_day_rate`` for every day past the grace period, never exceeding
    ``max_fine``.
    """

    def __init__(
        self,
        per_day_rate: Decimal = Decimal("1.00"),
        max_fine: Decimal = Decimal("50.00"),
        grace_period_days: int = 0,
        lost_book_penalty: Decimal = Decimal("100.00"),
        damaged_book_penalty: Decimal = Decimal("25.00"),
    ):
        if grace_period_days < 0:
            raise ValueError("grace_period_days cannot be negative")
        self.per_day_rate = to_money(per_day_rate)
        self.max_fine = to_money(max_fine)
        self.grace_period_days = grace_period_days
        self.lost_book_penalty = to_money(lost_book_penalty)
        self.damaged_book_penalty = to_money(damaged_book_penalty)

    @classmethod
    def from_config(cls, config: CirculationConfig) -> "FineCalculator":
        return cls(
            per_day_rate=config.fine_per_day,
            max_fine=config.max_fine,
            grace_period_days=config.grace_period_days,
            lost_book_penalty=config.lost_book_penalty,
            damaged_book_penalty=config.damaged_book_penalty,
        )

    def overdue_days(self, due_date: date, as_of: date) -> int:
        """Chargeable days past the due date, after the grace period."""
        if as_of <= due_date:
            return 0
        return max(0, (as_of - due_date).days - self.grace_period_days)

    def fine(self, due_date: date, as_of: date) -> Decimal:
        days = self.overdue_days(due_date, as_of)
        return min(self.per_day_rate * days, self.max_fine).quantize(CENTS)

    def penalty_for(self, fine_type: FineType) -> Decimal:
        """Flat penalty charged for a lost or damaged copy."""
        if fine_type == FineType.LOST:
            return self.lost_book_penalty
        if fine_type == FineType.DAMAGED:
            return self.damaged_book_penalty
        raise ValueError(f"No flat penalty for {fine_type} fines")


def _settle_status(fine: FineRow) -> None:
    """Derive PENDING/PARTIALLY_PAID/PAID from the amounts; waived fines keep their status."""
    if fine.status == FineStatusEnum.WAIVED:
        return
    if fine.amount_paid >= fine.amount:
        fine.status = FineStatusEnum.PAID
    elif fine.amount_paid > 0:
        fine.status = FineStatusEnum.PARTIALLY_PAID
    else:
        fine.status = FineStatusEnum.PENDING


class FineLedger(CirculationComponent):
    """
    Records fines per loan and tracks their payment and waiver state.

    ``record_overdue_fine`` and ``record_penalty`` join the caller's
    transaction (check-in and the overdue sweep). The remaining mutations are
    standalone operations that commit on their own.
    """

    component = "fines"

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        locks: BookLockRegistry,
        clock: Clock | None = None,
    ):
        super().__init__(session, config, locks, clock)
        self.fines = FineRepository(session)
        self.loans = LoanRepository(session)

    # === Recording (caller's transaction) ===

    def record_overdue_fine(self, loan: LoanRow, amount: Decimal) -> FineRow | None:
        """
        Create or recompute the single OVERDUE fine of a loan.

        The amount is absolute, not a delta, so recomputing on every sweep
        never double counts. A zero amount creates nothing. Waived fines are
        left alone.
        """
        amount = to_money(amount)
        self.session.flush()
        fine = self.fines.overdue_fine_for_loan(loan.id)

        if fine is None:
            if amount <= ZERO:
                return None
            fine = FineRow(
                id=new_id("fine"),
                loan_id=loan.id,
                user_id=loan.user_id,
                type=FineTypeEnum.OVERDUE,
                amount=amount,
                amount_paid=ZERO,
                status=FineStatusEnum.PENDING,
                reason=f"Overdue by {loan.overdue_days} day(s)",
            )
            self.fines.add(fine)
            record_fine(FineType.OVERDUE.value, float(amount))
            logger.info("Recorded overdue fine %s of %s for loan %s", fine.id, amount, loan.id)
            return fine

        if fine.status == FineStatusEnum.WAIVED:
            return fine

        # Never drop below what was already paid.
        fine.amount = max(amount, to_money(fine.amount_paid))
        fine.reason = f"Overdue by {loan.overdue_days} day(s)"
        _settle_status(fine)
        return fine

    def record_penalty(
        self, loan: LoanRow, fine_type: FineType, amount: Decimal, reason: str | None = None
    ) -> FineRow:
        """Record a lost or damaged penalty against a loan."""
        fine_type = FineType(fine_type)
        amount = to_money(amount)
        fine = FineRow(
            id=new_id("fine"),
            loan_id=loan.id,
            user_id=loan.user_id,
            type=FineTypeEnum[fine_type.name],
            amount=amount,
            amount_paid=ZERO,
            status=FineStatusEnum.PENDING if amount > ZERO else FineStatusEnum.PAID,
            reason=reason,
        )
        self.fines.add(fine)
        record_fine(fine_type.value, float(amount))
        logger.info(
            "Recorded %s penalty %s of %s for loan %s", fine_type.value, fine.id, amount, loan.id
        )
        return fine

    # === Standalone operations ===

    def _require_fine(self, fine_id: str) -> FineRow:
        fine = self.fines.get_row(fine_id)
        if fine is None:
            raise not_found("Fine", fine_id)
        return fine

    def _book_of_loan(self, loan_id: str) -> str:
        loan = self.loans.get_row(loan_id)
        if loan is None:
            raise not_found("Loan", loan_id)
        return loan.book_id

    def _book_of_fine(self, fine_id: str) -> str:
        """Fines change under their book's lock, the same one check-in and the sweep hold."""
        return self._book_of_loan(self._require_fine(fine_id).loan_id)

    @retry_on_conflict
    def create_fine(
        self,
        loan_id: str,
        fine_type: FineType,
        amount: Decimal,
        reason: str | None = None,
        notes: str | None = None,
    ) -> Fine:
        """Manually charge a fine against a loan."""
        fine_type = FineType(fine_type)
        amount = to_money(amount)
        book_id = self._book_of_loan(loan_id)
        with self._operation(book_id, "create_fine", loan_id=loan_id, fine_type=fine_type.value):
            loan = self.loans.get_row(loan_id)
            if amount <= ZERO:
                raise policy_violation("Fine amount must be positive", "invalid_fine_amount")
            if fine_type == FineType.OVERDUE and self.fines.overdue_fine_for_loan(loan_id):
                raise policy_violation(
                    f"Loan {loan_id} already has an overdue fine", "duplicate_overdue_fine"
                )

            fine = FineRow(
                id=new_id("fine"),
                loan_id=loan_id,
                user_id=loan.user_id,
                type=FineTypeEnum[fine_type.name],
                amount=amount,
                amount_paid=ZERO,
                status=FineStatusEnum.PENDING,
                reason=reason,
                notes=notes,
            )
            self.fines.add(fine)
            self._commit("create_fine")

        record_fine(fine_type.value, float(amount))
        logger.info(
            "Created %s fine %s of %s for loan %s", fine_type.value, fine.id, amount, loan_id
        )
        return self.fines.to_model(fine)

    @retry_on_conflict
    def mark_fine_as_paid(
        self, fine_id: str, amount_paid: Decimal, transaction_ref: str | None = None
    ) -> Fine:
        """
        Apply a confirmed payment to a fine.

        Called by the payment subsystem once the gateway confirms. The payment
        must be positive and cannot exceed what is still owed; the fine becomes
        PAID when fully covered and PARTIALLY_PAID otherwise.

        Raises:
            CirculationError: NOT_FOUND, INVALID_STATE_TRANSITION for paid or
                waived fines, POLICY_VIOLATION for bad amounts
        """
        payment = to_money(amount_paid)
        book_id = self._book_of_fine(fine_id)
        with self._operation(book_id, "mark_fine_as_paid", fine_id=fine_id):
            fine = self._require_fine(fine_id)
            if fine.status in (FineStatusEnum.PAID, FineStatusEnum.WAIVED):
                raise invalid_transition(
                    f"Fine {fine_id} is already {fine.status.value}", "fine_not_payable"
                )
            if payment <= ZERO:
                raise policy_violation("Payment amount must be positive", "invalid_payment_amount")
            outstanding = to_money(fine.amount) - to_money(fine.amount_paid)
            if payment > outstanding:
                raise policy_violation(
                    f"Payment of {payment} exceeds outstanding amount {outstanding}", "overpayment"
                )

            fine.amount_paid = to_money(fine.amount_paid) + payment
            _settle_status(fine)
            if fine.status == FineStatusEnum.PAID:
                fine.paid_at = self.now()
            if transaction_ref:
                fine.transaction_ref = transaction_ref
            self._commit("mark_fine_as_paid")

        logger.info(
            "Fine %s received payment %s (txn: %s), status %s",
            fine_id,
            payment,
            transaction_ref,
            fine.status.value,
        )
        return self.fines.to_model(fine)

    @retry_on_conflict
    def waive_fine(self, fine_id: str, admin_user_id: str, reason: str) -> Fine:
        """Waive a fine that has not been fully paid."""
        if not reason or not reason.strip():
            raise policy_violation("A waiver reason is required", "waiver_reason_required")
        book_id = self._book_of_fine(fine_id)
        with self._operation(book_id, "waive_fine", fine_id=fine_id):
            fine = self._require_fine(fine_id)
            if fine.status == FineStatusEnum.WAIVED:
                raise invalid_transition(
                    f"Fine {fine_id} has already been waived", "fine_already_waived"
                )
            if fine.status == FineStatusEnum.PAID:
                raise invalid_transition(
                    f"Fine {fine_id} has already been paid and cannot be waived",
                    "fine_already_paid",
                )

            fine.status = FineStatusEnum.WAIVED
            fine.waived_by = admin_user_id
            fine.waived_at = self.now()
            fine.waiver_reason = reason.strip()
            self._commit("waive_fine")

        logger.info("Fine %s waived by admin %s", fine_id, admin_user_id)
        return self.fines.to_model(fine)

    @retry_on_conflict
    def delete_fine(self, fine_id: str) -> None:
        """Delete a fine that has received no payment."""
        book_id = self._book_of_fine(fine_id)
        with self._operation(book_id, "delete_fine", fine_id=fine_id):
            fine = self._require_fine(fine_id)
            if to_money(fine.amount_paid) > ZERO:
                raise policy_violation(
                    f"Fine {fine_id} has payments recorded and cannot be deleted",
                    "fine_has_payments",
                )
            self.session.delete(fine)
            self._commit("delete_fine")
        logger.info("Deleted fine %s", fine_id)

    # === Queries ===

    def get_fine(self, fine_id: str) -> Fine:
        fine = self.fines.get_by_id(fine_id)
        if fine is None:
            raise not_found("Fine", fine_id)
        return fine

    def fines_for_loan(self, loan_id: str) -> list[Fine]:
        return [self.fines.to_model(f) for f in self.fines.for_loan(loan_id)]

    def fines_for_user(
        self,
        user_id: str,
        status: FineStatus | None = None,
        fine_type: FineType | None = None,
    ) -> list[Fine]:
        rows = self.fines.for_user(
            user_id,
            status=FineStatusEnum[FineStatus(status).name] if status else None,
            fine_type=FineTypeEnum[FineType(fine_type).name] if fine_type else None,
        )
        return [self.fines.to_model(f) for f in rows]

    def total_outstanding(self, user_id: str) -> Decimal:
        """Amount the user still owes across open fines."""
        return self.fines.outstanding_total(user_id)


__all__ = ["FineCalculator", "FineLedger", "to_money"]
