"""
Loan and reservation repositories.

These hold the queries the loan and reservation managers need: active-loan
counts for the borrowing rules, the overdue and due-soon scans for the
periodic jobs, and the FIFO queue of a book's pending reservations.
"""

from datetime import date, datetime

from sqlalchemy import and_, or_, select

from ..models.circulation import Loan, Reservation
from .repository import BaseRepository
from .schema import Book, LoanStatusEnum, ReservationStatusEnum
from .schema import Loan as LoanRow
from .schema import Reservation as ReservationRow
from .session import safe_query

ACTIVE_LOAN = (LoanStatusEnum.CHECKED_OUT, LoanStatusEnum.OVERDUE)
ACTIVE_RESERVATION = (ReservationStatusEnum.PENDING, ReservationStatusEnum.AVAILABLE)


class LoanRepository(BaseRepository[LoanRow, Loan]):
    @property
    def model_class(self) -> type[LoanRow]:
        return LoanRow

    @property
    def response_schema(self) -> type[Loan]:
        return Loan

    def find_active(self, user_id: str, book_id: str) -> LoanRow | None:
        """The user's CHECKED_OUT or OVERDUE loan of this book, if any."""
        rows = self._rows(
            select(LoanRow).where(
                LoanRow.user_id == user_id,
                LoanRow.book_id == book_id,
                LoanRow.status.in_(ACTIVE_LOAN),
            ),
            "Failed to look up active loan",
        )
        return rows[0] if rows else None

    def count_active(self, user_id: str) -> int:
        return self._count(
            LoanRow.user_id == user_id,
            LoanRow.status.in_(ACTIVE_LOAN),
            error_msg="Failed to count active loans",
        )

    def count_overdue(self, user_id: str, today: date) -> int:
        """OVERDUE loans plus checked-out loans already past due but not yet swept."""
        return self._count(
            LoanRow.user_id == user_id,
            or_(
                LoanRow.status == LoanStatusEnum.OVERDUE,
                and_(LoanRow.status == LoanStatusEnum.CHECKED_OUT, LoanRow.due_date < today),
            ),
            error_msg="Failed to count overdue loans",
        )

    def past_due(self, today: date) -> list[LoanRow]:
        """Active loans whose due date has passed, oldest due first."""
        return self._rows(
            select(LoanRow)
            .where(LoanRow.status.in_(ACTIVE_LOAN), LoanRow.due_date < today)
            .order_by(LoanRow.due_date, LoanRow.id),
            "Failed to scan overdue loans",
        )

    def due_between(self, start: date, end: date) -> list[LoanRow]:
        """CHECKED_OUT loans falling due in ``[start, end]``."""
        return self._rows(
            select(LoanRow)
            .where(
                LoanRow.status == LoanStatusEnum.CHECKED_OUT,
                LoanRow.due_date >= start,
                LoanRow.due_date <= end,
            )
            .order_by(LoanRow.due_date, LoanRow.id),
            "Failed to scan loans due soon",
        )

    def for_user(self, user_id: str, status: LoanStatusEnum | None = None) -> list[LoanRow]:
        query = select(LoanRow).where(LoanRow.user_id == user_id)
        if status is not None:
            query = query.where(LoanRow.status == status)
        return self._rows(
            query.order_by(LoanRow.checkout_date.desc(), LoanRow.id),
            "Failed to list loans for user",
        )


class ReservationRepository(BaseRepository[ReservationRow, Reservation]):
    @property
    def model_class(self) -> type[ReservationRow]:
        return ReservationRow

    @property
    def response_schema(self) -> type[Reservation]:
        return Reservation

    def find_active(self, user_id: str, book_id: str) -> ReservationRow | None:
        rows = self._rows(
            select(ReservationRow).where(
                ReservationRow.user_id == user_id,
                ReservationRow.book_id == book_id,
                ReservationRow.status.in_(ACTIVE_RESERVATION),
            ),
            "Failed to look up active reservation",
        )
        return rows[0] if rows else None

    def count_active_for_user(self, user_id: str) -> int:
        return self._count(
            ReservationRow.user_id == user_id,
            ReservationRow.status.in_(ACTIVE_RESERVATION),
            error_msg="Failed to count active reservations",
        )

    def count_pending(self, book_id: str) -> int:
        return self._count(
            ReservationRow.book_id == book_id,
            ReservationRow.status == ReservationStatusEnum.PENDING,
            error_msg="Failed to count pending reservations",
        )

    def pending_queue(self, book_id: str) -> list[ReservationRow]:
        """PENDING reservations of a book in FIFO order."""
        return self._rows(
            select(ReservationRow)
            .where(
                ReservationRow.book_id == book_id,
                ReservationRow.status == ReservationStatusEnum.PENDING,
            )
            .order_by(
                ReservationRow.reserved_at, ReservationRow.queue_position, ReservationRow.id
            ),
            "Failed to load reservation queue",
        )

    def head_of_queue(self, book_id: str) -> ReservationRow | None:
        """Smallest position first, earliest reservation breaking ties."""
        rows = self._rows(
            select(ReservationRow)
            .where(
                ReservationRow.book_id == book_id,
                ReservationRow.status == ReservationStatusEnum.PENDING,
            )
            .order_by(
                ReservationRow.queue_position.is_(None),
                ReservationRow.queue_position,
                ReservationRow.reserved_at,
            )
            .limit(1),
            "Failed to load head of reservation queue",
        )
        return rows[0] if rows else None

    def expired_holds(self, now: datetime) -> list[ReservationRow]:
        return self._rows(
            select(ReservationRow)
            .where(
                ReservationRow.status == ReservationStatusEnum.AVAILABLE,
                ReservationRow.available_until < now,
            )
            .order_by(ReservationRow.available_until, ReservationRow.id),
            "Failed to scan expired holds",
        )

    def for_user(self, user_id: str, active_only: bool = False) -> list[ReservationRow]:
        query = select(ReservationRow).where(ReservationRow.user_id == user_id)
        if active_only:
            query = query.where(ReservationRow.status.in_(ACTIVE_RESERVATION))
        return self._rows(
            query.order_by(ReservationRow.reserved_at, ReservationRow.id),
            "Failed to list reservations for user",
        )

    def books_with_waiting_queue(self) -> list[str]:
        """Active books that have a free copy while reservations are still PENDING."""
        query = (
            select(ReservationRow.book_id)
            .join(Book, Book.id == ReservationRow.book_id)
            .where(
                ReservationRow.status == ReservationStatusEnum.PENDING,
                Book.available_copies > 0,
                Book.active.is_(True),
            )
            .distinct()
            .order_by(ReservationRow.book_id)
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).scalars().all(),
                "Failed to scan books with waiting reservations",
            )
        )
