"""
SQLAlchemy database schema for the library circulation engine.

The tables mirror the pydantic models in ``library_circulation.models``.
Records reference each other by explicit string ids only: there are no ORM
relationships, lazy loads or cascades, so every load is a deliberate query
and nothing is ever deleted as a side effect.

Invariants enforced at the database level:
1. ``0 <= available_copies <= total_copies`` for every book
2. At most one CHECKED_OUT/OVERDUE loan per (user, book)
3. At most one PENDING/AVAILABLE reservation per (user, book)
4. ``amount_paid <= amount`` for every fine
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, validates
from sqlalchemy.sql import func

Base = declarative_base()

# Enum columns persist member names, which is what the partial indexes match on.
ACTIVE_LOAN_WHERE = text("status IN ('CHECKED_OUT', 'OVERDUE')")
ACTIVE_RESERVATION_WHERE = text("status IN ('PENDING', 'AVAILABLE')")


class LoanStatusEnum(str, enum.Enum):
    """Database enum for loan status."""

    CHECKED_OUT = "checked_out"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"


class ReservationStatusEnum(str, enum.Enum):
    """Database enum for reservation status."""

    PENDING = "pending"
    AVAILABLE = "available"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FineTypeEnum(str, enum.Enum):
    """Database enum for fine type."""

    OVERDUE = "overdue"
    LOST = "lost"
    DAMAGED = "damaged"


class FineStatusEnum(str, enum.Enum):
    """Database enum for fine status."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    WAIVED = "waived"


class Book(Base):
    """
    Books table - the resource ledger's subject.

    Only the copy counters and the active flag matter to circulation;
    the rest of the catalog lives elsewhere.
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    isbn = Column(String(13), nullable=True, unique=True)
    title = Column(String(500), nullable=False)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_book_availability", "available_copies"),
        CheckConstraint("total_copies >= 0", name="check_total_copies_non_negative"),
        CheckConstraint("available_copies >= 0", name="check_available_copies_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="check_available_not_exceed_total"
        ),
    )

    @validates("available_copies")
    def validate_available_copies(self, key, value):  # noqa: ARG002
        """Reject counts outside 0..total_copies before they reach the database."""
        if value is not None and value < 0:
            raise ValueError("available_copies cannot be negative")
        if value is not None and self.total_copies is not None and value > self.total_copies:
            raise ValueError("available_copies cannot exceed total_copies")
        return value


class Loan(Base):
    """
    Loans table - one checkout-to-return cycle.

    Loans are never deleted; returned, lost and damaged loans remain as the
    audit trail of the copy's circulation.
    """

    __tablename__ = "loans"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    reservation_id = Column(String(50), nullable=True)
    checkout_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)
    status = Column(Enum(LoanStatusEnum), nullable=False, default=LoanStatusEnum.CHECKED_OUT)
    renewal_count = Column(Integer, nullable=False, default=0)
    max_renewals = Column(Integer, nullable=False, default=2)
    is_overdue = Column(Boolean, nullable=False, default=False)
    overdue_days = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_loan_user", "user_id"),
        Index("idx_loan_book", "book_id"),
        Index("idx_loan_status", "status"),
        Index("idx_loan_due_date", "due_date"),
        Index(
            "uq_loan_active_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=ACTIVE_LOAN_WHERE,
            postgresql_where=ACTIVE_LOAN_WHERE,
        ),
        CheckConstraint("id LIKE 'loan_%'", name="check_loan_id_format"),
        CheckConstraint("renewal_count >= 0", name="check_renewal_count_non_negative"),
        CheckConstraint("overdue_days >= 0", name="check_overdue_days_non_negative"),
    )


class Reservation(Base):
    """
    Reservations table - holds queued against unavailable books.

    ``queue_position`` is derived from ``reserved_at`` and recomputed after
    every change to a book's PENDING set; it is NULL outside PENDING.
    """

    __tablename__ = "reservations"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    status = Column(
        Enum(ReservationStatusEnum), nullable=False, default=ReservationStatusEnum.PENDING
    )
    reserved_at = Column(DateTime, nullable=False)
    available_at = Column(DateTime, nullable=True)
    available_until = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    queue_position = Column(Integer, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_reservation_user", "user_id"),
        Index("idx_reservation_status", "status"),
        Index("idx_reservation_queue", "book_id", "status", "reserved_at"),
        Index(
            "uq_reservation_active_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=ACTIVE_RESERVATION_WHERE,
            postgresql_where=ACTIVE_RESERVATION_WHERE,
        ),
        CheckConstraint("id LIKE 'reservation_%'", name="check_reservation_id_format"),
        CheckConstraint(
            "queue_position IS NULL OR queue_position > 0", name="check_queue_position_positive"
        ),
    )


class Fine(Base):
    """
    Fines table - monetary obligations tied to a loan.

    A loan can carry several fines (overdue plus lost or damaged), but at most
    one OVERDUE fine, which is recomputed in place as days accrue.
    """

    __tablename__ = "fines"

    id = Column(String(50), primary_key=True)
    loan_id = Column(String(50), ForeignKey("loans.id"), nullable=False)
    user_id = Column(String(50), nullable=False)
    type = Column(Enum(FineTypeEnum), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(Enum(FineStatusEnum), nullable=False, default=FineStatusEnum.PENDING)
    reason = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    # Waiver tracking
    waived_by = Column(String(50), nullable=True)
    waived_at = Column(DateTime, nullable=True)
    waiver_reason = Column(String(500), nullable=True)

    # Payment tracking
    paid_at = Column(DateTime, nullable=True)
    transaction_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_fine_loan", "loan_id"),
        Index("idx_fine_user", "user_id"),
        Index("idx_fine_status", "status"),
        CheckConstraint("id LIKE 'fine_%'", name="check_fine_id_format"),
        CheckConstraint("amount >= 0", name="check_fine_amount_non_negative"),
        CheckConstraint("amount_paid >= 0", name="check_amount_paid_non_negative"),
        CheckConstraint("amount_paid <= amount", name="check_amount_paid_not_exceed_amount"),
    )


class Subscription(Base):
    """
    Subscriptions table - source of borrowing entitlements.

    Plan management is handled elsewhere; circulation only reads the limits
    of the user's currently active subscription.
    """

    __tablename__ = "subscriptions"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    plan_name = Column(String(100), nullable=False)
    max_books_allowed = Column(Integer, nullable=False)
    max_days_per_book = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (
        Index("idx_subscription_user", "user_id", "active"),
        CheckConstraint("max_books_allowed >= 0", name="check_max_books_non_negative"),
        CheckConstraint("max_days_per_book > 0", name="check_max_days_positive"),
    )


class Notification(Base):
    """Notifications table - in-app copies of circulation notices."""

    __tablename__ = "notifications"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    kind = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (Index("idx_notification_user", "user_id", "read"),)
