"""
Circulation models for the library circulation engine.

These models are the read side of circulation state:
- Loan: one checkout-to-return cycle of a copy
- Reservation: a queued hold on a book with no free copy
- ActingUser: the resolved identity performing an operation

Engine operations return these models; the SQLAlchemy rows never leave
the engine.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LoanStatus(str, Enum):
    """Status of a loan."""

    CHECKED_OUT = "checked_out"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"


class CheckinCondition(str, Enum):
    """Condition a copy is checked in with; each maps to a terminal loan status."""

    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"


class ReservationStatus(str, Enum):
    """Status of a reservation."""

    PENDING = "pending"
    AVAILABLE = "available"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_LOAN_STATUSES = frozenset({LoanStatus.CHECKED_OUT, LoanStatus.OVERDUE})
ACTIVE_RESERVATION_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.AVAILABLE})


class ActingUser(BaseModel):
    """The user on whose behalf an operation runs, as resolved by the transport layer."""

    user_id: str = Field(..., min_length=1, max_length=50)
    is_admin: bool = False

    model_config = ConfigDict(frozen=True)


class Loan(BaseModel):
    """
    Represents one checkout-to-return cycle.

    Created on checkout, mutated by check-in, renewal and the overdue sweep,
    and never deleted.
    """

    id: str = Field(
        ...,
        description="Unique identifier for the loan",
        pattern=r"^loan_[a-zA-Z0-9_]+$",
        examples=["loan_3f9c2a1b7d4e"],
    )

    user_id: str = Field(..., description="ID of the borrowing user")

    book_id: str = Field(..., description="ID of the borrowed book")

    reservation_id: str | None = Field(
        None,
        description="Reservation this loan fulfilled, if any",
    )

    checkout_date: date = Field(..., description="Date the copy was checked out")

    due_date: date = Field(..., description="Date the copy must be returned by")

    return_date: date | None = Field(None, description="Date the copy came back")

    status: LoanStatus = Field(default=LoanStatus.CHECKED_OUT)

    renewal_count: int = Field(default=0, ge=0)

    max_renewals: int = Field(default=2, ge=0)

    is_overdue: bool = Field(default=False)

    overdue_days: int = Field(default=0, ge=0)

    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_dates(self) -> "Loan":
        """Return date cannot precede checkout date."""
        if self.return_date and self.return_date < self.checkout_date:
            raise ValueError("Return date cannot be before checkout date")
        return self

    @property
    def is_active(self) -> bool:
        """True while the copy is with the borrower."""
        return self.status in ACTIVE_LOAN_STATUSES

    @property
    def can_renew(self) -> bool:
        """Mirrors the renewal rules without consulting the clock."""
        return (
            self.status == LoanStatus.CHECKED_OUT
            and not self.is_overdue
            and self.renewal_count < self.max_renewals
        )

    def days_until_due(self, today: date | None = None) -> int:
        """Days left until the due date; negative once overdue."""
        return (self.due_date - (today or date.today())).days

    model_config = ConfigDict(
        use_enum_values=True,
        populate_by_name=True,
        validate_default=True,
        json_schema_extra={
            "example": {
                "id": "loan_3f9c2a1b7d4e",
                "user_id": "user_1001",
                "book_id": "book_9780134685479",
                "checkout_date": "2024-01-02",
                "due_date": "2024-01-16",
                "status": "checked_out",
                "renewal_count": 0,
                "max_renewals": 2,
                "is_overdue": False,
                "overdue_days": 0,
            }
        },
    )


class Reservation(BaseModel):
    """
    Represents a hold request queued because no copy was free.

    ``queue_position`` is only set while the reservation is PENDING.
    """

    id: str = Field(
        ...,
        description="Unique identifier for the reservation",
        pattern=r"^reservation_[a-zA-Z0-9_]+$",
        examples=["reservation_8a2e0c4d1f6b"],
    )

    user_id: str = Field(..., description="ID of the reserving user")

    book_id: str = Field(..., description="ID of the reserved book")

    status: ReservationStatus = Field(default=ReservationStatus.PENDING)

    reserved_at: datetime = Field(..., description="When the reservation joined the queue")

    available_at: datetime | None = Field(None, description="When the hold was promoted")

    available_until: datetime | None = Field(None, description="Pickup deadline of the hold")

    fulfilled_at: datetime | None = None

    cancelled_at: datetime | None = None

    queue_position: int | None = Field(None, ge=1)

    notification_sent: bool = False

    notes: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def validate_hold_window(self) -> "Reservation":
        """The pickup deadline must come after promotion."""
        if self.available_at and self.available_until and self.available_until <= self.available_at:
            raise ValueError("Pickup deadline must be after the hold started")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES

    def has_expired(self, now: datetime | None = None) -> bool:
        """True for an AVAILABLE hold whose pickup deadline has passed."""
        return (
            self.status == ReservationStatus.AVAILABLE
            and self.available_until is not None
            and (now or datetime.now()) > self.available_until
        )

    model_config = ConfigDict(
        use_enum_values=True,
        populate_by_name=True,
        validate_default=True,
        json_schema_extra={
            "example": {
                "id": "reservation_8a2e0c4d1f6b",
                "user_id": "user_1002",
                "book_id": "book_9780134685479",
                "status": "pending",
                "reserved_at": "2024-01-03T09:15:00",
                "queue_position": 1,
            }
        },
    )
