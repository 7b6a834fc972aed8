"""
Pydantic models returned by the circulation engine.

The engine converts every SQLAlchemy row into one of these before it leaves
a manager, so callers never hold live ORM state.
"""

from .book import BookAvailability
from .circulation import (
    ACTIVE_LOAN_STATUSES,
    ACTIVE_RESERVATION_STATUSES,
    ActingUser,
    CheckinCondition,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
)
from .entitlement import Entitlement
from .fine import OPEN_FINE_STATUSES, Fine, FineStatus, FineType

__all__ = [
    "ACTIVE_LOAN_STATUSES",
    "ACTIVE_RESERVATION_STATUSES",
    "OPEN_FINE_STATUSES",
    "ActingUser",
    "BookAvailability",
    "CheckinCondition",
    "Entitlement",
    "Fine",
    "FineStatus",
    "FineType",
    "Loan",
    "LoanStatus",
    "Reservation",
    "ReservationStatus",
]
