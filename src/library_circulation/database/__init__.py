"""
Database package for the circulation engine.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and connection handling (session.py)
- Repositories that own the circulation queries
"""

from .book_repository import BookRepository
from .circulation_repository import LoanRepository, ReservationRepository
from .fine_repository import FineRepository
from .repository import BaseRepository
from .schema import (
    Base,
    Book,
    Fine,
    FineStatusEnum,
    FineTypeEnum,
    Loan,
    LoanStatusEnum,
    Notification,
    Reservation,
    ReservationStatusEnum,
    Subscription,
)
from .session import (
    DatabaseManager,
    RepositoryException,
    get_db_manager,
    get_session,
    reset_db_manager,
    safe_commit,
    safe_query,
    session_scope,
)

__all__ = [
    "Base",
    "BaseRepository",
    "Book",
    "BookRepository",
    "DatabaseManager",
    "Fine",
    "FineRepository",
    "FineStatusEnum",
    "FineTypeEnum",
    "Loan",
    "LoanRepository",
    "LoanStatusEnum",
    "Notification",
    "RepositoryException",
    "Reservation",
    "ReservationRepository",
    "ReservationStatusEnum",
    "Subscription",
    "get_db_manager",
    "get_session",
    "reset_db_manager",
    "safe_commit",
    "safe_query",
    "session_scope",
]
