"""
Resource ledger: the copy counter of each book.

``available_copies`` is the contended resource of the whole engine. Claims
and releases are single conditional UPDATE statements, so the database
re-checks the counter at write time and two claims against the last copy
cannot both succeed, whichever process they come from.

Ledger mutations join the caller's transaction; the loan and reservation
managers decide when to commit. ``release`` never promotes reservations.
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database.book_repository import BookRepository
from ..database.schema import Book
from ..database.session import safe_commit
from ..errors import not_found, policy_violation
from ..models.book import BookAvailability
from ..observability import trace_operation

logger = logging.getLogger(__name__)


class ResourceLedger:
    """Claims and releases copies of books."""

    def __init__(self, session: Session):
        self.session = session
        self.books = BookRepository(session)

    def require_book(self, book_id: str) -> Book:
        """Load the book row or raise NOT_FOUND."""
        book = self.books.get_row(book_id)
        if book is None:
            raise not_found("Book", book_id)
        return book

    def get_book(self, book_id: str) -> BookAvailability:
        return self.books.to_model(self.require_book(book_id))

    def availability(self, book_id: str) -> int:
        """Copies that can be claimed right now."""
        return self.require_book(book_id).available_copies

    def try_claim(self, book_id: str) -> bool:
        """
        Take one copy of an active book.

        Returns False when no copy is free or the book is inactive; the
        counter is never decremented below zero.
        """
        book = self.require_book(book_id)
        with trace_operation("ledger", "try_claim", book_id=book_id) as span:
            result = self.session.execute(
                update(Book)
                .where(
                    Book.id == book_id,
                    Book.active.is_(True),
                    Book.available_copies > 0,
                )
                .values(available_copies=Book.available_copies - 1)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
            span.set_attribute("ledger.claimed", claimed)

        self.session.expire(book, ["available_copies", "updated_at"])
        if claimed:
            logger.debug("Claimed a copy of %s", book_id)
        else:
            logger.info("No copy of %s could be claimed", book_id)
        return claimed

    def release(self, book_id: str) -> bool:
        """
        Return one copy to the pool, capped at ``total_copies``.

        Returns False when the counter was already full, which indicates a
        bookkeeping error upstream and is logged as such.
        """
        book = self.require_book(book_id)
        with trace_operation("ledger", "release", book_id=book_id) as span:
            result = self.session.execute(
                update(Book)
                .where(Book.id == book_id, Book.available_copies < Book.total_copies)
                .values(available_copies=Book.available_copies + 1)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount == 1
            span.set_attribute("ledger.released", released)

        self.session.expire(book, ["available_copies", "updated_at"])
        if not released:
            logger.warning("Release of %s ignored: all copies already available", book_id)
        return released

    def add_book(
        self,
        book_id: str,
        title: str,
        total_copies: int = 1,
        available_copies: int | None = None,
        isbn: str | None = None,
        active: bool = True,
    ) -> BookAvailability:
        """Register a book with the ledger (seeding and tests; catalog CRUD lives elsewhere)."""
        if available_copies is None:
            available_copies = total_copies
        if total_copies < 0 or available_copies < 0:
            raise policy_violation("Copy counts cannot be negative", "invalid_copy_counts")
        if available_copies > total_copies:
            raise policy_violation(
                f"Available copies ({available_copies}) cannot exceed "
                f"total copies ({total_copies})",
                "invalid_copy_counts",
            )

        book = Book(
            id=book_id,
            title=title,
            isbn=isbn,
            total_copies=total_copies,
            available_copies=available_copies,
            active=active,
        )
        try:
            self.books.add(book)
            safe_commit(self.session, "add_book")
        except IntegrityError as e:
            self.session.rollback()
            raise policy_violation(f"Book {book_id} already exists", "duplicate_book") from e

        logger.info("Added book %s with %d copies", book_id, total_copies)
        return self.books.to_model(book)
