"""Book repository: the lookups behind the resource ledger."""

from sqlalchemy import select

from ..models.book import BookAvailability
from .repository import BaseRepository
from .schema import Book


class BookRepository(BaseRepository[Book, BookAvailability]):
    @property
    def model_class(self) -> type[Book]:
        return Book

    @property
    def response_schema(self) -> type[BookAvailability]:
        return BookAvailability

    def get_by_isbn(self, isbn: str) -> Book | None:
        rows = self._rows(select(Book).where(Book.isbn == isbn), "Failed to get book by ISBN")
        return rows[0] if rows else None
