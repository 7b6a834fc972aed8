"""
Repository base class for the circulation engine.

Repositories own the queries; the circulation managers own the state
transitions. A repository never commits: it only reads rows, adds new ones
and converts rows into the pydantic models the engine hands back to callers.

Every query runs through ``safe_query`` so unexpected persistence failures
surface as ``RepositoryException`` while write conflicts propagate unchanged
for the retry layer.
"""

import enum
from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import Select, func, inspect, select
from sqlalchemy.orm import Session

from .schema import Base
from .session import safe_query

ModelType = TypeVar("ModelType", bound=Base)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)


class BaseRepository(ABC, Generic[ModelType, ResponseSchemaType]):
    """Common lookups shared by the book, loan, reservation and fine repositories."""

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @property
    @abstractmethod
    def response_schema(self) -> type[ResponseSchemaType]:
        """Return the Pydantic response schema."""

    def to_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert a database row to its pydantic model.

        Database enums are unwrapped to their values so the row and response
        enum types stay independent.
        """
        values: dict[str, Any] = {}
        for attr in inspect(db_obj).mapper.column_attrs:
            value = getattr(db_obj, attr.key)
            if isinstance(value, enum.Enum):
                value = value.value
            values[attr.key] = value
        return self.response_schema.model_validate(values)

    def get_row(self, id: str) -> ModelType | None:
        """Load a row by primary key, or None."""
        return safe_query(
            self.session,
            lambda s: s.get(self.model_class, id),
            f"Failed to get {self.model_class.__name__} by ID",
        )

    def get_by_id(self, id: str) -> ResponseSchemaType | None:
        """
        Get entity by ID.

        Returns:
            Pydantic model or None if not found

        Raises:
            RepositoryException: On database errors
        """
        db_obj = self.get_row(id)
        if db_obj is None:
            return None
        return self.to_model(db_obj)

    def add(self, db_obj: ModelType) -> ModelType:
        """Stage a new row and flush it so constraint violations surface immediately."""
        self.session.add(db_obj)
        self.session.flush()
        return db_obj

    def _rows(self, query: Select, error_msg: str) -> list[ModelType]:
        return list(
            safe_query(self.session, lambda s: s.execute(query).scalars().all(), error_msg)
        )

    def _count(self, *criteria, error_msg: str) -> int:
        query = select(func.count()).select_from(self.model_class).where(*criteria)
        return safe_query(self.session, lambda s: s.execute(query).scalar(), error_msg) or 0
