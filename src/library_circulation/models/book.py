"""Book availability model, the read side of the resource ledger."""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BookAvailability(BaseModel):
    """Copy counters of one book as seen by circulation."""

    id: str = Field(..., min_length=1, max_length=50)
    title: str
    isbn: str | None = None
    total_copies: int = Field(..., ge=0)
    available_copies: int = Field(..., ge=0)
    active: bool = True

    @model_validator(mode="after")
    def validate_copies(self) -> "BookAvailability":
        """Available copies can never exceed the total."""
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self

    @property
    def is_available(self) -> bool:
        """True when a copy can be claimed right now."""
        return self.active and self.available_copies > 0

    @property
    def checked_out_copies(self) -> int:
        return self.total_copies - self.available_copies

    model_config = ConfigDict(from_attributes=True)
