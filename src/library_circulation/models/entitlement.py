"""Borrowing entitlement derived from a user's active subscription."""

from pydantic import BaseModel, ConfigDict, Field


class Entitlement(BaseModel):
    """Limits that govern a user's borrowing rights."""

    user_id: str
    plan_name: str
    max_books_allowed: int = Field(..., ge=0, description="Maximum concurrent active loans")
    max_days_per_book: int = Field(..., gt=0, description="Maximum loan duration in days")

    model_config = ConfigDict(frozen=True, from_attributes=True)
