"""
Fine models for the library circulation engine.

A fine is a monetary obligation tied to one loan. Amounts are ``Decimal``
with two places; ``amount_paid`` never exceeds ``amount``.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FineType(str, Enum):
    """Why a fine was charged."""

    OVERDUE = "overdue"
    LOST = "lost"
    DAMAGED = "damaged"


class FineStatus(str, Enum):
    """Payment state of a fine."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    WAIVED = "waived"


OPEN_FINE_STATUSES = frozenset({FineStatus.PENDING, FineStatus.PARTIALLY_PAID})


class Fine(BaseModel):
    """Represents one monetary obligation tied to a loan."""

    id: str = Field(..., pattern=r"^fine_[a-zA-Z0-9_]+$")

    loan_id: str

    user_id: str

    type: FineType

    amount: Decimal = Field(..., ge=0, decimal_places=2)

    amount_paid: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)

    status: FineStatus = Field(default=FineStatus.PENDING)

    reason: str | None = None

    notes: str | None = None

    waived_by: str | None = None

    waived_at: datetime | None = None

    waiver_reason: str | None = None

    paid_at: datetime | None = None

    transaction_ref: str | None = None

    @model_validator(mode="after")
    def validate_payment(self) -> "Fine":
        """Ensure the paid amount never exceeds the fine."""
        if self.amount_paid > self.amount:
            raise ValueError("Amount paid cannot exceed fine amount")
        return self

    @property
    def amount_outstanding(self) -> Decimal:
        """Amount still owed; zero once paid or waived."""
        if self.status == FineStatus.WAIVED:
            return Decimal("0.00")
        return self.amount - self.amount_paid

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_FINE_STATUSES

    model_config = ConfigDict(
        use_enum_values=True,
        populate_by_name=True,
        validate_default=True,
        json_schema_extra={
            "example": {
                "id": "fine_5b1d9e7c3a20",
                "loan_id": "loan_3f9c2a1b7d4e",
                "user_id": "user_1001",
                "type": "overdue",
                "amount": "5.00",
                "amount_paid": "0.00",
                "status": "pending",
            }
        },
    )
