"""
Circulation tools: checkout, return, renewal and reservations.

Each tool validates its arguments with a pydantic schema, runs one engine
operation in its own session and answers with a message plus structured
data. Circulation failures come back as ``isError`` responses tagged with
the error kind and reason; only genuinely unexpected failures are logged
with a traceback.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..circulation.engine import CirculationEngine, run_engine_operation
from ..database.session import RepositoryException
from ..errors import CirculationError
from ..models.circulation import ActingUser, CheckinCondition, Loan
from ..models.fine import Fine
from ..observability import trace_tool
from .responses import (
    circulation_error_response,
    dump,
    error_response,
    repository_error_response,
    text_response,
    validation_error_response,
)

logger = logging.getLogger(__name__)

USER_ID = Field(..., min_length=1, max_length=50, description="Resolved id of the acting user")


# =============================================================================
# CHECKOUT / RETURN / RENEW
# =============================================================================


class CheckoutBookInput(BaseModel):
    """Input schema for the checkout_book tool."""

    user_id: str = USER_ID
    book_id: str = Field(..., min_length=1, max_length=50, examples=["book_9780134685479"])
    requested_days: int | None = Field(
        default=None,
        ge=1,
        le=365,
        description="Loan length in days; capped by the user's plan. Defaults to the plan maximum",
    )


class ReturnBookInput(BaseModel):
    """Input schema for the return_book tool."""

    loan_id: str = Field(..., pattern=r"^loan_[a-zA-Z0-9_]+$")
    condition: CheckinCondition = Field(
        default=CheckinCondition.RETURNED,
        description="returned, lost or damaged",
    )
    notes: str | None = Field(default=None, max_length=500)


class RenewBookInput(BaseModel):
    """Input schema for the renew_book tool."""

    loan_id: str = Field(..., pattern=r"^loan_[a-zA-Z0-9_]+$")
    extension_days: int | None = Field(default=None, ge=1, le=90)
    notes: str | None = Field(default=None, max_length=500)


@trace_tool("checkout_book")
async def checkout_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Lend a copy of a book to a user."""
    try:
        params = CheckoutBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("checkout", e)

    try:
        loan = await run_engine_operation(
            lambda engine: engine.checkout(params.user_id, params.book_id, params.requested_days)
        )
    except CirculationError as e:
        return circulation_error_response("Checkout", e)
    except RepositoryException as e:
        return repository_error_response("Checkout", e)
    except Exception as e:
        logger.exception("Unexpected error in checkout_book tool")
        return error_response(f"Checkout failed: {e!s}")

    return text_response(
        f"Checked out book '{loan.book_id}' to user '{loan.user_id}'. "
        f"Due date: {loan.due_date.strftime('%B %d, %Y')}",
        {"loan": dump(loan)},
    )


@trace_tool("return_book")
async def return_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Check a loan in as returned, lost or damaged."""
    try:
        params = ReturnBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("return", e)

    def checkin(engine: CirculationEngine) -> tuple[Loan, list[Fine]]:
        loan = engine.checkin(params.loan_id, params.condition, params.notes)
        return loan, engine.fines.fines_for_loan(loan.id)

    try:
        loan, fines = await run_engine_operation(checkin)
    except CirculationError as e:
        return circulation_error_response("Return", e)
    except RepositoryException as e:
        return repository_error_response("Return", e)
    except Exception as e:
        logger.exception("Unexpected error in return_book tool")
        return error_response(f"Return failed: {e!s}")

    message = f"Loan '{loan.id}' checked in as {params.condition.value}."
    if loan.overdue_days:
        message += f" Returned {loan.overdue_days} day(s) late."
    if fines:
        total = sum(f.amount for f in fines)
        message += f" Fines recorded: {len(fines)} totalling {total:.2f}."

    return text_response(message, {"loan": dump(loan), "fines": [dump(f) for f in fines]})


@trace_tool("renew_book")
async def renew_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Extend the due date of a loan that is not overdue."""
    try:
        params = RenewBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("renewal", e)

    try:
        loan = await run_engine_operation(
            lambda engine: engine.renew_checkout(
                params.loan_id, params.extension_days, params.notes
            )
        )
    except CirculationError as e:
        return circulation_error_response("Renewal", e)
    except RepositoryException as e:
        return repository_error_response("Renewal", e)
    except Exception as e:
        logger.exception("Unexpected error in renew_book tool")
        return error_response(f"Renewal failed: {e!s}")

    return text_response(
        f"Loan '{loan.id}' renewed ({loan.renewal_count}/{loan.max_renewals}). "
        f"New due date: {loan.due_date.strftime('%B %d, %Y')}",
        {"loan": dump(loan)},
    )


# =============================================================================
# RESERVATIONS
# =============================================================================


class ReserveBookInput(BaseModel):
    """Input schema for the reserve_book tool."""

    user_id: str = USER_ID
    book_id: str = Field(..., min_length=1, max_length=50)
    notes: str | None = Field(default=None, max_length=500)


class CancelReservationInput(BaseModel):
    """Input schema for the cancel_reservation tool."""

    reservation_id: str = Field(..., pattern=r"^reservation_[a-zA-Z0-9_]+$")
    user_id: str = USER_ID
    is_admin: bool = Field(default=False, description="Set when an administrator acts")


class FulfillReservationInput(BaseModel):
    """Input schema for the fulfill_reservation tool."""

    reservation_id: str = Field(..., pattern=r"^reservation_[a-zA-Z0-9_]+$")
    notes: str | None = Field(default=None, max_length=500)


@trace_tool("reserve_book")
async def reserve_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Queue a user for a book with no free copy."""
    try:
        params = ReserveBookInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("reservation", e)

    try:
        reservation = await run_engine_operation(
            lambda engine: engine.create_reservation(params.user_id, params.book_id, params.notes)
        )
    except CirculationError as e:
        return circulation_error_response("Reservation", e)
    except RepositoryException as e:
        return repository_error_response("Reservation", e)
    except Exception as e:
        logger.exception("Unexpected error in reserve_book tool")
        return error_response(f"Reservation failed: {e!s}")

    return text_response(
        f"Reserved book '{reservation.book_id}' for user '{reservation.user_id}'. "
        f"Queue position: {reservation.queue_position}",
        {"reservation": dump(reservation)},
    )


@trace_tool("cancel_reservation")
async def cancel_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Cancel a pending reservation or an open hold."""
    try:
        params = CancelReservationInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("cancellation", e)

    acting_user = ActingUser(user_id=params.user_id, is_admin=params.is_admin)
    try:
        reservation = await run_engine_operation(
            lambda engine: engine.cancel_reservation(params.reservation_id, acting_user)
        )
    except CirculationError as e:
        return circulation_error_response("Cancellation", e)
    except RepositoryException as e:
        return repository_error_response("Cancellation", e)
    except Exception as e:
        logger.exception("Unexpected error in cancel_reservation tool")
        return error_response(f"Cancellation failed: {e!s}")

    return text_response(
        f"Reservation '{reservation.id}' cancelled.", {"reservation": dump(reservation)}
    )


@trace_tool("fulfill_reservation")
async def fulfill_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Convert an open hold into a loan."""
    try:
        params = FulfillReservationInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("pickup", e)

    try:
        loan = await run_engine_operation(
            lambda engine: engine.fulfill_reservation(params.reservation_id, params.notes)
        )
    except CirculationError as e:
        return circulation_error_response("Pickup", e)
    except RepositoryException as e:
        return repository_error_response("Pickup", e)
    except Exception as e:
        logger.exception("Unexpected error in fulfill_reservation tool")
        return error_response(f"Pickup failed: {e!s}")

    return text_response(
        f"Reservation '{params.reservation_id}' picked up as loan '{loan.id}'. "
        f"Due date: {loan.due_date.strftime('%B %d, %Y')}",
        {"loan": dump(loan)},
    )


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

checkout_book = {
    "name": "checkout_book",
    "description": (
        "Check out a book to a user. Requires an active subscription, no duplicate or "
        "overdue loans, room under the plan's loan limit and a free copy."
    ),
    "inputSchema": CheckoutBookInput.model_json_schema(),
    "handler": checkout_book_handler,
}

return_book = {
    "name": "return_book",
    "description": (
        "Check a loan in as returned, lost or damaged. Records overdue fines and "
        "penalties, returns the copy and promotes the next reservation."
    ),
    "inputSchema": ReturnBookInput.model_json_schema(),
    "handler": return_book_handler,
}

renew_book = {
    "name": "renew_book",
    "description": (
        "Extend the due date of a loan. Overdue loans must be returned instead, and "
        "each loan has a renewal limit."
    ),
    "inputSchema": RenewBookInput.model_json_schema(),
    "handler": renew_book_handler,
}

reserve_book = {
    "name": "reserve_book",
    "description": (
        "Reserve a book with no free copy. The user joins the book's queue and is "
        "notified when a copy is held for pickup."
    ),
    "inputSchema": ReserveBookInput.model_json_schema(),
    "handler": reserve_book_handler,
}

cancel_reservation = {
    "name": "cancel_reservation",
    "description": (
        "Cancel a pending reservation or an open hold. Only the owner or an "
        "administrator may cancel."
    ),
    "inputSchema": CancelReservationInput.model_json_schema(),
    "handler": cancel_reservation_handler,
}

fulfill_reservation = {
    "name": "fulfill_reservation",
    "description": "Pick up a held book, converting the reservation into a loan.",
    "inputSchema": FulfillReservationInput.model_json_schema(),
    "handler": fulfill_reservation_handler,
}
