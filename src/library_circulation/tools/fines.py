"""Fine tools: payment confirmation and administrative waivers."""

import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..circulation.engine import run_engine_operation
from ..database.session import RepositoryException
from ..errors import CirculationError
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


class PayFineInput(BaseModel):
    """Input schema for the pay_fine tool, called once the payment gateway confirms."""

    fine_id: str = Field(..., pattern=r"^fine_[a-zA-Z0-9_]+$")
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    transaction_ref: str | None = Field(default=None, max_length=100)


class WaiveFineInput(BaseModel):
    """Input schema for the waive_fine tool."""

    fine_id: str = Field(..., pattern=r"^fine_[a-zA-Z0-9_]+$")
    admin_user_id: str = Field(..., min_length=1, max_length=50)
    reason: str = Field(..., min_length=1, max_length=500)


@trace_tool("pay_fine")
async def pay_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Apply a confirmed payment to a fine."""
    try:
        params = PayFineInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("payment", e)

    try:
        fine = await run_engine_operation(
            lambda engine: engine.mark_fine_as_paid(
                params.fine_id, params.amount, params.transaction_ref
            )
        )
    except CirculationError as e:
        return circulation_error_response("Payment", e)
    except RepositoryException as e:
        return repository_error_response("Payment", e)
    except Exception as e:
        logger.exception("Unexpected error in pay_fine tool")
        return error_response(f"Payment failed: {e!s}")

    return text_response(
        f"Payment of {params.amount:.2f} applied to fine '{fine.id}'. "
        f"Outstanding: {fine.amount_outstanding:.2f} ({fine.status})",
        {"fine": dump(fine)},
    )


@trace_tool("waive_fine")
async def waive_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Waive a fine on an administrator's authority."""
    try:
        params = WaiveFineInput.model_validate(arguments)
    except ValidationError as e:
        return validation_error_response("waiver", e)

    try:
        fine = await run_engine_operation(
            lambda engine: engine.waive_fine(params.fine_id, params.admin_user_id, params.reason)
        )
    except CirculationError as e:
        return circulation_error_response("Waiver", e)
    except RepositoryException as e:
        return repository_error_response("Waiver", e)
    except Exception as e:
        logger.exception("Unexpected error in waive_fine tool")
        return error_response(f"Waiver failed: {e!s}")

    return text_response(f"Fine '{fine.id}' waived.", {"fine": dump(fine)})


pay_fine = {
    "name": "pay_fine",
    "description": (
        "Record a confirmed payment against a fine. Partial payments are allowed; "
        "overpayment is rejected."
    ),
    "inputSchema": PayFineInput.model_json_schema(),
    "handler": pay_fine_handler,
}

waive_fine = {
    "name": "waive_fine",
    "description": "Waive an unpaid fine. Requires an administrator id and a reason.",
    "inputSchema": WaiveFineInput.model_json_schema(),
    "handler": waive_fine_handler,
}
