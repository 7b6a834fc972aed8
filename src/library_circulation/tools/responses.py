"""Response helpers shared by the circulation tool handlers.

Tools return both a human-readable message and structured data. Failures
carry ``isError`` plus the error kind and reason so a client can branch on
them without parsing the text.
"""

import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from ..database.session import RepositoryException
from ..errors import CirculationError

logger = logging.getLogger(__name__)


def text_response(message: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"content": [{"type": "text", "text": message}]}
    if data is not None:
        response["data"] = data
    return response


def error_response(message: str, error: dict[str, Any] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {
        "isError": True,
        "content": [{"type": "text", "text": message}],
    }
    if error is not None:
        response["error"] = error
    return response


def circulation_error_response(tool: str, error: CirculationError) -> dict[str, Any]:
    """Map a circulation failure to a tool error; these are expected outcomes, not faults."""
    logger.info("%s failed - %s (%s): %s", tool, error.kind.value, error.reason, error.detail)
    return error_response(error.detail, error.to_dict())


def repository_error_response(tool: str, error: RepositoryException) -> dict[str, Any]:
    """Persistence failed underneath the operation; nothing was committed."""
    logger.error("%s failed in the database layer: %s", tool, error)
    return error_response(
        f"{tool} failed: {error}",
        {"kind": "repository_error", "reason": None, "detail": str(error)},
    )


def validation_error_response(tool: str, error: ValidationError) -> dict[str, Any]:
    logger.warning("Invalid %s parameters: %s", tool, error)
    return error_response(
        f"Invalid {tool} parameters: {error}",
        {"kind": "invalid_arguments", "reason": None, "detail": str(error)},
    )


def dump(model: BaseModel) -> dict[str, Any]:
    """JSON-safe dict of a pydantic model (dates and Decimals become strings)."""
    return model.model_dump(mode="json")
