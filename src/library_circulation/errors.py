"""
Error taxonomy for the circulation engine.

Every caller-facing failure is a ``CirculationError`` tagged with an
``ErrorKind``. Callers branch on ``kind`` (and the optional machine-readable
``reason``) rather than matching on message text:

- RESOURCE_UNAVAILABLE: no copy to claim at checkout time
- POLICY_VIOLATION: a borrowing rule forbids the operation
- NOT_FOUND: a referenced loan, reservation, fine or book does not exist
- INVALID_STATE_TRANSITION: the record is not in a state that allows the operation
- ENTITLEMENT_MISSING: the user has no active subscription
- TRANSIENT_CONFLICT: a write conflict persisted after retrying
"""

import enum


class ErrorKind(str, enum.Enum):
    """Kinds of recoverable circulation errors."""

    RESOURCE_UNAVAILABLE = "resource_unavailable"
    POLICY_VIOLATION = "policy_violation"
    NOT_FOUND = "not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    ENTITLEMENT_MISSING = "entitlement_missing"
    TRANSIENT_CONFLICT = "transient_conflict"


class CirculationError(Exception):
    """A recoverable, caller-facing circulation failure."""

    def __init__(self, kind: ErrorKind, detail: str, reason: str | None = None):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.reason = reason

    def __repr__(self) -> str:
        return (
            f"CirculationError(kind={self.kind.value!r}, "
            f"reason={self.reason!r}, detail={self.detail!r})"
        )

    def to_dict(self) -> dict[str, str | None]:
        """Structured form used by the tool handlers."""
        return {"kind": self.kind.value, "reason": self.reason, "detail": self.detail}


def not_found(entity: str, entity_id: str) -> CirculationError:
    return CirculationError(
        ErrorKind.NOT_FOUND,
        f"{entity} not found with id: {entity_id}",
        reason=f"{entity.lower()}_not_found",
    )


def policy_violation(detail: str, reason: str) -> CirculationError:
    return CirculationError(ErrorKind.POLICY_VIOLATION, detail, reason=reason)


def invalid_transition(detail: str, reason: str) -> CirculationError:
    return CirculationError(ErrorKind.INVALID_STATE_TRANSITION, detail, reason=reason)
