"""Custom metrics for the circulation engine."""

import logfire

circulation_events = logfire.metric_counter(
    "library.circulation.events",
    description="Circulation events (checkout, return, renewal, promotion, expiry)",
)

fine_amounts = logfire.metric_histogram(
    "library.fines.amount", unit="currency", description="Amounts of fines recorded"
)

tool_calls = logfire.metric_counter(
    "mcp.tools.calls", description="Circulation tool invocations by tool and outcome"
)


def record_circulation_event(event_type: str, book_id: str) -> None:
    """Record a circulation event."""
    circulation_events.add(1, {"event_type": event_type, "book_id": book_id})


def record_fine(fine_type: str, amount: float) -> None:
    fine_amounts.record(amount, {"fine_type": fine_type})


def record_tool_call(tool_name: str, success: bool) -> None:
    tool_calls.add(1, {"tool": tool_name, "success": success})
