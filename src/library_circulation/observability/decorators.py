"""Decorators for tracing MCP tool handlers."""

import functools
from collections.abc import Callable
from datetime import datetime
from typing import Any

import logfire

from .metrics import record_tool_call


def trace_tool(tool_name: str):
    """Trace one tool invocation and count it by outcome."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(arguments: dict[str, Any], *args, **kwargs):
            with logfire.span(
                f"tool.execution.{tool_name}",
                tool_name=tool_name,
                tool_category=_categorize_tool(tool_name),
            ) as span:
                start_time = datetime.now()
                _add_attributes(span, "input", arguments if isinstance(arguments, dict) else {})

                try:
                    result = await func(arguments, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("tool.success", False)
                    span.set_attribute("tool.error", str(e))
                    record_tool_call(tool_name, False)
                    raise

                success = not (isinstance(result, dict) and result.get("isError"))
                span.set_attribute("tool.success", success)
                span.set_attribute(
                    "tool.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                if not success and "error" in result:
                    span.set_attribute("tool.error_kind", str(result["error"].get("kind")))
                record_tool_call(tool_name, success)
                return result

        return wrapper

    return decorator


def _categorize_tool(tool_name: str) -> str:
    if "fine" in tool_name:
        return "fines"
    if "reserv" in tool_name:
        return "reservations"
    return "loans"


def _add_attributes(span, prefix: str, data: dict):
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
