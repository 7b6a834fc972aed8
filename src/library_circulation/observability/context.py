"""Context managers for tracing circulation operations."""

from contextlib import contextmanager

import logfire


@contextmanager
def trace_operation(component: str, operation: str, **attributes):
    """Trace one engine operation as a logfire span.

    Business failures are recorded on the span by kind and reason before
    they propagate.
    """
    with logfire.span(
        f"circulation.{component}.{operation}",
        circulation_component=component,
        circulation_operation=operation,
        **attributes,
    ) as span:
        try:
            yield span
        except Exception as e:
            kind = getattr(e, "kind", None)
            if kind is not None:
                span.set_attribute("circulation.error_kind", kind.value)
                span.set_attribute("circulation.error_reason", getattr(e, "reason", None) or "")
            span.set_attribute("circulation.error", str(e))
            raise
