"""Logfire observability for the circulation engine."""

import logging

import logfire

from .config import ObservabilityConfig, get_environment_config
from .context import trace_operation
from .decorators import trace_tool
from .metrics import record_circulation_event

logger = logging.getLogger(__name__)

_config: ObservabilityConfig | None = None


def initialize_observability(config: ObservabilityConfig | None = None) -> None:
    """Initialize Logfire with configuration."""
    global _config  # noqa: PLW0603
    _config = config or get_environment_config()

    if not _config.enabled:
        logger.debug("Observability disabled via configuration")
        return

    logfire.configure(
        token=_config.token,
        service_name=_config.service_name,
        environment=_config.environment,
        send_to_logfire=_config.send_to_logfire,
        console=None if _config.console_output else False,
    )

    if _config.environment == "production":
        logfire.instrument_system_metrics()


def get_config() -> ObservabilityConfig:
    """Get current observability configuration."""
    global _config  # noqa: PLW0603
    if _config is None:
        _config = get_environment_config()
    return _config


__all__ = [
    "ObservabilityConfig",
    "get_config",
    "initialize_observability",
    "logfire",
    "record_circulation_event",
    "trace_operation",
    "trace_tool",
]
