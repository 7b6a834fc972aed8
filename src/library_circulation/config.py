"""Configuration management for the library circulation engine.

All circulation policy lives here so that fine rates, hold periods and
renewal limits can be tuned per deployment through environment variables:
1. Policy - fines, renewals, holds and reservation caps
2. Scheduling - how often the periodic sweeps run
3. Persistence - database location
4. Server - metadata for the MCP tool surface
"""

from decimal import Decimal
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CirculationConfig(BaseSettings):
    """Circulation engine configuration.

    Every field can be overridden with a ``LIBRARY_CIRCULATION_`` prefixed
    environment variable or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIBRARY_CIRCULATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="library-circulation",
        description="MCP server name used in protocol handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version for capability negotiation",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    transport: str = Field(
        default="stdio",
        description="Primary transport mechanism",
        pattern=r"^(stdio|streamable_http)$",
    )

    # === Database Configuration ===

    database_path: Path = Field(
        default=Path("data/circulation.db"),
        description="SQLite database file path",
    )

    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides database_path when set",
    )

    # === Fine Policy ===

    fine_per_day: Decimal = Field(
        default=Decimal("1.00"),
        description="Fine charged per overdue day",
        ge=0,
        decimal_places=2,
    )

    max_fine: Decimal = Field(
        default=Decimal("50.00"),
        description="Upper bound on the overdue fine of a single loan",
        ge=0,
        decimal_places=2,
    )

    grace_period_days: int = Field(
        default=0,
        description="Days after the due date during which no fine accrues",
        ge=0,
    )

    lost_book_penalty: Decimal = Field(
        default=Decimal("100.00"),
        description="Penalty recorded when a loan is checked in as lost",
        ge=0,
        decimal_places=2,
    )

    damaged_book_penalty: Decimal = Field(
        default=Decimal("25.00"),
        description="Penalty recorded when a loan is checked in as damaged",
        ge=0,
        decimal_places=2,
    )

    # === Loan Policy ===

    default_max_renewals: int = Field(
        default=2,
        description="Renewals allowed per loan",
        ge=0,
        le=10,
    )

    default_renewal_days: int = Field(
        default=14,
        description="Days added to the due date by a renewal",
        ge=1,
        le=90,
    )

    due_reminder_days: int = Field(
        default=3,
        description="Send due date reminders this many days ahead",
        ge=0,
    )

    # === Reservation Policy ===

    hold_period_hours: int = Field(
        default=48,
        description="Hours a promoted reservation is held for pickup",
        ge=1,
    )

    max_active_reservations: int = Field(
        default=5,
        description="Maximum PENDING or AVAILABLE reservations per user",
        ge=1,
    )

    # === Notifications ===

    notification_channel: str = Field(
        default="database",
        description="Where user notices go: the notifications table or the log",
        pattern=r"^(database|logging)$",
    )

    # === Scheduling ===

    scheduler_enabled: bool = Field(
        default=True,
        description="Run the periodic circulation jobs inside the server process",
    )

    overdue_sweep_interval_seconds: float = Field(
        default=3600.0,
        description="Interval between overdue sweeps",
        gt=0,
    )

    reservation_expiry_interval_seconds: float = Field(
        default=900.0,
        description="Interval between reservation expiry sweeps",
        gt=0,
    )

    due_reminder_interval_seconds: float = Field(
        default=86400.0,
        description="Interval between due date reminder runs",
        gt=0,
    )

    # === Concurrency ===

    conflict_retries: int = Field(
        default=3,
        description="Attempts made when the database reports a write conflict",
        ge=1,
        le=10,
    )

    # === Development Configuration ===

    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Validation Methods ===

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)
        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")
        return abs_path

    @model_validator(mode="after")
    def validate_fine_bounds(self) -> "CirculationConfig":
        """A cap below a single day's fine would make the daily rate meaningless."""
        if self.max_fine < self.fine_per_day:
            raise ValueError("max_fine must be at least fine_per_day")
        return self

    # === Computed Properties ===

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug or self.log_level == "DEBUG"

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path}"


# === Global Configuration Instance ===


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: CirculationConfig | None = None


def get_config() -> CirculationConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = CirculationConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
