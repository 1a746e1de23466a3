"""Configuration management for the Shelf Lending server.

Settings are loaded from the environment (``SHELF_LENDING_`` prefix) or a
``.env`` file and validated with Pydantic v2:

1. Server metadata used during the MCP handshake
2. Storage location for the loan database
3. Lending defaults applied when a lender has no standing template
4. Maintenance sweep scheduling
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Runtime configuration for the lending engine and its MCP surface."""

    model_config = SettingsConfigDict(
        # Use SHELF_LENDING_ prefix for all env vars
        env_prefix="SHELF_LENDING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="shelf-lending",
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
        default=Path("data/shelf_lending.db"),
        description="SQLite database file path",
    )

    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides database_path when set",
    )

    database_busy_timeout_seconds: float = Field(
        default=30.0,
        description="How long a SQLite connection waits on another writer's lock",
        gt=0,
        le=300,
    )

    # === Lending Policy Defaults ===

    export_window_days: int = Field(
        default=14,
        description="Days an ended loan keeps its annotation export available",
        ge=1,
        le=90,
    )

    default_duration_days: int = Field(
        default=14,
        description="Loan duration used when the lender has no template",
        ge=1,
        le=365,
    )

    default_grace_days: int = Field(
        default=0,
        description="Grace period after the due date before a loan expires",
        ge=0,
        le=30,
    )

    default_remind_before_days: int = Field(
        default=3,
        description="Days before the due date at which the borrower is reminded",
        ge=0,
        le=30,
    )

    max_renewal_days: int = Field(
        default=60,
        description="Largest extension a borrower may ask for in one renewal",
        ge=1,
        le=365,
    )

    # === Maintenance Sweep ===

    sweep_enabled: bool = Field(
        default=True,
        description="Run the periodic maintenance sweep alongside the server",
    )

    sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between two maintenance sweeps",
        ge=15,
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

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)

        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")

        return abs_path

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        """Validate server name length."""
        if len(v) < 3:
            raise ValueError("Server name must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Server name must not exceed 50 characters")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug or self.log_level == "DEBUG"

    @property
    def server_info(self) -> dict[str, str]:
        """Server information sent during the MCP handshake."""
        return {
            "name": self.server_name,
            "version": self.server_version,
            "transport": self.transport,
        }

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path}"


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: LendingConfig | None = None


def get_config() -> LendingConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = LendingConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
