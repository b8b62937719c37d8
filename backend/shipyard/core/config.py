"""Application configuration with validation."""

from enum import Enum
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


DEFAULT_OPERATOR_TOKEN = "dev-insecure-token-change-me"


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every value can be overridden by an environment variable of the same
    name (case-insensitive) or an entry in ``.env``.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # CORS Configuration
    cors_allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Allowed CORS origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./shipyard.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(default=5, description="Number of persistent database connections")
    db_max_overflow: int = Field(default=10, description="Extra connections allowed during bursts")
    db_pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")
    db_pool_recycle: int = Field(default=1800, description="Seconds before a connection is recycled")

    # Workspaces
    # Layout under data_dir: apps/<name> (live), builds/<name>-<job> (staging), uploads/<name>.zip
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for app workspaces, build staging and uploads"
    )

    # Deployment defaults (used when a request omits the field)
    default_branch: str = Field(default="main")
    default_install_command: str = Field(default="npm install")

    # Maximum seconds a single install/build command may run before it is killed.
    # Large monorepo installs can take 20+ minutes.
    command_timeout_seconds: int = Field(
        default=1800,
        description="Per-command timeout for install/build stages"
    )

    # Log streaming
    subscriber_buffer_size: int = Field(
        default=1000,
        description="Chunks buffered per live log subscriber before the oldest are dropped"
    )
    retained_job_logs: int = Field(
        default=50,
        description="Finished jobs whose log channel stays in memory for fast replay"
    )
    sse_heartbeat_seconds: float = Field(
        default=15.0,
        description="Idle seconds before a keep-alive comment is sent on a log stream"
    )

    # Archive uploads
    max_upload_mb: int = Field(default=200, description="Largest accepted archive upload")

    # Process supervisor
    supervisor_backend: str = Field(default="systemd", description="'systemd' or 'noop'")
    systemd_unit_dir: Path = Field(default=Path("/etc/systemd/system"))
    systemctl_binary: str = Field(default="systemctl")
    journalctl_binary: str = Field(default="journalctl")
    service_user: str = Field(default="", description="User= for generated units (empty = root)")

    # Reverse proxy
    proxy_backend: str = Field(default="caddy", description="'caddy' or 'noop'")
    caddyfile_path: Path = Field(default=Path("/etc/caddy/Caddyfile"))
    caddy_binary: str = Field(default="caddy")
    caddy_admin_email: str = Field(default="", description="ACME account email for TLS")

    # Authentication
    # AUTH_ENABLED: when False, write endpoints accept unauthenticated requests (dev mode).
    auth_enabled: bool = Field(default=False)
    operator_token: str = Field(
        default=DEFAULT_OPERATOR_TOKEN,
        description="Bearer token required on write endpoints when auth is enabled"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @property
    def apps_dir(self) -> Path:
        return self.data_dir / "apps"

    @property
    def builds_dir(self) -> Path:
        return self.data_dir / "builds"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    def get_cors_origins(self) -> List[str]:
        """
        Get CORS origins as a list.

        Parses comma-separated string and validates no wildcards.
        """
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(',') if origin.strip()]

        # SECURITY: Prevent wildcard CORS
        if "*" in origins:
            raise ValueError(
                "Wildcard CORS (*) not allowed. "
                "Specify explicit origins in CORS_ALLOWED_ORIGINS"
            )

        return origins

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('supervisor_backend')
    @classmethod
    def validate_supervisor_backend(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('systemd', 'noop'):
            raise ValueError(f"Unknown supervisor backend: {v}")
        return v_lower

    @field_validator('proxy_backend')
    @classmethod
    def validate_proxy_backend(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('caddy', 'noop'):
            raise ValueError(f"Unknown proxy backend: {v}")
        return v_lower

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        Every deploy request runs arbitrary shell commands on the host, so
        production refuses to start without operator authentication.

        Raises:
            ConfigurationError: If production config is insecure.
        """
        errors: list[str] = []

        if not self.auth_enabled:
            errors.append(
                "AUTH_ENABLED is false. "
                "Authentication must be enabled in production."
            )

        if self.operator_token == DEFAULT_OPERATOR_TOKEN:
            errors.append(
                "OPERATOR_TOKEN is using the default insecure value. "
                "Generate a secure token: openssl rand -hex 32"
            )

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is insecure:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
