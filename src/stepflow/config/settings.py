"""Configuration and settings management using pydantic-settings."""
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CHECKPOINT_BACKENDS = ("memory", "sqlite")


class Settings(BaseSettings):
    """Engine settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_prefix="STEPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core service settings
    env: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Log level")

    # Scheduler limits
    max_in_flight_steps: int = Field(
        default=4,
        description="Maximum steps executing concurrently within one run",
    )
    max_concurrent_runs: int = Field(
        default=8,
        description="Maximum runs executing concurrently in one engine",
    )
    max_loop_iterations: int = Field(
        default=1000,
        description="Per-run ceiling on loop re-entries",
    )
    scheduler_poll_interval_s: float = Field(
        default=0.05,
        description="How often the scheduler wakes to check cancellation and timers",
    )
    step_timeout_ms: int | None = Field(
        default=5 * 60 * 1000,
        description="Deadline for one step invocation (None disables it)",
    )
    run_timeout_ms: int | None = Field(
        default=30 * 60 * 1000,
        description="Deadline for one scheduling pass over a run (None disables it)",
    )

    # Code sandbox
    default_code_timeout_ms: int = Field(
        default=30000,
        description="Default wall-clock timeout for code steps",
    )
    code_max_output_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum stdout size accepted from a code subprocess",
    )
    code_temp_dir: Path | None = Field(
        default=None,
        description="Parent directory for code step scratch directories (system default if unset)",
    )
    javascript_interpreter: str = Field(
        default="node",
        description="Executable used for javascript code steps",
    )

    # Checkpoints and recovery
    checkpoint_backend: str = Field(
        default="memory",
        description="Checkpoint store backend: memory or sqlite",
    )
    checkpoint_db_path: Path = Field(
        default=Path(".state") / "checkpoints.db",
        description="SQLite file used when checkpoint_backend is sqlite",
    )
    recovery_max_retries: int = Field(
        default=3,
        description="Maximum re-invocations performed by a retry recovery",
    )
    recovery_retry_delay_ms: int = Field(
        default=1000,
        description="Base delay for exponential backoff between recovery retries",
    )

    # HTTP steps
    http_timeout_s: float = Field(
        default=30.0,
        description="Default timeout for HTTP request steps",
    )
    http_allow_private_hosts: bool = Field(
        default=False,
        description="Allow HTTP steps to call loopback, private and link-local hosts",
    )

    @field_validator(
        "max_in_flight_steps",
        "max_concurrent_runs",
        "max_loop_iterations",
        "default_code_timeout_ms",
        "code_max_output_bytes",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that limits are positive."""
        if v <= 0:
            raise ValueError("limit must be positive")
        return v

    @field_validator("step_timeout_ms", "run_timeout_ms")
    @classmethod
    def validate_deadline(cls, v: int | None) -> int | None:
        """Validate that deadlines are positive when set."""
        if v is not None and v <= 0:
            raise ValueError("deadline must be positive")
        return v

    @field_validator("recovery_max_retries", "recovery_retry_delay_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that recovery settings are not negative."""
        if v < 0:
            raise ValueError("recovery settings must not be negative")
        return v

    @field_validator("checkpoint_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the checkpoint backend name."""
        v = v.lower()
        if v not in CHECKPOINT_BACKENDS:
            raise ValueError(
                f"checkpoint_backend must be one of {CHECKPOINT_BACKENDS}"
            )
        return v

    @property
    def default_code_timeout_s(self) -> float:
        return self.default_code_timeout_ms / 1000.0


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
