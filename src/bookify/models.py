"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StorageConfig(BaseModel):
    """Embedded datastore and shared temp directory locations."""

    db_path: str = Field(default="./kepub.db", description="SQLite database file")
    temp_dir: str = Field(
        default="./temp", description="Shared directory for inbound and converted files"
    )


class WorkerConfig(BaseModel):
    """Queue worker polling and persistence retry parameters."""

    poll_interval_s: float = Field(
        default=5.0, gt=0.0, description="Seconds between queue polls"
    )
    persist_retries: int = Field(
        default=3, ge=1, description="Attempts for each intermediate job status write"
    )
    persist_backoff_s: float = Field(
        default=0.1, ge=0.0, description="Initial backoff between write attempts (doubles)"
    )


class CleanupConfig(BaseModel):
    """Temp directory sweep parameters."""

    interval_s: float = Field(default=600.0, gt=0.0, description="Seconds between sweeps")
    max_age_s: float = Field(
        default=3600.0, gt=0.0, description="Files older than this are deleted"
    )


class ConverterConfig(BaseModel):
    """External kepubify converter settings."""

    executable: str = Field(default="kepubify", description="kepubify binary name or path")
    timeout_s: int = Field(
        default=300, gt=0, description="Maximum duration of a single conversion"
    )


class DriveConfig(BaseModel):
    """Google Drive OAuth client settings."""

    client_id: str = Field(default="", description="OAuth client ID")
    client_secret: str = Field(default="", description="OAuth client secret")
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token", description="OAuth token endpoint"
    )
    timeout_s: float = Field(default=60.0, gt=0.0, description="HTTP timeout per request")


class LoggingConfig(BaseModel):
    """Application logging settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Root log level"
    )
    file: Optional[str] = Field(default=None, description="Optional rotating log file path")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        """Accept lowercase level names from env/CLI."""
        return v.upper() if isinstance(v, str) else v


class BookifyConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    converter: ConverterConfig = Field(default_factory=ConverterConfig)
    drive: DriveConfig = Field(default_factory=DriveConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "BookifyConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "BookifyConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["storage"]["db_path"] = cli_args["db"]
        if cli_args.get("temp_dir") is not None:
            config_dict["storage"]["temp_dir"] = cli_args["temp_dir"]
        if cli_args.get("poll_interval") is not None:
            config_dict["worker"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return BookifyConfig.from_dict(config_dict)
