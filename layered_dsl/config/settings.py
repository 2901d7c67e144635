"""
Application Settings
===================

Parser and validator settings using Pydantic Settings.
Supports development, testing, and production environments.
"""

from typing import Optional
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main settings with environment variable support."""

    # Application Configuration
    app_name: str = Field(default="LayeredDSL Validator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(
        default="development", description="Environment: development, testing, production"
    )
    debug: bool = Field(default=False, description="Debug mode")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Optional log file path")

    # Parsing Configuration
    default_parser: str = Field(default="yaml", description="Parser used when detection is ambiguous")
    max_type_nesting: int = Field(
        default=128, ge=1, description="Maximum nesting depth of a single type expression"
    )

    # Validation Configuration
    unmapped_operation_severity: str = Field(
        default="warning", description="Severity for operations no component is responsible for"
    )
    require_mapping_entries: bool = Field(
        default=True, description="Require a mapping entry per operation when a mapping layer exists"
    )
    detect_entity_cycles: bool = Field(
        default=True, description="Report cycles over required entity references"
    )
    max_suggestions: int = Field(default=5, ge=0, description="Maximum validation suggestions")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "testing", "production"}
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("unmapped_operation_severity")
    @classmethod
    def validate_unmapped_severity(cls, v: str) -> str:
        """Validate severity name for unmapped operations."""
        allowed = {"error", "warning", "info"}
        if v.lower() not in allowed:
            raise ValueError(f"Unmapped operation severity must be one of: {allowed}")
        return v.lower()

    @field_validator("default_parser")
    @classmethod
    def validate_default_parser(cls, v: str) -> str:
        """Validate default parser type."""
        allowed = {"json", "yaml"}
        if v.lower() not in allowed:
            raise ValueError(f"Default parser must be one of: {allowed}")
        return v.lower()

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, env_prefix="LAYERED_DSL_"
    )


# Global settings instance - will be initialized when needed
settings = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
