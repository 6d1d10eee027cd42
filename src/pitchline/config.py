"""Process-level settings for pitchline."""

from pathlib import Path

from platformdirs import user_data_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PitchlineSettings(BaseSettings):
    """Environment driven settings shared by the CLI and the job runner."""

    # Storage
    data_dir: Path = Field(
        default_factory=lambda: Path(user_data_dir("pitchline")),
        description="Directory holding the SQLite store and exports",
        alias="PITCHLINE_DATA_DIR",
    )

    store_path: Path | None = Field(
        default=None,
        description="Explicit SQLite store path; defaults to <data_dir>/pitchline.sqlite3",
        alias="PITCHLINE_STORE",
    )

    config_path: Path = Field(
        default=Path("config/pitchline.yaml"),
        description="Base YAML configuration file",
        alias="PITCHLINE_CONFIG",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level used by the CLI",
        alias="PITCHLINE_LOG_LEVEL",
    )

    # Request settings
    timeout: int = Field(
        default=30,
        description="HTTP request timeout in seconds",
        alias="PITCHLINE_TIMEOUT",
    )

    api_base_url: str | None = Field(
        default=None,
        description="Base URL of the results provider",
        alias="PITCHLINE_API_BASE_URL",
    )

    api_key: str | None = Field(
        default=None,
        description="API key sent to the results provider",
        alias="PITCHLINE_API_KEY",
    )

    user_agent: str = Field(
        default="pitchline/0.1.0",
        description="User agent for HTTP requests",
        alias="PITCHLINE_USER_AGENT",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    def resolved_store_path(self) -> Path:
        """Return the store path, falling back to the data directory."""
        if self.store_path is not None:
            return self.store_path
        return self.data_dir / "pitchline.sqlite3"


# Global settings instance
settings = PitchlineSettings()


def get_settings() -> PitchlineSettings:
    """Get the current settings."""
    return settings


def update_settings(**kwargs) -> None:
    """Update settings in place."""
    global settings
    for key, value in kwargs.items():
        if hasattr(settings, key):
            setattr(settings, key, value)
        else:
            raise ValueError(f"Unknown configuration option: {key}")


def reset_settings() -> None:
    """Reset settings to defaults."""
    global settings
    settings = PitchlineSettings()
