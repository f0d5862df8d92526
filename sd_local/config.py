"""Configuration settings for sd_local.

Uses pydantic-settings for config parsing from environment variables
and defaults, plus the sd-local YAML config file. Configuration precedence:
CLI flags > env vars > config file > defaults.
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from sd_local.types import RuntimeName

DEFAULT_LAUNCHER_IMAGE = "screwdrivercd/launcher"
DEFAULT_LAUNCHER_VERSION = "stable"
CONFIG_DIR_NAME = ".sdlocal"
CONFIG_FILE_NAME = "config"


class ConfigFileError(Exception):
    """Raised when the sd-local config file cannot be parsed."""

    def __init__(self, message: str, code: str = "config_file_error") -> None:
        super().__init__(message)
        self.code = code


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "sd-local"


def default_config_path(local: bool = False) -> Path:
    """Return the config file path.

    Args:
        local: Use the config file in the current directory instead of $HOME.

    Returns:
        Path to the config file (may not exist).
    """
    base = Path.cwd() if local else Path.home()
    return base / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SD_LOCAL_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SD_LOCAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Screwdriver endpoints
    api_url: str = Field(default="", description="Screwdriver API URL")
    store_url: str = Field(default="", description="Screwdriver Store URL")
    token: str = Field(default="", description="Screwdriver user API token")

    # Launcher
    launcher_image: str = Field(
        default=DEFAULT_LAUNCHER_IMAGE,
        description="Image providing the launcher binaries",
    )
    launcher_version: str = Field(
        default=DEFAULT_LAUNCHER_VERSION,
        description="Launcher image tag",
    )

    # Runtime
    runtime: RuntimeName = Field(
        default=RuntimeName.DOCKER,
        description="Container runtime command",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory for provisioning locks",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    setup_timeout: int = Field(
        default=1800,
        ge=60,
        description="Timeout for launcher provisioning",
    )
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for each build step (no limit if not set)",
    )

    @property
    def launcher_ref(self) -> str:
        """Full launcher image reference (image:version)."""
        return f"{self.launcher_image}:{self.launcher_version}"


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map config file keys onto Settings field names."""
    values: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name == "launcher" and isinstance(value, dict):
            # Image tags such as `6` parse as YAML numbers
            if "image" in value:
                values["launcher_image"] = str(value["image"])
            if "version" in value:
                values["launcher_version"] = str(value["version"])
            continue
        if name in Settings.model_fields:
            values[name] = value
    return values


def load_config_file(path: Path) -> dict[str, Any]:
    """Load the sd-local YAML config file.

    The file either holds the settings directly or a `configs` mapping of
    named configurations with `current` selecting the active one.

    Args:
        path: Path to the config file.

    Returns:
        Settings field values found in the file (empty if the file is absent).

    Raises:
        ConfigFileError: If the file is not valid YAML or not a mapping.
    """
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigFileError(f"Failed to parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}"
        )

    if "configs" in data:
        configs = data.get("configs") or {}
        current = data.get("current", "default")
        selected = configs.get(current)
        if selected is None:
            raise ConfigFileError(
                f"Config '{current}' not found in {path}",
                code="config_not_found",
            )
        if not isinstance(selected, dict):
            raise ConfigFileError(f"Config '{current}' in {path} is not a mapping")
        data = selected

    return _normalize_keys(data)


def get_settings(config_path: Path | None = None) -> Settings:
    """Get the application settings.

    Args:
        config_path: Optional YAML config file. Values from the file apply
            only where no environment variable is set.

    Returns:
        Settings instance loaded from environment and config file.

    Raises:
        ConfigFileError: If the file cannot be parsed or holds invalid values.
    """
    settings = Settings()
    if config_path is None:
        return settings

    file_values = load_config_file(config_path)
    pending = {
        k: v for k, v in file_values.items() if k not in settings.model_fields_set
    }
    if not pending:
        return settings
    try:
        return Settings(**pending)
    except ValidationError as e:
        raise ConfigFileError(
            f"Invalid value in config file {config_path}: {e}",
            code="invalid_config",
        ) from e


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON with the token masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    masked = settings.model_copy(
        update={"token": "****" if settings.token else ""}
    )
    return masked.model_dump_json(indent=2)


__all__ = [
    "ConfigFileError",
    "Settings",
    "default_config_path",
    "get_settings",
    "load_config_file",
    "print_settings_json",
]
