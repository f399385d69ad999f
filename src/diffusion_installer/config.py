"""Application settings: YAML file plus DIFFUSION_INSTALLER_* environment overrides."""

import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from diffusion_installer.exceptions import ConfigurationError
from diffusion_installer.models.config import AppConfig


def default_config_path() -> Path:
    """Platform settings file used when neither an explicit path nor DIFFUSION_INSTALLER_CONFIG_PATH is given."""
    if sys.platform == "win32":
        # %APPDATA%\DiffusionInstaller
        config_dir = Path(os.getenv("APPDATA", str(Path.home()))) / "DiffusionInstaller"
    elif sys.platform == "darwin":
        config_dir = Path.home() / "Library" / "Application Support" / "DiffusionInstaller"
    else:
        config_dir = Path(os.getenv("XDG_CONFIG_HOME", str(Path.home() / ".config"))) / "diffusion-installer"
    return config_dir / "config.yaml"


class ConfigManager:
    """Loads, caches and saves the installer's application settings."""

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Settings file. Defaults to DIFFUSION_INSTALLER_CONFIG_PATH,
                        then to :func:`default_config_path`
        """
        if config_path is None:
            env_path = os.getenv("DIFFUSION_INSTALLER_CONFIG_PATH")
            config_path = Path(env_path).expanduser() if env_path else default_config_path()

        self.config_path = config_path
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """Load settings from file and apply environment variable overrides.

        A missing file yields the defaults.

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If the file is not valid YAML or does not match the settings schema
        """
        config_data: Any = {}

        if self.config_path.exists():
            try:
                with open(self.config_path, encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError("Settings file is not valid YAML", path=self.config_path) from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Settings file must contain a mapping", path=self.config_path)

        try:
            config = AppConfig(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e.error_count()} error(s)", path=self.config_path) from e

        return self._apply_env_overrides(config)

    def save(self, config: AppConfig) -> None:
        """Save configuration to YAML file.

        Args:
            config: Configuration to save
        """
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        # mode="json" turns Path objects into strings
        config_dict = config.model_dump(mode="json", exclude_none=True)

        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_dict, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    def _apply_env_overrides(self, config: AppConfig) -> AppConfig:
        """Apply environment variable overrides.

        Environment variables use the format: DIFFUSION_INSTALLER_<KEY>
        Examples:
            - DIFFUSION_INSTALLER_DATA_DIR=~/custom/path
            - DIFFUSION_INSTALLER_LOG_LEVEL=DEBUG

        Args:
            config: Base configuration

        Returns:
            Configuration with environment overrides applied
        """
        if data_dir := os.getenv("DIFFUSION_INSTALLER_DATA_DIR"):
            config.paths.data_dir = Path(data_dir).expanduser()
            # Recalculate dependent paths
            config.paths.logs_dir = None
            config.paths.cache_dir = None
            config.paths.model_post_init(None)

        if log_level := os.getenv("DIFFUSION_INSTALLER_LOG_LEVEL"):
            if log_level.upper() in ("INFO", "DEBUG", "TRACE"):
                config.advanced.log_level = log_level.upper()  # type: ignore

        if proxy := os.getenv("DIFFUSION_INSTALLER_HTTP_PROXY"):
            config.downloads.proxy = proxy

        return config

    def get_config(self) -> AppConfig:
        """Get configuration (singleton pattern).

        Returns:
            Current configuration
        """
        if self._config is None:
            self._config = self.load()
        return self._config

    def reload(self) -> AppConfig:
        """Reload configuration from file.

        Returns:
            Reloaded configuration
        """
        self._config = self.load()
        return self._config


# Global configuration manager instance
_config_manager = ConfigManager()


def get_config() -> AppConfig:
    """Get global application configuration."""
    return _config_manager.get_config()


def reload_config() -> AppConfig:
    """Reload configuration from file."""
    return _config_manager.reload()


def save_config(config: AppConfig) -> None:
    """Save configuration to file."""
    _config_manager.save(config)
