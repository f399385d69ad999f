"""Application settings models for the installer."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """Paths configuration."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".diffusion-installer")
    logs_dir: Path | None = None
    cache_dir: Path | None = None

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user path for data_dir."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("logs_dir", "cache_dir", mode="before")
    @classmethod
    def expand_optional_path(cls, v: str | Path | None) -> Path | None:
        """Expand user path for optional paths."""
        if v is None:
            return None
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    def model_post_init(self, __context: object) -> None:
        """Set default subdirectories if not specified."""
        if self.logs_dir is None:
            self.logs_dir = self.data_dir / "logs"
        if self.cache_dir is None:
            self.cache_dir = self.data_dir / "cache"


class TimeoutsConfig(BaseModel):
    """Per-operation timeouts in seconds."""

    clone: float = 30 * 60
    pull: float = 10 * 60
    checkout: float = 5 * 60
    create_venv: float = 5 * 60
    pip_upgrade: float = 5 * 60
    install_packages: float = 30 * 60
    install_requirements: float = 60 * 60
    version_probe: float = 10
    inline_script: float = 5 * 60
    git_installer: float = 10 * 60


class DownloadConfig(BaseModel):
    """HTTP download configuration."""

    chunk_size: int = 81920
    progress_interval: float = 2.0
    connect_timeout: float = 30.0
    user_agent: str = "Mozilla/5.0 (compatible; DiffusionInstaller/0.1)"
    proxy: str | None = None


class GitConfig(BaseModel):
    """Git acquisition configuration (Windows only)."""

    installer_url: str = (
        "https://github.com/git-for-windows/git/releases/download/v2.47.1.windows.2/Git-2.47.1.2-64-bit.exe"
    )
    installer_args: list[str] = Field(
        default_factory=lambda: [
            "/VERYSILENT",
            "/NORESTART",
            "/NOCANCEL",
            "/SP-",
            "/CLOSEAPPLICATIONS",
            "/RESTARTAPPLICATIONS",
            "/COMPONENTS=icons,ext\\reg\\shellhere,assoc,assoc_sh",
        ]
    )


class AdvancedConfig(BaseModel):
    """Advanced configuration."""

    log_level: Literal["INFO", "DEBUG", "TRACE"] = "INFO"


class AppConfig(BaseModel):
    """Application configuration."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    downloads: DownloadConfig = Field(default_factory=DownloadConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    advanced: AdvancedConfig = Field(default_factory=AdvancedConfig)
