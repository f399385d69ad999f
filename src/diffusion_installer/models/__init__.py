"""Data models for the installer."""

from diffusion_installer.models.config import AppConfig
from diffusion_installer.models.execution import (
    InstallStep,
    LogEntry,
    LogLevel,
    ProgressEvent,
    RunResult,
    StepResult,
    ValidationResult,
)
from diffusion_installer.models.installation import (
    AdditionalRepo,
    DownloadLink,
    InstallConfig,
    InstallOptions,
    ModelSpec,
    PathSettings,
    PythonSettings,
    RepositorySettings,
    TorchSettings,
)

__all__ = [
    "AppConfig",
    "AdditionalRepo",
    "DownloadLink",
    "InstallConfig",
    "InstallOptions",
    "InstallStep",
    "LogEntry",
    "LogLevel",
    "ModelSpec",
    "PathSettings",
    "ProgressEvent",
    "PythonSettings",
    "RepositorySettings",
    "RunResult",
    "StepResult",
    "TorchSettings",
    "ValidationResult",
]
