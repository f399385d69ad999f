"""Execution models: steps, results and events emitted during a run."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class InstallStep(str, Enum):
    """One discrete phase of an installation run."""

    GIT_SETUP = "GitSetup"
    RUNTIME_CHECK = "RuntimeCheck"
    CLONE_MAIN = "CloneMain"
    CREATE_VIRTUAL_ENV = "CreateVirtualEnv"
    INSTALL_ACCELERATOR = "InstallAccelerator"  # PyTorch
    INSTALL_ACCELERATOR_EXTRA = "InstallAcceleratorExtra"  # Triton
    INSTALL_EXTRA2 = "InstallExtra2"  # SageAttention
    INSTALL_MAIN_REQUIREMENTS = "InstallMainRequirements"
    CLONE_ADDITIONAL_REPOS = "CloneAdditionalRepos"
    DOWNLOAD_MODELS = "DownloadModels"
    POST_INSTALL = "PostInstall"
    VALIDATE_EXISTING = "ValidateExisting"

    def __str__(self) -> str:
        return self.value


class StepResult(BaseModel):
    """Outcome of a single step invocation."""

    model_config = ConfigDict(frozen=True)

    step: InstallStep
    success: bool
    message: str
    continue_on_failure: bool = False
    # Path produced by the step (cloned repository, created venv)
    path: str | None = None

    @classmethod
    def succeeded(cls, step: InstallStep, message: str, path: str | None = None) -> "StepResult":
        return cls(step=step, success=True, message=message, path=path)

    @classmethod
    def failed(cls, step: InstallStep, message: str, continue_on_failure: bool = False) -> "StepResult":
        return cls(step=step, success=False, message=message, continue_on_failure=continue_on_failure)

    @classmethod
    def skipped(cls, step: InstallStep, message: str) -> "StepResult":
        return cls(step=step, success=True, message=message)


class RunResult(BaseModel):
    """Aggregate result of one installation run."""

    success: bool
    message: str
    repo_path: str | None = None
    venv_path: str | None = None
    cancelled: bool = False
    failed_step: InstallStep | None = None


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class LogEntry(BaseModel):
    """User-visible log line emitted during a run."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    message: str


class ProgressEvent(BaseModel):
    """Step-level progress notification."""

    model_config = ConfigDict(frozen=True)

    step: InstallStep
    index: int
    total: int
    message: str

    @property
    def percentage(self) -> float:
        return self.index / self.total * 100 if self.total > 0 else 0.0


class ValidationResult(BaseModel):
    """Errors and warnings found while validating an installation configuration."""

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors
