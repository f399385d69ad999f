"""Per-run state shared between the executor and the step handlers."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from diffusion_installer.models.execution import StepResult
from diffusion_installer.models.installation import InstallConfig, InstallOptions
from diffusion_installer.reporter import InstallReporter
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.paths import default_repository_path

StateField = Literal["repo_path", "venv_path", "interpreter_path"]


class RunState(BaseModel):
    """Paths resolved by earlier steps. Written only by the executor."""

    repo_path: str | None = None
    venv_path: str | None = None
    interpreter_path: str | None = None


@dataclass
class StepContext:
    """Everything a step handler may read during one run."""

    config: InstallConfig
    target_directory: str
    options: InstallOptions
    reporter: InstallReporter
    cancel_token: CancellationToken | None = None
    state: RunState = field(default_factory=RunState)

    @property
    def repo_path(self) -> Path:
        """Cloned repository, or the computed location when no clone step has reported one."""
        if self.state.repo_path:
            return Path(self.state.repo_path)
        return default_repository_path(self.target_directory, self.config.repository.url)

    @property
    def venv_path(self) -> Path:
        if self.state.venv_path:
            return Path(self.state.venv_path)
        return self.repo_path / (self.config.python.virtual_env_name.strip() or "venv")


StepHandler = Callable[[StepContext], Awaitable[StepResult]]


@dataclass(frozen=True)
class StepHandlerEntry:
    """Registry entry: how to run a step and what its failure means for the run."""

    handler: StepHandler
    fatal_on_failure: bool = True
    # RunState field receiving StepResult.path when the step succeeds
    state_field: StateField | None = None
