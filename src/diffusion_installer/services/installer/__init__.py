"""Installation planning and execution."""

from .context import RunState, StepContext, StepHandlerEntry
from .executor import InstallationExecutor
from .handlers import StepHandlers
from .planner import build_plan, describe_plan, describe_step
from .validation import check_target_directory, validate_install_config

__all__ = [
    "InstallationExecutor",
    "RunState",
    "StepContext",
    "StepHandlerEntry",
    "StepHandlers",
    "build_plan",
    "check_target_directory",
    "describe_plan",
    "describe_step",
    "validate_install_config",
]
