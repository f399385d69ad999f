"""Utilities for the installer."""

from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.paths import repository_name_from_url
from diffusion_installer.utils.subprocess_executor import ProcessResult, SubprocessExecutor

__all__ = ["CancellationToken", "ProcessResult", "SubprocessExecutor", "repository_name_from_url"]
