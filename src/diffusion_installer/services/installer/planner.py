"""Installation plan generation."""

import sys

from diffusion_installer.models.execution import InstallStep
from diffusion_installer.models.installation import InstallConfig
from diffusion_installer.utils.paths import default_repository_path, repository_name_from_url

PYTORCH_INDEX_BASE = "https://download.pytorch.org/whl"

STEP_DESCRIPTIONS: dict[InstallStep, str] = {
    InstallStep.GIT_SETUP: "Setting up Git...",
    InstallStep.RUNTIME_CHECK: "Checking Python installation...",
    InstallStep.CLONE_MAIN: "Cloning main repository...",
    InstallStep.CREATE_VIRTUAL_ENV: "Creating virtual environment...",
    InstallStep.CLONE_ADDITIONAL_REPOS: "Cloning additional repositories...",
    InstallStep.INSTALL_MAIN_REQUIREMENTS: "Installing requirements...",
    InstallStep.INSTALL_ACCELERATOR: "Installing PyTorch...",
    InstallStep.INSTALL_ACCELERATOR_EXTRA: "Installing Triton...",
    InstallStep.INSTALL_EXTRA2: "Installing SageAttention...",
    InstallStep.DOWNLOAD_MODELS: "Downloading models...",
    InstallStep.POST_INSTALL: "Running post-installation tasks...",
    InstallStep.VALIDATE_EXISTING: "Validating existing installation...",
}


def build_plan(config: InstallConfig, model_only: bool = False) -> list[InstallStep]:
    """
    Compute the ordered steps for a run.

    Pure function of the configuration and mode. Triton is planned whenever
    SageAttention is, since SageAttention depends on it.

    Args:
        config: Installation configuration
        model_only: Only validate an existing installation and download models

    Returns:
        Ordered list of steps
    """
    if model_only:
        return [InstallStep.VALIDATE_EXISTING, InstallStep.DOWNLOAD_MODELS]

    python = config.python
    steps = [InstallStep.GIT_SETUP, InstallStep.RUNTIME_CHECK, InstallStep.CLONE_MAIN]

    if python.create_virtual_env:
        steps.append(InstallStep.CREATE_VIRTUAL_ENV)

    steps.append(InstallStep.INSTALL_ACCELERATOR)

    if python.install_triton or python.install_sage_attention:
        steps.append(InstallStep.INSTALL_ACCELERATOR_EXTRA)

    if python.install_sage_attention:
        steps.append(InstallStep.INSTALL_EXTRA2)

    steps.append(InstallStep.INSTALL_MAIN_REQUIREMENTS)

    if config.additional_repos:
        steps.append(InstallStep.CLONE_ADDITIONAL_REPOS)

    if config.models:
        steps.append(InstallStep.DOWNLOAD_MODELS)

    steps.append(InstallStep.POST_INSTALL)
    return steps


def describe_step(step: InstallStep) -> str:
    return STEP_DESCRIPTIONS.get(step, "Processing...")


def derive_cuda_suffix(cuda_version: str | None) -> str:
    """"12.8" -> "cu128"; anything with fewer than two digits means a CPU build."""
    digits = "".join(c for c in (cuda_version or "") if c.isdigit())
    if len(digits) < 2:
        return "cpu"
    return f"cu{digits}"


def torch_index_url(config: InstallConfig) -> str | None:
    """Explicit index override, otherwise the PyTorch wheel index for the configured CUDA version."""
    torch = config.torch
    if torch.index_url and torch.index_url.strip():
        return torch.index_url.strip()
    if torch.cuda_version and torch.cuda_version.strip():
        return f"{PYTORCH_INDEX_BASE}/{derive_cuda_suffix(torch.cuda_version)}"
    return None


def torch_packages(config: InstallConfig) -> list[str]:
    version = config.torch.torch_version.strip()
    torch = f"torch=={version}" if version else "torch"
    return [torch, "torchvision", "torchaudio"]


def triton_package(config: InstallConfig) -> str:
    if config.python.triton_package:
        return config.python.triton_package
    return "triton-windows<3.5" if sys.platform == "win32" else "triton"


def describe_plan(config: InstallConfig, target_directory: str, model_only: bool = False) -> list[str]:
    """
    Human-readable summary of what a run would do, one line per planned step.

    Nothing is executed; intended for dry-run display before starting.
    """
    repo_path = default_repository_path(target_directory, config.repository.url)
    python = config.python
    lines: list[str] = []

    for index, step in enumerate(build_plan(config, model_only), start=1):
        if step == InstallStep.VALIDATE_EXISTING:
            detail = f"Validate existing installation at {target_directory}"
        elif step == InstallStep.GIT_SETUP:
            detail = "Ensure Git is installed"
        elif step == InstallStep.RUNTIME_CHECK:
            if python.interpreter_path_override.strip():
                detail = f"Use interpreter {python.interpreter_path_override}"
            else:
                detail = f"Locate Python {python.python_version}"
        elif step == InstallStep.CLONE_MAIN:
            detail = f"Clone {config.repository.url} into {repo_path}"
            if config.repository.branch.strip():
                detail += f" (branch {config.repository.branch})"
            if config.repository.commit_hash.strip():
                detail += f" at commit {config.repository.commit_hash}"
        elif step == InstallStep.CREATE_VIRTUAL_ENV:
            detail = f"Create virtual environment {repo_path / python.virtual_env_name}"
        elif step == InstallStep.INSTALL_ACCELERATOR:
            detail = f"Install {' '.join(torch_packages(config))}"
            if index_url := torch_index_url(config):
                detail += f" from {index_url}"
        elif step == InstallStep.INSTALL_ACCELERATOR_EXTRA:
            detail = f"Install {triton_package(config)}"
            if not python.install_triton:
                detail += " (required by SageAttention)"
        elif step == InstallStep.INSTALL_EXTRA2:
            detail = "Install SageAttention"
        elif step == InstallStep.INSTALL_MAIN_REQUIREMENTS:
            detail = f"Install {repo_path / 'requirements.txt'}"
        elif step == InstallStep.CLONE_ADDITIONAL_REPOS:
            ordered = sorted(config.additional_repos, key=lambda r: r.priority)
            names = ", ".join(r.name or repository_name_from_url(r.url) for r in ordered)
            detail = f"Clone {len(ordered)} repositories into {repo_path / 'custom_nodes'}: {names}"
        elif step == InstallStep.DOWNLOAD_MODELS:
            enabled = [m for m in config.models if m.enabled]
            detail = f"Download {len(enabled)} of {len(config.models)} models"
        else:
            detail = "Write launcher script and report installation paths"

        lines.append(f"{index}. [{step}] {detail}")

    return lines
