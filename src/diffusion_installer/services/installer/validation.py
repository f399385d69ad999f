"""Validation of an installation configuration and its target directory."""

import re
from pathlib import Path

from diffusion_installer.logger import get_logger
from diffusion_installer.models.execution import ValidationResult
from diffusion_installer.models.installation import InstallConfig
from diffusion_installer.utils.paths import default_repository_path

logger = get_logger(__name__)

SUPPORTED_PYTHON_VERSIONS = ("3.8", "3.9", "3.10", "3.11", "3.12", "3.13")

TORCH_VERSION = re.compile(r"^\d+(\.\d+){1,3}$")


def validate_install_config(config: InstallConfig, model_only: bool = False) -> ValidationResult:
    """
    Check a configuration for problems before anything is executed.

    Errors block the run. Warnings are reported and the run proceeds.

    Args:
        config: Installation configuration
        model_only: Model-only runs do not need a repository URL

    Returns:
        Collected errors and warnings
    """
    result = ValidationResult()
    python = config.python

    if not model_only and not config.repository.url.strip():
        result.errors.append("Repository URL cannot be empty.")

    if python.python_version.strip() not in SUPPORTED_PYTHON_VERSIONS:
        result.errors.append(
            f"Python version '{python.python_version}' is not supported. Choose between 3.8 and 3.13."
        )

    if python.create_virtual_env and not python.virtual_env_name.strip():
        result.errors.append("Virtual environment name cannot be empty when creation is enabled.")

    override = python.interpreter_path_override.strip()
    if not python.create_virtual_env and not override:
        result.warnings.append(
            "Virtual environment creation is disabled and no interpreter override is set; "
            "packages will be installed into the discovered system interpreter."
        )
    if override and not Path(override).is_file():
        result.warnings.append("Interpreter path override does not exist on disk.")

    if any(not repo.url.strip() for repo in config.additional_repos):
        result.errors.append("All Git repositories must include a URL.")

    seen: dict[str, int] = {}
    for repo in config.additional_repos:
        key = repo.url.strip().lower()
        if key:
            seen[key] = seen.get(key, 0) + 1
    duplicates = [url for url, count in seen.items() if count > 1]
    if duplicates:
        result.warnings.append(f"Duplicate Git repository URLs detected: {', '.join(duplicates)}.")

    for model in config.models:
        if not model.url.strip() and not model.download_links:
            result.warnings.append(f"Model '{model.name}' has no download link and will be skipped.")
        elif model.download_links and not any(link.url.strip() for link in model.download_links):
            result.warnings.append(f"Model '{model.name}' has download links but none have a valid URL.")

    torch_version = config.torch.torch_version.strip()
    if torch_version and not TORCH_VERSION.match(torch_version):
        result.warnings.append(f"Torch version '{torch_version}' is not a valid semantic version.")

    if result.errors:
        logger.warning(f"Configuration '{config.name}' has {len(result.errors)} error(s)", errors=result.errors)

    return result


def check_target_directory(config: InstallConfig, target_directory: str, model_only: bool = False) -> ValidationResult:
    """
    Refuse a full install into an existing, non-empty repository folder.

    When the folder is occupied but the configuration has models or
    additional repositories, the error suggests model-only mode instead.
    """
    if not target_directory or not target_directory.strip():
        raise ValueError("target_directory must not be empty")

    result = ValidationResult()
    if model_only:
        return result

    repo_path = default_repository_path(target_directory, config.repository.url)
    if not repo_path.is_dir() or not _has_entries(repo_path):
        return result

    has_models = any(m.enabled for m in config.models)
    has_custom_nodes = bool(config.additional_repos)

    if has_models or has_custom_nodes:
        result.errors.append(
            f"The target folder '{repo_path}' is not empty. "
            "Run in model-only mode to add models and custom nodes to the existing installation."
        )
    else:
        result.errors.append(
            f"The target folder '{repo_path}' is not empty and no models or custom nodes "
            "are configured for installation."
        )
    return result


def _has_entries(path: Path) -> bool:
    try:
        return any(path.iterdir())
    except PermissionError:
        # unreadable counts as occupied
        return True
