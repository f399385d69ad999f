"""Path helpers shared by the installation steps."""

import sys
from pathlib import Path


def repository_name_from_url(url: str) -> str:
    """Derive the checkout folder name from a repository URL.

    ``https://github.com/user/repo.git`` -> ``repo``. An empty URL gives an
    empty name, so joining it onto a directory yields that directory.
    """
    if not url or not url.strip():
        return ""

    name = url.strip().rstrip("/")
    if name.lower().endswith(".git"):
        name = name[:-4]

    return name.rsplit("/", 1)[-1]


def default_repository_path(target_directory: str | Path, repo_url: str) -> Path:
    """Computed repository location used when no clone step has reported one."""
    return Path(target_directory) / repository_name_from_url(repo_url)


def resolve_relative_to(path: str, base: str | Path) -> Path:
    """Return ``path`` unchanged if absolute, otherwise joined onto ``base``."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return Path(base) / candidate


def venv_bin_dir(venv_path: str | Path) -> Path:
    """Directory holding the executables of a virtual environment."""
    if sys.platform == "win32":
        return Path(venv_path) / "Scripts"
    return Path(venv_path) / "bin"
