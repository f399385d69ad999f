"""Installation configuration models.

An ``InstallConfig`` is produced and validated by the configuration subsystem;
the engine only reads it.
"""

from pydantic import BaseModel, Field


class RepositorySettings(BaseModel):
    """Main repository to clone."""

    url: str = ""
    branch: str = ""
    commit_hash: str = ""


class PythonSettings(BaseModel):
    """Python runtime and virtual environment settings."""

    python_version: str = "3.12"
    interpreter_path_override: str = ""
    create_virtual_env: bool = True
    virtual_env_name: str = "venv"

    # Accelerator packages. SageAttention depends on Triton.
    install_triton: bool = False
    install_sage_attention: bool = False
    triton_package: str | None = None  # Platform default when unset
    sage_attention_package: str | None = None  # Platform default when unset


class TorchSettings(BaseModel):
    """PyTorch version and wheel index overrides."""

    torch_version: str = ""
    cuda_version: str = "12.8"
    index_url: str | None = None


class PathSettings(BaseModel):
    """Path settings used while resolving download destinations."""

    default_model_download_directory: str | None = None


class AdditionalRepo(BaseModel):
    """Additional repository cloned into the main repository (e.g. a custom node)."""

    url: str
    name: str = ""
    priority: int = 0
    install_requirements: bool = True


class DownloadLink(BaseModel):
    """A single downloadable file belonging to a model."""

    url: str
    destination: str = ""
    enabled: bool = True


class ModelSpec(BaseModel):
    """A model with one or more download links."""

    name: str
    enabled: bool = True
    url: str = ""  # Used only when no download links are configured
    destination: str = ""
    download_links: list[DownloadLink] = Field(default_factory=list)


class InstallConfig(BaseModel):
    """Complete, already-validated installation configuration."""

    name: str = "New Configuration"
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    python: PythonSettings = Field(default_factory=PythonSettings)
    torch: TorchSettings = Field(default_factory=TorchSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    additional_repos: list[AdditionalRepo] = Field(default_factory=list)
    models: list[ModelSpec] = Field(default_factory=list)


class InstallOptions(BaseModel):
    """Per-run options chosen by the caller."""

    model_only: bool = False
