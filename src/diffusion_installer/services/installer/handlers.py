"""Step handlers and the step registry used by the installation executor."""

import os
import sys
from pathlib import Path

from diffusion_installer.logger import get_logger
from diffusion_installer.models.execution import InstallStep, StepResult
from diffusion_installer.services.download import DownloadManager
from diffusion_installer.services.git import GitCloneOptions, GitService, GitToolManager
from diffusion_installer.services.python import PythonService, VirtualEnvironmentOptions
from diffusion_installer.services.python.service import PipCommand
from diffusion_installer.utils.cancellation import raise_if_cancelled
from diffusion_installer.utils.paths import repository_name_from_url

from .context import StepContext, StepHandlerEntry
from .planner import torch_index_url, torch_packages, triton_package

logger = get_logger(__name__)

SAGE_ATTENTION_WINDOWS_WHEEL = (
    "https://github.com/woct0rdho/SageAttention/releases/download/v2.2.0-windows.post2/"
    "sageattention-2.2.0+cu128torch2.8.0.post2-cp39-abi3-win_amd64.whl"
)

TORCH_VERIFY_SCRIPT = (
    "import torch; print(f'torch {torch.__version__}'); print(f'cuda {torch.version.cuda}'); "
    "print(f'cuda_available {torch.cuda.is_available()}')"
)

SAGE_VERIFY_SCRIPT = (
    "import sageattention; import torch; "
    "print(f'sage: {getattr(sageattention, \"__version__\", \"?\")} torch: {torch.__version__} "
    "cuda: {getattr(torch.version, \"cuda\", None)}')"
)


def _requirement_name(requirement: str) -> str:
    """"triton-windows<3.5" -> "triton-windows"."""
    for i, c in enumerate(requirement):
        if c in "<>=!~[; ":
            return requirement[:i]
    return requirement


class StepHandlers:
    """One handler per step kind, backed by the worker services."""

    def __init__(
        self,
        git_service: GitService | None = None,
        python_service: PythonService | None = None,
        download_manager: DownloadManager | None = None,
    ) -> None:
        self.git_service = git_service or GitService()
        self.python_service = python_service or PythonService(self.git_service.executor)
        self.download_manager = download_manager or DownloadManager()

    @property
    def git_tools(self) -> GitToolManager:
        return self.git_service.tool_manager

    def build_registry(self) -> dict[InstallStep, StepHandlerEntry]:
        """Map every step kind to its handler and continuation policy."""
        return {
            InstallStep.GIT_SETUP: StepHandlerEntry(self.ensure_git),
            InstallStep.RUNTIME_CHECK: StepHandlerEntry(self.check_runtime, state_field="interpreter_path"),
            InstallStep.CLONE_MAIN: StepHandlerEntry(self.clone_main, state_field="repo_path"),
            InstallStep.CREATE_VIRTUAL_ENV: StepHandlerEntry(self.create_virtual_env, state_field="venv_path"),
            InstallStep.INSTALL_ACCELERATOR: StepHandlerEntry(self.install_torch),
            InstallStep.INSTALL_ACCELERATOR_EXTRA: StepHandlerEntry(self.install_triton, fatal_on_failure=False),
            InstallStep.INSTALL_EXTRA2: StepHandlerEntry(self.install_sage_attention, fatal_on_failure=False),
            InstallStep.INSTALL_MAIN_REQUIREMENTS: StepHandlerEntry(self.install_main_requirements),
            InstallStep.CLONE_ADDITIONAL_REPOS: StepHandlerEntry(self.clone_additional_repos),
            InstallStep.DOWNLOAD_MODELS: StepHandlerEntry(self.download_models, fatal_on_failure=False),
            InstallStep.POST_INSTALL: StepHandlerEntry(self.post_install),
            InstallStep.VALIDATE_EXISTING: StepHandlerEntry(self.validate_existing),
        }

    # Environment

    async def ensure_git(self, ctx: StepContext) -> StepResult:
        step = InstallStep.GIT_SETUP
        ctx.reporter.info("Checking Git installation...")

        if self.git_tools.is_installed():
            version = await self.git_tools.get_version(ctx.cancel_token)
            ctx.reporter.success(f"Git is installed: {version}")
            return StepResult.succeeded(step, f"Git is installed: {version}")

        ctx.reporter.warning("Git not found. Attempting to install...")
        result = await self.git_tools.install(ctx.reporter, ctx.cancel_token)
        if not result.success:
            return StepResult.failed(step, f"Failed to install Git: {result.message}")

        return StepResult.succeeded(step, result.message)

    async def check_runtime(self, ctx: StepContext) -> StepResult:
        step = InstallStep.RUNTIME_CHECK
        python = ctx.config.python
        version = python.python_version
        override = python.interpreter_path_override.strip()

        ctx.reporter.info(f"Checking for Python {version}...")

        if override:
            if Path(override).is_file():
                ctx.reporter.success(f"Using specified interpreter: {override}")
                return StepResult.succeeded(step, f"Using specified interpreter: {override}", path=override)

            ctx.reporter.warning(f"Specified interpreter not found: {override}. Searching for Python {version}...")

        installation = await self.python_service.find_version(version, ctx.cancel_token)
        if installation is None:
            available = await self.python_service.list_installed_runtimes(cancel_token=ctx.cancel_token)
            version_list = (
                ", ".join(f"{i.version} ({i.executable_path})" for i in available) if available else "none found"
            )
            ctx.reporter.error(f"Python {version} not found. Available versions: {version_list}")
            return StepResult.failed(
                step,
                f"Python {version} not found. Please install Python {version} and try again. "
                f"Available versions: {version_list}",
            )

        message = f"Found Python {installation.version} at {installation.executable_path}"
        ctx.reporter.success(message)
        return StepResult.succeeded(step, message, path=installation.executable_path)

    async def clone_main(self, ctx: StepContext) -> StepResult:
        step = InstallStep.CLONE_MAIN
        repository = ctx.config.repository

        if not repository.url.strip():
            return StepResult.failed(step, "Repository URL is not configured.")

        ctx.reporter.info(f"Cloning {repository.url}...")

        result = await self.git_service.clone(
            GitCloneOptions(
                repository_url=repository.url.strip(),
                target_directory=ctx.target_directory,
                branch=repository.branch,
                commit_hash=repository.commit_hash,
            ),
            ctx.reporter,
            ctx.cancel_token,
        )
        if not result.success:
            return StepResult.failed(step, f"Failed to clone repository: {result.message}")

        return StepResult.succeeded(step, result.message, path=result.path)

    async def create_virtual_env(self, ctx: StepContext) -> StepResult:
        step = InstallStep.CREATE_VIRTUAL_ENV
        python = ctx.config.python

        if not python.create_virtual_env:
            ctx.reporter.info("Virtual environment creation is disabled. Skipping...")
            return StepResult.skipped(step, "Virtual environment creation is disabled.")

        ctx.reporter.info(f"Creating virtual environment '{python.virtual_env_name}'...")

        result = await self.python_service.create_virtual_env(
            VirtualEnvironmentOptions(
                base_directory=str(ctx.repo_path),
                name=python.virtual_env_name,
                python_version=python.python_version,
                interpreter_path=ctx.state.interpreter_path or python.interpreter_path_override or None,
            ),
            ctx.reporter,
            ctx.cancel_token,
        )
        if not result.success:
            return StepResult.failed(step, f"Failed to create virtual environment: {result.message}")

        return StepResult.succeeded(step, f"Virtual environment created at {result.path}", path=result.path)

    # Packages

    async def _resolve_pip(
        self, ctx: StepContext, step: InstallStep, requires_venv: str | None = None
    ) -> tuple[PipCommand | None, str | None, StepResult | None]:
        """
        Pick the pip invocation for a package step.

        Returns ``(pip, python, None)`` on success or ``(None, None, failure)``.
        The venv's pip is used when the venv exists. Without a venv, steps
        that name ``requires_venv`` fail, and the others fall back to
        ``<interpreter> -m pip`` when venv creation is disabled.
        """
        venv_path = ctx.venv_path

        if venv_path.is_dir():
            pip = self.python_service.venv_pip_executable(venv_path)
            if not Path(pip).is_file():
                ctx.reporter.error(f"Pip executable not found at {pip}")
                return None, None, StepResult.failed(step, f"Pip executable not found at {pip}")
            return pip, self.python_service.venv_python_executable(venv_path), None

        if requires_venv:
            ctx.reporter.error(f"Virtual environment not found at {venv_path}")
            return None, None, StepResult.failed(
                step, f"Virtual environment not found at {venv_path}. {requires_venv} requires a virtual environment."
            )

        if ctx.config.python.create_virtual_env:
            ctx.reporter.error(f"Virtual environment not found at {venv_path}")
            return None, None, StepResult.failed(step, f"Virtual environment not found at {venv_path}")

        ctx.reporter.warning("Virtual environment not found, attempting to use system Python...")
        interpreter = ctx.state.interpreter_path or await self.python_service.resolve_interpreter(
            ctx.config.python.python_version, ctx.config.python.interpreter_path_override, ctx.cancel_token
        )
        if not interpreter:
            return None, None, StepResult.failed(step, "Python installation not found for package installation.")

        return [interpreter, "-m", "pip"], interpreter, None

    async def install_torch(self, ctx: StepContext) -> StepResult:
        step = InstallStep.INSTALL_ACCELERATOR
        ctx.reporter.info("Installing PyTorch...")

        pip, python, failure = await self._resolve_pip(ctx, step)
        if failure:
            return failure
        assert pip is not None and python is not None

        packages = torch_packages(ctx.config)
        index_url = torch_index_url(ctx.config)

        ctx.reporter.info(f"Installing PyTorch packages: {', '.join(packages)}")
        if index_url:
            ctx.reporter.info(f"Using index URL: {index_url}")

        result = await self.python_service.install_packages(
            pip, packages, index_url=index_url, reporter=ctx.reporter, cancel_token=ctx.cancel_token
        )
        if not result.success:
            ctx.reporter.error(f"Failed to install PyTorch: {result.message}")
            return StepResult.failed(step, f"Failed to install PyTorch: {result.message}")

        ctx.reporter.info("Verifying PyTorch installation...")
        verify = await self.python_service.run_inline_script(
            python, TORCH_VERIFY_SCRIPT, ctx.reporter, ctx.cancel_token
        )
        if not verify.success:
            ctx.reporter.warning(f"PyTorch verification: {verify.message}")

        ctx.reporter.success("PyTorch installed successfully.")
        return StepResult.succeeded(step, "PyTorch installed successfully.")

    async def install_triton(self, ctx: StepContext) -> StepResult:
        step = InstallStep.INSTALL_ACCELERATOR_EXTRA
        python = ctx.config.python

        if not python.install_triton and not python.install_sage_attention:
            ctx.reporter.info("Triton installation is disabled. Skipping...")
            return StepResult.skipped(step, "Triton installation is disabled.")

        if python.install_triton:
            ctx.reporter.info("Installing Triton...")
        else:
            ctx.reporter.info("Installing Triton (required by SageAttention)...")

        pip, _, failure = await self._resolve_pip(ctx, step, requires_venv="Triton")
        if failure:
            return failure
        assert pip is not None

        package = triton_package(ctx.config)
        if _requirement_name(package) != "triton":
            ctx.reporter.info("Uninstalling existing triton package (if any)...")
            await self.python_service.uninstall_packages(pip, ["triton"], ctx.reporter, ctx.cancel_token)

        ctx.reporter.info(f"Installing {package}...")
        result = await self.python_service.install_packages(
            pip, [package], reporter=ctx.reporter, cancel_token=ctx.cancel_token
        )
        if not result.success:
            ctx.reporter.error(f"Failed to install {package}: {result.message}")
            return StepResult.failed(step, f"Failed to install {package}: {result.message}", continue_on_failure=True)

        ctx.reporter.success("Triton installed successfully.")
        return StepResult.succeeded(step, "Triton installed successfully.")

    async def install_sage_attention(self, ctx: StepContext) -> StepResult:
        step = InstallStep.INSTALL_EXTRA2

        if not ctx.config.python.install_sage_attention:
            ctx.reporter.info("SageAttention installation is disabled. Skipping...")
            return StepResult.skipped(step, "SageAttention installation is disabled.")

        ctx.reporter.info("Installing SageAttention...")

        pip, python, failure = await self._resolve_pip(ctx, step, requires_venv="SageAttention")
        if failure:
            return failure
        assert pip is not None and python is not None

        ctx.reporter.info("Uninstalling existing sageattention package (if any)...")
        await self.python_service.uninstall_packages(pip, ["sageattention"], ctx.reporter, ctx.cancel_token)

        package = ctx.config.python.sage_attention_package
        if not package:
            package = SAGE_ATTENTION_WINDOWS_WHEEL if sys.platform == "win32" else "sageattention"
        # Prebuilt wheels pin their own torch build; keep pip from replacing it
        extra_args = ["--no-deps"] if package.startswith(("http://", "https://")) else []

        result = await self.python_service.install_packages(
            pip, [package], extra_args=extra_args, reporter=ctx.reporter, cancel_token=ctx.cancel_token
        )
        if not result.success:
            ctx.reporter.error(f"Failed to install SageAttention: {result.message}")
            return StepResult.failed(
                step, f"Failed to install SageAttention: {result.message}", continue_on_failure=True
            )

        ctx.reporter.info("Verifying SageAttention import...")
        verify = await self.python_service.run_inline_script(python, SAGE_VERIFY_SCRIPT, ctx.reporter, ctx.cancel_token)
        if verify.success:
            ctx.reporter.success(f"SageAttention verified: {verify.output}")
        else:
            ctx.reporter.warning(f"SageAttention verification failed: {verify.message}")

        ctx.reporter.success("SageAttention installed successfully.")
        return StepResult.succeeded(step, "SageAttention installed successfully.")

    async def install_main_requirements(self, ctx: StepContext) -> StepResult:
        step = InstallStep.INSTALL_MAIN_REQUIREMENTS
        requirements = ctx.repo_path / "requirements.txt"

        if not requirements.is_file():
            ctx.reporter.info("No requirements.txt found in main repository, skipping.")
            return StepResult.skipped(step, "No requirements.txt found.")

        ctx.reporter.info("Installing main repository requirements...")

        pip, _, failure = await self._resolve_pip(ctx, step)
        if failure:
            return failure
        assert pip is not None

        result = await self.python_service.install_requirements(pip, requirements, ctx.reporter, ctx.cancel_token)
        if not result.success:
            return StepResult.failed(step, f"Failed to install requirements: {result.message}")

        ctx.reporter.success("Main repository requirements installed successfully.")
        return StepResult.succeeded(step, "Requirements installed successfully.")

    # Content

    async def clone_additional_repos(self, ctx: StepContext) -> StepResult:
        step = InstallStep.CLONE_ADDITIONAL_REPOS
        repositories = ctx.config.additional_repos

        if not repositories:
            ctx.reporter.info("No additional repositories to clone.")
            return StepResult.skipped(step, "No additional repositories configured.")

        ctx.reporter.info(f"Cloning {len(repositories)} additional repositories...")

        custom_nodes = ctx.repo_path / "custom_nodes"
        custom_nodes.mkdir(parents=True, exist_ok=True)

        success_count = 0
        fail_count = 0

        # sorted() is stable, so equal priorities keep their configured order
        for repo in sorted(repositories, key=lambda r: r.priority):
            raise_if_cancelled(ctx.cancel_token)

            repo_name = repo.name.strip() or repository_name_from_url(repo.url)
            ctx.reporter.info(f"[{repo.priority}] Cloning {repo_name}...")

            result = await self.git_service.clone(
                GitCloneOptions(repository_url=repo.url, target_directory=str(custom_nodes), shallow=True),
                ctx.reporter,
                ctx.cancel_token,
            )
            if not result.success:
                ctx.reporter.warning(f"Failed to clone {repo_name}: {result.message}")
                fail_count += 1
                continue

            success_count += 1

            if repo.install_requirements and result.path:
                await self._install_repo_requirements(ctx, Path(result.path), repo_name)

        if fail_count > 0 and success_count == 0:
            return StepResult.failed(step, f"Failed to clone all {fail_count} repositories.")

        if fail_count > 0:
            message = f"Cloned {success_count} repositories, {fail_count} failed."
            ctx.reporter.warning(message)
        else:
            message = f"Successfully cloned {success_count} repositories."
            ctx.reporter.success(message)

        return StepResult.succeeded(step, message)

    async def _install_repo_requirements(self, ctx: StepContext, repo_path: Path, repo_name: str) -> None:
        """Install an additional repository's requirements. Problems are warnings only."""
        requirements = repo_path / "requirements.txt"
        if not requirements.is_file():
            ctx.reporter.info(f"No requirements.txt found for {repo_name}, skipping.")
            return

        ctx.reporter.info(f"Installing requirements for {repo_name}...")

        venv_path = ctx.venv_path
        if venv_path.is_dir():
            pip: PipCommand = self.python_service.venv_pip_executable(venv_path)
            if not Path(pip).is_file():
                ctx.reporter.warning(f"Pip executable not found at {pip}, skipping requirements installation.")
                return
        elif not ctx.config.python.create_virtual_env and ctx.state.interpreter_path:
            pip = [ctx.state.interpreter_path, "-m", "pip"]
        else:
            ctx.reporter.warning(
                f"Virtual environment not found at {venv_path}, skipping requirements installation."
            )
            return

        result = await self.python_service.install_requirements(pip, requirements, ctx.reporter, ctx.cancel_token)
        if result.success:
            ctx.reporter.success(f"Requirements installed for {repo_name}.")
        else:
            ctx.reporter.warning(f"Failed to install requirements for {repo_name}: {result.message}")

    async def download_models(self, ctx: StepContext) -> StepResult:
        return await self.download_manager.download_models(ctx.config, ctx.repo_path, ctx.reporter, ctx.cancel_token)

    async def validate_existing(self, ctx: StepContext) -> StepResult:
        step = InstallStep.VALIDATE_EXISTING
        raise_if_cancelled(ctx.cancel_token)

        target = ctx.target_directory
        ctx.reporter.info(f"Validating existing installation at {target}...")

        if not Path(target).is_dir():
            ctx.reporter.error(f"Target directory does not exist: {target}")
            return StepResult.failed(
                step,
                f"Target directory does not exist: {target}. Model-only mode requires an existing installation.",
            )

        ctx.reporter.success(f"Existing installation validated at {target}")
        return StepResult.succeeded(step, f"Existing installation validated at {target}")

    # Finish

    async def post_install(self, ctx: StepContext) -> StepResult:
        """Write a launcher script into the repository and report where everything ended up. Never fails."""
        step = InstallStep.POST_INSTALL
        raise_if_cancelled(ctx.cancel_token)

        repo_path = ctx.repo_path
        venv_path = ctx.venv_path
        ctx.reporter.info("Creating launcher scripts...")

        if venv_path.is_dir():
            python = self.python_service.venv_python_executable(venv_path)
            ctx.reporter.info(f"Virtual environment: {venv_path}")
        else:
            python = ctx.state.interpreter_path or ctx.config.python.interpreter_path_override or "python"
        ctx.reporter.info(f"Repository: {repo_path}")

        try:
            launcher = self._write_launcher(repo_path, python)
        except OSError as e:
            ctx.reporter.warning(f"Failed to create launcher scripts: {e}")
            return StepResult.succeeded(step, f"Post-install completed with warnings: {e}")

        ctx.reporter.success(f"Created launcher script: {launcher.name}")
        ctx.reporter.info(f"You can run the application using: {launcher}")
        return StepResult.succeeded(step, f"Launcher scripts created at {repo_path}")

    @staticmethod
    def _write_launcher(repo_path: Path, python: str) -> Path:
        if sys.platform == "win32":
            launcher = repo_path / "run.bat"
            content = f'@echo off\r\ncd /d "%~dp0"\r\n"{python}" main.py %*\r\n'
        else:
            launcher = repo_path / "run.sh"
            content = f'#!/usr/bin/env sh\ncd "$(dirname "$0")"\nexec "{python}" main.py "$@"\n'

        launcher.write_text(content, encoding="utf-8", newline="")
        if sys.platform != "win32":
            os.chmod(launcher, 0o755)

        logger.info(f"Wrote launcher {launcher}")
        return launcher
