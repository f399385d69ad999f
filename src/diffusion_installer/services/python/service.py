"""Python runtime, virtual environment and package operations."""

import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel

from diffusion_installer.config import get_config
from diffusion_installer.logger import get_logger
from diffusion_installer.reporter import InstallReporter, NullReporter
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.paths import venv_bin_dir
from diffusion_installer.utils.subprocess_executor import ProcessResult, SubprocessExecutor

from .discovery import PythonDiscovery, PythonInstallation, normalize_version

logger = get_logger(__name__)

# A pip invocation: either a pip executable or a command prefix such as [python, "-m", "pip"]
PipCommand = str | Sequence[str]


class PythonOperationResult(BaseModel):
    """Outcome of a runtime or package operation."""

    success: bool
    message: str
    path: str | None = None
    python_executable: str | None = None
    output: str = ""

    @classmethod
    def ok(
        cls, message: str, path: str | None = None, python_executable: str | None = None, output: str = ""
    ) -> "PythonOperationResult":
        return cls(success=True, message=message, path=path, python_executable=python_executable, output=output)

    @classmethod
    def failure(cls, message: str, output: str = "") -> "PythonOperationResult":
        return cls(success=False, message=message, output=output)


class VirtualEnvironmentOptions(BaseModel):
    """Where and with which interpreter to create a virtual environment."""

    base_directory: str
    name: str = "venv"
    python_version: str = "3.12"
    interpreter_path: str | None = None
    upgrade_pip: bool = True


class PythonService:
    """Manages interpreters, virtual environments and pip operations."""

    def __init__(self, executor: SubprocessExecutor | None = None, discovery: PythonDiscovery | None = None) -> None:
        self.executor = executor or SubprocessExecutor()
        self.discovery = discovery or PythonDiscovery(self.executor)

    async def list_installed_runtimes(
        self, refresh: bool = False, cancel_token: CancellationToken | None = None
    ) -> list[PythonInstallation]:
        return await self.discovery.list_installations(refresh=refresh, cancel_token=cancel_token)

    async def find_version(
        self, version: str, cancel_token: CancellationToken | None = None
    ) -> PythonInstallation | None:
        """
        Find the newest installation whose major.minor matches ``version``.

        Raises:
            ValueError: If version is empty
        """
        if not version or not version.strip():
            raise ValueError("version must not be empty")

        wanted = normalize_version(version)
        for installation in await self.list_installed_runtimes(cancel_token=cancel_token):
            if installation.major_minor == wanted:
                return installation
        return None

    async def resolve_interpreter(
        self,
        version: str,
        interpreter_override: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> str | None:
        """Return the override when it exists on disk, otherwise the discovered interpreter for ``version``."""
        if interpreter_override and interpreter_override.strip() and Path(interpreter_override).is_file():
            return interpreter_override

        installation = await self.find_version(version, cancel_token)
        return installation.executable_path if installation else None

    @staticmethod
    def venv_python_executable(venv_path: Path | str) -> str:
        name = "python.exe" if sys.platform == "win32" else "python"
        return str(venv_bin_dir(venv_path) / name)

    @staticmethod
    def venv_pip_executable(venv_path: Path | str) -> str:
        name = "pip.exe" if sys.platform == "win32" else "pip"
        return str(venv_bin_dir(venv_path) / name)

    async def create_virtual_env(
        self,
        options: VirtualEnvironmentOptions,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PythonOperationResult:
        """
        Create ``base_directory/name`` with ``python -m venv``.

        An existing environment with a Python executable is reused. A failed
        pip upgrade is only reported as a warning.

        Args:
            options: Virtual environment options
            reporter: Receives user-visible log entries
            cancel_token: Cooperative cancellation token

        Returns:
            Result whose ``path`` is the venv directory
        """
        if not options.base_directory.strip():
            raise ValueError("base_directory must not be empty")
        if not options.name.strip():
            raise ValueError("name must not be empty")

        reporter = reporter or NullReporter()
        config = get_config()

        venv_path = Path(options.base_directory) / options.name
        venv_python = self.venv_python_executable(venv_path)

        if venv_path.is_dir() and Path(venv_python).is_file():
            reporter.info(f"Virtual environment already exists at {venv_path}")
            return PythonOperationResult.ok(
                f"Virtual environment already exists at {venv_path}", str(venv_path), venv_python
            )

        python_path = await self.resolve_interpreter(options.python_version, options.interpreter_path, cancel_token)
        if not python_path:
            reporter.error(f"Python {options.python_version} not found on the system.")
            return PythonOperationResult.failure(f"Python {options.python_version} not found.")

        reporter.info(f"Creating virtual environment using {python_path}...")
        Path(options.base_directory).mkdir(parents=True, exist_ok=True)

        result = await self.executor.run_with_realtime_output(
            python_path,
            "-m",
            "venv",
            str(venv_path),
            cwd=options.base_directory,
            timeout=config.timeouts.create_venv,
            cancel_token=cancel_token,
            on_stdout=reporter.info,
            on_stderr=reporter.warning,
        )
        if not result.success:
            reporter.error(f"Failed to create virtual environment: {result.stderr}")
            return PythonOperationResult.failure(
                f"Failed to create virtual environment: {result.stderr}", result.stderr
            )

        if not Path(venv_python).is_file():
            reporter.error("Virtual environment created but Python executable not found.")
            return PythonOperationResult.failure("Virtual environment created but Python executable not found.")

        reporter.success(f"Virtual environment created at {venv_path}")

        if options.upgrade_pip:
            reporter.info("Upgrading pip...")
            upgrade = await self.executor.run_with_realtime_output(
                venv_python,
                "-m",
                "pip",
                "install",
                "--upgrade",
                "pip",
                cwd=venv_path,
                timeout=config.timeouts.pip_upgrade,
                cancel_token=cancel_token,
                on_stdout=reporter.info,
                on_stderr=reporter.warning,
            )
            if upgrade.success:
                reporter.success("Pip upgraded successfully")
            else:
                reporter.warning("Failed to upgrade pip, continuing anyway...")

        return PythonOperationResult.ok(f"Virtual environment created at {venv_path}", str(venv_path), venv_python)

    async def install_packages(
        self,
        pip: PipCommand,
        packages: Sequence[str],
        index_url: str | None = None,
        extra_args: Sequence[str] = (),
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PythonOperationResult:
        """
        Run ``<pip> install [extra_args] <packages> [--index-url <url>]``.

        Args:
            pip: pip executable or command prefix
            packages: Requirement specifiers
            index_url: Custom package index
            extra_args: Extra install flags (e.g. ``--no-deps``)
            reporter: Receives user-visible log entries
            cancel_token: Cooperative cancellation token
        """
        reporter = reporter or NullReporter()

        if not packages:
            return PythonOperationResult.ok("No packages to install.")

        reporter.info(f"Installing packages: {', '.join(packages)}")

        args = ["install", *extra_args, *packages]
        if index_url:
            args.extend(["--index-url", index_url])

        result = await self._run_pip(pip, args, get_config().timeouts.install_packages, reporter, cancel_token)
        if not result.success:
            reporter.error(f"Failed to install packages: {result.stderr}")
            return PythonOperationResult.failure(f"Failed to install packages: {result.stderr}", result.stderr)

        reporter.success("Packages installed successfully")
        return PythonOperationResult.ok("Packages installed successfully.", output=result.stdout)

    async def install_requirements(
        self,
        pip: PipCommand,
        requirements_path: Path | str,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PythonOperationResult:
        """Run ``<pip> install -r <requirements_path>``; a missing file is a failure."""
        reporter = reporter or NullReporter()

        if not Path(requirements_path).is_file():
            reporter.warning(f"Requirements file not found: {requirements_path}")
            return PythonOperationResult.failure(f"Requirements file not found: {requirements_path}")

        reporter.info(f"Installing requirements from {requirements_path}...")

        result = await self._run_pip(
            pip,
            ["install", "-r", str(requirements_path)],
            get_config().timeouts.install_requirements,
            reporter,
            cancel_token,
        )
        if not result.success:
            reporter.error(f"Failed to install requirements: {result.stderr}")
            return PythonOperationResult.failure(f"Failed to install requirements: {result.stderr}", result.stderr)

        reporter.success("Requirements installed successfully")
        return PythonOperationResult.ok("Requirements installed successfully.", output=result.stdout)

    async def uninstall_packages(
        self,
        pip: PipCommand,
        packages: Sequence[str],
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PythonOperationResult:
        """Best-effort ``<pip> uninstall -y <pkg>`` per package. Failures are logged and ignored."""
        reporter = reporter or NullReporter()

        for package in packages:
            result = await self.executor.run(
                *self._pip_argv(pip, ["uninstall", "-y", package]),
                timeout=get_config().timeouts.install_packages,
                cancel_token=cancel_token,
            )
            if result.success:
                reporter.info(f"Uninstalled {package}")
            else:
                logger.debug(f"pip uninstall {package} exited with code {result.exit_code}: {result.stderr}")

        return PythonOperationResult.ok(f"Uninstalled packages: {', '.join(packages)}")

    async def run_inline_script(
        self,
        python_executable: str,
        script: str,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PythonOperationResult:
        """Run ``<python> -c <script>``; stdout lines are reported as info."""
        if not python_executable or not python_executable.strip():
            raise ValueError("python_executable must not be empty")

        reporter = reporter or NullReporter()

        result = await self.executor.run_with_realtime_output(
            python_executable,
            "-c",
            script,
            timeout=get_config().timeouts.inline_script,
            cancel_token=cancel_token,
            on_stdout=reporter.info,
        )
        if not result.success:
            return PythonOperationResult.failure(f"Script failed: {result.stderr}", result.stderr)

        return PythonOperationResult.ok("Script completed successfully.", output=result.stdout)

    @staticmethod
    def _pip_argv(pip: PipCommand, args: list[str]) -> list[str]:
        prefix = [pip] if isinstance(pip, str) else list(pip)
        if not prefix or not prefix[0].strip():
            raise ValueError("pip command must not be empty")
        return [*prefix, *args]

    async def _run_pip(
        self,
        pip: PipCommand,
        args: list[str],
        timeout: float,
        reporter: InstallReporter,
        cancel_token: CancellationToken | None,
    ) -> ProcessResult:
        return await self.executor.run_with_realtime_output(
            *self._pip_argv(pip, args),
            timeout=timeout,
            cancel_token=cancel_token,
            on_stdout=reporter.info,
            on_stderr=reporter.warning,
        )
