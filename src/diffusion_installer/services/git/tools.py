"""Git tool management service."""

import os
import sys
import tempfile
from pathlib import Path

import httpx
from pydantic import BaseModel

from diffusion_installer.config import get_config
from diffusion_installer.logger import get_logger
from diffusion_installer.reporter import InstallReporter, NullReporter
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.subprocess_executor import SubprocessExecutor

logger = get_logger(__name__)

GIT_EXECUTABLE = "git"


class GitOperationResult(BaseModel):
    """Outcome of a git operation."""

    success: bool
    message: str
    path: str | None = None
    output: str = ""

    @classmethod
    def ok(cls, message: str, path: str | None = None) -> "GitOperationResult":
        return cls(success=True, message=message, path=path)

    @classmethod
    def failure(cls, message: str, output: str = "") -> "GitOperationResult":
        return cls(success=False, message=message, output=output)


class GitToolManager:
    """Detects the Git executable and installs Git for Windows when it is missing."""

    def __init__(self, executor: SubprocessExecutor | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.executor = executor or SubprocessExecutor()
        self._client = client

    def is_installed(self) -> bool:
        """Check PATH for git without spawning a process."""
        return self.executor.is_executable_in_path(GIT_EXECUTABLE)

    async def get_version(self, cancel_token: CancellationToken | None = None) -> str | None:
        """
        Get the output of ``git --version``.

        Returns:
            Version string (e.g. "git version 2.47.1"), or None if git is missing or fails
        """
        if not self.is_installed():
            return None

        result = await self.executor.run(
            GIT_EXECUTABLE,
            "--version",
            timeout=get_config().timeouts.version_probe,
            cancel_token=cancel_token,
        )
        if not result.success:
            logger.warning(f"git --version exited with code {result.exit_code}: {result.stderr}")
            return None

        return result.stdout.strip()

    async def install(
        self,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> GitOperationResult:
        """
        Download and silently run the Git for Windows installer.

        Other platforms are not supported and get a failure result asking for
        a manual install through the system package manager.
        """
        reporter = reporter or NullReporter()

        if sys.platform != "win32":
            return GitOperationResult.failure(
                "Automatic Git installation is only supported on Windows. "
                "Please install Git manually using your package manager."
            )

        if self.is_installed():
            version = await self.get_version(cancel_token)
            reporter.info(f"Git is already installed: {version}")
            return GitOperationResult.ok(f"Git is already installed: {version}")

        config = get_config()
        reporter.info("Git not found. Downloading Git for Windows...")

        temp_dir = Path(tempfile.gettempdir()) / "DiffusionInstaller"
        temp_dir.mkdir(parents=True, exist_ok=True)
        installer_path = temp_dir / "GitInstaller.exe"

        try:
            reporter.info("Downloading Git installer...")
            try:
                await self._download_installer(config.git.installer_url, installer_path, cancel_token)
            except httpx.HTTPError as e:
                reporter.error(f"Failed to download Git: {e}")
                return GitOperationResult.failure(f"Failed to download Git: {e}")

            reporter.info("Download complete. Running installer...")

            result = await self.executor.run(
                str(installer_path),
                *config.git.installer_args,
                timeout=config.timeouts.git_installer,
                cancel_token=cancel_token,
            )
            if not result.success:
                reporter.error(f"Git installation failed with exit code {result.exit_code}")
                return GitOperationResult.failure(f"Git installation failed: {result.stderr}", output=result.stderr)

            self.refresh_environment_path()

            if not self.is_installed():
                reporter.warning("Git installed but not found in PATH. You may need to restart the application.")
                return GitOperationResult.failure(
                    "Git installed but not found in PATH. Please restart the application."
                )

            version = await self.get_version(cancel_token)
            reporter.success(f"Git installed successfully: {version}")
            return GitOperationResult.ok(f"Git installed successfully: {version}")
        finally:
            try:
                installer_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove Git installer {installer_path}: {e}")

    async def _download_installer(
        self, url: str, destination: Path, cancel_token: CancellationToken | None
    ) -> None:
        config = get_config()
        logger.info(f"Downloading Git installer from {url}")

        client = self._client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(config.timeouts.git_installer, connect=config.downloads.connect_timeout),
            proxy=config.downloads.proxy,
        )
        try:
            async with client.stream("GET", url, headers={"User-Agent": config.downloads.user_agent}) as response:
                response.raise_for_status()
                with open(destination, "wb") as out_file:
                    async for chunk in response.aiter_bytes(chunk_size=config.downloads.chunk_size):
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        out_file.write(chunk)
        finally:
            if self._client is None:
                await client.aclose()

    @staticmethod
    def refresh_environment_path() -> None:
        """Reload PATH for this process from the machine and user registry values (Windows only)."""
        if sys.platform != "win32":
            return

        import winreg

        def read_path(root: int, key_path: str) -> str:
            try:
                with winreg.OpenKey(root, key_path) as key:
                    value, _ = winreg.QueryValueEx(key, "Path")
                    return os.path.expandvars(str(value))
            except OSError:
                return ""

        machine_path = read_path(
            winreg.HKEY_LOCAL_MACHINE, r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"
        )
        user_path = read_path(winreg.HKEY_CURRENT_USER, "Environment")
        os.environ["PATH"] = f"{machine_path};{user_path}"
        logger.debug("Refreshed PATH from registry")
