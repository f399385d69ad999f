"""Discovery of Python interpreters installed on this machine."""

import os
import re
import sys
from pathlib import Path

from pydantic import BaseModel

from diffusion_installer.config import get_config
from diffusion_installer.exceptions import ProcessTimeoutError
from diffusion_installer.logger import get_logger
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.subprocess_executor import SubprocessExecutor

logger = get_logger(__name__)

IS_WINDOWS = sys.platform == "win32"

# "py -0p" lines look like " -V:3.12 *        C:\Python312\python.exe"
PY_LAUNCHER_LINE = re.compile(r"^\s*-V:(\d+\.\d+)\S*\s+(.+)$")
VERSION_OUTPUT = re.compile(r"^Python\s+(\S+)", re.IGNORECASE)

# Versioned executable names probed on PATH besides python3/python
VERSIONED_NAMES = [f"python3.{minor}" for minor in range(13, 7, -1)]


def normalize_version(version: str) -> str:
    """Reduce "3.12.4" (or "3.12") to "3.12"."""
    parts = version.strip().split(".")
    return f"{parts[0]}.{parts[1]}" if len(parts) >= 2 else version.strip()


def version_key(version: str) -> tuple[int, ...]:
    """Numeric sort key for a dotted version; non-numeric parts are truncated ("3.13.0rc1" -> (3, 13, 0))."""
    key: list[int] = []
    for part in version.split("."):
        match = re.match(r"\d+", part)
        if not match:
            break
        key.append(int(match.group()))
    return tuple(key)


class PythonInstallation(BaseModel):
    """A discovered interpreter."""

    executable_path: str
    version: str
    is_virtual_environment: bool = False

    @property
    def major_minor(self) -> str:
        return normalize_version(self.version)


class PythonDiscovery:
    """Finds interpreters through the py launcher, PATH and well-known install directories.

    Results are cached per instance; pass ``refresh=True`` to rescan.
    """

    def __init__(self, executor: SubprocessExecutor | None = None) -> None:
        self.executor = executor or SubprocessExecutor()
        self._cache: list[PythonInstallation] | None = None

    async def list_installations(
        self, refresh: bool = False, cancel_token: CancellationToken | None = None
    ) -> list[PythonInstallation]:
        """
        List interpreters, de-duplicated by resolved path and ordered newest first.

        Args:
            refresh: Ignore cached results
            cancel_token: Cooperative cancellation token

        Returns:
            Discovered installations
        """
        if self._cache is not None and not refresh:
            return list(self._cache)

        strategies = [self._from_path, self._from_well_known_dirs]
        if IS_WINDOWS:
            strategies.insert(0, self._from_py_launcher)

        candidates: list[PythonInstallation] = []
        for strategy in strategies:
            # A failing strategy only loses its own candidates
            try:
                candidates.extend(await strategy(cancel_token))
            except (ProcessTimeoutError, OSError) as e:
                logger.warning(f"Python discovery via {strategy.__name__} failed: {e}")

        seen: set[str] = set()
        installations: list[PythonInstallation] = []
        for candidate in candidates:
            key = os.path.normcase(os.path.realpath(candidate.executable_path))
            if key in seen:
                continue
            seen.add(key)
            installations.append(candidate)

        installations.sort(key=lambda i: version_key(i.version), reverse=True)
        logger.info(f"Discovered {len(installations)} Python installation(s)")

        self._cache = installations
        return list(installations)

    async def probe_version(self, executable: str, cancel_token: CancellationToken | None = None) -> str | None:
        """Run ``<executable> --version`` and parse "Python X.Y.Z"."""
        try:
            result = await self.executor.run(
                executable,
                "--version",
                timeout=get_config().timeouts.version_probe,
                cancel_token=cancel_token,
            )
        except ProcessTimeoutError:
            logger.warning(f"Timed out probing Python version of {executable}")
            return None

        if not result.success:
            return None

        # Python 2 printed its version on stderr
        output = (result.stdout or result.stderr).strip()
        match = VERSION_OUTPUT.match(output)
        return match.group(1) if match else None

    async def _probe(self, executable: str, cancel_token: CancellationToken | None) -> PythonInstallation | None:
        version = await self.probe_version(executable, cancel_token)
        if not version:
            return None
        return PythonInstallation(executable_path=executable, version=version)

    async def _from_py_launcher(self, cancel_token: CancellationToken | None) -> list[PythonInstallation]:
        if not self.executor.is_executable_in_path("py"):
            return []

        result = await self.executor.run(
            "py", "-0p", timeout=get_config().timeouts.version_probe, cancel_token=cancel_token
        )
        if not result.success:
            logger.debug(f"py -0p exited with code {result.exit_code}")
            return []

        found: list[PythonInstallation] = []
        for line in result.stdout.splitlines():
            match = PY_LAUNCHER_LINE.match(line.strip())
            if not match:
                continue
            path = match.group(2).strip()
            if not Path(path).is_file():
                continue
            installation = await self._probe(path, cancel_token)
            if installation:
                found.append(installation)
        return found

    async def _from_path(self, cancel_token: CancellationToken | None) -> list[PythonInstallation]:
        names = ["python3", "python"]
        if not IS_WINDOWS:
            names.extend(VERSIONED_NAMES)

        found: list[PythonInstallation] = []
        for name in names:
            path = self.executor.resolve_executable_path(name)
            if path is None:
                continue
            installation = await self._probe(path, cancel_token)
            if installation:
                found.append(installation)
        return found

    async def _from_well_known_dirs(self, cancel_token: CancellationToken | None) -> list[PythonInstallation]:
        found: list[PythonInstallation] = []
        for executable in self._well_known_executables():
            installation = await self._probe(str(executable), cancel_token)
            if installation:
                found.append(installation)
        return found

    @staticmethod
    def _well_known_executables() -> list[Path]:
        executables: list[Path] = []

        if IS_WINDOWS:
            roots = []
            if local_app_data := os.getenv("LOCALAPPDATA"):
                roots.append(Path(local_app_data) / "Programs" / "Python")
            for env_var in ("ProgramFiles", "ProgramFiles(x86)"):
                if program_files := os.getenv(env_var):
                    roots.append(Path(program_files) / "Python")
                    roots.append(Path(program_files))
            roots.append(Path.home())

            for root in roots:
                if not root.is_dir():
                    continue
                try:
                    for directory in sorted(root.glob("Python*")):
                        exe = directory / "python.exe"
                        if exe.is_file():
                            executables.append(exe)
                except OSError as e:
                    logger.debug(f"Skipping {root}: {e}")
        else:
            pyenv_versions = Path(os.getenv("PYENV_ROOT", str(Path.home() / ".pyenv"))) / "versions"
            if pyenv_versions.is_dir():
                for directory in sorted(pyenv_versions.iterdir()):
                    exe = directory / "bin" / "python"
                    if exe.is_file():
                        executables.append(exe)

        return executables
