"""Subprocess execution utilities with automatic logging, streaming and cancellation."""

import asyncio
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from diffusion_installer.exceptions import OperationCancelledError, ProcessTimeoutError
from diffusion_installer.logger import get_logger
from diffusion_installer.utils.cancellation import CancellationToken

logger = get_logger(__name__)

IS_WINDOWS = sys.platform == "win32"

# pip and git can emit very long lines (progress bars without newlines)
STREAM_LIMIT = 1024 * 1024

OutputCallback = Callable[[str], None]


def is_progress_line(line: str) -> bool:
    """
    Check if a line appears to be a progress update (e.g., contains control characters
    like \r, \b, or ANSI escape sequences).
    """
    return "\r" in line or "\b" in line or "\033[" in line


class ProcessResult(BaseModel):
    """Exit code and captured output of a finished process."""

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SubprocessExecutor:
    """Executes subprocess commands with debug logging, line streaming and process-tree termination."""

    async def run(
        self,
        executable: str,
        *args: str,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ProcessResult:
        """
        Execute a command and capture its output.

        A non-zero exit code is reported in the result, never raised.

        Raises:
            ProcessTimeoutError: If timeout is exceeded (the process tree is killed)
            OperationCancelledError: If cancel_token fires (the process tree is killed)
        """
        return await self.run_with_realtime_output(
            executable,
            *args,
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel_token=cancel_token,
        )

    async def run_with_realtime_output(
        self,
        executable: str,
        *args: str,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> ProcessResult:
        """
        Execute a command, invoking per-line callbacks as output arrives.

        stdout and stderr are read by two independent tasks; both must finish
        before the result is assembled.

        Args:
            executable: Program to run
            *args: Command arguments
            cwd: Working directory
            env: Environment variables
            timeout: Wall-clock timeout in seconds
            cancel_token: Cooperative cancellation token
            on_stdout: Called with each stdout line
            on_stderr: Called with each stderr line

        Returns:
            ProcessResult with exit code and the full captured output
        """
        argv = [str(executable), *[str(a) for a in args]]
        cmd_str = " ".join(argv)
        logger.debug(f"Executing subprocess: {cmd_str}")
        if cwd:
            logger.debug(f"Working directory: {cwd}")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        proc_kwargs: dict[str, Any] = {}
        if cwd:
            proc_kwargs["cwd"] = str(cwd)
        if env:
            proc_kwargs["env"] = env
        if IS_WINDOWS:
            proc_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        else:
            # Own process group so the whole tree can be killed at once
            proc_kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                **proc_kwargs,
            )
        except OSError as e:
            logger.error(f"Failed to start subprocess: {cmd_str} - {e}")
            return ProcessResult(args=argv, exit_code=-1, stderr=f"Failed to start {executable}: {e}")

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        readers: list[asyncio.Task[None]] = []
        if process.stdout:
            readers.append(asyncio.create_task(self._read_stream(process.stdout, "stdout", stdout_lines, on_stdout)))
        if process.stderr:
            readers.append(asyncio.create_task(self._read_stream(process.stderr, "stderr", stderr_lines, on_stderr)))

        exit_waiter = asyncio.create_task(process.wait())
        cancel_waiter = asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None

        try:
            waiters: set[asyncio.Task[Any]] = {exit_waiter}
            if cancel_waiter is not None:
                waiters.add(cancel_waiter)

            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if exit_waiter not in done:
                await self.kill_process_tree(process)
                if cancel_token is not None and cancel_token.is_cancelled:
                    logger.warning(f"Subprocess cancelled: {cmd_str}")
                    raise OperationCancelledError(f"Process cancelled: {cmd_str}")
                logger.error(f"Subprocess timeout after {timeout}s: {cmd_str}")
                raise ProcessTimeoutError(cmd_str, timeout or 0)

            await asyncio.gather(*readers)

        except asyncio.CancelledError:
            await self.kill_process_tree(process)
            raise

        finally:
            # best-effort cleanup
            for task in (*readers, exit_waiter, cancel_waiter):
                if task is not None and not task.done():
                    task.cancel()

        assert process.returncode is not None
        if process.returncode != 0:
            logger.debug(f"Subprocess exited with code {process.returncode}: {cmd_str}")

        return ProcessResult(
            args=argv,
            exit_code=process.returncode,
            stdout="\n".join(stdout_lines).rstrip(),
            stderr="\n".join(stderr_lines).rstrip(),
        )

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader,
        source: str,
        sink: list[str],
        callback: OutputCallback | None,
    ) -> None:
        try:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip("\n\r")
                if is_progress_line(line):
                    # Keep only the last redraw of a carriage-return progress line
                    line = line.split("\r")[-1]
                sink.append(line)
                logger.debug(f"Subprocess {source}: {line}")
                if callback:
                    callback(line)
        except (ValueError, ConnectionError) as e:
            logger.error(f"Error reading from subprocess {source}: {e}")

    @staticmethod
    async def kill_process_tree(process: asyncio.subprocess.Process) -> None:
        """Terminate a process and all of its descendants, then reap it."""
        if process.returncode is not None:
            return

        if IS_WINDOWS:
            try:
                await asyncio.to_thread(
                    subprocess.run,
                    ["taskkill", "/F", "/T", "/PID", str(process.pid)],
                    capture_output=True,
                    check=False,
                )
            except OSError as e:
                logger.warning(f"taskkill failed for pid {process.pid}: {e}")
                process.kill()
        else:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                process.kill()

        await process.wait()

    @staticmethod
    def resolve_executable_path(executable_name: str) -> str | None:
        """
        Search PATH for an executable without spawning a process.

        On Windows the PATHEXT extensions (.exe, .cmd, .bat, ...) are probed.
        A name that is itself an existing file path resolves to its absolute path.
        """
        if not executable_name or not executable_name.strip():
            raise ValueError("executable_name must not be empty")

        found = shutil.which(executable_name)
        if found:
            return found

        candidate = Path(executable_name)
        if candidate.is_file():
            return str(candidate.resolve())

        return None

    @staticmethod
    def is_executable_in_path(executable_name: str) -> bool:
        return SubprocessExecutor.resolve_executable_path(executable_name) is not None
