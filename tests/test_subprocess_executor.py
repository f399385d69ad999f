# ruff: noqa: ANN201
import asyncio
import sys
import time

import pytest

from diffusion_installer.exceptions import OperationCancelledError, ProcessTimeoutError
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.subprocess_executor import SubprocessExecutor, is_progress_line

PY = sys.executable


@pytest.mark.asyncio
async def test_run_captures_output_and_exit_code():
    result = await SubprocessExecutor().run(
        PY, "-c", "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(3)"
    )

    assert result.exit_code == 3
    assert not result.success
    assert result.stdout == "hello"
    assert result.stderr == "oops"
    assert result.args[0] == PY


@pytest.mark.asyncio
async def test_streaming_callbacks_receive_lines_in_order():
    out: list[str] = []
    err: list[str] = []

    result = await SubprocessExecutor().run_with_realtime_output(
        PY,
        "-c",
        "import sys\nfor i in range(3): print(f'line {i}', flush=True)\nprint('warn', file=sys.stderr)",
        on_stdout=out.append,
        on_stderr=err.append,
    )

    assert result.success
    assert out == ["line 0", "line 1", "line 2"]
    assert err == ["warn"]


@pytest.mark.asyncio
async def test_carriage_return_progress_keeps_last_segment():
    lines: list[str] = []

    await SubprocessExecutor().run_with_realtime_output(
        PY, "-c", "print('10%\\r50%\\r100%')", on_stdout=lines.append
    )

    assert lines == ["100%"]


@pytest.mark.asyncio
async def test_timeout_kills_process_and_raises():
    start = time.monotonic()

    with pytest.raises(ProcessTimeoutError) as exc_info:
        await SubprocessExecutor().run(PY, "-c", "import time; time.sleep(30)", timeout=0.5)

    assert time.monotonic() - start < 10
    # timeouts are a form of cancellation
    assert isinstance(exc_info.value, OperationCancelledError)


@pytest.mark.asyncio
async def test_cancel_token_terminates_running_process():
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.3)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    start = time.monotonic()

    with pytest.raises(OperationCancelledError):
        await SubprocessExecutor().run(PY, "-c", "import time; time.sleep(30)", cancel_token=token)

    await canceller
    assert time.monotonic() - start < 10


@pytest.mark.asyncio
async def test_already_cancelled_token_never_starts_process():
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await SubprocessExecutor().run(PY, "-c", "print('never')", cancel_token=token)


@pytest.mark.asyncio
async def test_task_cancellation_propagates():
    task = asyncio.create_task(SubprocessExecutor().run(PY, "-c", "import time; time.sleep(30)"))
    await asyncio.sleep(0.3)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_missing_executable_is_reported_not_raised():
    result = await SubprocessExecutor().run("definitely-not-a-real-executable-4711")

    assert result.exit_code == -1
    assert "definitely-not-a-real-executable-4711" in result.stderr


def test_resolve_executable_path():
    assert SubprocessExecutor.resolve_executable_path(PY) is not None
    assert SubprocessExecutor.resolve_executable_path("definitely-not-a-real-executable-4711") is None
    assert SubprocessExecutor.is_executable_in_path(PY)

    with pytest.raises(ValueError):
        SubprocessExecutor.resolve_executable_path("  ")


def test_is_progress_line():
    assert is_progress_line("Receiving objects:  50%\r")
    assert is_progress_line("\033[32mok\033[0m")
    assert not is_progress_line("Cloning into 'x'...")
