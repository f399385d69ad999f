# ruff: noqa: ANN201, ANN001
from pathlib import Path

import httpx
import pytest

from diffusion_installer.exceptions import InstallerError, OperationCancelledError, ProcessTimeoutError
from diffusion_installer.models.config import AppConfig
from diffusion_installer.models.execution import InstallStep, LogLevel, StepResult
from diffusion_installer.models.installation import (
    InstallConfig,
    InstallOptions,
    ModelSpec,
    PythonSettings,
    RepositorySettings,
)
from diffusion_installer.reporter import CollectingReporter
from diffusion_installer.services.download import DownloadManager
from diffusion_installer.services.installer import InstallationExecutor, StepHandlerEntry, StepHandlers
from diffusion_installer.utils.cancellation import CancellationToken

REPO_URL = "https://github.com/example/diffusion-ui.git"

NON_FATAL = {InstallStep.INSTALL_ACCELERATOR_EXTRA, InstallStep.INSTALL_EXTRA2, InstallStep.DOWNLOAD_MODELS}
STATE_FIELDS = {
    InstallStep.RUNTIME_CHECK: "interpreter_path",
    InstallStep.CLONE_MAIN: "repo_path",
    InstallStep.CREATE_VIRTUAL_ENV: "venv_path",
}


class FakeSteps:
    """Scripted step handlers recording the order they ran in."""

    def __init__(self) -> None:
        self.calls: list[InstallStep] = []
        self.results: dict[InstallStep, StepResult] = {}
        self.errors: dict[InstallStep, Exception] = {}
        self.paths: dict[InstallStep, str] = {}
        self.seen_repo_paths: dict[InstallStep, Path] = {}
        self.on_call: dict[InstallStep, object] = {}

    def handler(self, step: InstallStep):
        async def run(ctx):
            self.calls.append(step)
            self.seen_repo_paths[step] = ctx.repo_path
            if callback := self.on_call.get(step):
                callback()
            if step in self.errors:
                raise self.errors[step]
            if step in self.results:
                return self.results[step]
            return StepResult.succeeded(step, f"{step} done", path=self.paths.get(step))

        return run

    def registry(self) -> dict[InstallStep, StepHandlerEntry]:
        return {
            step: StepHandlerEntry(
                self.handler(step),
                fatal_on_failure=step not in NON_FATAL,
                state_field=STATE_FIELDS.get(step),
            )
            for step in InstallStep
        }


def make_config(**python) -> InstallConfig:
    return InstallConfig(repository=RepositorySettings(url=REPO_URL), python=PythonSettings(**python))


@pytest.mark.asyncio
async def test_successful_run_reports_progress_for_every_step(tmp_path):
    steps = FakeSteps()
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(), str(tmp_path), reporter=reporter
    )

    assert result.success
    assert result.message == "Installation completed successfully!"
    assert steps.calls == [
        InstallStep.GIT_SETUP,
        InstallStep.RUNTIME_CHECK,
        InstallStep.CLONE_MAIN,
        InstallStep.CREATE_VIRTUAL_ENV,
        InstallStep.INSTALL_ACCELERATOR,
        InstallStep.INSTALL_MAIN_REQUIREMENTS,
        InstallStep.POST_INSTALL,
    ]

    total = len(steps.calls)
    assert [e.index for e in reporter.events] == list(range(total + 1))
    assert all(e.total == total for e in reporter.events)
    assert [e.step for e in reporter.events[:-1]] == steps.calls
    assert reporter.events[0].message == "Setting up Git..."

    final = reporter.events[-1]
    assert final.step == InstallStep.POST_INSTALL
    assert final.message == "Installation completed"
    assert final.percentage == 100.0
    assert reporter.entries[-1].level == LogLevel.SUCCESS
    assert reporter.entries[-1].message == "Installation completed successfully!"


@pytest.mark.asyncio
async def test_fatal_failure_aborts_remaining_steps(tmp_path):
    steps = FakeSteps()
    steps.results[InstallStep.CLONE_MAIN] = StepResult.failed(InstallStep.CLONE_MAIN, "Clone failed: fatal: not found")
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(), str(tmp_path), reporter=reporter
    )

    assert not result.success
    assert not result.cancelled
    assert result.failed_step == InstallStep.CLONE_MAIN
    assert result.message == "Installation failed at step CloneMain: Clone failed: fatal: not found"
    assert steps.calls == [InstallStep.GIT_SETUP, InstallStep.RUNTIME_CHECK, InstallStep.CLONE_MAIN]
    assert result.message in reporter.messages(LogLevel.ERROR)
    assert all(e.message != "Installation completed" for e in reporter.events)


@pytest.mark.asyncio
async def test_failed_downloads_do_not_abort_the_run(tmp_path):
    steps = FakeSteps()
    steps.results[InstallStep.DOWNLOAD_MODELS] = StepResult.failed(
        InstallStep.DOWNLOAD_MODELS, "Failed to download all 2 models.", continue_on_failure=True
    )
    config = make_config()
    config.models = [ModelSpec(name="a", url="https://host/a.bin"), ModelSpec(name="b", url="https://host/b.bin")]
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(config, str(tmp_path), reporter=reporter)

    assert result.success
    assert steps.calls[-2:] == [InstallStep.DOWNLOAD_MODELS, InstallStep.POST_INSTALL]
    assert "Step DownloadModels failed, continuing: Failed to download all 2 models." in reporter.messages(
        LogLevel.WARNING
    )


@pytest.mark.asyncio
async def test_non_fatal_registry_entry_continues_without_result_flag(tmp_path):
    steps = FakeSteps()
    steps.results[InstallStep.INSTALL_ACCELERATOR_EXTRA] = StepResult.failed(
        InstallStep.INSTALL_ACCELERATOR_EXTRA, "Virtual environment not found"
    )

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(install_triton=True), str(tmp_path)
    )

    assert result.success
    assert InstallStep.INSTALL_MAIN_REQUIREMENTS in steps.calls


@pytest.mark.asyncio
async def test_continue_flag_overrides_fatal_entry(tmp_path):
    steps = FakeSteps()
    steps.results[InstallStep.INSTALL_ACCELERATOR] = StepResult.failed(
        InstallStep.INSTALL_ACCELERATOR, "flaky", continue_on_failure=True
    )

    result = await InstallationExecutor(registry=steps.registry()).run(make_config(), str(tmp_path))

    assert result.success
    assert steps.calls[-1] == InstallStep.POST_INSTALL


@pytest.mark.asyncio
async def test_timeout_cancels_the_run(tmp_path):
    steps = FakeSteps()
    steps.errors[InstallStep.INSTALL_ACCELERATOR] = ProcessTimeoutError("pip install torch", 1800)
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(), str(tmp_path), reporter=reporter
    )

    assert not result.success
    assert result.cancelled
    assert result.failed_step is None
    assert result.message == "Installation was cancelled: Process timed out after 1800s: pip install torch"
    assert steps.calls[-1] == InstallStep.INSTALL_ACCELERATOR
    assert result.message in reporter.messages(LogLevel.WARNING)


@pytest.mark.asyncio
async def test_timeout_in_non_fatal_step_still_cancels(tmp_path):
    steps = FakeSteps()
    steps.errors[InstallStep.INSTALL_ACCELERATOR_EXTRA] = ProcessTimeoutError("pip install triton", 60)

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(install_triton=True), str(tmp_path)
    )

    assert result.cancelled
    assert not result.success
    assert InstallStep.INSTALL_MAIN_REQUIREMENTS not in steps.calls


@pytest.mark.asyncio
async def test_cancellation_between_steps_stops_the_run(tmp_path):
    steps = FakeSteps()
    token = CancellationToken()
    steps.on_call[InstallStep.RUNTIME_CHECK] = token.cancel
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(
        make_config(), str(tmp_path), reporter=reporter, cancel_token=token
    )

    assert result.cancelled
    assert not result.success
    assert result.message == "Installation was cancelled."
    assert steps.calls == [InstallStep.GIT_SETUP, InstallStep.RUNTIME_CHECK]
    assert len(reporter.events) == 2


@pytest.mark.asyncio
async def test_cancellation_raised_by_handler(tmp_path):
    steps = FakeSteps()
    steps.errors[InstallStep.CLONE_MAIN] = OperationCancelledError("Process cancelled: git clone")

    result = await InstallationExecutor(registry=steps.registry()).run(make_config(), str(tmp_path))

    assert result.cancelled
    assert result.failed_step is None
    assert InstallStep.CREATE_VIRTUAL_ENV not in steps.calls


@pytest.mark.asyncio
async def test_state_flows_from_earlier_steps(tmp_path):
    steps = FakeSteps()
    repo = tmp_path / "checkout"
    steps.paths[InstallStep.RUNTIME_CHECK] = "/usr/bin/python3.12"
    steps.paths[InstallStep.CLONE_MAIN] = str(repo)
    steps.paths[InstallStep.CREATE_VIRTUAL_ENV] = str(repo / "venv")

    result = await InstallationExecutor(registry=steps.registry()).run(make_config(), str(tmp_path))

    assert result.success
    assert result.repo_path == str(repo)
    assert result.venv_path == str(repo / "venv")
    # Before the clone, handlers see the computed default location
    assert steps.seen_repo_paths[InstallStep.GIT_SETUP] == tmp_path / "diffusion-ui"
    assert steps.seen_repo_paths[InstallStep.CREATE_VIRTUAL_ENV] == repo


@pytest.mark.asyncio
async def test_invalid_configuration_runs_no_steps(tmp_path):
    steps = FakeSteps()
    reporter = CollectingReporter()

    result = await InstallationExecutor(registry=steps.registry()).run(
        InstallConfig(), str(tmp_path), reporter=reporter
    )

    assert not result.success
    assert result.message.startswith("Invalid configuration: ")
    assert steps.calls == []
    assert reporter.events == []
    assert reporter.messages(LogLevel.ERROR)


@pytest.mark.asyncio
async def test_empty_target_directory_is_rejected():
    with pytest.raises(ValueError):
        await InstallationExecutor(registry=FakeSteps().registry()).run(make_config(), "  ")


@pytest.mark.asyncio
async def test_missing_handler_raises(tmp_path):
    registry = FakeSteps().registry()
    del registry[InstallStep.POST_INSTALL]

    with pytest.raises(InstallerError):
        await InstallationExecutor(registry=registry).run(make_config(), str(tmp_path))


class FakeDownloadManager(DownloadManager):
    def __init__(self) -> None:
        self.calls = 0

    async def download_models(self, install_config, repo_path, reporter=None, cancel_token=None):
        self.calls += 1
        return StepResult.succeeded(InstallStep.DOWNLOAD_MODELS, "Successfully downloaded 1 models.")


@pytest.mark.asyncio
async def test_model_only_on_missing_directory_never_downloads(tmp_path):
    downloads = FakeDownloadManager()
    config = make_config()
    config.models = [ModelSpec(name="sd", url="https://host/sd.safetensors")]
    missing = tmp_path / "does-not-exist"

    result = await InstallationExecutor(StepHandlers(download_manager=downloads)).run(
        config, str(missing), options=InstallOptions(model_only=True)
    )

    assert not result.success
    assert result.failed_step == InstallStep.VALIDATE_EXISTING
    assert "Model-only mode requires an existing installation" in result.message
    assert downloads.calls == 0


@pytest.mark.asyncio
async def test_model_only_downloads_into_existing_installation(tmp_path):
    downloads = FakeDownloadManager()
    config = make_config()
    config.models = [ModelSpec(name="sd", url="https://host/sd.safetensors")]

    result = await InstallationExecutor(StepHandlers(download_manager=downloads)).run(
        config, str(tmp_path), options=InstallOptions(model_only=True)
    )

    assert result.success
    assert downloads.calls == 1


def test_default_registry_continuation_policy():
    registry = StepHandlers().build_registry()

    assert set(registry) == set(InstallStep)
    assert {step for step, entry in registry.items() if not entry.fatal_on_failure} == NON_FATAL
    assert {step: entry.state_field for step, entry in registry.items() if entry.state_field} == STATE_FIELDS


@pytest.mark.asyncio
async def test_model_only_without_repository_url_downloads_into_target(tmp_path):
    def serve(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"weights")

    downloads = DownloadManager(
        client=httpx.AsyncClient(transport=httpx.MockTransport(serve)), config=AppConfig()
    )
    config = InstallConfig(models=[ModelSpec(name="sd", url="https://host/sd.safetensors")])

    result = await InstallationExecutor(StepHandlers(download_manager=downloads)).run(
        config, str(tmp_path), options=InstallOptions(model_only=True)
    )

    assert result.success
    files = sorted(p.relative_to(tmp_path).as_posix() for p in tmp_path.rglob("*") if p.is_file())
    assert files == ["models/checkpoints/sd.safetensors"]
    assert not (tmp_path / "repository").exists()
