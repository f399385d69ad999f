# ruff: noqa: ANN201, ANN001
from pathlib import Path

import httpx
import pytest

from diffusion_installer.models.execution import LogLevel
from diffusion_installer.reporter import CollectingReporter
from diffusion_installer.services.git import GitCloneOptions, GitService, GitToolManager
from diffusion_installer.services.git import tools as tools_module
from diffusion_installer.utils.paths import repository_name_from_url
from diffusion_installer.utils.subprocess_executor import ProcessResult, SubprocessExecutor

REPO_URL = "https://github.com/example/diffusion-ui.git"


class FakeExecutor(SubprocessExecutor):
    """Records git invocations; a successful clone creates the checkout on disk."""

    def __init__(self, git_available: bool = True) -> None:
        self.git_available = git_available
        self.calls: list[tuple[list[str], Path | None]] = []
        self.failures: dict[str, ProcessResult] = {}
        self.stdout_lines: list[str] = []

    def is_executable_in_path(self, name):
        return name == "git" and self.git_available

    async def run_with_realtime_output(
        self, executable, *args, cwd=None, env=None, timeout=None, cancel_token=None, on_stdout=None, on_stderr=None
    ):
        argv = [executable, *args]
        self.calls.append((argv, Path(cwd) if cwd else None))

        command = args[0] if args else executable
        if command in self.failures:
            return self.failures[command]

        if command == "clone":
            (Path(cwd) / args[-1] / ".git").mkdir(parents=True)
            for line in self.stdout_lines:
                if on_stdout:
                    on_stdout(line)

        stdout = "git version 2.47.1" if command == "--version" else ""
        return ProcessResult(args=argv, exit_code=0, stdout=stdout, stderr="")

    async def run(self, executable, *args, cwd=None, env=None, timeout=None, cancel_token=None):
        return await self.run_with_realtime_output(
            executable, *args, cwd=cwd, env=env, timeout=timeout, cancel_token=cancel_token
        )


def failed(argv, stderr):
    return ProcessResult(args=argv, exit_code=128, stdout="", stderr=stderr)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/user/repo.git", "repo"),
        ("https://github.com/user/repo/", "repo"),
        ("https://github.com/user/Repo.GIT", "Repo"),
        ("git@github.com:user/repo.git", "repo"),
        ("", ""),
    ],
)
def test_repository_name_from_url(url, expected):
    assert repository_name_from_url(url) == expected


def test_build_clone_arguments():
    plain = GitCloneOptions(repository_url=REPO_URL, target_directory="/tmp/x")
    assert GitService.build_clone_arguments(plain, "diffusion-ui") == ["clone", REPO_URL, "diffusion-ui"]

    shallow = GitCloneOptions(repository_url=REPO_URL, target_directory="/tmp/x", shallow=True, branch="dev")
    assert GitService.build_clone_arguments(shallow, "ui") == [
        "clone",
        "--depth",
        "1",
        "--branch",
        "dev",
        REPO_URL,
        "ui",
    ]


@pytest.mark.asyncio
async def test_clone_is_idempotent(tmp_path):
    executor = FakeExecutor()
    service = GitService(executor=executor)
    options = GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path))

    first = await service.clone(options)
    second = await service.clone(options)

    expected = tmp_path / "diffusion-ui"
    assert first.success and first.path == str(expected)
    assert first.message == f"Successfully cloned to {expected}"
    assert second.success and second.path == str(expected)
    assert second.message == f"Repository already exists at {expected}"
    assert len(executor.calls) == 1

    argv, cwd = executor.calls[0]
    assert argv == ["git", "clone", REPO_URL, "diffusion-ui"]
    assert cwd == tmp_path


@pytest.mark.asyncio
async def test_clone_streams_git_output_to_reporter(tmp_path):
    executor = FakeExecutor()
    executor.stdout_lines = ["Cloning into 'diffusion-ui'...", "done."]
    reporter = CollectingReporter()

    await GitService(executor=executor).clone(
        GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path)), reporter
    )

    messages = reporter.messages(LogLevel.INFO)
    assert "Cloning into 'diffusion-ui'..." in messages
    assert "done." in messages


@pytest.mark.asyncio
async def test_clone_refuses_non_repository_directory(tmp_path):
    (tmp_path / "diffusion-ui").mkdir()
    executor = FakeExecutor()

    result = await GitService(executor=executor).clone(
        GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path))
    )

    assert not result.success
    assert result.message == f"Directory {tmp_path / 'diffusion-ui'} exists but is not a Git repository."
    assert executor.calls == []


@pytest.mark.asyncio
async def test_clone_without_git(tmp_path):
    result = await GitService(executor=FakeExecutor(git_available=False)).clone(
        GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path))
    )

    assert not result.success
    assert result.message == "Git is not installed. Please install Git first."


@pytest.mark.asyncio
async def test_clone_failure_carries_stderr(tmp_path):
    executor = FakeExecutor()
    executor.failures["clone"] = failed(["git", "clone"], "fatal: repository not found")

    result = await GitService(executor=executor).clone(
        GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path))
    )

    assert not result.success
    assert result.message == "Clone failed: fatal: repository not found"


@pytest.mark.asyncio
async def test_clone_rejects_empty_url(tmp_path):
    with pytest.raises(ValueError):
        await GitService(executor=FakeExecutor()).clone(
            GitCloneOptions(repository_url=" ", target_directory=str(tmp_path))
        )


@pytest.mark.asyncio
async def test_commit_checkout_failure_is_only_a_warning(tmp_path):
    executor = FakeExecutor()
    executor.failures["checkout"] = failed(["git", "checkout"], "error: pathspec 'abc123' did not match")
    reporter = CollectingReporter()

    result = await GitService(executor=executor).clone(
        GitCloneOptions(repository_url=REPO_URL, target_directory=str(tmp_path), commit_hash="abc123"),
        reporter,
    )

    assert result.success
    assert executor.calls[1] == (["git", "checkout", "abc123"], tmp_path / "diffusion-ui")
    assert any(m.startswith("Failed to checkout commit abc123:") for m in reporter.messages(LogLevel.WARNING))


@pytest.mark.asyncio
async def test_pull(tmp_path):
    executor = FakeExecutor()
    service = GitService(executor=executor)

    missing = await service.pull(tmp_path)
    assert not missing.success
    assert missing.message == f"{tmp_path} is not a Git repository."

    (tmp_path / ".git").mkdir()
    pulled = await service.pull(tmp_path)
    assert pulled.success
    assert executor.calls[-1] == (["git", "pull"], tmp_path)


@pytest.mark.asyncio
async def test_get_version():
    assert await GitToolManager(FakeExecutor()).get_version() == "git version 2.47.1"
    assert await GitToolManager(FakeExecutor(git_available=False)).get_version() is None


@pytest.mark.asyncio
async def test_automatic_install_is_windows_only(monkeypatch):
    monkeypatch.setattr(tools_module.sys, "platform", "linux")

    result = await GitToolManager(FakeExecutor(git_available=False)).install()

    assert not result.success
    assert "only supported on Windows" in result.message


class InstallerExecutor(FakeExecutor):
    """Git appears on PATH once the downloaded installer has run."""

    def __init__(self) -> None:
        super().__init__(git_available=False)

    async def run(self, executable, *args, cwd=None, env=None, timeout=None, cancel_token=None):
        if executable.endswith("GitInstaller.exe"):
            self.calls.append(([executable, *args], None))
            assert Path(executable).read_bytes() == b"MZ-installer"
            self.git_available = True
            return ProcessResult(args=[executable, *args], exit_code=0)
        return await super().run(executable, *args, cwd=cwd, env=env, timeout=timeout, cancel_token=cancel_token)


@pytest.mark.asyncio
async def test_windows_install_downloads_and_runs_installer(monkeypatch):
    monkeypatch.setattr(tools_module.sys, "platform", "win32")
    monkeypatch.setattr(GitToolManager, "refresh_environment_path", staticmethod(lambda: None))

    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"MZ-installer"))
    client = httpx.AsyncClient(transport=transport)
    executor = InstallerExecutor()

    result = await GitToolManager(executor, client=client).install()
    await client.aclose()

    assert result.success
    assert result.message == "Git installed successfully: git version 2.47.1"
    installer_argv = executor.calls[0][0]
    assert "/VERYSILENT" in installer_argv
    assert not Path(installer_argv[0]).exists()


@pytest.mark.asyncio
async def test_windows_install_download_failure(monkeypatch):
    monkeypatch.setattr(tools_module.sys, "platform", "win32")

    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    executor = InstallerExecutor()

    result = await GitToolManager(executor, client=client).install()
    await client.aclose()

    assert not result.success
    assert result.message.startswith("Failed to download Git:")
    assert executor.calls == []
