"""Git repository service."""

from pathlib import Path

from pydantic import BaseModel

from diffusion_installer.config import get_config
from diffusion_installer.logger import get_logger
from diffusion_installer.reporter import InstallReporter, NullReporter
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.paths import repository_name_from_url
from diffusion_installer.utils.subprocess_executor import SubprocessExecutor

from .tools import GIT_EXECUTABLE, GitOperationResult, GitToolManager

logger = get_logger(__name__)


class GitCloneOptions(BaseModel):
    """Options for a single clone."""

    repository_url: str
    target_directory: str
    branch: str = ""
    commit_hash: str = ""
    shallow: bool = False
    # Defaults to the repository name derived from the URL
    folder_name: str | None = None


class GitService:
    """Manages git repository operations."""

    def __init__(
        self,
        tool_manager: GitToolManager | None = None,
        executor: SubprocessExecutor | None = None,
    ) -> None:
        self.executor = executor or SubprocessExecutor()
        self.tool_manager = tool_manager or GitToolManager(self.executor)

    @staticmethod
    def is_repository(path: Path | str) -> bool:
        """A directory is a repository when it contains a ``.git`` entry."""
        if not path or not str(path).strip():
            return False
        directory = Path(path)
        return directory.is_dir() and (directory / ".git").exists()

    @staticmethod
    def build_clone_arguments(options: GitCloneOptions, folder_name: str) -> list[str]:
        """Build ``clone [--depth 1] [--branch <b>] <url> <folder>``."""
        args = ["clone"]
        if options.shallow:
            args.extend(["--depth", "1"])
        if options.branch.strip():
            args.extend(["--branch", options.branch.strip()])
        args.extend([options.repository_url, folder_name])
        return args

    async def clone(
        self,
        options: GitCloneOptions,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> GitOperationResult:
        """
        Clone a repository into ``target_directory/<folder>``.

        Cloning is idempotent: an existing repository at the target path is
        reported as success without running git.

        Args:
            options: Clone options
            reporter: Receives user-visible log entries
            cancel_token: Cooperative cancellation token

        Returns:
            Result whose ``path`` is the repository location on success

        Raises:
            ValueError: If the repository URL or target directory is empty
            OperationCancelledError: If cancelled or the clone times out
        """
        if not options.repository_url.strip():
            raise ValueError("repository_url must not be empty")
        if not options.target_directory.strip():
            raise ValueError("target_directory must not be empty")

        reporter = reporter or NullReporter()

        if not self.tool_manager.is_installed():
            return GitOperationResult.failure("Git is not installed. Please install Git first.")

        folder_name = options.folder_name or repository_name_from_url(options.repository_url)
        target_dir = Path(options.target_directory)
        repo_path = target_dir / folder_name

        if repo_path.exists():
            if self.is_repository(repo_path):
                reporter.info(f"Repository already exists at {repo_path}. Skipping clone.")
                return GitOperationResult.ok(f"Repository already exists at {repo_path}", str(repo_path))

            reporter.warning(f"Directory {repo_path} exists but is not a Git repository.")
            return GitOperationResult.failure(f"Directory {repo_path} exists but is not a Git repository.")

        target_dir.mkdir(parents=True, exist_ok=True)

        reporter.info(f"Cloning {options.repository_url} to {repo_path}...")
        logger.info(f"Cloning {options.repository_url} into {repo_path}")

        result = await self.executor.run_with_realtime_output(
            GIT_EXECUTABLE,
            *self.build_clone_arguments(options, folder_name),
            cwd=target_dir,
            timeout=get_config().timeouts.clone,
            cancel_token=cancel_token,
            on_stdout=reporter.info,
            on_stderr=reporter.warning,
        )

        if not result.success:
            reporter.error(f"Clone failed with exit code {result.exit_code}")
            return GitOperationResult.failure(f"Clone failed: {result.stderr}", output=result.stderr)

        if options.commit_hash.strip():
            await self._checkout_commit(repo_path, options.commit_hash.strip(), reporter, cancel_token)

        reporter.success(f"Successfully cloned repository to {repo_path}")
        return GitOperationResult.ok(f"Successfully cloned to {repo_path}", str(repo_path))

    async def _checkout_commit(
        self,
        repo_path: Path,
        commit_hash: str,
        reporter: InstallReporter,
        cancel_token: CancellationToken | None,
    ) -> None:
        """Pin the checkout to a commit. A failed checkout leaves the clone usable and is only a warning."""
        reporter.info(f"Checking out commit {commit_hash}...")

        result = await self.executor.run(
            GIT_EXECUTABLE,
            "checkout",
            commit_hash,
            cwd=repo_path,
            timeout=get_config().timeouts.checkout,
            cancel_token=cancel_token,
        )

        if not result.success:
            reporter.warning(f"Failed to checkout commit {commit_hash}: {result.stderr}")

    async def pull(
        self,
        repo_path: Path | str,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> GitOperationResult:
        """
        Pull the latest changes of an existing repository.

        Args:
            repo_path: Repository directory
            reporter: Receives user-visible log entries
            cancel_token: Cooperative cancellation token

        Returns:
            Operation result
        """
        reporter = reporter or NullReporter()

        if not self.is_repository(repo_path):
            return GitOperationResult.failure(f"{repo_path} is not a Git repository.")

        reporter.info(f"Pulling latest changes in {repo_path}...")

        result = await self.executor.run_with_realtime_output(
            GIT_EXECUTABLE,
            "pull",
            cwd=repo_path,
            timeout=get_config().timeouts.pull,
            cancel_token=cancel_token,
            on_stdout=reporter.info,
            on_stderr=reporter.warning,
        )

        if not result.success:
            return GitOperationResult.failure(f"Pull failed: {result.stderr}", output=result.stderr)

        reporter.success("Pull completed successfully")
        return GitOperationResult.ok("Pull completed successfully", str(repo_path))
