"""Installation executor: runs a plan step by step."""

from collections.abc import Mapping

from diffusion_installer.exceptions import InstallerError, OperationCancelledError, ProcessTimeoutError
from diffusion_installer.logger import get_logger
from diffusion_installer.models.execution import InstallStep, ProgressEvent, RunResult
from diffusion_installer.models.installation import InstallConfig, InstallOptions
from diffusion_installer.reporter import InstallReporter, NullReporter
from diffusion_installer.utils.cancellation import CancellationToken, raise_if_cancelled

from .context import RunState, StepContext, StepHandlerEntry
from .handlers import StepHandlers
from .planner import build_plan, describe_step
from .validation import validate_install_config

logger = get_logger(__name__)


class InstallationExecutor:
    """
    Runs the steps of an installation plan in order.

    The executor owns the run state and is the only place deciding whether a
    failed step aborts the run. That decision is read from the registry entry
    of the step (``fatal_on_failure``) or from the step's own result
    (``continue_on_failure``).
    """

    def __init__(
        self,
        handlers: StepHandlers | None = None,
        registry: Mapping[InstallStep, StepHandlerEntry] | None = None,
    ) -> None:
        if registry is None:
            registry = (handlers or StepHandlers()).build_registry()
        self.registry: dict[InstallStep, StepHandlerEntry] = dict(registry)

    async def run(
        self,
        config: InstallConfig,
        target_directory: str,
        options: InstallOptions | None = None,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunResult:
        """
        Execute a full or model-only installation.

        Args:
            config: Installation configuration
            target_directory: Directory receiving the repository (or holding it, in model-only mode)
            options: Run options
            reporter: Receives log entries and progress events
            cancel_token: Cooperative cancellation token

        Returns:
            Run result. Cancellation is reported with ``cancelled=True``.

        Raises:
            ValueError: If target_directory is empty
        """
        if not target_directory or not target_directory.strip():
            raise ValueError("target_directory must not be empty")

        options = options or InstallOptions()
        reporter = reporter or NullReporter()

        validation = validate_install_config(config, options.model_only)
        for warning in validation.warnings:
            reporter.warning(warning)
        if not validation.is_valid:
            for error in validation.errors:
                reporter.error(error)
            message = f"Invalid configuration: {'; '.join(validation.errors)}"
            logger.error(message)
            return RunResult(success=False, message=message)

        plan = build_plan(config, options.model_only)
        total = len(plan)
        state = RunState()
        ctx = StepContext(
            config=config,
            target_directory=target_directory,
            options=options,
            reporter=reporter,
            cancel_token=cancel_token,
            state=state,
        )

        logger.info(
            f"Starting installation '{config.name}' with {total} steps",
            target_directory=target_directory,
            model_only=options.model_only,
        )

        try:
            for index, step in enumerate(plan):
                raise_if_cancelled(cancel_token)

                reporter.progress(ProgressEvent(step=step, index=index, total=total, message=describe_step(step)))

                entry = self.registry.get(step)
                if entry is None:
                    raise InstallerError(f"No handler registered for step {step}")

                result = await entry.handler(ctx)

                logger.debug(f"Step {step} finished", success=result.success, message=result.message)

                if result.success:
                    if entry.state_field and result.path:
                        setattr(state, entry.state_field, result.path)
                    continue

                if result.continue_on_failure or not entry.fatal_on_failure:
                    reporter.warning(f"Step {step} failed, continuing: {result.message}")
                    continue

                message = f"Installation failed at step {step}: {result.message}"
                reporter.error(message)
                logger.error(message)
                return RunResult(
                    success=False,
                    message=message,
                    repo_path=state.repo_path,
                    venv_path=state.venv_path,
                    failed_step=step,
                )

        except OperationCancelledError as e:
            # A process timeout aborts the run like a user cancellation
            message = "Installation was cancelled."
            if isinstance(e, ProcessTimeoutError):
                message = f"Installation was cancelled: {e}"
            reporter.warning(message)
            logger.warning(f"Installation '{config.name}' cancelled: {e}")
            return RunResult(
                success=False,
                message=message,
                repo_path=state.repo_path,
                venv_path=state.venv_path,
                cancelled=True,
            )

        reporter.progress(ProgressEvent(step=plan[-1], index=total, total=total, message="Installation completed"))
        reporter.success("Installation completed successfully!")
        logger.info(f"Installation '{config.name}' completed", repo_path=state.repo_path, venv_path=state.venv_path)

        return RunResult(
            success=True,
            message="Installation completed successfully!",
            repo_path=state.repo_path,
            venv_path=state.venv_path,
        )
