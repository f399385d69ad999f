"""Model download manager."""

import time
import uuid
from enum import Enum
from pathlib import Path, PurePosixPath
from urllib.parse import parse_qs, unquote, urlsplit

import httpx

from diffusion_installer.config import get_config
from diffusion_installer.logger import get_logger
from diffusion_installer.models.config import AppConfig
from diffusion_installer.models.execution import InstallStep, StepResult
from diffusion_installer.models.installation import InstallConfig, ModelSpec
from diffusion_installer.reporter import InstallReporter, NullReporter
from diffusion_installer.utils.cancellation import CancellationToken
from diffusion_installer.utils.paths import resolve_relative_to

logger = get_logger(__name__)

MB = 1024 * 1024


class DownloadOutcome(str, Enum):
    DOWNLOADED = "downloaded"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        return self is not DownloadOutcome.FAILED


def filename_from_url(url: str) -> str:
    """
    Infer a file name from a download URL.

    A last path segment containing a ``.`` wins. Otherwise a ``filename=``
    query parameter (matched case-insensitively) replaces it even when the
    segment is non-empty, so ``/api/download/123?filename=a.safetensors``
    gives ``a.safetensors``. Without that parameter the extensionless segment
    is returned as is, or an empty string when the path has none.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return ""

    name = PurePosixPath(unquote(parts.path)).name

    if not name or "." not in name:
        for key, values in parse_qs(parts.query).items():
            if key.lower() == "filename" and values and values[0]:
                # parse_qs already unescapes the value
                return Path(values[0]).name

    return name


def resolve_model_destination(config: InstallConfig, model: ModelSpec, repo_path: Path | str) -> Path:
    """
    Directory for a model without a per-link destination.

    Precedence: the model's own destination, then the configured default
    download directory, then ``<repo>/models/checkpoints``. Relative paths are
    resolved against the repository.
    """
    if model.destination.strip():
        return resolve_relative_to(model.destination.strip(), repo_path)

    default_dir = (config.paths.default_model_download_directory or "").strip()
    if default_dir:
        return resolve_relative_to(default_dir, repo_path)

    return Path(repo_path) / "models" / "checkpoints"


class DownloadManager:
    """Downloads the enabled model files of an installation configuration over HTTP."""

    def __init__(self, client: httpx.AsyncClient | None = None, config: AppConfig | None = None) -> None:
        self._client = client
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config or get_config()

    async def download_models(
        self,
        install_config: InstallConfig,
        repo_path: Path | str,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> StepResult:
        """
        Download every enabled link of every enabled model.

        Failures never abort the run: when every attempted download fails the
        result is a failure with ``continue_on_failure`` set.

        Args:
            install_config: Installation configuration
            repo_path: Repository used to resolve relative destinations
            reporter: Receives user-visible log entries
            cancel_token: Cooperative cancellation token

        Returns:
            Step result for the DownloadModels step
        """
        reporter = reporter or NullReporter()
        step = InstallStep.DOWNLOAD_MODELS

        if not install_config.models:
            reporter.info("No models configured for download.")
            return StepResult.skipped(step, "No models configured.")

        enabled_models = [m for m in install_config.models if m.enabled]
        if not enabled_models:
            reporter.info("All configured models are disabled.")
            return StepResult.skipped(step, "All models are disabled.")

        reporter.info(f"Downloading {len(enabled_models)} models...")

        success_count = 0
        fail_count = 0
        skipped_count = 0

        client = self._client or self._create_client()
        try:
            for model in enabled_models:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                reporter.info(f"Processing model: {model.name}")

                targets: list[tuple[str, Path]] = []
                enabled_links = [link for link in model.download_links if link.enabled]
                if enabled_links:
                    for link in enabled_links:
                        if link.destination.strip():
                            destination = resolve_relative_to(link.destination.strip(), repo_path)
                        else:
                            destination = resolve_model_destination(install_config, model, repo_path)
                        targets.append((link.url, destination))
                elif model.url.strip():
                    targets.append((model.url.strip(), resolve_model_destination(install_config, model, repo_path)))
                else:
                    reporter.warning(f"No download links configured for {model.name}")
                    skipped_count += 1
                    continue

                for url, destination in targets:
                    outcome = await self._download(client, url, destination, model.name, reporter, cancel_token)
                    if outcome.succeeded:
                        success_count += 1
                    else:
                        fail_count += 1
        finally:
            if self._client is None:
                await client.aclose()

        if fail_count > 0 and success_count == 0 and skipped_count == 0:
            return StepResult.failed(step, f"Failed to download all {fail_count} models.", continue_on_failure=True)

        if fail_count > 0:
            message = f"Downloaded {success_count} models, {fail_count} failed, {skipped_count} skipped."
            reporter.warning(message)
        else:
            message = f"Successfully downloaded {success_count} models."
            reporter.success(message)

        return StepResult.succeeded(step, message)

    async def download_file(
        self,
        url: str,
        destination_dir: Path | str,
        model_name: str,
        reporter: InstallReporter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DownloadOutcome:
        """Download one URL into ``destination_dir``; an existing target file is not downloaded again."""
        client = self._client or self._create_client()
        try:
            return await self._download(
                client, url, Path(destination_dir), model_name, reporter or NullReporter(), cancel_token
            )
        finally:
            if self._client is None:
                await client.aclose()

    def _create_client(self) -> httpx.AsyncClient:
        downloads = self.config.downloads
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(60.0, connect=downloads.connect_timeout),
            headers={"User-Agent": downloads.user_agent},
            proxy=downloads.proxy,
        )

    async def _download(
        self,
        client: httpx.AsyncClient,
        url: str,
        destination_dir: Path,
        model_name: str,
        reporter: InstallReporter,
        cancel_token: CancellationToken | None,
    ) -> DownloadOutcome:
        file_name = filename_from_url(url) or f"{model_name}_{uuid.uuid4().hex}.bin"
        destination = destination_dir / file_name

        if destination.exists():
            reporter.info(f"File already exists: {file_name}, skipping download.")
            return DownloadOutcome.ALREADY_EXISTS

        downloads = self.config.downloads
        # Written under a temporary name so an interrupted download is never mistaken for a finished one
        partial = destination.with_name(destination.name + ".part")
        completed = False

        try:
            destination_dir.mkdir(parents=True, exist_ok=True)

            reporter.info(f"Downloading {file_name}...")
            logger.info(f"HTTP GET {url} -> {destination}")

            async with client.stream("GET", url) as response:
                response.raise_for_status()

                content_length = response.headers.get("Content-Length")
                total_bytes = int(content_length) if content_length and content_length.isdigit() else None
                downloaded = 0
                last_report = time.monotonic()

                with open(partial, "wb") as out_file:
                    async for chunk in response.aiter_bytes(chunk_size=downloads.chunk_size):
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()

                        out_file.write(chunk)
                        downloaded += len(chunk)

                        now = time.monotonic()
                        if now - last_report >= downloads.progress_interval:
                            reporter.info(self._progress_message(file_name, downloaded, total_bytes))
                            last_report = now

            partial.replace(destination)
            completed = True

            reporter.success(f"Downloaded {file_name} ({downloaded / MB:.1f} MB)")
            return DownloadOutcome.DOWNLOADED

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            reporter.error(f"Download failed for {model_name}: {e}")
            logger.warning(f"Download failed for {url}: {e}")
            return DownloadOutcome.FAILED

        except OSError as e:
            reporter.error(f"Failed to save {model_name}: {e}")
            logger.warning(f"Failed to save {destination}: {e}")
            return DownloadOutcome.FAILED

        finally:
            if not completed:
                partial.unlink(missing_ok=True)

    @staticmethod
    def _progress_message(file_name: str, downloaded: int, total_bytes: int | None) -> str:
        if total_bytes:
            percent = downloaded / total_bytes * 100
            return f"Downloading {file_name}: {downloaded / MB:.1f} MB / {total_bytes / MB:.1f} MB ({percent:.0f}%)"
        return f"Downloading {file_name}: {downloaded / MB:.1f} MB"
