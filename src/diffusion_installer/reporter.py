"""Reporters receive the user-visible log entries and progress events of a run.

Every worker and the executor report through a single injected reporter, so a
caller decides where output goes (memory, structlog, a log file) by choosing
the reporter implementation.
"""

from pathlib import Path

from diffusion_installer.config import get_config
from diffusion_installer.logger import get_logger
from diffusion_installer.models.execution import LogEntry, LogLevel, ProgressEvent

logger = get_logger(__name__)


class InstallReporter:
    """Base reporter. Subclasses override :meth:`log` and :meth:`progress`."""

    def log(self, entry: LogEntry) -> None:
        pass

    def progress(self, event: ProgressEvent) -> None:
        pass

    def info(self, message: str) -> None:
        self.log(LogEntry(level=LogLevel.INFO, message=message))

    def warning(self, message: str) -> None:
        self.log(LogEntry(level=LogLevel.WARNING, message=message))

    def error(self, message: str) -> None:
        self.log(LogEntry(level=LogLevel.ERROR, message=message))

    def success(self, message: str) -> None:
        self.log(LogEntry(level=LogLevel.SUCCESS, message=message))


class NullReporter(InstallReporter):
    """Discards everything."""


class CollectingReporter(InstallReporter):
    """Keeps entries and events in memory, in emission order."""

    def __init__(self) -> None:
        self.entries: list[LogEntry] = []
        self.events: list[ProgressEvent] = []

    def log(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def messages(self, level: LogLevel | None = None) -> list[str]:
        return [e.message for e in self.entries if level is None or e.level == level]


class LoggingReporter(InstallReporter):
    """Mirrors entries and events into structlog."""

    def log(self, entry: LogEntry) -> None:
        if entry.level == LogLevel.ERROR:
            logger.error(entry.message)
        elif entry.level == LogLevel.WARNING:
            logger.warning(entry.message)
        else:
            logger.info(entry.message, outcome=entry.level.value)

    def progress(self, event: ProgressEvent) -> None:
        logger.info(
            event.message,
            step=str(event.step),
            index=event.index,
            total=event.total,
            percentage=round(event.percentage, 1),
        )


class FileReporter(InstallReporter):
    """Appends log entries to an installation log file."""

    def __init__(self, path: Path | str | None = None) -> None:
        if path is None:
            logs_dir = get_config().paths.logs_dir
            assert logs_dir is not None
            path = logs_dir / "install.log"
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: LogEntry) -> None:
        line = f"{entry.timestamp:%Y-%m-%d %H:%M:%S} [{entry.level.value.upper()}] {entry.message}\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def progress(self, event: ProgressEvent) -> None:
        self.log(LogEntry(message=f"[{event.index}/{event.total}] {event.message}"))


class CompositeReporter(InstallReporter):
    """Fans every entry and event out to several reporters."""

    def __init__(self, *reporters: InstallReporter) -> None:
        self.reporters = list(reporters)

    def log(self, entry: LogEntry) -> None:
        for reporter in self.reporters:
            reporter.log(entry)

    def progress(self, event: ProgressEvent) -> None:
        for reporter in self.reporters:
            reporter.progress(event)
