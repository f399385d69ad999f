"""structlog setup shared by every module of the installer."""

import structlog

LOG_LEVELS = {
    "TRACE": 5,
    "DEBUG": 10,
    "INFO": 20,
}

_configured_level: int | None = None


def configure_logging(level_name: str) -> None:
    """(Re)configure structlog for a settings log level; a no-op when the level is unchanged."""
    global _configured_level

    level = LOG_LEVELS.get(level_name.upper(), LOG_LEVELS["INFO"])
    if level == _configured_level:
        return

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # Loggers are created at import time; resolve the configuration per call
        cache_logger_on_first_use=False,
    )
    _configured_level = level


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger whose events carry ``logger_name=<name>``.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Logger filtered at the level from application settings
    """
    from diffusion_installer.config import get_config

    configure_logging(get_config().advanced.log_level)
    return structlog.get_logger(logger_name=name)
