import logging
import logging.handlers
import pathlib
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from shelfscan.internal.env_settings import Settings


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    log_file: str | None = None,
    config_dir: str = "/config",
) -> None:
    """
    Configure structured logging with optional JSON output and file rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format ("text" or "json")
        log_file: Optional path to log file (relative to config_dir/logs)
        config_dir: Base configuration directory
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = pathlib.Path(config_dir) / "logs"
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path / log_file,
            maxBytes=100 * 1024 * 1024,  # 100MB
            backupCount=5,
        )
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)


def setup_logging_from_settings(settings: "Settings") -> None:
    """Apply the logging section of the application settings."""
    setup_logging(
        log_level=settings.app.log_level,
        log_format=settings.app.log_format,
        log_file=settings.app.log_file,
        config_dir=settings.app.config_dir,
    )


def get_logger() -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.stdlib.get_logger()


logger = get_logger()
