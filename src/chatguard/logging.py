"""Logging configuration for ChatGuard."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from chatguard.config import Settings, get_settings


def _rotating_handler(settings: Settings, path: str, level: int) -> RotatingFileHandler | None:
    try:
        handler = RotatingFileHandler(
            filename=path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Warning: Could not setup file logging for {path}: {e}", file=sys.stderr)
        return None
    handler.setLevel(level)
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structured logging with console, file and error-file outputs.

    Args:
        settings: Settings to read log options from. Defaults to
            :func:`~chatguard.config.get_settings`.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    log_to_file = settings.log_to_file
    if log_to_file:
        try:
            Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Continue with console-only logging
            print(f"Warning: Could not create log directory: {e}", file=sys.stderr)
            log_to_file = False

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    logging.root.addHandler(console_handler)

    file_handlers: list[RotatingFileHandler] = []
    if log_to_file:
        main_handler = _rotating_handler(settings, settings.log_file_path, log_level)
        if main_handler:
            file_handlers.append(main_handler)
        if settings.log_error_file_enabled:
            # Security events are logged at WARNING and land here as well
            error_handler = _rotating_handler(
                settings, settings.error_log_file_path, logging.WARNING
            )
            if error_handler:
                file_handlers.append(error_handler)
    for handler in file_handlers:
        logging.root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console: colored in dev, JSON in prod
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                (
                    structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                    if settings.is_development
                    else structlog.processors.JSONRenderer()
                ),
            ]
        )
    )

    # Files: always JSON
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ]
    )
    for handler in file_handlers:
        handler.setFormatter(file_formatter)

    # Reduce noise from third-party packages
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
