"""Logging setup for the API process and background pipelines.

Application modules log through ``logging.getLogger(__name__)``; this module
routes those records through structlog's stdlib formatter so the same calls
render as JSON lines in production and colored text during development.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

from .config import LoggingSettings, settings

NOISY_LOGGERS = ("httpx", "httpcore", "sentence_transformers", "uvicorn.access")


def _build_formatter(fmt: str) -> logging.Formatter:
    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(config: LoggingSettings | None = None) -> None:
    """Configure the root logger from ``LoggingSettings``.

    Safe to call more than once: existing root handlers are replaced.
    """
    config = config or settings.logging
    level = config.level.upper()
    formatter = _build_formatter(config.format)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        # Files are always machine-readable
        file_handler.setFormatter(_build_formatter("json"))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
