"""
Logging utilities for the CDC change applier

Every event carries the run it belongs to once bind_run_context() has been
called, including events from per-table worker threads.
"""

import logging
import sys
from typing import Any, Dict, Optional, TextIO

import structlog

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Replaced wholesale, never mutated, so worker threads read it without a lock
_run_context: Dict[str, Any] = {}


def add_run_context(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Processor adding run_id and version; explicit event fields win"""
    for key, value in _run_context.items():
        event_dict.setdefault(key, value)
    return event_dict


def bind_run_context(run_descriptor) -> None:
    """Tag all following log events with the run's identity"""
    global _run_context
    _run_context = {
        'run_id': run_descriptor.run_id,
        'version': run_descriptor.version,
    }


def clear_run_context() -> None:
    global _run_context
    _run_context = {}


def setup_logging(level: str = "INFO", format_type: str = "json",
                  stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog on top of the stdlib logging module

    Args:
        level: One of LOG_LEVELS, case-insensitive
        format_type: 'json' for one object per line, 'console' for humans
        stream: Destination, stderr by default since stdout carries command output
    """
    level_name = level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_run_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
        ),
    ]
    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter('%(message)s'))
    handler.cdcapplier_handler = True
    root = logging.getLogger()
    # Repeated setup replaces our handler instead of duplicating output
    for existing in list(root.handlers):
        if getattr(existing, 'cdcapplier_handler', False):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name))


def get_logger(name: str = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)
