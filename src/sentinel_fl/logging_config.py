"""Structured logging for federation nodes and aggregators.

Rejections, aborted rounds and poisoning alerts are emitted as structlog
events keyed by participant id, round and reason, so an operator can audit
them. Raw parameter arrays never reach the output: a processor replaces
them with their shape, since weights and gradients are private training
material.
"""

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import numpy as np
import structlog
from structlog.typing import EventDict, Processor

from sentinel_fl.topology import ParameterTree

# Chatty libraries kept at WARNING regardless of the configured level
QUIET_LOGGERS = ("asyncio",)


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    enable_colors: bool = True,
) -> None:
    """Configure structured logging for a node or aggregator process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path, written in addition to stderr
        enable_colors: Whether to enable colored output for console format
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=build_processors(log_format, enable_colors),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    _route_stdlib(numeric_level, log_file)


def build_processors(log_format: str, enable_colors: bool = True) -> list[Processor]:
    """Processor chain shared by both output formats."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        summarize_arrays,
        _add_process_id,
    ]

    if log_format.lower() == "json":
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ]
        )
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=enable_colors))

    return processors


def summarize_arrays(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace parameter arrays in an event with a shape description."""
    for key, value in event_dict.items():
        if isinstance(value, ParameterTree):
            event_dict[key] = {"layers": value.shapes(), "l2_norm": value.l2_norm()}
        elif isinstance(value, np.ndarray) and value.size > 1:
            event_dict[key] = {"shape": list(value.shape), "dtype": str(value.dtype)}
        elif isinstance(value, np.generic):
            event_dict[key] = value.item()
    return event_dict


def _route_stdlib(level: int, log_file: Optional[str]) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stdout stays free for command output
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_process_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["process_id"] = os.getpid()
    return event_dict


@contextmanager
def round_context(**context: Any) -> Iterator[None]:
    """Attach fields such as ``round`` to every event logged inside the block.

    Tasks created inside the block inherit the fields, so every node of a
    simulated round logs under the same round number.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield


def get_logger(name: str, **context: Any) -> structlog.BoundLogger:
    """Get a structured logger with optional bound context.

    Args:
        name: Logger name (typically __name__)
        **context: Additional context to bind to the logger

    Returns:
        Bound structlog logger
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger
