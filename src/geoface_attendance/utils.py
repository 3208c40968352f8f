"""
Utility functions and decorators for the attendance verification pipeline.

This module provides logging set-up, a timing decorator for the expensive
face analysis calls, hashing and identifier helpers shared across stages.
"""

import functools
import hashlib
import logging
import logging.handlers
import time
import uuid
from typing import Any, Callable, TypeVar, Union

import structlog

from . import config
from .constants import DEFAULT_LOG_FILE

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(level: str = None, structured: bool = None, to_file: bool = None) -> None:
    """
    Wire structlog onto the standard library logging tree.

    Parameters
    ----------
    level : str, optional
        Log level name; defaults to ``config.LOG_LEVEL``.
    structured : bool, optional
        Render JSON lines instead of console output; defaults to
        ``config.STRUCTURED_LOGGING``.
    to_file : bool, optional
        Also write to a size-rotated file in ``config.OUTPUT_LOG_PATH``;
        defaults to ``config.LOG_TO_FILE``.
    """
    level = (level or config.LOG_LEVEL).upper()
    structured = config.STRUCTURED_LOGGING if structured is None else structured
    to_file = config.LOG_TO_FILE if to_file is None else to_file

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if structured
        else structlog.dev.ConsoleRenderer()
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers = [logging.StreamHandler()]
    if to_file:
        config.OUTPUT_LOG_PATH.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                config.OUTPUT_LOG_PATH / DEFAULT_LOG_FILE,
                maxBytes=config.MAX_LOG_SIZE_MB * 1024 * 1024,
                backupCount=config.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger.debug("Logging configured", level=level, structured=structured, to_file=to_file)


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.

    Examples
    --------
    >>> @timer
    ... def extract():
    ...     return "descriptor"
    >>> result = extract()  # Logs execution time at debug level
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.debug(
                "Function execution failed",
                function_name=func.__qualname__,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
                error_type=type(e).__name__,
            )
            raise

        logger.debug(
            "Function execution completed",
            function_name=func.__qualname__,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )
        return result

    return wrapper


def generate_session_id() -> str:
    """
    Generate a unique session identifier.

    Returns
    -------
    str
        32 hexadecimal characters.
    """
    return uuid.uuid4().hex


def hash_data(data: Union[str, bytes], algorithm: str = "sha256") -> str:
    """
    Generate a hexadecimal digest of data.

    Parameters
    ----------
    data : Union[str, bytes]
        Data to hash; strings are UTF-8 encoded.
    algorithm : str, default="sha256"
        Hashing algorithm to use.

    Returns
    -------
    str
        Hexadecimal hash string.

    Raises
    ------
    ValueError
        If algorithm is not supported.

    Examples
    --------
    >>> len(hash_data("device"))
    64
    """
    if algorithm not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    if isinstance(data, str):
        data = data.encode("utf-8")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return hasher.hexdigest()
