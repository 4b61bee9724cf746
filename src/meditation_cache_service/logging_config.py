"""Structured logging configuration using structlog.

Cache code logs events by name with key/value context so a miss or a
degraded lookup can be traced back to its fingerprint, voice and style.
Request-scoped values bound with structlog.contextvars.bind_contextvars
(e.g. a maintenance run id) are merged into every event.

Usage:
    from meditation_cache_service.logging_config import configure_logging, get_logger

    # In main.py startup
    configure_logging(log_level="INFO", library_levels={"sqlalchemy.engine": "WARNING"})

    # In application code
    logger = get_logger(__name__)
    logger.info("segment_saved", segment_id=12, voice_id="v1")
"""

import logging
import sys
from collections.abc import Mapping
from typing import Any

import structlog

# Event keys that may carry an embedding vector
VECTOR_KEYS = ("embedding", "vector", "query_embedding")

# Third-party loggers that are chatty at INFO
DEFAULT_LIBRARY_LEVELS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "openai": "WARNING",
}


def summarize_vectors(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace embedding vectors in an event with their length.

    Example:
        >>> summarize_vectors(None, "info", {"embedding": [0.1, 0.2]})
        {'embedding': '<2 floats>'}
    """
    for key in VECTOR_KEYS:
        value = event_dict.get(key)
        if isinstance(value, list | tuple):
            event_dict[key] = f"<{len(value)} floats>"
    return event_dict


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    library_levels: Mapping[str, str] | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Level for application loggers (DEBUG, INFO, WARNING, ERROR).
        json_logs: JSON lines for production, colored console output otherwise.
        library_levels: Per-logger level overrides, applied on top of
            DEFAULT_LIBRARY_LEVELS (e.g. {"sqlalchemy.engine": "INFO"} to see SQL).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=_level(log_level),
    )
    for name, level in {**DEFAULT_LIBRARY_LEVELS, **(library_levels or {})}.items():
        logging.getLogger(name).setLevel(_level(level))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        summarize_vectors,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
    ]

    if json_logs:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Return a structlog BoundLogger for the module name."""
    return structlog.get_logger(name)
