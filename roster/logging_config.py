"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "roster",
) -> None:
    """
    Configure structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON; if False, output colored console format
        service_name: Name of the service for log context
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


# Keys owned by a single HTTP request; ``service`` outlives them.
REQUEST_CONTEXT_KEYS = ("request_id", "method", "path", "workspace_id", "user_id")


def bind_request_context(
    request_id: str,
    workspace_id: int | None = None,
    user_id: int | None = None,
    **kwargs: Any,
) -> None:
    """Bind request context to all subsequent log entries."""
    context: dict[str, Any] = {"request_id": request_id}
    if workspace_id is not None:
        context["workspace_id"] = workspace_id
    if user_id is not None:
        context["user_id"] = user_id
    context.update(kwargs)
    structlog.contextvars.bind_contextvars(**context)


def bind_caller(user_id: int, workspace_id: int | None = None) -> None:
    """Add the authenticated caller to the current request's context."""
    context: dict[str, Any] = {"user_id": user_id}
    if workspace_id is not None:
        context["workspace_id"] = workspace_id
    structlog.contextvars.bind_contextvars(**context)


def clear_request_context() -> None:
    """Drop the request keys at the end of a request, keeping ``service``."""
    structlog.contextvars.unbind_contextvars(*REQUEST_CONTEXT_KEYS)


def mask_url(url: str) -> str:
    """Hide the password in a connection URL before it is logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    parts = urlsplit(url)
    if parts.password is None:
        return url
    userinfo = f"{parts.username or ''}:***"
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))
