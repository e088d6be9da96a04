"""Structured logging configuration using structlog.

Features:
- JSON-formatted logs for production
- Console-formatted logs for development
- Procedure context (procedure, actor_id) bound for the length of one call
- Lobby passwords and payout destinations masked before rendering
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Keys whose values never reach a log line in clear
MASKED_KEYS = frozenset({"password", "room_password", "match_room_password", "destination"})


def mask_credentials(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
    """Replace lobby passwords and payout destinations with a short hint."""
    for key in MASKED_KEYS & event_dict.keys():
        value = event_dict[key]
        if not value:
            continue
        text = str(value)
        event_dict[key] = f"{text[:2]}***" if key == "destination" and len(text) > 4 else "***"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    app_env: str = "development",
) -> None:
    """Route structlog and stdlib records through one formatter.

    JSON output is used in production or when ``json_logs`` is set.
    """
    use_json = json_logs or app_env == "production"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    if use_json:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        shared_processors.append(structlog.dev.set_exc_info)
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # SQL echo and driver chatter stay out of the money trail
    for name in ("sqlalchemy.engine", "aiosqlite", "asyncpg", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("competition_joined", competition_id="123", account_id="456")
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all subsequent log calls."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def procedure_context(procedure: str, actor_id: str | None = None) -> Iterator[None]:
    """Tag every log line of one procedure call with its name and caller.

    Usage:
        with procedure_context("join_competition", actor.account_id):
            logger.info("procedure_rejected", code="COMPETITION_FULL")
    """
    bind_context(procedure=procedure, actor_id=actor_id)
    try:
        yield
    finally:
        unbind_context("procedure", "actor_id")
