"""structlog configuration module."""

import logging
import sys

import structlog

from nufit.constants import SERVICE_NAME


def _service_tagger(service: str):
    def add_service(_logger, _method_name, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def setup_logging(debug: bool = False, service: str = SERVICE_NAME) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation, tagged with `service`
    so request handlers and the sweep scheduler land in one stream.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        service: Value added to every event under the `service` key.
    """
    level = logging.DEBUG if debug else logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, path, user_id
        _service_tagger(service),
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, httpx, supabase) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
