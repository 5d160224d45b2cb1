"""Logging setup for a process hosting the engine.

Services log through stdlib ``logging``; store adapters and the feed view emit
structlog events. Both land under the ``advfeed`` logger hierarchy, whose
level follows ``settings.log_level``.
"""

import logging

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from advfeed.config import Settings

ENGINE_LOGGER = "advfeed"


def add_engine_context(settings: Settings) -> Processor:
    """Processor stamping each event with the engine version and environment."""

    def processor(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("engine_version", settings.app_version)
        event_dict.setdefault("environment", settings.environment)
        return event_dict

    return processor


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output and set engine log levels."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    json_output = settings.log_format == "json"

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_engine_context(settings),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        # ConsoleRenderer formats exceptions itself.
        processors.append(structlog.processors.format_exc_info)
    processors += [
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger(ENGINE_LOGGER).setLevel(level)
    # redis-py is chatty at DEBUG; keep it at WARNING unless the engine is quieter still.
    logging.getLogger("redis").setLevel(max(level, logging.WARNING))
