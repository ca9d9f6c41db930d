import os
import logging
import threading

import structlog

from materializer.settings.base_variables import DEBUG, TEST

LOGGING_FORMATTER_NAME = os.getenv("LOGGING_FORMATTER_NAME", "default")
DEFAULT_LOG_LEVEL = os.getenv("MATERIALIZER_LOG_LEVEL", "ERROR" if TEST else "INFO")
# the cycle logs every column it adds and every backfill chunk, keep it on even when the rest is quieter
MATERIALIZED_COLUMNS_LOG_LEVEL = os.getenv("MATERIALIZE_COLUMNS_LOG_LEVEL", DEFAULT_LOG_LEVEL)

SERVICE_NAME = "column-materializer"


def add_process_info(
    logger: logging.Logger, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict["pid"] = os.getpid()
    event_dict["tid"] = threading.get_ident()
    return event_dict


# Shared by structlog loggers and by standard library loggers (Django, dagster, the ClickHouse driver), so every
# line carries the bound cycle id and renders the same way.
shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    add_process_info,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        *shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=not TEST,
)


def _formatter(renderer: structlog.types.Processor) -> dict:
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        "foreign_pre_chain": shared_processors,
    }


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": _formatter(structlog.dev.ConsoleRenderer(colors=DEBUG)),
        "json": _formatter(structlog.processors.JSONRenderer()),
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": LOGGING_FORMATTER_NAME,
        },
    },
    "root": {"handlers": ["console"], "level": DEFAULT_LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": DEFAULT_LOG_LEVEL, "propagate": False},
        "materializer.materialized_columns": {"level": MATERIALIZED_COLUMNS_LOG_LEVEL},
        "materializer.clickhouse": {"level": MATERIALIZED_COLUMNS_LOG_LEVEL},
        "clickhouse_driver": {"level": "WARN"},  # logs every packet at DEBUG
        "clickhouse_pool": {"level": "WARN"},
    },
}
