import threading
from typing import Optional

import structlog
from clickhouse_driver.errors import Error, ErrorCodes
from clickhouse_pool import ChPool
from django.conf import settings

logger = structlog.get_logger(__name__)

# these are typically transient errors and unrelated to the query being executed
RETRYABLE_ERROR_CODES = (
    ErrorCodes.NETWORK_ERROR,
    ErrorCodes.SOCKET_TIMEOUT,
    ErrorCodes.TIMEOUT_EXCEEDED,
    ErrorCodes.TOO_MANY_SIMULTANEOUS_QUERIES,
    ErrorCodes.NOT_ENOUGH_SPACE,
    439,  # CANNOT_SCHEDULE_TASK: "Cannot schedule a task: cannot allocate thread"
)

_pool: Optional[ChPool] = None
_pool_lock = threading.Lock()


def make_ch_pool(**overrides) -> ChPool:
    kwargs = {
        "host": settings.CLICKHOUSE_HOST,
        "database": settings.CLICKHOUSE_DATABASE,
        "secure": settings.CLICKHOUSE_SECURE,
        "user": settings.CLICKHOUSE_USER,
        "password": settings.CLICKHOUSE_PASSWORD,
        "ca_certs": settings.CLICKHOUSE_CA,
        "verify": settings.CLICKHOUSE_VERIFY,
        "connections_min": settings.CLICKHOUSE_CONN_POOL_MIN,
        "connections_max": settings.CLICKHOUSE_CONN_POOL_MAX,
        "send_receive_timeout": settings.CLICKHOUSE_CALL_TIMEOUT_SECONDS,
        "settings": {"max_execution_time": settings.CLICKHOUSE_CALL_TIMEOUT_SECONDS},
        **overrides,
    }
    if settings.CLICKHOUSE_PORT is not None:
        kwargs.setdefault("port", settings.CLICKHOUSE_PORT)

    return ChPool(**kwargs)


def get_pool() -> ChPool:
    global _pool

    with _pool_lock:
        if _pool is None:
            _pool = make_ch_pool()
            logger.info("clickhouse_pool_created", host=settings.CLICKHOUSE_HOST, database=settings.CLICKHOUSE_DATABASE)
        return _pool


def is_retryable_error(e: BaseException) -> bool:
    if isinstance(e, (TimeoutError, ConnectionError)):
        return True

    if not isinstance(e, Error):
        return False

    # queries that exceed memory limits can be retried if they were killed due to total server memory consumption, but
    # we should avoid retrying queries that were killed due to query limits
    return e.code in RETRYABLE_ERROR_CODES or (
        e.code == ErrorCodes.MEMORY_LIMIT_EXCEEDED and "Memory limit (total) exceeded" in (e.message or "")
    )
