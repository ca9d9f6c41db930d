from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from clickhouse_driver import Client
from django.conf import settings


@dataclass(frozen=True)
class QueryRecord:
    query: str
    duration_ms: float
    read_bytes: int
    timestamp: datetime
    # first of the (alphabetically sorted) tables the query read, only used when the query text names no known table
    table: Optional[str] = None


# Only queries which either extract properties from the raw JSON columns or already read a materialized column are of
# interest: the former are the candidates, the latter tell us how much faster queries get after materializing.
QUERY_LOG_SQL = """
SELECT
    query,
    query_duration_ms,
    read_bytes,
    event_time,
    arrayElement(tables, 1) as table_name
FROM {source}
WHERE
    event_date >= toDate(%(since)s)
    AND event_time >= %(since)s
    AND type > 1
    AND is_initial_query
    AND query_kind = 'Select'
    AND (query LIKE '%%JSONExtract%%' OR query LIKE '%%JSONHas%%' OR query LIKE '%%mat_%%')
    AND query_duration_ms >= %(min_query_time)s
ORDER BY event_time
"""


def query_log_source() -> str:
    if settings.CLICKHOUSE_CLUSTER:
        return f"clusterAllReplicas('{settings.CLICKHOUSE_CLUSTER}', system, query_log)"
    return "system.query_log"


def strip_database(table_name: str) -> Optional[str]:
    """``system.query_log.tables`` holds fully qualified names (``database.table``.)"""
    if not table_name:
        return None
    return table_name.rsplit(".", 1)[-1].strip("`")


def iter_query_log(
    client: Client,
    since: datetime,
    min_query_time: int = 0,
    max_block_size: int = 10_000,
) -> Iterator[QueryRecord]:
    rows = client.execute_iter(
        QUERY_LOG_SQL.format(source=query_log_source()),
        {"since": since, "min_query_time": min_query_time},
        settings={"max_block_size": max_block_size},
    )
    for query, duration_ms, read_bytes, event_time, table_name in rows:
        yield QueryRecord(
            query=query,
            duration_ms=float(duration_ms),
            read_bytes=int(read_bytes),
            timestamp=event_time,
            table=strip_database(table_name),
        )
