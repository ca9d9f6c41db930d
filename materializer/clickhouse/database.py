from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Protocol, TypeVar

import structlog
from clickhouse_driver import Client
from clickhouse_pool import ChPool
from django.conf import settings

from materializer.clickhouse.client import get_pool, is_retryable_error
from materializer.clickhouse.cluster import ClickhouseCluster, FuturesMap, get_cluster
from materializer.clickhouse.columns import (
    ColumnDefinition,
    ColumnName,
    MaterializedColumn,
    PropertyName,
    TableColumn,
    TableInfo,
    get_minmax_index_name,
    get_table_infos,
    quote_identifier,
)
from materializer.clickhouse.mutations import (
    ExponentialBackoff,
    MaterializeColumnMutation,
    MutationFailed,
    MutationNotFound,
    MutationTimeout,
    MutationWaiter,
    RetryPolicy,
)
from materializer.clickhouse.query_log import QueryRecord, iter_query_log
from materializer.exceptions import BackfillChunkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AnalyticsDatabase(Protocol):
    """The operations the materializer needs from the analytical database."""

    def iter_query_log(self, since: datetime, min_query_time: int = 0) -> Iterator[QueryRecord]: ...

    def get_columns(self, table: str) -> dict[ColumnName, ColumnDefinition]: ...

    def add_materialized_column(self, table: str, column: MaterializedColumn, create_minmax_index: bool = False) -> None:
        ...

    def get_partitions(self, table: str) -> list[str]: ...

    def materialize_column(self, table: str, column_name: ColumnName, partitions: Sequence[str]) -> None:
        """
        Write the values of ``column_name`` for every row in ``partitions``, blocking until done. Must be idempotent.
        Transient failures are raised as ``BackfillChunkError``.
        """
        ...


def get_materialized_columns(
    database: AnalyticsDatabase, table: str
) -> dict[tuple[PropertyName, TableColumn], ColumnDefinition]:
    columns = {}
    for column in database.get_columns(table).values():
        if (details := column.materialized_details) is not None:
            columns[(details.property_name, details.table_column)] = column
    return columns


@dataclass
class CreateColumnOnDataNodesTask:
    table: str
    column: MaterializedColumn
    create_minmax_index: bool

    def execute(self, client: Client) -> None:
        expression, parameters = self.column.get_expression_and_parameters()
        name = quote_identifier(self.column.name)
        actions = [
            f"ADD COLUMN IF NOT EXISTS {name} {self.column.type} MATERIALIZED {expression}",
            f"COMMENT COLUMN {name} %(comment)s",
        ]
        parameters["comment"] = self.column.details.as_column_comment()

        if self.create_minmax_index:
            index_name = quote_identifier(get_minmax_index_name(self.column.name))
            actions.append(f"ADD INDEX IF NOT EXISTS {index_name} {name} TYPE minmax GRANULARITY 1")

        client.execute(
            f"ALTER TABLE {self.table} " + ", ".join(actions),
            parameters,
            settings={"alter_sync": 1},
        )


@dataclass
class CreateColumnOnQueryNodesTask:
    table: str
    column: MaterializedColumn

    def execute(self, client: Client) -> None:
        name = quote_identifier(self.column.name)
        client.execute(
            f"""
            ALTER TABLE {self.table}
                ADD COLUMN IF NOT EXISTS {name} {self.column.type},
                COMMENT COLUMN {name} %(comment)s
            """,
            {"comment": self.column.details.as_column_comment()},
            settings={"alter_sync": 1},
        )


def get_local_partitions(client: Client, table: str) -> list[str]:
    rows = client.execute(
        """
        SELECT DISTINCT partition_id
        FROM system.parts
        WHERE database = %(database)s AND table = %(table)s AND active
        ORDER BY partition_id
        """,
        {"database": settings.CLICKHOUSE_DATABASE, "table": table},
    )
    return [partition for (partition,) in rows]


@dataclass
class MaterializeColumnTask:
    table: str
    column_name: ColumnName
    partitions: Sequence[str]
    timeout: float | None
    poll_interval: float
    # on a cluster every shard only stores some of the partitions
    local_partitions_only: bool = False

    def execute(self, client: Client) -> None:
        partitions = self.partitions
        if self.local_partitions_only:
            local_partitions = set(get_local_partitions(client, self.table))
            partitions = [partition for partition in partitions if partition in local_partitions]
        if not partitions:
            return

        mutations = [MaterializeColumnMutation(self.table, self.column_name, partition) for partition in partitions]
        # enqueue everything first so that the server can work on all partitions of the chunk at once
        mutation_ids = {mutation.enqueue(client) for mutation in mutations}
        MutationWaiter(self.table, mutation_ids, timeout=self.timeout, poll_interval=self.poll_interval).wait(client)


def get_chunk_error(e: Exception) -> BackfillChunkError | None:
    """Returns the error to retry the chunk with, or None if ``e`` should not be retried."""
    if isinstance(e, ExceptionGroup):
        errors = [get_chunk_error(inner) for inner in e.exceptions]
        if all(error is not None for error in errors):
            return BackfillChunkError("; ".join(str(error) for error in errors))
        return None
    if isinstance(e, (MutationTimeout, MutationNotFound, MutationFailed)):
        # killed mutations are not reused, so retrying the chunk starts them again
        return BackfillChunkError(str(e))
    if is_retryable_error(e):
        return BackfillChunkError(f"{type(e).__name__}: {e}")
    return None


class ClickhouseDatabase:
    """
    Runs against a single server, or against every host of ``CLICKHOUSE_CLUSTER`` when it is set: columns are added on
    all hosts storing or reading through a table, and sharded tables are mutated on one host of every shard.
    """

    def __init__(
        self,
        pool: ChPool | None = None,
        tables: Mapping[str, TableInfo] | None = None,
        call_timeout: float | None = None,
        mutation_poll_interval: float = 15.0,
        cluster: ClickhouseCluster | None = None,
    ) -> None:
        self.pool = pool if pool is not None else get_pool()
        self.tables = dict(tables) if tables is not None else get_table_infos()
        self.call_timeout = call_timeout if call_timeout is not None else settings.CLICKHOUSE_CALL_TIMEOUT_SECONDS
        self.mutation_poll_interval = mutation_poll_interval
        self.retry_policy = RetryPolicy(max_attempts=3, backoff=ExponentialBackoff(1.0), is_retryable=is_retryable_error)
        self._cluster = cluster
        self._cluster_loaded = cluster is not None

    def __repr__(self) -> str:
        return f"ClickhouseDatabase(tables={sorted(self.tables)!r})"

    @property
    def cluster(self) -> ClickhouseCluster | None:
        if not self._cluster_loaded:
            self._cluster = get_cluster(self.pool)
            self._cluster_loaded = True
        return self._cluster

    def _execute(self, fn: Callable[[Client], T]) -> T:
        with self.pool.get_client() as client:
            return self.retry_policy.run(fn, client)

    def _retrying(self, fn: Callable[[Client], T]) -> Callable[[Client], T]:
        return partial(self.retry_policy.run, fn)

    def _map_data_nodes(self, cluster: ClickhouseCluster, table_info: TableInfo, fn: Callable[[Client], T]) -> FuturesMap:
        if table_info.is_sharded:
            return cluster.map_one_host_per_shard(fn)
        return cluster.map_all_hosts(fn)

    def _table(self, table: str) -> TableInfo:
        try:
            return self.tables[table]
        except KeyError:
            raise ValueError(f"table {table!r} is not configured for materialization")

    def iter_query_log(self, since: datetime, min_query_time: int = 0) -> Iterator[QueryRecord]:
        with self.pool.get_client() as client:
            yield from iter_query_log(client, since, min_query_time=min_query_time)

    def get_columns(self, table: str) -> dict[ColumnName, ColumnDefinition]:
        table_info = self._table(table)
        rows = self._execute(
            lambda client: client.execute(
                """
                SELECT name, type, default_kind, default_expression, comment
                FROM system.columns
                WHERE database = %(database)s AND table = %(table)s
                ORDER BY position
                """,
                {"database": settings.CLICKHOUSE_DATABASE, "table": table_info.data_table},
            )
        )
        return {
            name: ColumnDefinition(name, type, default_kind, default_expression, comment)
            for name, type, default_kind, default_expression, comment in rows
        }

    def add_materialized_column(self, table: str, column: MaterializedColumn, create_minmax_index: bool = False) -> None:
        table_info = self._table(table)
        data_nodes_task = CreateColumnOnDataNodesTask(table_info.data_table, column, create_minmax_index)
        query_nodes_task = CreateColumnOnQueryNodesTask(table_info.read_table, column)

        cluster = self.cluster
        if cluster is None:
            self._execute(data_nodes_task.execute)
            if table_info.is_sharded:
                self._execute(query_nodes_task.execute)
            return

        self._map_data_nodes(cluster, table_info, self._retrying(data_nodes_task.execute)).result()
        if table_info.is_sharded:
            cluster.map_all_hosts(self._retrying(query_nodes_task.execute)).result()

    def get_partitions(self, table: str) -> list[str]:
        table_info = self._table(table)
        cluster = self.cluster
        if cluster is None or not table_info.is_sharded:
            return self._execute(lambda client: get_local_partitions(client, table_info.data_table))

        partitions_by_host = cluster.map_one_host_per_shard(
            self._retrying(lambda client: get_local_partitions(client, table_info.data_table))
        ).result()
        return sorted({partition for partitions in partitions_by_host.values() for partition in partitions})

    def materialize_column(self, table: str, column_name: ColumnName, partitions: Sequence[str]) -> None:
        table_info = self._table(table)
        cluster = self.cluster
        task = MaterializeColumnTask(
            table_info.data_table,
            column_name,
            partitions,
            timeout=self.call_timeout,
            poll_interval=self.mutation_poll_interval,
            local_partitions_only=cluster is not None,
        )

        try:
            if cluster is None:
                with self.pool.get_client() as client:
                    task.execute(client)
            else:
                self._map_data_nodes(cluster, table_info, task.execute).result()
        except Exception as e:
            if (chunk_error := get_chunk_error(e)) is not None:
                raise chunk_error from e
            raise
