from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ALL_COMPLETED, FIRST_EXCEPTION, Future, ThreadPoolExecutor, as_completed
from typing import Literal, NamedTuple, Optional, TypeVar

import structlog
from clickhouse_driver import Client
from clickhouse_pool import ChPool
from django.conf import settings

from materializer.clickhouse.client import make_ch_pool
from materializer.clickhouse.mutations import RetryPolicy

logger = structlog.get_logger(__name__)

K = TypeVar("K")
V = TypeVar("V")
T = TypeVar("T")


def format_exception_summary(e: Exception, max_length: int = 256) -> str:
    value = repr(e).splitlines()[0]
    if len(value) > max_length:
        value = value[:max_length] + "..."
    return value


class FuturesMap(dict[K, Future[V]]):
    def as_completed(self, timeout: float | int | None = None) -> Iterator[tuple[K, Future[V]]]:
        reverse_map = {v: k for k, v in self.items()}
        assert len(reverse_map) == len(self)

        for f in as_completed(self.values(), timeout=timeout):
            yield reverse_map[f], f

    def result(
        self,
        timeout: float | int | None = None,
        return_when: Literal["FIRST_EXCEPTION", "ALL_COMPLETED"] = ALL_COMPLETED,
    ) -> dict[K, V]:
        results = {}
        errors = {}
        for k, future in self.as_completed(timeout=timeout):
            try:
                results[k] = future.result()
            except Exception as e:
                if return_when is FIRST_EXCEPTION:
                    raise
                errors[k] = e

        if errors:
            raise ExceptionGroup(
                f"{len(errors)} future(s) did not return a result:\n\n"
                + "\n".join([f"* {key}: {format_exception_summary(e)}" for key, e in errors.items()]),
                [*errors.values()],
            )

        return results


class HostInfo(NamedTuple):
    host: str
    port: int | None
    shard_num: int
    replica_num: int


class ClickhouseCluster:
    """
    The hosts of the ClickHouse cluster named ``cluster`` (``CLICKHOUSE_CLUSTER`` by default), as seen from the host
    ``bootstrap_client`` is connected to.

    Schema changes have to be applied on every host that stores (or reads through) a table, and mutations of sharded
    tables on one host of every shard, so callables are mapped over the hosts concurrently.
    """

    def __init__(
        self,
        bootstrap_client: Client,
        cluster: str | None = None,
        retry_policy: RetryPolicy | None = None,
        client_settings: Mapping[str, str] | None = None,
    ) -> None:
        self.name = cluster or settings.CLICKHOUSE_CLUSTER
        if not self.name:
            raise ValueError("no cluster name given and CLICKHOUSE_CLUSTER is not set")

        self.__shards: dict[int, list[HostInfo]] = defaultdict(list)
        for host_name, port, shard_num, replica_num in bootstrap_client.execute(
            """
            SELECT host_name, port, shard_num, replica_num
            FROM clusterAllReplicas(%(name)s, system.clusters)
            WHERE name = %(name)s AND is_local
            ORDER BY shard_num, replica_num
            """,
            {"name": self.name},
        ):
            # the ports in system.clusters are only reachable from within the cluster, except in local setups
            host = HostInfo(host_name, port if settings.DEBUG or settings.TEST else None, shard_num, replica_num)
            self.__shards[shard_num].append(host)

        self.__pools: dict[HostInfo, ChPool] = {}
        self.__retry_policy = retry_policy
        self.__client_settings = client_settings

    def __repr__(self) -> str:
        return f"ClickhouseCluster(name={self.name!r}, shards={self.shards!r})"

    @property
    def shards(self) -> list[int]:
        return sorted(self.__shards)

    @property
    def hosts(self) -> list[HostInfo]:
        return [host for shard_num in self.shards for host in self.__shards[shard_num]]

    def __get_pool(self, host: HostInfo) -> ChPool:
        pool = self.__pools.get(host)
        if pool is None:
            overrides = {"host": host.host}
            if host.port is not None:
                overrides["port"] = host.port
            if self.__client_settings is not None:
                overrides["settings"] = dict(self.__client_settings)
            pool = self.__pools[host] = make_ch_pool(**overrides)
        return pool

    def __get_task_function(self, host: HostInfo, fn: Callable[[Client], T]) -> Callable[[], T]:
        pool = self.__get_pool(host)

        def task():
            with pool.get_client() as client:
                logger.debug("Executing on host.", fn=repr(fn), host=host.host, shard_num=host.shard_num)
                try:
                    if self.__retry_policy is not None:
                        return self.__retry_policy.run(fn, client)
                    return fn(client)
                except Exception as e:
                    logger.warning("Failed to execute on host.", fn=repr(fn), host=host.host, error=str(e))
                    raise

        return task

    def map_all_hosts(self, fn: Callable[[Client], T], concurrency: int | None = None) -> FuturesMap[HostInfo, T]:
        """
        Execute the callable once for each host in the cluster.

        The number of concurrent queries can be limited with the ``concurrency`` parameter, or set to ``None`` to use
        the default limit of the executor.
        """
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            return FuturesMap({host: executor.submit(self.__get_task_function(host, fn)) for host in self.hosts})

    def map_one_host_per_shard(
        self, fn: Callable[[Client], T], concurrency: int | None = None
    ) -> FuturesMap[HostInfo, T]:
        """
        Execute the callable once for each shard, on the first replica of that shard.

        The number of concurrent queries can be limited with the ``concurrency`` parameter, or set to ``None`` to use
        the default limit of the executor.
        """
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            return FuturesMap(
                {
                    hosts[0]: executor.submit(self.__get_task_function(hosts[0], fn))
                    for _shard_num, hosts in sorted(self.__shards.items())
                    if hosts
                }
            )


def get_cluster(pool: ChPool, retry_policy: Optional[RetryPolicy] = None) -> Optional[ClickhouseCluster]:
    """Returns the configured cluster, or None when ClickHouse runs as a single server."""
    if not settings.CLICKHOUSE_CLUSTER:
        return None
    with pool.get_client() as client:
        return ClickhouseCluster(client, retry_policy=retry_policy)
