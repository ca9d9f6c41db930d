from __future__ import annotations

import time
from collections.abc import Callable, Set
from dataclasses import dataclass
from typing import Optional, TypeVar

import structlog
from clickhouse_driver import Client
from django.conf import settings

from materializer.clickhouse.columns import ColumnName, quote_identifier

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class ExponentialBackoff:
    delay: float
    max_delay: Optional[float] = None
    exp: float = 2.0

    def __call__(self, attempt: int) -> float:
        delay = self.delay * (attempt**self.exp)
        return min(delay, self.max_delay) if self.max_delay is not None else delay


@dataclass
class RetryPolicy:
    """Retries calls that fail with an error ``is_retryable`` accepts, up to ``max_attempts`` calls in total."""

    max_attempts: int
    backoff: Callable[[int], float]
    is_retryable: Callable[[Exception], bool]

    def run(self, fn: Callable[[Client], T], client: Client) -> T:
        attempt = 1
        while True:
            try:
                return fn(client)
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    raise
                delay = self.backoff(attempt)
                logger.warning("ClickHouse call failed, retrying.", attempt=attempt, retry_in=delay, error=str(e))
                time.sleep(delay)
                attempt += 1


class MutationNotFound(Exception):
    pass


class MutationFailed(Exception):
    pass


class MutationTimeout(TimeoutError):
    pass


@dataclass
class MutationWaiter:
    table: str
    mutation_ids: Set[str]
    timeout: Optional[float] = None
    poll_interval: float = 15.0

    def get_statuses(self, client: Client) -> dict[str, bool]:
        """Returns whether each mutation is done. Killed mutations raise ``MutationFailed``."""
        rows = client.execute(
            """
            SELECT mutation_id, is_done, is_killed, latest_fail_reason
            FROM system.mutations
            WHERE database = %(database)s AND table = %(table)s AND mutation_id IN %(mutation_ids)s
            """,
            {"database": settings.CLICKHOUSE_DATABASE, "table": self.table, "mutation_ids": sorted(self.mutation_ids)},
        )

        statuses: dict[str, bool] = {}
        for mutation_id, is_done, is_killed, fail_reason in rows:
            if is_killed:
                raise MutationFailed(f"mutation {mutation_id!r} on {self.table!r} was killed")
            if fail_reason:
                # the server keeps retrying failed parts, so this is not fatal (yet)
                logger.warning("Mutation is failing.", table=self.table, mutation_id=mutation_id, reason=fail_reason)
            statuses[mutation_id] = bool(is_done)

        if missing := self.mutation_ids - statuses.keys():
            raise MutationNotFound(f"could not find mutation(s) {sorted(missing)!r} on {self.table!r}")
        return statuses

    def wait(self, client: Client) -> None:
        started = time.monotonic()
        while True:
            pending = sorted(mutation_id for mutation_id, done in self.get_statuses(client).items() if not done)
            if not pending:
                return
            if self.timeout is not None and time.monotonic() - started >= self.timeout:
                raise MutationTimeout(f"mutation(s) {pending!r} on {self.table!r} did not finish within {self.timeout}s")
            logger.debug("Waiting for mutations.", table=self.table, pending=pending)
            time.sleep(self.poll_interval)


@dataclass
class MaterializeColumnMutation:
    """
    Writes the values of a materialized column for a single partition.

    Enqueueing is idempotent: if a mutation for the same column and partition is already running (or has finished),
    that one is used instead of starting another.
    """

    table: str
    column_name: ColumnName
    partition: str
    visibility_checks: int = 5

    @property
    def command(self) -> str:
        return f"MATERIALIZE COLUMN {quote_identifier(self.column_name)} IN PARTITION ID %(partition)s"

    @property
    def parameters(self) -> dict[str, str]:
        return {"partition": self.partition}

    def find_existing(self, client: Client) -> Optional[str]:
        # system.mutations stores commands as formatted by the server, so format ours the same way before comparing
        [(mutation_id,)] = client.execute(
            f"""
            SELECT argMax(mutation_id, create_time)
            FROM system.mutations
            WHERE
                database = %(__database)s
                AND table = %(__table)s
                AND NOT is_killed
                AND command = trimBoth(
                    splitByChar('\n', formatQuery($__sql$ALTER TABLE {settings.CLICKHOUSE_DATABASE}.{self.table} {self.command}$__sql$))[2]
                )
            """,
            {"__database": settings.CLICKHOUSE_DATABASE, "__table": self.table, **self.parameters},
        )
        return mutation_id or None

    def enqueue(self, client: Client) -> str:
        """Makes sure the mutation is running or has run, and returns its id."""
        if (mutation_id := self.find_existing(client)) is not None:
            logger.info("Found existing mutation.", table=self.table, partition=self.partition, mutation_id=mutation_id)
            return mutation_id

        client.execute(f"ALTER TABLE {settings.CLICKHOUSE_DATABASE}.{self.table} {self.command}", self.parameters)

        # new mutations take a moment to show up
        for _ in range(self.visibility_checks):
            if (mutation_id := self.find_existing(client)) is not None:
                logger.info("Started mutation.", table=self.table, partition=self.partition, mutation_id=mutation_id)
                return mutation_id
            time.sleep(1.0)

        raise MutationNotFound(
            f"could not find the mutation materializing {self.column_name!r} in partition {self.partition!r}"
        )
