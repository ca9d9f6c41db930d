import datetime
import itertools
from collections.abc import Iterator
from typing import ClassVar, Optional

import dagster
import pydantic
from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.db import transaction

from dags.common import JobOwners
from materializer.clickhouse.database import AnalyticsDatabase
from materializer.clickhouse.mutations import ExponentialBackoff
from materializer.exceptions import LockContention
from materializer.materialized_columns.backfill import BackfillCoordinator
from materializer.materialized_columns.config import MaterializationConfig
from materializer.materialized_columns.cycle import run_materialization_cycle
from materializer.materialized_columns.lease import CycleLease
from materializer.models import BackfillJob, BackfillJobState, MaterializationState


class PartitionRange(dagster.Config):
    lower: str
    upper: str

    FORMAT: ClassVar[str] = "%Y%m"

    def iter_dates(self) -> Iterator[datetime.date]:
        date_lower = self.parse_date(self.lower)
        date_upper = self.parse_date(self.upper)
        seq = itertools.count()
        while (date := date_lower + relativedelta(months=next(seq))) <= date_upper:
            yield date

    def iter_ids(self) -> Iterator[str]:
        for date in self.iter_dates():
            yield date.strftime(self.FORMAT)

    @pydantic.field_validator("lower", "upper")
    @classmethod
    def validate_format(cls, value: str) -> str:
        cls.parse_date(value)
        return value

    @pydantic.model_validator(mode="after")
    def validate_bounds(self):
        if not self.parse_date(self.lower) <= self.parse_date(self.upper):
            raise ValueError("expected lower bound to be less than (or equal to) upper bound")
        return self

    @classmethod
    def parse_date(cls, value: str) -> datetime.date:
        return datetime.datetime.strptime(value, cls.FORMAT).date()


class MaterializationCycleConfig(dagster.Config):
    dry_run: bool = False
    # "<table>:<property>" pairs to materialize instead of analyzing the query log
    properties: list[str] = []
    top_n: Optional[int] = None
    trailing_window_days: Optional[int] = None
    backfill_concurrency: Optional[int] = None

    @pydantic.field_validator("properties")
    @classmethod
    def validate_properties(cls, value: list[str]) -> list[str]:
        for item in value:
            table, sep, property_name = item.partition(":")
            if not sep or not table or not property_name:
                raise ValueError(f"expected <table>:<property>, got {item!r}")
        return value

    def get_materialization_config(self) -> MaterializationConfig:
        overrides = {
            field: getattr(self, field)
            for field in ("top_n", "trailing_window_days", "backfill_concurrency")
            if getattr(self, field) is not None
        }
        return MaterializationConfig(**overrides)

    def get_columns_to_materialize(self) -> Optional[list[tuple[str, str]]]:
        if not self.properties:
            return None
        return [tuple(item.split(":", 1)) for item in self.properties]


@dagster.op
def run_materialization_cycle_op(
    context: dagster.OpExecutionContext,
    config: MaterializationCycleConfig,
    database: dagster.ResourceParam[AnalyticsDatabase],
):
    result = run_materialization_cycle(
        database,
        config.get_materialization_config(),
        columns_to_materialize=config.get_columns_to_materialize(),
        dry_run=config.dry_run,
    )
    if result is None:
        context.log.info("Another materialization cycle is running, nothing to do")
        return

    context.add_output_metadata(
        {
            "records": result.records,
            "parse_errors": result.parse_errors,
            "suggestions": [f"{s.table}:{s.property_name}" for s in result.suggestions],
            "failed": [f"{table}:{property_name}" for table, property_name in result.failed],
            "backfills": {f"{table}:{prop}": state.value for (table, prop), state in result.backfills.items()},
        }
    )


@dagster.job(tags={"owner": JobOwners.TEAM_CLICKHOUSE.value})
def materialize_columns_cycle():
    run_materialization_cycle_op()


schedules = []
if settings.MATERIALIZE_COLUMNS_SCHEDULE_CRON:
    schedules.append(
        dagster.ScheduleDefinition(
            job=materialize_columns_cycle,
            cron_schedule=settings.MATERIALIZE_COLUMNS_SCHEDULE_CRON,
            execution_timezone="UTC",
            name="materialize_columns_cycle_schedule",
        )
    )


class BackfillColumnConfig(dagster.Config):
    table: str
    property_name: str
    # backfill these partitions again, even if the backfill already went past them
    partitions: Optional[PartitionRange] = None


@dagster.op
def run_backfill(
    context: dagster.OpExecutionContext,
    config: BackfillColumnConfig,
    database: dagster.ResourceParam[AnalyticsDatabase],
) -> str:
    job = (
        BackfillJob.objects.select_related("candidate")
        .filter(table=config.table, candidate__property_name=config.property_name)
        .first()
    )
    if job is None:
        raise dagster.Failure(f"no backfill exists for {config.table}:{config.property_name}")

    if config.partitions is not None:
        existing = set(database.get_partitions(config.table))
        requested = list(config.partitions.iter_ids())
        if not existing.intersection(requested):
            raise dagster.Failure(
                f"none of the partitions {config.partitions.lower}..{config.partitions.upper} exist in {config.table}"
            )
        if missing := [partition for partition in requested if partition not in existing]:
            context.log.warning(f"Skipping partitions that do not exist: {', '.join(missing)}")

    with transaction.atomic():
        if config.partitions is not None:
            job.partition_lower = config.partitions.lower
            job.partition_upper = config.partitions.upper
            job.cursor = None
        job.attempts = 0
        job.state = BackfillJobState.PAUSED
        job.save(update_fields=["partition_lower", "partition_upper", "cursor", "attempts", "state", "updated_at"])
        # a materialized column stays in use while older partitions are rewritten
        if job.candidate.state == MaterializationState.FAILED:
            job.candidate.mark_pending(job.column_name)

    materialization_config = MaterializationConfig()
    try:
        with CycleLease() as lease:
            coordinator = BackfillCoordinator(
                database,
                chunk_size=materialization_config.chunk_size,
                max_retries=materialization_config.max_retries,
                backoff=ExponentialBackoff(materialization_config.retry_delay, max_delay=15 * 60),
                lease=lease,
            )
            state = coordinator.run_job(job)
    except LockContention:
        raise dagster.Failure("a materialization cycle is running, try again once it has finished")

    context.log.info(f"Backfill of {config.table}:{config.property_name} is {state.label.lower()}")
    if state == BackfillJobState.FAILED:
        job.refresh_from_db()
        raise dagster.Failure(f"backfill failed: {job.error_message}")
    return state.value


@dagster.job(tags={"owner": JobOwners.TEAM_CLICKHOUSE.value})
def backfill_materialized_column():
    run_backfill()
