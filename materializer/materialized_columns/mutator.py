from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from django.db import transaction
from django.utils.timezone import now

from materializer.clickhouse.columns import (
    MaterializedColumn,
    MaterializedColumnDetails,
    TableInfo,
    get_table_infos,
    materialized_column_name,
)
from materializer.clickhouse.database import AnalyticsDatabase, get_materialized_columns
from materializer.exceptions import SchemaConflict
from materializer.models import BackfillJob, BackfillJobState, MaterializationCandidate

logger = structlog.get_logger(__name__)

# partition ids of tables partitioned by toYYYYMM(timestamp)
MONTHLY_PARTITION_FORMAT = "%Y%m"


def get_partition_lower_bound(backfill_period_days: int, partitions: list[str]) -> Optional[str]:
    """
    Oldest partition to backfill, or None to backfill everything. Only monthly partitioned tables can be limited to a
    period; for anything else the partition ids don't tell us what time range they cover.
    """
    if backfill_period_days <= 0 or not partitions:
        return None
    if not all(len(partition) == 6 and partition.isdigit() for partition in partitions):
        return None
    return (now() - timedelta(days=backfill_period_days)).strftime(MONTHLY_PARTITION_FORMAT)


@dataclass
class SchemaMutator:
    database: AnalyticsDatabase
    tables: Mapping[str, TableInfo]
    backfill_period_days: int = 0
    create_minmax_index: bool = False

    @classmethod
    def from_settings(cls, database: AnalyticsDatabase, **kwargs) -> "SchemaMutator":
        return cls(database, get_table_infos(), **kwargs)

    def get_column(self, candidate: MaterializationCandidate) -> MaterializedColumn:
        table_info = self.tables[candidate.table]
        return MaterializedColumn(
            name=materialized_column_name(candidate.table, candidate.property_name, table_info.source_column),
            details=MaterializedColumnDetails(table_info.source_column, candidate.property_name),
        )

    def ensure_column(self, candidate: MaterializationCandidate) -> MaterializedColumn:
        """
        Adds the materialized column for the candidate if it doesn't exist yet, and returns it. Raises
        ``SchemaConflict`` when the column name is taken by a column that isn't this materialization.
        """
        column = self.get_column(candidate)

        existing_for_property = get_materialized_columns(self.database, candidate.table).get(
            (column.details.property_name, column.details.table_column)
        )
        if existing_for_property is not None:
            logger.info(
                "Property already has a materialized column, reusing it.",
                table=candidate.table,
                property_name=candidate.property_name,
                column=existing_for_property.name,
            )
            return MaterializedColumn(existing_for_property.name, column.details)

        existing = self.database.get_columns(candidate.table).get(column.name)
        if existing is not None:
            if column.matches(existing):
                return column
            raise SchemaConflict(
                candidate.table,
                column.name,
                f"existing column has type={existing.type!r}, default_kind={existing.default_kind!r}, "
                f"comment={existing.comment!r}",
            )

        logger.info("Materializing column.", table=candidate.table, property_name=candidate.property_name, column=column.name)
        self.database.add_materialized_column(candidate.table, column, create_minmax_index=self.create_minmax_index)
        return column

    def apply(self, candidate: MaterializationCandidate) -> BackfillJob:
        """Adds the column for the candidate, marks the candidate as pending and enqueues its backfill."""
        column = self.ensure_column(candidate)

        # every partition created from now on is written with the column already in place
        partitions = self.database.get_partitions(candidate.table)

        with transaction.atomic():
            candidate.mark_pending(column.name)
            job, _ = BackfillJob.objects.update_or_create(
                candidate=candidate,
                defaults={
                    "table": candidate.table,
                    "column_name": column.name,
                    "state": BackfillJobState.RUNNING,
                    "cursor": None,
                    "partition_lower": get_partition_lower_bound(self.backfill_period_days, partitions),
                    # an empty table has nothing to backfill: "" sorts before every partition id
                    "partition_upper": partitions[-1] if partitions else "",
                    "attempts": 0,
                    "error_message": None,
                    "completed_at": None,
                },
            )

        return job
