from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import structlog
from django.utils.timezone import now

from materializer.clickhouse.columns import ColumnDefinition, PropertyName, TableColumn, TableInfo, get_table_infos
from materializer.clickhouse.database import AnalyticsDatabase, get_materialized_columns
from materializer.clickhouse.mutations import ExponentialBackoff
from materializer.exceptions import LockContention, ParseError, SchemaConflict
from materializer.materialized_columns.backfill import BackfillCoordinator
from materializer.materialized_columns.config import MaterializationConfig
from materializer.materialized_columns.extractor import PropertyExtractor
from materializer.materialized_columns.lease import CycleLease, clear_abort
from materializer.materialized_columns.mutator import SchemaMutator
from materializer.materialized_columns.ranker import (
    ObservedCostModel,
    PropertyKey,
    Suggestion,
    UsageAggregator,
    rank_candidates,
)
from materializer.models import BackfillJobState, MaterializationCandidate, MaterializationState

logger = structlog.get_logger(__name__)


@dataclass
class CycleResult:
    records: int = 0
    parse_errors: int = 0
    suggestions: list[Suggestion] = field(default_factory=list)
    materialized: list[PropertyKey] = field(default_factory=list)
    failed: dict[PropertyKey, str] = field(default_factory=dict)
    backfills: dict[PropertyKey, BackfillJobState] = field(default_factory=dict)


MaterializedColumnsByTable = dict[str, dict[tuple[PropertyName, TableColumn], ColumnDefinition]]


def get_materialized_columns_by_table(database: AnalyticsDatabase, tables: Iterable[str]) -> MaterializedColumnsByTable:
    return {table: get_materialized_columns(database, table) for table in tables}


def get_existing_keys(materialized_columns: MaterializedColumnsByTable) -> set[PropertyKey]:
    """Properties which are materialized, or being materialized, and must not be selected again."""
    existing = set(
        MaterializationCandidate.objects.filter(state__in=MaterializationCandidate.ACTIVE_STATES).values_list(
            "table", "property_name"
        )
    )
    # columns might also have been added by hand, or by an earlier version of the state store
    for table, columns in materialized_columns.items():
        for property_name, _table_column in columns:
            existing.add((table, property_name))
    return existing


def get_extractor(
    tables: Mapping[str, TableInfo], materialized_columns: MaterializedColumnsByTable
) -> PropertyExtractor:
    table_names = {}
    for name, info in tables.items():
        table_names[info.data_table] = name
        if info.dist_table is not None:
            table_names[info.dist_table] = name
    return PropertyExtractor(
        source_columns={name: info.source_column for name, info in tables.items()},
        materialized_columns={
            table: {column.name for column in columns.values()} for table, columns in materialized_columns.items()
        },
        table_names=table_names,
    )


def analyze(database: AnalyticsDatabase, config: MaterializationConfig, result: CycleResult) -> list[Suggestion]:
    "Finds properties that should be materialized"
    tables = get_table_infos()
    materialized_columns = get_materialized_columns_by_table(database, tables)
    existing = get_existing_keys(materialized_columns)
    extractor = get_extractor(tables, materialized_columns)

    aggregator = UsageAggregator()
    since = now() - timedelta(days=config.trailing_window_days)
    for record in database.iter_query_log(since, min_query_time=config.min_query_time):
        result.records += 1
        try:
            aggregator.add(extractor.extract(record))
        except ParseError as e:
            result.parse_errors += 1
            logger.debug("Skipping query that could not be parsed.", error=str(e))

    return rank_candidates(
        aggregator.usage.values(),
        aggregator.baselines,
        existing=existing,
        top_n=config.top_n,
        min_usage_threshold=config.min_usage_threshold,
        cost_model=ObservedCostModel(config.default_saving_ratio, config.min_comparison_samples),
    )


def save_candidate(suggestion: Suggestion) -> MaterializationCandidate:
    candidate, created = MaterializationCandidate.objects.get_or_create(
        table=suggestion.table,
        property_name=suggestion.property_name,
        defaults={"score": suggestion.score, "usage_count": suggestion.usage_count},
    )
    if not created:
        candidate.score = suggestion.score
        candidate.usage_count = suggestion.usage_count
        candidate.state = MaterializationState.NOT_MATERIALIZED
        candidate.error_message = None
        candidate.save(update_fields=["score", "usage_count", "state", "error_message", "updated_at"])
    return candidate


def run_materialization_cycle(
    database: AnalyticsDatabase,
    config: Optional[MaterializationConfig] = None,
    columns_to_materialize: Optional[list[tuple[str, PropertyName]]] = None,
    dry_run: bool = False,
    lease: Optional[CycleLease] = None,
) -> Optional[CycleResult]:
    """
    Creates materialized columns for properties based off of slow queries, and backfills them.

    Returns None without doing anything if another cycle is already running.
    """
    if config is None:
        config = MaterializationConfig()
    if lease is None:
        lease = CycleLease()

    try:
        with lease:
            structlog.contextvars.bind_contextvars(cycle_id=lease.token, dry_run=dry_run)
            try:
                clear_abort()
                return _run_cycle(database, config, columns_to_materialize, dry_run, lease)
            finally:
                structlog.contextvars.unbind_contextvars("cycle_id", "dry_run")
    except LockContention:
        logger.info("Another materialization cycle is running, skipping.")
        return None


def _run_cycle(
    database: AnalyticsDatabase,
    config: MaterializationConfig,
    columns_to_materialize: Optional[list[tuple[str, PropertyName]]],
    dry_run: bool,
    lease: CycleLease,
) -> CycleResult:
    result = CycleResult()

    if columns_to_materialize is None:
        result.suggestions = analyze(database, config, result)
    else:
        existing = get_existing_keys(
            get_materialized_columns_by_table(database, {table for table, _ in columns_to_materialize})
        )
        result.suggestions = [
            Suggestion(table, property_name, score=0.0, usage_count=0)
            for table, property_name in columns_to_materialize
            if (table, property_name) not in existing
        ]

    if result.suggestions:
        logger.info(
            "Calculated columns that could be materialized.",
            count=len(result.suggestions),
            parse_errors=result.parse_errors,
            records=result.records,
        )
    else:
        logger.info("Found no columns to materialize.", parse_errors=result.parse_errors, records=result.records)

    if dry_run:
        for suggestion in result.suggestions:
            logger.info("Would materialize column.", table=suggestion.table, property_name=suggestion.property_name)
        return result

    mutator = SchemaMutator.from_settings(
        database,
        backfill_period_days=config.backfill_period_days,
        create_minmax_index=config.create_minmax_index,
    )
    for suggestion in result.suggestions:
        candidate = save_candidate(suggestion)
        try:
            mutator.apply(candidate)
        except SchemaConflict as e:
            logger.error("Materialized column conflicts with an existing column, needs manual review.", error=str(e))
            candidate.mark_failed(str(e))
            result.failed[suggestion.key] = str(e)
        except Exception as e:
            logger.exception("Failed to add materialized column.", table=candidate.table, property=candidate.property_name)
            candidate.mark_failed(f"{type(e).__name__}: {e}")
            result.failed[suggestion.key] = str(e)
        else:
            result.materialized.append(suggestion.key)

    coordinator = BackfillCoordinator(
        database,
        chunk_size=config.chunk_size,
        max_retries=config.max_retries,
        backoff=ExponentialBackoff(config.retry_delay, max_delay=15 * 60),
        concurrency=config.backfill_concurrency,
        lease=lease,
    )
    result.backfills = coordinator.run()

    return result
