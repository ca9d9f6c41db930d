import structlog
from django.core.management.base import BaseCommand, CommandError

import pydantic

from materializer.clickhouse.database import ClickhouseDatabase
from materializer.materialized_columns.config import MaterializationConfig
from materializer.materialized_columns.cycle import run_materialization_cycle

logger = structlog.get_logger(__name__)

CONFIG_OPTIONS = {
    "analyze_period": "trailing_window_days",
    "max_columns": "top_n",
    "min_usage": "min_usage_threshold",
    "min_query_time": "min_query_time",
    "backfill_period": "backfill_period_days",
    "chunk_size": "chunk_size",
    "max_retries": "max_retries",
    "concurrency": "backfill_concurrency",
}


def parse_property(value: str) -> tuple[str, str]:
    table, sep, property_name = value.partition(":")
    if not sep or not table or not property_name:
        raise CommandError(f"--property must look like <table>:<property>, got {value!r}")
    return table, property_name


class Command(BaseCommand):
    help = "Materialize the properties that slow queries extract most, and backfill the new columns"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Print the properties that would be materialized without changing anything",
        )
        parser.add_argument(
            "--property",
            action="append",
            dest="properties",
            metavar="TABLE:PROPERTY",
            help="Materialize this property instead of analyzing the query log. Can be given more than once",
        )
        parser.add_argument("--analyze-period", type=int, help="Days of the query log to analyze")
        parser.add_argument("--max-columns", type=int, help="Maximum number of columns to materialize at once")
        parser.add_argument("--min-usage", type=int, help="Minimum number of queries using a property")
        parser.add_argument("--min-query-time", type=int, help="Ignore queries faster than this many milliseconds")
        parser.add_argument(
            "--backfill-period", type=int, help="Days of data to backfill, 0 to backfill every partition"
        )
        parser.add_argument("--chunk-size", type=int, help="Partitions per backfill mutation")
        parser.add_argument("--max-retries", type=int, help="Retries of a failing backfill chunk")
        parser.add_argument("--concurrency", type=int, help="Columns to backfill in parallel")

    def handle(self, *args, **options):
        overrides = {field: options[option] for option, field in CONFIG_OPTIONS.items() if options[option] is not None}
        try:
            config = MaterializationConfig(**overrides)
        except pydantic.ValidationError as e:
            raise CommandError(str(e))

        columns_to_materialize = None
        if options["properties"]:
            columns_to_materialize = [parse_property(value) for value in options["properties"]]

        result = run_materialization_cycle(
            ClickhouseDatabase(),
            config,
            columns_to_materialize=columns_to_materialize,
            dry_run=options["dry_run"],
        )
        if result is None:
            self.stdout.write(self.style.WARNING("Another materialization cycle is running, nothing to do"))
            return

        verb = "Would materialize" if options["dry_run"] else "Selected"
        for suggestion in result.suggestions:
            self.stdout.write(
                f"  - {verb} {suggestion.table}:{suggestion.property_name} "
                f"(score={suggestion.score:.0f}, usage={suggestion.usage_count})"
            )
        for (table, property_name), error in result.failed.items():
            self.stdout.write(self.style.ERROR(f"  - Failed {table}:{property_name}: {error}"))
        for (table, property_name), state in result.backfills.items():
            self.stdout.write(f"  - Backfill of {table}:{property_name} is {state.label.lower()}")

        if result.parse_errors:
            self.stdout.write(f"Skipped {result.parse_errors} of {result.records} queries that could not be parsed")

        self.stdout.write(self.style.SUCCESS("Materialization cycle finished"))
