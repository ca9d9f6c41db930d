import os

from materializer.settings.utils import get_from_env, get_json, str_to_bool

# Schedule to run column materialization on. Follows crontab syntax.
# Use empty string to prevent from materializing
MATERIALIZE_COLUMNS_SCHEDULE_CRON: str = os.getenv("MATERIALIZE_COLUMNS_SCHEDULE_CRON", "0 5 * * SAT")
# How many days backwards to look for queries to optimize
MATERIALIZE_COLUMNS_ANALYSIS_PERIOD_DAYS = get_from_env("MATERIALIZE_COLUMNS_ANALYSIS_PERIOD_DAYS", 7, type_cast=int)
# Minimum query time before a query is considered for optimization by adding materialized columns
MATERIALIZE_COLUMNS_MINIMUM_QUERY_TIME = get_from_env("MATERIALIZE_COLUMNS_MINIMUM_QUERY_TIME", 0, type_cast=int)
# Maximum number of columns to materialize at once. Avoids running into resource bottlenecks (storage + ingest + backfilling).
MATERIALIZE_COLUMNS_MAX_AT_ONCE = get_from_env("MATERIALIZE_COLUMNS_MAX_AT_ONCE", 10, type_cast=int)
# Properties accessed fewer times than this within the analysis period are never materialized
MATERIALIZE_COLUMNS_MIN_USAGE = get_from_env("MATERIALIZE_COLUMNS_MIN_USAGE", 10, type_cast=int)
# How big of a timeframe to backfill when materializing properties. 0 for the whole table
MATERIALIZE_COLUMNS_BACKFILL_PERIOD_DAYS = get_from_env("MATERIALIZE_COLUMNS_BACKFILL_PERIOD_DAYS", 0, type_cast=int)
# Number of partitions materialized by a single backfill mutation
MATERIALIZE_COLUMNS_BACKFILL_CHUNK_SIZE = get_from_env("MATERIALIZE_COLUMNS_BACKFILL_CHUNK_SIZE", 1, type_cast=int)
# Consecutive chunk failures tolerated before a backfill is marked as failed
MATERIALIZE_COLUMNS_BACKFILL_MAX_RETRIES = get_from_env("MATERIALIZE_COLUMNS_BACKFILL_MAX_RETRIES", 3, type_cast=int)
# Base delay (seconds) of the exponential backoff between chunk retries
MATERIALIZE_COLUMNS_BACKFILL_RETRY_DELAY = get_from_env("MATERIALIZE_COLUMNS_BACKFILL_RETRY_DELAY", 30, type_cast=float)
# Number of backfills allowed to run at the same time (one thread each)
MATERIALIZE_COLUMNS_BACKFILL_CONCURRENCY = get_from_env("MATERIALIZE_COLUMNS_BACKFILL_CONCURRENCY", 1, type_cast=int)
# Fraction of query time assumed to be saved by materializing a property when there is nothing to compare against
MATERIALIZE_COLUMNS_DEFAULT_SAVING_RATIO = get_from_env(
    "MATERIALIZE_COLUMNS_DEFAULT_SAVING_RATIO", 0.5, type_cast=float
)
# Queries needed on each side (materialized and raw) before the observed saving ratio is trusted
MATERIALIZE_COLUMNS_MIN_COMPARISON_SAMPLES = get_from_env(
    "MATERIALIZE_COLUMNS_MIN_COMPARISON_SAMPLES", 20, type_cast=int
)
# Whether to add a minmax skip index next to every new column
MATERIALIZE_COLUMNS_CREATE_MINMAX_INDEX = get_from_env(
    "MATERIALIZE_COLUMNS_CREATE_MINMAX_INDEX", True, type_cast=str_to_bool
)
# How long a cycle may hold the lease without refreshing it, in seconds
MATERIALIZE_COLUMNS_LEASE_TTL = get_from_env("MATERIALIZE_COLUMNS_LEASE_TTL", 60 * 60, type_cast=int)

# Tables whose raw property documents can be materialized. `data_table` is where the data lives (and where columns get
# materialized); `dist_table` is the distributed table queries read from, when the data table is sharded.
MATERIALIZE_COLUMNS_TABLES: dict[str, dict[str, str]] = get_json(
    "MATERIALIZE_COLUMNS_TABLES",
    {
        "events": {"source_column": "properties", "data_table": "sharded_events", "dist_table": "events"},
        "person": {"source_column": "properties"},
    },
)
