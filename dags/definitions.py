import dagster

from dags import materialized_columns
from dags.common import AnalyticsDatabaseResource

defs = dagster.Definitions(
    jobs=[
        materialized_columns.materialize_columns_cycle,
        materialized_columns.backfill_materialized_column,
    ],
    schedules=materialized_columns.schedules,
    resources={
        "database": AnalyticsDatabaseResource(),
    },
)
