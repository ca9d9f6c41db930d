from typing import Optional

from materializer.clickhouse.columns import ColumnName, PropertyName
from materializer.models import MaterializationCandidate, MaterializationState


def get_materialized_columns(table: str) -> dict[PropertyName, ColumnName]:
    """
    Columns which query generation may read instead of extracting the property from the raw column.

    Only fully backfilled columns are returned: a column that is still being backfilled has no values for older rows.
    """
    return dict(
        MaterializationCandidate.objects.filter(
            table=table, state=MaterializationState.MATERIALIZED, column_name__isnull=False
        ).values_list("property_name", "column_name")
    )


def get_materialized_column_for_property(table: str, property_name: PropertyName) -> Optional[ColumnName]:
    return (
        MaterializationCandidate.objects.filter(
            table=table, property_name=property_name, state=MaterializationState.MATERIALIZED
        )
        .values_list("column_name", flat=True)
        .first()
    )
