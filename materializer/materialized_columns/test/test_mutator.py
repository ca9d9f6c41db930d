import pytest
from freezegun import freeze_time

from materializer.clickhouse.columns import ColumnDefinition
from materializer.exceptions import SchemaConflict
from materializer.materialized_columns.mutator import SchemaMutator, get_partition_lower_bound
from materializer.models import BackfillJob, BackfillJobState, MaterializationCandidate, MaterializationState
from materializer.test.fake_database import FakeDatabase


def create_candidate(property_name: str, table: str = "events") -> MaterializationCandidate:
    return MaterializationCandidate.objects.create(table=table, property_name=property_name, score=1.0, usage_count=1)


@pytest.mark.django_db
def test_apply_adds_column_and_enqueues_backfill(database: FakeDatabase):
    database.insert("events", "202401", {"plan": "free"})
    database.insert("events", "202402", {"plan": "pro"})
    candidate = create_candidate("plan")

    job = SchemaMutator.from_settings(database, create_minmax_index=True).apply(candidate)

    column = database.get_columns("events")["mat_plan"]
    assert column.default_kind == "MATERIALIZED"
    assert column.comment == "column_materializer::properties::plan"
    assert database.calls == [("add_materialized_column", "events", "mat_plan", True)]

    candidate.refresh_from_db()
    assert candidate.state == MaterializationState.PENDING
    assert candidate.column_name == "mat_plan"

    job.refresh_from_db()
    assert job.candidate == candidate
    assert job.state == BackfillJobState.RUNNING
    assert job.column_name == "mat_plan"
    assert job.cursor is None
    assert job.partition_lower is None
    assert job.partition_upper == "202402"
    assert job.attempts == 0


@pytest.mark.django_db
def test_new_rows_get_values_right_away(database: FakeDatabase):
    database.insert("events", "202401", {"plan": "free"})
    SchemaMutator.from_settings(database).apply(create_candidate("plan"))

    database.insert("events", "202401", {"plan": "pro"})

    # the old row is only written by the backfill
    assert database.values("events", "mat_plan") == {"202401": [None, "pro"]}


@pytest.mark.django_db
def test_apply_is_idempotent(database: FakeDatabase):
    database.insert("events", "202401", {"plan": "free"})
    candidate = create_candidate("plan")
    mutator = SchemaMutator.from_settings(database)

    mutator.apply(candidate)
    job = mutator.apply(candidate)

    assert [call[0] for call in database.calls] == ["add_materialized_column"]
    assert BackfillJob.objects.count() == 1
    assert job.column_name == "mat_plan"


@pytest.mark.django_db
def test_reuses_existing_column_for_property(database: FakeDatabase):
    database.add_column(
        "events",
        ColumnDefinition("mat_plan_legacy", "String", "MATERIALIZED", "", "column_materializer::properties::plan"),
    )
    candidate = create_candidate("plan")

    job = SchemaMutator.from_settings(database).apply(candidate)

    assert database.calls == []
    assert job.column_name == "mat_plan_legacy"
    candidate.refresh_from_db()
    assert candidate.column_name == "mat_plan_legacy"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "existing",
    [
        ColumnDefinition("mat_plan", "String"),
        ColumnDefinition("mat_plan", "String", "MATERIALIZED", "", "column_materializer::properties::other"),
        ColumnDefinition("mat_plan", "String", "DEFAULT", "", "column_materializer::properties::plan_"),
    ],
)
def test_conflicting_column_is_not_touched(database: FakeDatabase, existing: ColumnDefinition):
    database.add_column("events", existing)
    candidate = create_candidate("plan")

    with pytest.raises(SchemaConflict) as e:
        SchemaMutator.from_settings(database).apply(candidate)

    assert e.value.column_name == "mat_plan"
    assert database.get_columns("events") == {"mat_plan": existing}
    assert database.calls == []
    candidate.refresh_from_db()
    assert candidate.state == MaterializationState.NOT_MATERIALIZED
    assert not BackfillJob.objects.exists()


@pytest.mark.django_db
def test_person_columns(database: FakeDatabase):
    job = SchemaMutator.from_settings(database).apply(create_candidate("$email", table="person"))

    assert job.column_name == "pmat_$email"
    assert "pmat_$email" in database.get_columns("person")


@pytest.mark.django_db
def test_empty_table_has_nothing_to_backfill(database: FakeDatabase):
    job = SchemaMutator.from_settings(database).apply(create_candidate("plan"))

    assert job.partition_upper == ""
    assert not job.includes_partition("202401")


@pytest.mark.django_db
@freeze_time("2024-03-15")
def test_backfill_period_limits_partitions(database: FakeDatabase):
    for partition in ["202312", "202401", "202402", "202403"]:
        database.insert("events", partition, {"plan": "free"})

    job = SchemaMutator.from_settings(database, backfill_period_days=40).apply(create_candidate("plan"))

    assert job.partition_lower == "202402"
    assert [p for p in database.get_partitions("events") if job.includes_partition(p)] == ["202402", "202403"]


@freeze_time("2024-03-15")
def test_partition_lower_bound():
    assert get_partition_lower_bound(0, ["202401"]) is None
    assert get_partition_lower_bound(10, []) is None
    assert get_partition_lower_bound(10, ["202403"]) == "202403"
    assert get_partition_lower_bound(100, ["202310", "202403"]) == "202312"
    # ids that are not months can't be limited by time
    assert get_partition_lower_bound(10, ["all"]) is None
    assert get_partition_lower_bound(10, ["20240301"]) is None
