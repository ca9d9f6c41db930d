import hashlib

import pytest

from materializer.clickhouse.columns import (
    ColumnDefinition,
    MaterializedColumn,
    MaterializedColumnDetails,
    TableInfo,
    get_table_infos,
    materialized_column_name,
)


def short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]


def test_column_names():
    assert materialized_column_name("events", "$current_url") == "mat_$current_url"
    assert materialized_column_name("events", "plan_type") == "mat_plan_type"
    assert materialized_column_name("person", "plan") == "pmat_plan"
    assert materialized_column_name("events", "plan", "person_properties") == "mat_pp_plan"
    assert materialized_column_name("events", "plan", "group2_properties") == "mat_gp2_plan"


def test_sanitized_names_get_a_hash_suffix():
    assert materialized_column_name("events", "plan type") == f"mat_plan_type_{short_hash('plan type')}"
    assert materialized_column_name("events", "plan-type") == f"mat_plan_type_{short_hash('plan-type')}"
    assert materialized_column_name("events", "plan type") != materialized_column_name("events", "plan-type")
    assert materialized_column_name("events", "Ünïcode") == f"mat__n_code_{short_hash('Ünïcode')}"


def test_long_names_are_truncated():
    name = materialized_column_name("events", "a" * 150)

    assert name == "mat_" + "a" * 100 + "_" + short_hash("a" * 150)
    assert name != materialized_column_name("events", "a" * 151)


def test_column_comments():
    details = MaterializedColumnDetails("person_properties", "plan")
    assert details.as_column_comment() == "column_materializer::person_properties::plan"
    assert MaterializedColumnDetails.from_column_comment(details.as_column_comment()) == details

    assert MaterializedColumnDetails.from_column_comment("column_materializer::plan") == MaterializedColumnDetails(
        "properties", "plan"
    )
    # property names may contain the separator
    assert MaterializedColumnDetails.from_column_comment(
        "column_materializer::properties::a::b"
    ) == MaterializedColumnDetails("properties", "a::b")

    with pytest.raises(ValueError):
        MaterializedColumnDetails.from_column_comment("something else")

    assert not MaterializedColumnDetails.is_materializer_comment(None)
    assert not MaterializedColumnDetails.is_materializer_comment("")
    assert not MaterializedColumnDetails.is_materializer_comment("column_materializer")


def test_column_definition_details():
    assert ColumnDefinition("plan", "String").materialized_details is None
    assert ColumnDefinition(
        "mat_plan", "String", "MATERIALIZED", "", "column_materializer::properties::plan"
    ).materialized_details == MaterializedColumnDetails("properties", "plan")


def test_materialized_column_matches():
    column = MaterializedColumn("mat_plan", MaterializedColumnDetails("properties", "plan"))
    comment = "column_materializer::properties::plan"

    assert column.matches(ColumnDefinition("mat_plan", "String", "MATERIALIZED", "", comment))
    assert not column.matches(ColumnDefinition("mat_plan", "String", "DEFAULT", "", comment))
    assert not column.matches(ColumnDefinition("mat_plan", "String", "MATERIALIZED", "", ""))
    assert not column.matches(ColumnDefinition("mat_plan2", "String", "MATERIALIZED", "", comment))


def test_column_expression():
    column = MaterializedColumn("mat_plan", MaterializedColumnDetails("properties", "plan"))

    assert column.get_expression_and_parameters() == (
        "replaceRegexpAll(JSONExtractRaw(properties, %(property)s), '^\"|\"$', '')",
        {"property": "plan"},
    )


def test_table_infos():
    tables = get_table_infos(
        {
            "events": {"source_column": "properties", "data_table": "sharded_events", "dist_table": "events"},
            "person": {},
        }
    )

    assert tables["events"] == TableInfo("events", "properties", "sharded_events", "events")
    assert tables["events"].is_sharded
    assert tables["events"].read_table == "events"
    assert tables["person"] == TableInfo("person", "properties", "person")
    assert not tables["person"].is_sharded
    assert tables["person"].read_table == "person"

    with pytest.raises(ValueError):
        get_table_infos({"events": {"source_column": "payload"}})


def test_table_infos_from_settings():
    assert set(get_table_infos()) == {"events", "person"}
