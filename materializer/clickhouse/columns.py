from __future__ import annotations

import re
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from django.conf import settings

ColumnName = str
PropertyName = str
TableColumn = str

DEFAULT_TABLE_COLUMN: TableColumn = "properties"

SHORT_TABLE_COLUMN_NAME = {
    "properties": "p",
    "group_properties": "gp",
    "person_properties": "pp",
    "group0_properties": "gp0",
    "group1_properties": "gp1",
    "group2_properties": "gp2",
    "group3_properties": "gp3",
    "group4_properties": "gp4",
}

# ClickHouse does not limit identifier length, but very long names make DDL unreadable
MAX_PROPERTY_NAME_LENGTH = 100


def trim_quotes_expr(expr: str) -> str:
    return f"replaceRegexpAll({expr}, '^\"|\"$', '')"


def quote_identifier(name: str) -> str:
    return "`" + name.replace("\\", "\\\\").replace("`", "\\`") + "`"


@dataclass(frozen=True)
class MaterializedColumnDetails:
    table_column: TableColumn
    property_name: PropertyName

    COMMENT_PREFIX = "column_materializer"
    COMMENT_SEPARATOR = "::"

    def as_column_comment(self) -> str:
        return self.COMMENT_SEPARATOR.join([self.COMMENT_PREFIX, self.table_column, self.property_name])

    @classmethod
    def from_column_comment(cls, comment: str) -> MaterializedColumnDetails:
        match comment.split(cls.COMMENT_SEPARATOR, 2):
            # "column_materializer::property" deals with the default table column.
            case [cls.COMMENT_PREFIX, property_name]:
                return MaterializedColumnDetails(DEFAULT_TABLE_COLUMN, property_name)
            case [cls.COMMENT_PREFIX, table_column, property_name]:
                return MaterializedColumnDetails(table_column, property_name)
            case _:
                raise ValueError(f"unexpected comment format: {comment!r}")

    @classmethod
    def is_materializer_comment(cls, comment: str | None) -> bool:
        return bool(comment) and comment.startswith(cls.COMMENT_PREFIX + cls.COMMENT_SEPARATOR)


@dataclass(frozen=True)
class ColumnDefinition:
    """A column as described by ``system.columns``."""

    name: ColumnName
    type: str
    default_kind: str = ""
    default_expression: str = ""
    comment: str = ""

    @property
    def materialized_details(self) -> MaterializedColumnDetails | None:
        if not MaterializedColumnDetails.is_materializer_comment(self.comment):
            return None
        return MaterializedColumnDetails.from_column_comment(self.comment)


@dataclass(frozen=True)
class MaterializedColumn:
    name: ColumnName
    details: MaterializedColumnDetails

    type = "String"
    default_kind = "MATERIALIZED"

    def get_expression_and_parameters(self) -> tuple[str, dict[str, Any]]:
        return (
            trim_quotes_expr(f"JSONExtractRaw({self.details.table_column}, %(property)s)"),
            {"property": self.details.property_name},
        )

    def matches(self, definition: ColumnDefinition) -> bool:
        """Whether an existing column is this materialized column (as opposed to some unrelated column.)"""
        return (
            definition.name == self.name
            and definition.materialized_details == self.details
            and definition.default_kind == self.default_kind
        )


@dataclass(frozen=True)
class TableInfo:
    name: str
    source_column: TableColumn
    data_table: str
    dist_table: str | None = None

    @property
    def read_table(self) -> str:
        return self.dist_table or self.data_table

    @property
    def is_sharded(self) -> bool:
        return self.dist_table is not None and self.dist_table != self.data_table


def get_table_infos(config: Mapping[str, Mapping[str, str]] | None = None) -> dict[str, TableInfo]:
    if config is None:
        config = settings.MATERIALIZE_COLUMNS_TABLES

    table_infos = {}
    for name, table_config in config.items():
        source_column = table_config.get("source_column", DEFAULT_TABLE_COLUMN)
        if source_column not in SHORT_TABLE_COLUMN_NAME:
            raise ValueError(f"Invalid source_column={source_column} for materialisation of {name}")
        table_infos[name] = TableInfo(
            name=name,
            source_column=source_column,
            data_table=table_config.get("data_table", name),
            dist_table=table_config.get("dist_table"),
        )
    return table_infos


def get_minmax_index_name(column: ColumnName) -> str:
    return f"minmax_{column}"


def materialized_column_name(
    table: str,
    property: PropertyName,
    table_column: TableColumn = DEFAULT_TABLE_COLUMN,
) -> ColumnName:
    """
    Returns a sanitized column name to use for the materialized column of ``property``.

    The name only depends on its inputs. Whenever sanitizing the property loses information, a short hash of the raw
    property name is appended so that properties which only differ in the replaced characters get distinct columns.
    """
    prefix = "pmat_" if table == "person" else "mat_"

    if table_column != DEFAULT_TABLE_COLUMN:
        prefix += f"{SHORT_TABLE_COLUMN_NAME[table_column]}_"

    property_str = re.sub("[^0-9a-zA-Z$]", "_", property)[:MAX_PROPERTY_NAME_LENGTH]
    if property_str != property:
        digest = hashlib.sha1(property.encode("utf-8")).hexdigest()[:8]
        property_str = f"{property_str}_{digest}"

    return f"{prefix}{property_str}"
