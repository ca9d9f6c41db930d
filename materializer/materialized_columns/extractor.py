import re
from collections.abc import Iterator, Mapping, Sequence, Set
from dataclasses import dataclass, field
from typing import Optional

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Function, Parenthesis, Statement, Token, TokenList

from materializer.clickhouse.columns import ColumnName, PropertyName, TableColumn
from materializer.clickhouse.query_log import QueryRecord
from materializer.exceptions import ParseError

EXTRACT_FUNCTION_RE = re.compile(r"^(JSONExtract\w*|JSONHas)$")

# these take the requested return type as their last argument, which is not part of the path
TYPED_EXTRACT_FUNCTIONS = {"JSONExtract", "JSONExtractKeysAndValues"}

QUOTE_CHARACTERS = {"'", '"', "`"}

# ClickHouse clause words sqlparse doesn't know, which must not be mistaken for a table alias
CLAUSE_WORDS = {
    "PREWHERE",
    "FINAL",
    "SAMPLE",
    "SETTINGS",
    "FORMAT",
    "GLOBAL",
    "ANY",
    "ALL",
    "ASOF",
    "SEMI",
    "ANTI",
    "ARRAY",
}


@dataclass(frozen=True)
class ExtractedQuery:
    table: str
    duration_ms: float
    read_bytes: int
    properties: tuple[PropertyName, ...] = ()
    # materialized columns the query already reads instead of extracting from the raw column
    materialized_columns: tuple[ColumnName, ...] = ()

    @property
    def is_materialized_hit(self) -> bool:
        return bool(self.materialized_columns)


@dataclass(frozen=True)
class TableReference:
    table: str
    alias: Optional[str] = None
    # how many parentheses (subqueries) deep the reference is
    depth: int = 0


@dataclass
class PropertyExtractor:
    """
    Finds which properties of the raw JSON column of a table are extracted by a query.

    Only calls that extract a single key from the configured source column are recognized, e.g.
    ``JSONExtractString(properties, '$current_url')`` or ``JSONExtractRaw(e.properties, 'plan')``. The queried table
    is the outermost table in a FROM or JOIN clause that has a source column, and calls on the columns of other
    joined tables are not counted.
    """

    source_columns: Mapping[str, TableColumn]
    materialized_columns: Mapping[str, Set[ColumnName]] = field(default_factory=dict)
    # physical table names (sharded or distributed tables) by the name they are configured under
    table_names: Mapping[str, str] = field(default_factory=dict)

    def resolve(self, table: str) -> str:
        return self.table_names.get(table, table)

    def extract(self, record: QueryRecord) -> ExtractedQuery:
        if not record.query or not record.query.strip():
            raise ParseError("empty query")

        sql = sqlparse.format(record.query, strip_comments=True).strip()
        statements = [statement for statement in sqlparse.parse(sql) if str(statement).strip()]
        if not statements:
            raise ParseError("no statement found")

        statement = statements[0]
        _check_well_formed(statement)

        if statement.get_type() != "SELECT":
            raise ParseError(f"unsupported statement type: {statement.get_type()}")

        references = find_table_references(statement)
        table = self._get_queried_table(references, record.table)
        if table is None:
            raise ParseError("could not determine the table being queried")

        source_column = self.source_columns.get(table)
        if source_column is None:
            return ExtractedQuery(table, record.duration_ms, record.read_bytes)

        tables_by_qualifier: dict[str, str] = {}
        for reference in references:
            tables_by_qualifier.setdefault(reference.table, self.resolve(reference.table))
            if reference.alias is not None:
                tables_by_qualifier[reference.alias] = self.resolve(reference.table)

        properties: dict[PropertyName, None] = {}
        for function in _iter_functions(statement):
            extracted = _get_extracted_property(function, source_column)
            if extracted is None:
                continue
            qualifier, property_name = extracted
            # qualifiers that aren't tables (like subquery aliases) read from the queried table
            if qualifier is not None and tables_by_qualifier.get(qualifier, table) != table:
                continue
            properties[property_name] = None

        hits = tuple(
            sorted(
                column
                for column in self.materialized_columns.get(table, ())
                if re.search(rf"(?<![\w$]){re.escape(column)}(?![\w$])", sql)
            )
        )

        return ExtractedQuery(
            table=table,
            duration_ms=record.duration_ms,
            read_bytes=record.read_bytes,
            properties=tuple(properties),
            materialized_columns=hits,
        )

    def _get_queried_table(self, references: list[TableReference], logged_table: Optional[str]) -> Optional[str]:
        known = [reference for reference in references if self.resolve(reference.table) in self.source_columns]
        if known:
            return self.resolve(min(known, key=lambda reference: reference.depth).table)
        if logged_table:
            return self.resolve(logged_table)
        if references:
            return self.resolve(min(references, key=lambda reference: reference.depth).table)
        return None


def _check_well_formed(statement: Statement) -> None:
    depth = 0
    for token in statement.flatten():
        if token.ttype in T.Error and token.value in QUOTE_CHARACTERS:
            raise ParseError("unterminated quoted string")
        if token.ttype in T.Punctuation:
            if token.value == "(":
                depth += 1
            elif token.value == ")":
                depth -= 1
                if depth < 0:
                    raise ParseError("unbalanced parentheses")
    if depth != 0:
        raise ParseError("unbalanced parentheses")


def _significant_tokens(token_list: TokenList) -> list[Token]:
    return [token for token in token_list.flatten() if not token.is_whitespace and token.ttype not in T.Comment]


def _is_name(token: Token) -> bool:
    # sqlparse lexes plenty of ordinary table names (events, default, ...) as keywords
    return token.ttype in T.Name or token.ttype in T.String.Symbol or token.ttype is T.Keyword


def _unquote_identifier(value: str) -> str:
    if len(value) >= 2 and value[0] in QUOTE_CHARACTERS and value[-1] == value[0]:
        return _unquote(value)
    return value


def _read_dotted_name(tokens: Sequence[Token], i: int) -> tuple[list[str], int]:
    parts = []
    while i < len(tokens) and _is_name(tokens[i]):
        parts.append(_unquote_identifier(tokens[i].value))
        if i + 1 < len(tokens) and tokens[i + 1].match(T.Punctuation, "."):
            i += 2
        else:
            i += 1
            break
    return parts, i


def _is_join(tokens: Sequence[Token], i: int) -> bool:
    token = tokens[i]
    if token.ttype is not T.Keyword or not token.normalized.endswith("JOIN"):
        return False
    # ARRAY JOIN unfolds an array expression, it doesn't join a table
    return not (i > 0 and tokens[i - 1].value.upper() == "ARRAY")


def _read_table_reference(tokens: Sequence[Token], i: int, depth: int) -> tuple[Optional[TableReference], int]:
    """
    Reads ``[database.]table [[AS] alias]`` starting at ``tokens[i]``. Subqueries and table functions are not table
    references: for those nothing is consumed, so the caller keeps walking into them.
    """
    parts, end = _read_dotted_name(tokens, i)
    if not parts or (end < len(tokens) and tokens[end].match(T.Punctuation, "(")):
        return None, i

    alias = None
    if end < len(tokens) and tokens[end].match(T.Keyword, "AS"):
        if end + 1 < len(tokens) and _is_name(tokens[end + 1]):
            alias = _unquote_identifier(tokens[end + 1].value)
            end += 2
    elif (
        end < len(tokens)
        and (tokens[end].ttype in T.Name or tokens[end].ttype in T.String.Symbol)
        and tokens[end].value.upper() not in CLAUSE_WORDS
    ):
        alias = _unquote_identifier(tokens[end].value)
        end += 1

    return TableReference(parts[-1], alias, depth), end


def find_table_references(statement: Statement) -> list[TableReference]:
    """Returns the tables of every FROM and JOIN clause in the statement, including those of subqueries."""
    tokens = _significant_tokens(statement)
    references: list[TableReference] = []
    # whether a SELECT was seen at each parenthesis depth, so that e.g. ``extract(YEAR FROM timestamp)`` is skipped
    select_seen = [False]

    i = 0
    while i < len(tokens):
        token = tokens[i]
        depth = len(select_seen) - 1
        if token.match(T.Punctuation, "("):
            select_seen.append(False)
        elif token.match(T.Punctuation, ")"):
            if depth > 0:
                select_seen.pop()
        elif token.ttype in T.Keyword.DML and token.normalized == "SELECT":
            select_seen[-1] = True
        elif (token.match(T.Keyword, "FROM") and select_seen[-1]) or _is_join(tokens, i):
            is_from = token.match(T.Keyword, "FROM")
            i += 1
            while True:
                reference, i = _read_table_reference(tokens, i, depth)
                if reference is None:
                    break
                references.append(reference)
                # FROM a, b
                if not (is_from and i < len(tokens) and tokens[i].match(T.Punctuation, ",")):
                    break
                i += 1
            continue
        i += 1

    return references


def _iter_functions(token_list: TokenList) -> Iterator[Function]:
    for token in token_list.tokens:
        if isinstance(token, Function):
            yield token
        if token.is_group:
            yield from _iter_functions(token)


def _split_arguments(function: Function) -> list[list[Token]]:
    parenthesis = next((token for token in function.tokens if isinstance(token, Parenthesis)), None)
    if parenthesis is None:
        return []

    arguments: list[list[Token]] = []
    current: list[Token] = []
    depth = 0
    for token in _significant_tokens(parenthesis)[1:-1]:
        if token.ttype in T.Punctuation and token.value in ("(", "["):
            depth += 1
        elif token.ttype in T.Punctuation and token.value in (")", "]"):
            depth -= 1
        elif token.match(T.Punctuation, ",") and depth == 0:
            arguments.append(current)
            current = []
            continue
        current.append(token)
    if current:
        arguments.append(current)
    return arguments


def _unquote(value: str) -> str:
    quote = value[0]
    inner = value[1:-1]
    return re.sub(r"\\(.)", r"\1", inner.replace(quote * 2, quote))


def _get_extracted_property(
    function: Function, source_column: TableColumn
) -> Optional[tuple[Optional[str], PropertyName]]:
    """Returns the table qualifier of the source column (if any) and the property a call extracts."""
    name = function.get_real_name()
    if name is None or not EXTRACT_FUNCTION_RE.match(name):
        return None

    arguments = _split_arguments(function)
    if len(arguments) < 2:
        return None

    column, *path = arguments
    parts, end = _read_dotted_name(column, 0)
    if end != len(column) or not parts or parts[-1] != source_column:
        return None
    qualifier = parts[-2] if len(parts) > 1 else None

    if name in TYPED_EXTRACT_FUNCTIONS:
        path = path[:-1]

    # nested paths (more than one key) can't be materialized as a single property
    if len(path) != 1 or len(path[0]) != 1 or path[0][0].ttype not in T.String.Single:
        return None

    property_name = _unquote(path[0][0].value)
    if not property_name:
        return None
    return qualifier, property_name
