class MaterializerError(Exception):
    pass


class ParseError(MaterializerError):
    """The query could not be understood well enough to extract property accesses from it."""


class SchemaConflict(MaterializerError):
    """A column with the name derived for a property already exists, but was not created for that property."""

    def __init__(self, table: str, column_name: str, reason: str):
        super().__init__(f"column {column_name!r} on {table!r} conflicts with the requested materialization: {reason}")
        self.table = table
        self.column_name = column_name
        self.reason = reason


class BackfillChunkError(MaterializerError):
    """A transient failure while backfilling a chunk of partitions. The chunk can safely be retried."""


class LockContention(MaterializerError):
    """Another materialization cycle currently holds the lease."""
