from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from ..models.foreign_key import ForeignKeyDescriptor
from .batch_insert import qualified_name, quote_ident

"""Schema / foreign-key introspection and snapshot reads (PostgreSQL).

Thin wrapper around a psycopg2 cursor; every method is a single query.
"""

__all__ = [
    "SchemaRepository",
]

logger = logging.getLogger(__name__)

_COLUMNS_SQL = """
SELECT column_name
FROM information_schema.columns
WHERE table_schema = %s
  AND table_name = %s
ORDER BY ordinal_position
"""

_COLUMN_TYPES_SQL = """
SELECT column_name, data_type
FROM information_schema.columns
WHERE table_schema = %s
  AND table_name = %s
"""

_PRIMARY_KEY_SQL = """
SELECT kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.constraint_schema = kcu.constraint_schema
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND tc.table_schema = %s
  AND tc.table_name = %s
ORDER BY kcu.ordinal_position
"""

_FOREIGN_KEYS_SQL = """
SELECT kcu.column_name,
       ccu.table_schema AS ref_schema,
       ccu.table_name   AS ref_table,
       ccu.column_name  AS ref_column
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.constraint_schema = kcu.constraint_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name
 AND ccu.constraint_schema = tc.constraint_schema
WHERE tc.constraint_type = 'FOREIGN KEY'
  AND tc.table_schema = %s
  AND tc.table_name = %s
ORDER BY kcu.column_name
"""


class SchemaRepository:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    def get_columns(self, schema: str, table: str) -> list[str]:
        """Column names in ordinal order; an empty list means the table does not exist."""
        self._cursor.execute(_COLUMNS_SQL, (schema, table))
        return [r[0] for r in self._cursor.fetchall()]

    def get_column_types(self, schema: str, table: str) -> dict[str, str]:
        """information_schema ``data_type`` per column (e.g. "boolean", "date")."""
        self._cursor.execute(_COLUMN_TYPES_SQL, (schema, table))
        return {name: data_type for name, data_type in self._cursor.fetchall()}

    def get_primary_key(self, schema: str, table: str) -> list[str]:
        self._cursor.execute(_PRIMARY_KEY_SQL, (schema, table))
        return [r[0] for r in self._cursor.fetchall()]

    def get_foreign_keys(self, schema: str, table: str) -> dict[str, ForeignKeyDescriptor]:
        self._cursor.execute(_FOREIGN_KEYS_SQL, (schema, table))
        result: dict[str, ForeignKeyDescriptor] = {}
        for column, ref_schema, ref_table, ref_column in self._cursor.fetchall():
            # 複合 FK は未対応: 列ごとに最後の参照先を採用
            result[column] = ForeignKeyDescriptor(
                column=column,
                ref_schema=ref_schema,
                ref_table=ref_table,
                ref_column=ref_column,
            )
        return result

    def foreign_key_exists(
        self, ref_schema: str, ref_table: str, ref_column: str, value: Any
    ) -> bool:
        sql = (
            f"SELECT 1 FROM {qualified_name(ref_schema, ref_table)} "
            f"WHERE {quote_ident(ref_column)}::text = %s LIMIT 1"
        )
        self._cursor.execute(sql, (str(value),))
        return self._cursor.fetchone() is not None

    def existing_reference_values(
        self, descriptor: ForeignKeyDescriptor, values: Iterable[str]
    ) -> set[str]:
        """Subset of ``values`` present in the referenced column (one round-trip)."""
        wanted = [str(v) for v in values]
        if not wanted:
            return set()
        col = quote_ident(descriptor.ref_column)
        sql = (
            f"SELECT DISTINCT {col}::text "
            f"FROM {qualified_name(descriptor.ref_schema, descriptor.ref_table)} "
            f"WHERE {col}::text = ANY(%s)"
        )
        self._cursor.execute(sql, (wanted,))
        return {r[0] for r in self._cursor.fetchall()}

    def fetch_snapshot(
        self, schema: str, table: str, columns: Sequence[str]
    ) -> list[dict[str, Any]]:
        """Read ``columns`` of every row of the target table as dicts of text.

        Values come back as PostgreSQL renders them (``col::text``), the same
        form the merge SQL compares.
        """
        cols_sql = ", ".join(f"{quote_ident(c)}::text" for c in columns)
        self._cursor.execute(f"SELECT {cols_sql} FROM {qualified_name(schema, table)}")
        names = list(columns)
        rows = [dict(zip(names, r)) for r in self._cursor.fetchall()]
        logger.debug("snapshot table=%s.%s rows=%d", schema, table, len(rows))
        return rows
