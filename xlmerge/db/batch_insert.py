from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from psycopg2.extras import execute_values

"""DB batch insert.

Batch INSERT through psycopg2.extras.execute_values. Used to fill the merge
staging table and, in insert-only mode, to append rows to the target table
directly. Table and column names are quoted here; values always travel as
parameters.
"""

__all__ = [
    "BatchInsertError",
    "BatchMetrics",
    "InsertResult",
    "quote_ident",
    "qualified_name",
    "batch_insert",
]


class BatchInsertError(Exception):
    pass


@dataclass(frozen=True)
class BatchMetrics:
    """Metrics data for a single batch insert operation."""
    batch_size: int  # Number of rows in this batch
    elapsed_seconds: float  # Time spent on execute_values call
    start_time: float  # Start timestamp (time.time())
    end_time: float  # End timestamp (time.time())


@dataclass(frozen=True)
class InsertResult:
    inserted_rows: int


def quote_ident(name: str) -> str:
    """Double-quote an SQL identifier (embedded quotes are doubled)."""
    return '"' + name.replace('"', '""') + '"'


def qualified_name(schema: str | None, table: str) -> str:
    if schema:
        return f"{quote_ident(schema)}.{quote_ident(table)}"
    return quote_ident(table)


def batch_insert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    page_size: int = 1000,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> InsertResult:
    """Perform batched INSERT using psycopg2.extras.execute_values.

    Parameters
    ----------
    cursor: psycopg2 cursor
    table: target table, already quoted/qualified (see qualified_name)
    columns: unquoted column names
    rows: row value sequences in ``columns`` order
    page_size: execute_values page_size
    metrics_callback: receives BatchMetrics after the call. Not invoked for an
        empty ``rows`` (the function returns early).
    """
    rows_list = list(rows)
    if not rows_list:
        return InsertResult(inserted_rows=0)

    cols_sql = ",".join(quote_ident(c) for c in columns)
    base_sql = f"INSERT INTO {table} ({cols_sql}) VALUES %s"

    start_time = time.time()
    try:
        execute_values(cursor, base_sql, rows_list, page_size=page_size)
    except Exception as e:
        raise BatchInsertError(str(e)) from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return InsertResult(inserted_rows=len(rows_list))
