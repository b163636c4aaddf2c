from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import chain
from typing import Any

from ..models.row_data import TransformedRow
from ..services.errors import TransactionError
from .batch_insert import BatchInsertError, BatchMetrics, batch_insert, qualified_name, quote_ident

"""Staged, set-based merge of transformed rows into the target table.

Flow (all inside the caller's transaction):
1. CREATE TEMP TABLE ... AS SELECT * FROM target WITH NO DATA (same shape)
   plus an insert flag column
2. execute_values into the staging table; the flag carries the partition's
   decision for every row
3. UPDATE target FROM the flagged-update rows, matched on the surrogate key
   when known, else on the trimmed business key; only rows where a non-key
   column differs, and only differing columns get the new value
4. INSERT INTO target exactly the flagged-insert rows

The database never re-decides insert versus update. The business key is part
of the INSERT column list and never part of the UPDATE SET clause. The
surrogate key is never written.
"""

__all__ = [
    "STAGE_TABLE",
    "INSERT_FLAG_COLUMN",
    "ISOLATION_LEVELS",
    "MergeError",
    "MergeResult",
    "transaction",
    "change_predicate",
    "apply_merge",
    "append_rows",
]

logger = logging.getLogger(__name__)

STAGE_TABLE = "_xlmerge_stage"
INSERT_FLAG_COLUMN = "_xlmerge_insert"

ISOLATION_LEVELS = {
    "read_committed": "READ COMMITTED",
    "repeatable_read": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}


class MergeError(TransactionError):
    """Staging or apply failure. The surrounding transaction must roll back."""

    error_type = "MERGE_ERROR"


@dataclass(frozen=True)
class MergeResult:
    inserted: int = 0
    updated: int = 0

    @property
    def rows_written(self) -> int:
        return self.inserted + self.updated


@contextmanager
def transaction(
    connection: Any,
    *,
    commit: bool = True,
    isolation_level: str | None = None,
) -> Iterator[Any]:
    """Yield a cursor inside one transaction.

    Commits on normal exit (rolls back instead when ``commit`` is False, used
    for dry runs), rolls back on any exception, always closes the cursor.
    """
    cursor = connection.cursor()
    try:
        if isolation_level is not None:
            # 最初の文である必要がある
            cursor.execute(f"SET TRANSACTION ISOLATION LEVEL {ISOLATION_LEVELS[isolation_level]}")
        yield cursor
        if commit:
            connection.commit()
        else:
            connection.rollback()
    except BaseException:
        connection.rollback()
        raise
    finally:
        cursor.close()


def change_predicate(column: str, target_alias: str = "t", source_alias: str = "s") -> str:
    """Null-aware inequality: NULL and '' are equal, everything else compares as text."""
    col = quote_ident(column)
    return (
        f"COALESCE({target_alias}.{col}::text, '') <> "
        f"COALESCE({source_alias}.{col}::text, '')"
    )


def _staged_columns(
    columns: Sequence[str], business_key_column: str, surrogate_key_column: str | None
) -> tuple[list[str], list[str]]:
    """Return (data columns incl. business key, staging columns incl. the insert flag)."""
    data_columns = [business_key_column]
    for c in columns:
        if c != business_key_column and c != surrogate_key_column and c not in data_columns:
            data_columns.append(c)
    staging_columns = list(data_columns)
    if surrogate_key_column is not None:
        staging_columns.append(surrogate_key_column)
    staging_columns.append(INSERT_FLAG_COLUMN)
    return data_columns, staging_columns


def _stage_values(
    row: TransformedRow,
    data_columns: Sequence[str],
    surrogate_key_column: str | None,
    is_insert: bool,
) -> list[Any]:
    values = [row.values.get(c) for c in data_columns]
    if surrogate_key_column is not None:
        values.append(row.surrogate_id)
    values.append(is_insert)
    return values


def _log_batch(metrics: BatchMetrics) -> None:
    logger.debug("staged rows=%d elapsed=%.3fs", metrics.batch_size, metrics.elapsed_seconds)


def apply_merge(
    cursor: Any,
    schema: str,
    table: str,
    columns: Sequence[str],
    inserts: Sequence[TransformedRow],
    updates: Sequence[TransformedRow],
    business_key_column: str,
    *,
    surrogate_key_column: str | None = None,
    page_size: int = 1000,
) -> MergeResult:
    """Stage the partitioned rows and apply them to ``schema.table``.

    Parameters
    ----------
    cursor: psycopg2 cursor of the import transaction
    columns: mapped canonical columns to write
    inserts: rows classified as new; each one is inserted
    updates: rows classified as changed; matched and updated, never inserted
    business_key_column: match key, included in INSERT, excluded from SET
    surrogate_key_column: physical primary key carried by update rows

    Raises
    ------
    MergeError: on any database failure (the caller rolls back)
    """
    if not inserts and not updates:
        return MergeResult()

    target = qualified_name(schema, table)
    stage = quote_ident(STAGE_TABLE)
    flag = quote_ident(INSERT_FLAG_COLUMN)
    data_columns, staging_columns = _staged_columns(
        columns, business_key_column, surrogate_key_column
    )
    non_key = data_columns[1:]
    bk = quote_ident(business_key_column)
    staged = chain(
        (_stage_values(r, data_columns, surrogate_key_column, True) for r in inserts),
        (_stage_values(r, data_columns, surrogate_key_column, False) for r in updates),
    )

    try:
        cursor.execute(f"DROP TABLE IF EXISTS pg_temp.{stage}")
        cursor.execute(
            f"CREATE TEMP TABLE {stage} ON COMMIT DROP AS "
            f"SELECT * FROM {target} WITH NO DATA"
        )
        cursor.execute(f"ALTER TABLE {stage} ADD COLUMN {flag} boolean NOT NULL DEFAULT false")
        batch_insert(
            cursor,
            stage,
            staging_columns,
            staged,
            page_size=page_size,
            metrics_callback=_log_batch,
        )

        updated = 0
        if updates and non_key:
            if surrogate_key_column is not None:
                sk = quote_ident(surrogate_key_column)
                match = f"t.{sk} = s.{sk}"
            else:
                # 既存側のキーは前後空白を除いて照合する
                match = f"btrim(t.{bk}::text) = s.{bk}::text"
            set_clause = ", ".join(
                f"{quote_ident(c)} = CASE WHEN {change_predicate(c)} "
                f"THEN s.{quote_ident(c)} ELSE t.{quote_ident(c)} END"
                for c in non_key
            )
            changed = " OR ".join(change_predicate(c) for c in non_key)
            cursor.execute(
                f"UPDATE {target} AS t SET {set_clause} "
                f"FROM {stage} AS s WHERE NOT s.{flag} AND {match} AND ({changed})"
            )
            updated = max(cursor.rowcount, 0)

        inserted = 0
        if inserts:
            insert_cols = ", ".join(quote_ident(c) for c in data_columns)
            select_cols = ", ".join(f"s.{quote_ident(c)}" for c in data_columns)
            cursor.execute(
                f"INSERT INTO {target} ({insert_cols}) "
                f"SELECT {select_cols} FROM {stage} AS s WHERE s.{flag}"
            )
            inserted = max(cursor.rowcount, 0)
    except BatchInsertError as e:
        raise MergeError(f"staging failed for {schema}.{table}: {e}") from e
    except Exception as e:
        raise MergeError(f"merge failed for {schema}.{table}: {e}") from e

    logger.debug(
        "merge table=%s.%s staged=%d inserted=%d updated=%d",
        schema, table, len(inserts) + len(updates), inserted, updated,
    )
    return MergeResult(inserted=inserted, updated=updated)


def append_rows(
    cursor: Any,
    schema: str,
    table: str,
    columns: Sequence[str],
    rows: Sequence[TransformedRow],
    *,
    page_size: int = 1000,
) -> MergeResult:
    """Insert-only mode: append every row without any matching."""
    try:
        result = batch_insert(
            cursor,
            qualified_name(schema, table),
            list(columns),
            ([r.values.get(c) for c in columns] for r in rows),
            page_size=page_size,
            metrics_callback=_log_batch,
        )
    except BatchInsertError as e:
        raise MergeError(f"insert failed for {schema}.{table}: {e}") from e
    return MergeResult(inserted=result.inserted_rows)
