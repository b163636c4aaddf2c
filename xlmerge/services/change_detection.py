from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from ..models.partition import PartitionResult
from ..models.row_data import TransformedRow

"""Content-based change detection and insert/update/unchanged partitioning.

Equality is null-aware and textual: NULL and "" compare equal, everything
else compares as the text PostgreSQL would print for the column. The snapshot
is read as ``col::text`` and incoming values are rendered per column type
(boolean, date, timestamp), so a row classified as unchanged here is also left
alone by the merge SQL (COALESCE(x::text, '') <> COALESCE(y::text, '')).
"""

__all__ = [
    "ExistingRecordIndex",
    "comparable",
    "pg_text",
    "values_differ",
    "build_existing_index",
    "changed_columns",
    "partition",
]

logger = logging.getLogger(__name__)

ExistingRecordIndex = dict[str, dict[str, Any]]
ColumnTypes = Mapping[str, str]

_INSERT = "insert"
_UPDATE = "update"
_UNCHANGED = "unchanged"

_TRUE_TEXTS = {"true", "t", "yes", "y", "on", "1"}
_FALSE_TEXTS = {"false", "f", "no", "n", "off", "0"}


def _format_timestamp(value: datetime) -> str:
    text = value.strftime("%Y-%m-%d %H:%M:%S")
    if value.microsecond:
        # PostgreSQL は末尾の 0 を出さない
        text += f".{value.microsecond:06d}".rstrip("0")
    return text


def _parse_datetime(text: str) -> datetime | None:
    try:
        return datetime.fromisoformat(text.strip())
    except ValueError:
        return None


def pg_text(value: Any, data_type: str | None = None) -> str | None:
    """Render ``value`` as PostgreSQL prints it once stored in a ``data_type`` column.

    Only boolean, date and timestamp without time zone are normalized; any
    other type (or text that does not parse) is compared as str().
    """
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, datetime):
        text = _format_timestamp(value)
    elif isinstance(value, date):
        text = value.isoformat()
    else:
        text = str(value)

    if data_type == "boolean":
        lowered = text.strip().lower()
        if lowered in _TRUE_TEXTS:
            return "true"
        if lowered in _FALSE_TEXTS:
            return "false"
    elif data_type == "timestamp without time zone":
        parsed = _parse_datetime(text)
        if parsed is not None and parsed.tzinfo is None:
            return _format_timestamp(parsed)
    elif data_type == "date":
        parsed = _parse_datetime(text)
        if parsed is not None:
            return parsed.date().isoformat()
    return text


def comparable(value: Any, data_type: str | None = None) -> str:
    return pg_text(value, data_type) or ""


def values_differ(new: Any, old: Any, data_type: str | None = None) -> bool:
    """``new`` is an incoming value, ``old`` the snapshot's ``::text`` rendering."""
    return comparable(new, data_type) != comparable(old, data_type)


def _key_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_existing_index(
    snapshot_rows: Iterable[Mapping[str, Any]],
    business_key_column: str,
) -> ExistingRecordIndex:
    """Index snapshot rows by business key text (blank keys are ignored)."""
    index: ExistingRecordIndex = {}
    for row in snapshot_rows:
        key = _key_text(row.get(business_key_column))
        if key is None:
            continue
        if key in index:
            logger.warning("business key %r occurs more than once in target; using first row", key)
            continue
        index[key] = dict(row)
    return index


def changed_columns(
    row: TransformedRow,
    existing: Mapping[str, Any],
    business_key_column: str,
    column_types: ColumnTypes | None = None,
) -> list[str]:
    """Non-key columns whose value differs from the snapshot (absent == NULL)."""
    types = column_types or {}
    return [
        column
        for column, value in row.values.items()
        if column != business_key_column
        and values_differ(value, existing.get(column), types.get(column))
    ]


def partition(
    rows: Iterable[TransformedRow],
    existing_index: Mapping[str, Mapping[str, Any]],
    business_key_column: str,
    surrogate_key_column: str | None = None,
    column_types: ColumnTypes | None = None,
) -> PartitionResult:
    """Classify rows as insert / update / unchanged against the snapshot.

    One dictionary lookup per row. A later row with the same business key
    supersedes the earlier one, so neither set ever holds a key twice.
    Update rows carry the snapshot's surrogate key value forward.
    ``column_types`` (column -> information_schema data_type) selects how
    incoming values are rendered before comparison.
    """
    decisions: dict[str, tuple[str, TransformedRow]] = {}
    skipped = 0
    superseded = 0

    for row in rows:
        key = _key_text(row.business_key)
        if key is None:
            skipped += 1
            continue
        if key in decisions:
            superseded += 1
            logger.warning(
                "business key %r repeated at row=%d; later row wins", key, row.row_number
            )

        existing = existing_index.get(key)
        if existing is None:
            decisions[key] = (_INSERT, row)
            continue

        if changed_columns(row, existing, business_key_column, column_types):
            if surrogate_key_column is not None:
                row = row.with_surrogate(existing.get(surrogate_key_column))
            decisions[key] = (_UPDATE, row)
        else:
            decisions[key] = (_UNCHANGED, row)

    inserts = tuple(r for kind, r in decisions.values() if kind == _INSERT)
    updates = tuple(r for kind, r in decisions.values() if kind == _UPDATE)
    unchanged = tuple(r for kind, r in decisions.values() if kind == _UNCHANGED)
    return PartitionResult(
        inserts=inserts,
        updates=updates,
        unchanged=unchanged,
        skipped_blank_keys=skipped,
        superseded=superseded,
    )
