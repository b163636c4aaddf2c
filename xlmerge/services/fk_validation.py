from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from ..models.foreign_key import ForeignKeyDescriptor
from ..models.row_data import TransformedRow
from ..models.row_outcome import RowAccepted, RowOutcome, RowRejected

"""Foreign-key validation of transformed rows.

A row is admitted only if every non-null value of a column carrying a
ForeignKeyDescriptor exists in the referenced table/column. Lookups are
deduplicated: prefetch() issues one query per FK column for the distinct
values of the whole batch, later checks are served from the cache.
"""

__all__ = [
    "ReferenceLookup",
    "ForeignKeyValidator",
    "fk_violation_message",
]

logger = logging.getLogger(__name__)


class ReferenceLookup(Protocol):
    def existing_reference_values(
        self, descriptor: ForeignKeyDescriptor, values: Iterable[str]
    ) -> set[str]:
        ...

    def foreign_key_exists(
        self, ref_schema: str, ref_table: str, ref_column: str, value: Any
    ) -> bool:
        ...


def fk_violation_message(descriptor: ForeignKeyDescriptor, value: object) -> str:
    return (
        f"FK violation: {descriptor.column}={value} not found in {descriptor.qualified_table}"
    )


class ForeignKeyValidator:
    """Validates rows against a table's FK descriptors (fetched once per import)."""

    def __init__(
        self,
        foreign_keys: Mapping[str, ForeignKeyDescriptor],
        lookup: ReferenceLookup,
    ) -> None:
        self._foreign_keys = dict(foreign_keys)
        self._lookup = lookup
        # column -> {value: exists}
        self._cache: dict[str, dict[str, bool]] = {}
        self.lookups_issued = 0

    @property
    def foreign_keys(self) -> dict[str, ForeignKeyDescriptor]:
        return dict(self._foreign_keys)

    def _check_values(self, descriptor: ForeignKeyDescriptor, values: set[str]) -> None:
        cache = self._cache.setdefault(descriptor.column, {})
        pending = {v for v in values if v not in cache}
        if not pending:
            return
        self.lookups_issued += 1
        found = self._lookup.existing_reference_values(descriptor, sorted(pending))
        for v in pending:
            cache[v] = v in found

    def prefetch(self, rows: Iterable[TransformedRow]) -> None:
        """Resolve existence of every distinct (column, value) pair in one pass."""
        wanted: dict[str, set[str]] = {}
        for row in rows:
            for column in self._foreign_keys:
                value = row.values.get(column)
                if value is not None:
                    wanted.setdefault(column, set()).add(str(value))
        for column, values in wanted.items():
            self._check_values(self._foreign_keys[column], values)
        logger.debug(
            "fk prefetch columns=%d distinct_values=%d",
            len(wanted), sum(len(v) for v in wanted.values()),
        )

    def exists(self, descriptor: ForeignKeyDescriptor, value: object) -> bool:
        """Cached existence check; values not prefetched cost one single-value lookup."""
        if value is None:
            return True
        text = str(value)
        cache = self._cache.setdefault(descriptor.column, {})
        if text not in cache:
            self.lookups_issued += 1
            cache[text] = self._lookup.foreign_key_exists(
                descriptor.ref_schema, descriptor.ref_table, descriptor.ref_column, text
            )
        return cache[text]

    def validate(self, row: TransformedRow) -> RowOutcome:
        """Accept the row or reject it on the first FK violation (nulls always pass)."""
        for column, descriptor in self._foreign_keys.items():
            if column not in row.values:
                continue
            value = row.values[column]
            if value is None:
                continue
            if not self.exists(descriptor, value):
                return RowRejected(
                    row_number=row.row_number,
                    reasons=(fk_violation_message(descriptor, value),),
                )
        return RowAccepted(row)
