from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Union

"""Row models for the spreadsheet -> PostgreSQL merge tool.

RawRow is what the reader hands over (header/text pairs, ``None`` marks an
empty cell). TransformedRow is the typed row keyed by canonical column name
that flows through FK validation, change detection and the merge.
"""

__all__ = [
    "CellValue",
    "RawRow",
    "TransformedRow",
]

CellValue = Union[None, int, str]


@dataclass(frozen=True)
class RawRow:
    """One worksheet data row as read from the workbook.

    ``row_number`` is the 1-based position among used rows (header row = 1).
    Header strings are neither unique nor canonical.
    """
    row_number: int
    cells: tuple[tuple[str, str | None], ...]

    @property
    def headers(self) -> list[str]:
        return [h for h, _ in self.cells]


@dataclass(frozen=True)
class TransformedRow:
    """Row after coercion, keyed by canonical database column.

    ``values`` always contains every column present in the mapping.
    ``surrogate_id`` is only set for rows routed to the update set.
    """
    row_number: int
    values: dict[str, CellValue]
    business_key: str | None = None
    surrogate_id: Any = None

    def with_surrogate(self, surrogate_id: Any) -> TransformedRow:
        return replace(self, surrogate_id=surrogate_id)
