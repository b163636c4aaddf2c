from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .row_data import TransformedRow

"""Per-row validation outcome.

FK violations are expected and common, so rows are never rejected by raising:
the validator returns either RowAccepted or RowRejected and the caller
collects them.
"""

__all__ = [
    "RowAccepted",
    "RowRejected",
    "RowOutcome",
]


@dataclass(frozen=True)
class RowAccepted:
    row: TransformedRow

    @property
    def accepted(self) -> bool:
        return True


@dataclass(frozen=True)
class RowRejected:
    row_number: int
    reasons: tuple[str, ...]

    @property
    def accepted(self) -> bool:
        return False


RowOutcome = Union[RowAccepted, RowRejected]
