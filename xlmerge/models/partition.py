from __future__ import annotations

from dataclasses import dataclass

from .row_data import TransformedRow

__all__ = [
    "PartitionResult",
]


@dataclass(frozen=True)
class PartitionResult:
    """Insert / update / unchanged split of one import's transformed rows.

    The three tuples are disjoint. ``superseded`` counts input rows replaced by a
    later row carrying the same business key.
    """
    inserts: tuple[TransformedRow, ...] = ()
    updates: tuple[TransformedRow, ...] = ()
    unchanged: tuple[TransformedRow, ...] = ()
    skipped_blank_keys: int = 0
    superseded: int = 0
