from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "ForeignKeyDescriptor",
]


@dataclass(frozen=True)
class ForeignKeyDescriptor:
    """Declares that ``column`` must exist in ``ref_schema.ref_table.ref_column``."""
    column: str
    ref_schema: str
    ref_table: str
    ref_column: str

    @property
    def qualified_table(self) -> str:
        return f"{self.ref_schema}.{self.ref_table}"
