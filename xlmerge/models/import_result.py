from __future__ import annotations

from dataclasses import asdict, dataclass, field

"""Result surface returned by run_import.

Every failure ends up in ``errors``; nothing is raised past this boundary.
"""

__all__ = [
    "ImportResult",
]


@dataclass
class ImportResult:
    """Outcome of a single spreadsheet import.

    ``success`` is False only when a fatal error occurred (in which case the
    transaction was rolled back and ``rows_written`` is 0). Row-level FK
    rejections leave ``success`` True and are listed in ``errors``.
    """
    table: str = ""
    success: bool = False
    rows_written: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    rejected: int = 0
    dry_run: bool = False
    elapsed_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
