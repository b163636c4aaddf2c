from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for error logging.

ErrorRecord is the structured error log entry written as JSON Lines by
ErrorLogBuffer. ``row=-1`` is the sentinel for import-level errors where no
specific worksheet row applies (missing table, merge failure, ...).
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: Spreadsheet file label being imported
        table: Target table (schema.table)
        row: Worksheet row number (1-based). -1 for import-level errors
        error_type: Error classification in UPPER_SNAKE_CASE format
        message: Human readable description (same text as ImportResult.errors)
    """
    timestamp: str  # ISO8601 UTC
    file: str
    table: str
    row: int  # 行番号。不明な場合 -1 許容
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(file: str, table: str, row: int, error_type: str, message: str) -> ErrorRecord:
        """Create a new ErrorRecord with current UTC timestamp."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            table=table,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        """Serialize ErrorRecord to JSON Lines format (no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
