"""Domain models for the spreadsheet -> PostgreSQL merge tool.

This package contains the domain model classes used throughout the application:
configuration, raw and transformed rows, FK descriptors, per-row outcomes,
the upsert partition and the import result.
"""

from .config_models import DatabaseConfig, ImportConfig
from .error_record import ErrorRecord
from .foreign_key import ForeignKeyDescriptor
from .import_result import ImportResult
from .partition import PartitionResult
from .row_data import CellValue, RawRow, TransformedRow
from .row_outcome import RowAccepted, RowOutcome, RowRejected

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "ImportConfig",
    # Processing models
    "CellValue",
    "RawRow",
    "TransformedRow",
    "ForeignKeyDescriptor",
    "RowAccepted",
    "RowRejected",
    "RowOutcome",
    "PartitionResult",
    # Results
    "ImportResult",
    "ErrorRecord",
]
