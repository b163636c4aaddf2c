from __future__ import annotations

"""Import error taxonomy.

Fatal errors abort the whole import before (or during) the single
transaction and are translated into ImportResult.errors by run_import.
Row-scoped FK violations are not exceptions; see models.row_outcome.
"""

__all__ = [
    "ImportFailure",
    "ConfigurationError",
    "SchemaError",
    "TransactionError",
]


class ImportFailure(Exception):
    """Base class of fatal import errors."""

    error_type = "IMPORT_ERROR"


class ConfigurationError(ImportFailure):
    """Missing/invalid table name, missing business-key column, no mapping."""

    error_type = "CONFIGURATION_ERROR"


class SchemaError(ImportFailure):
    """Target table absent or without columns."""

    error_type = "SCHEMA_ERROR"


class TransactionError(ImportFailure):
    """Staging or merge-apply failure; the transaction is rolled back."""

    error_type = "TRANSACTION_ERROR"
