"""Spreadsheet -> PostgreSQL column reconciliation and change-aware upsert."""

__version__ = "0.1.0"
