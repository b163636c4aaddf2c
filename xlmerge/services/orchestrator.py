from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import psycopg2

from ..config.loader import ConfigError, load_alias_table
from ..db.merge import MergeResult, append_rows, apply_merge, transaction
from ..db.repository import SchemaRepository
from ..excel.reader import SheetData, SheetHeaderError, read_rows
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.config_models import ImportConfig
from ..models.import_result import ImportResult
from ..models.row_data import TransformedRow
from ..models.row_outcome import RowRejected
from .change_detection import build_existing_index, partition
from .column_matcher import match_columns
from .errors import ConfigurationError, ImportFailure, SchemaError
from .fk_validation import ForeignKeyValidator
from .progress import ProgressTracker
from .row_transform import (
    TransformRules,
    locate_special_columns,
    resolve_business_key_header,
    transform_rows,
)

"""Import orchestration: one spreadsheet -> one table, one transaction.

run_import() is the outer boundary. It reads the workbook, then inside a
single transaction introspects the table, matches columns, transforms and
FK-validates rows, partitions them against a snapshot of the table and
applies the merge. Any fatal error rolls everything back; FK violations only
drop the offending row. Nothing is raised to the caller: all failures end up
in ImportResult.errors.
"""

__all__ = [
    "MODE_UPSERT",
    "MODE_INSERT",
    "parse_table_name",
    "run_import",
]

logger = logging.getLogger(__name__)

MODE_UPSERT = "upsert"
MODE_INSERT = "insert"
_MODES = (MODE_UPSERT, MODE_INSERT)


def parse_table_name(table_name: str | None, default_schema: str) -> tuple[str, str]:
    """Split ``schema.table``; a bare table name gets ``default_schema``."""
    if table_name is None or not table_name.strip():
        raise ConfigurationError("Table name is required.")
    text = table_name.strip()
    if "." in text:
        schema, table = (part.strip() for part in text.split(".", 1))
        if not schema or not table:
            raise ConfigurationError(f"Invalid table name '{table_name}'.")
        return schema, table
    return default_schema, text


def _source_label(source: Path | bytes, file_label: str | None) -> str:
    if file_label:
        return file_label
    if isinstance(source, Path):
        return source.name
    return "<upload>"


class _Recorder:
    """Collects human readable errors and their structured ErrorRecords."""

    def __init__(self, result: ImportResult, error_log: ErrorLogBuffer, file_label: str) -> None:
        self.result = result
        self.error_log = error_log
        self.file_label = file_label

    def add(self, error_type: str, message: str, row: int = -1) -> None:
        self.result.errors.append(message)
        self.error_log.append(
            ErrorRecord.create(
                file=self.file_label,
                table=self.result.table or "-",
                row=row,
                error_type=error_type,
                message=message,
            )
        )

    def fatal(self, error_type: str, message: str) -> None:
        logger.error("%s: %s", error_type.lower(), message)
        self.add(error_type, message)
        # ロールバック済なので書込件数は 0
        self.result.success = False
        self.result.rows_written = 0
        self.result.inserted = 0
        self.result.updated = 0
        self.result.unchanged = 0


def run_import(
    table_name: str,
    source: Path | bytes,
    config: ImportConfig,
    connection: Any,
    *,
    aliases: Mapping[str, str] | None = None,
    mode: str = MODE_UPSERT,
    dry_run: bool = False,
    file_label: str | None = None,
) -> ImportResult:
    """Import the first worksheet of ``source`` into ``table_name``.

    Args:
        table_name: ``schema.table`` or bare table (config.default_schema applies)
        source: workbook path or raw .xlsx bytes
        config: loaded ImportConfig
        connection: psycopg2 connection (autocommit off)
        aliases: header alias table; None loads config.alias_file / the packaged one
        mode: "upsert" (change-aware merge) or "insert" (append only)
        dry_run: run everything, then roll back

    Returns:
        ImportResult; never raises for import failures
    """
    started = time.perf_counter()
    result = ImportResult(dry_run=dry_run)
    label = _source_label(source, file_label)
    log_dir = Path(config.error_log_dir) if config.error_log_dir else None
    error_log = ErrorLogBuffer(log_dir)
    recorder = _Recorder(result, error_log, label)

    try:
        schema, table = parse_table_name(table_name, config.default_schema)
        result.table = f"{schema}.{table}"
        if mode not in _MODES:
            raise ConfigurationError(f"Unknown import mode '{mode}'.")
        if aliases is None:
            aliases = load_alias_table(Path(config.alias_file) if config.alias_file else None)

        sheet = read_rows(source, null_sentinels=config.null_sentinels)
        logger.info(
            "file=%s sheet=%s headers=%d rows=%d table=%s mode=%s%s",
            label, sheet.sheet_name, len(sheet.headers), len(sheet.rows),
            result.table, mode, " (dry-run)" if dry_run else "",
        )

        with transaction(
            connection, commit=not dry_run, isolation_level=config.isolation_level
        ) as cursor:
            merged = _import_sheet(cursor, schema, table, sheet, config, aliases, mode, recorder)

        result.inserted = merged.inserted
        result.updated = merged.updated
        result.rows_written = merged.rows_written
        result.success = True
    except ImportFailure as e:
        recorder.fatal(e.error_type, str(e))
    except ConfigError as e:
        recorder.fatal("CONFIGURATION_ERROR", f"alias table: {e}")
    except SheetHeaderError as e:
        recorder.fatal("SHEET_ERROR", str(e))
    except psycopg2.Error as e:
        recorder.fatal("DATABASE_ERROR", str(e).strip())
    except Exception as e:
        logger.debug("unexpected import failure", exc_info=True)
        recorder.fatal("UNEXPECTED_ERROR", str(e))

    result.elapsed_seconds = time.perf_counter() - started

    if log_dir is not None:
        try:
            path = error_log.flush()
            if path is not None:
                logger.info("error log written: %s", path)
        except OSError as e:
            logger.warning("failed writing error log: %s", e)
    return result


def _import_sheet(
    cursor: Any,
    schema: str,
    table: str,
    sheet: SheetData,
    config: ImportConfig,
    aliases: Mapping[str, str],
    mode: str,
    recorder: _Recorder,
) -> MergeResult:
    repo = SchemaRepository(cursor)

    db_columns = repo.get_columns(schema, table)
    if not db_columns:
        raise SchemaError(f"Table '{schema}.{table}' does not exist or has no columns.")

    mapping = match_columns(sheet.headers, db_columns, aliases)
    if not mapping:
        raise ConfigurationError("No matching columns found between spreadsheet and database table.")
    columns = list(dict.fromkeys(mapping.values()))
    logger.info("mapped %d of %d headers: %s", len(mapping), len(sheet.headers), mapping)

    business_key: str | None = None
    if mode == MODE_UPSERT:
        business_key = mapping[resolve_business_key_header(mapping, config.business_key_column)]

    rules = TransformRules(
        status_header=config.status_header,
        customer_fk_header=config.customer_fk_header,
    )
    special = locate_special_columns(sheet.headers, rules)
    batch = transform_rows(sheet.rows, mapping, special, business_key)
    if batch.skipped_blank_keys:
        logger.info("skipped %d rows without business key", batch.skipped_blank_keys)

    validator = ForeignKeyValidator(repo.get_foreign_keys(schema, table), repo)
    accepted = _validate_rows(batch.rows, validator, recorder)

    if business_key is None:
        return append_rows(cursor, schema, table, columns, accepted, page_size=config.page_size)

    surrogate = _resolve_surrogate_key(repo, schema, table, db_columns, business_key, config)
    snapshot_columns = list(dict.fromkeys([business_key, *columns, *([surrogate] if surrogate else [])]))
    index = build_existing_index(repo.fetch_snapshot(schema, table, snapshot_columns), business_key)

    column_types = repo.get_column_types(schema, table)
    parts = partition(accepted, index, business_key, surrogate, column_types)
    recorder.result.unchanged = len(parts.unchanged)
    logger.info(
        "partition insert=%d update=%d unchanged=%d superseded=%d",
        len(parts.inserts), len(parts.updates), len(parts.unchanged), parts.superseded,
    )
    return apply_merge(
        cursor,
        schema,
        table,
        columns,
        parts.inserts,
        parts.updates,
        business_key,
        surrogate_key_column=surrogate,
        page_size=config.page_size,
    )


def _validate_rows(
    rows: Sequence[TransformedRow],
    validator: ForeignKeyValidator,
    recorder: _Recorder,
) -> list[TransformedRow]:
    if not validator.foreign_keys:
        return list(rows)

    validator.prefetch(rows)
    accepted: list[TransformedRow] = []
    with ProgressTracker(len(rows)) as progress:
        for row in rows:
            outcome = validator.validate(row)
            if isinstance(outcome, RowRejected):
                recorder.result.rejected += 1
                for reason in outcome.reasons:
                    logger.warning("row=%d %s", outcome.row_number, reason)
                    recorder.add("FK_VIOLATION", reason, row=outcome.row_number)
            else:
                accepted.append(outcome.row)
            progress.advance()
        progress.set_postfix(rejected=recorder.result.rejected)
    return accepted


def _resolve_surrogate_key(
    repo: SchemaRepository,
    schema: str,
    table: str,
    db_columns: Sequence[str],
    business_key: str,
    config: ImportConfig,
) -> str | None:
    """Configured surrogate key, else a single-column primary key other than the business key."""
    if config.surrogate_key_column:
        for col in db_columns:
            if col.lower() == config.surrogate_key_column.lower():
                return col
        raise ConfigurationError(
            f"Surrogate key column '{config.surrogate_key_column}' not found in {schema}.{table}."
        )
    pk = repo.get_primary_key(schema, table)
    if len(pk) == 1 and pk[0] != business_key:
        return pk[0]
    return None
