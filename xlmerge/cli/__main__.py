from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from xlmerge.config.loader import ConfigError, load_alias_table, load_config
from xlmerge.excel.reader import SheetHeaderError, read_rows
from xlmerge.logging.init import log_summary, setup_logging
from xlmerge.models.config_models import ImportConfig
from xlmerge.services.column_matcher import resolve_logical_name
from xlmerge.services.orchestrator import MODE_INSERT, MODE_UPSERT, run_import
from xlmerge.services.summary import render_summary_line

"""CLI entrypoint.

xlmerge FILE --table [schema.]table [--config PATH] [--aliases PATH]
        [--mode upsert|insert] [--dry-run] [--json] [--debug] [--inspect-data]

Exit codes:
- 0: import committed (or rolled back for --dry-run) without rejected rows
- 2: import succeeded but some rows were rejected (FK violations)
- 1: fatal error, nothing was written
"""

EXIT_SUCCESS = 0
EXIT_ROWS_REJECTED = 2
EXIT_FATAL = 1

DEFAULT_CONFIG_PATH = Path("config/import.yml")
INSPECT_SAMPLE_ROWS = 3


def _resolve_dsn(cfg: ImportConfig) -> str:
    """Build the libpq DSN.

    接続情報の優先順位:
        1. `.env` (main() 冒頭で上書きロード済み) / 既存環境変数
           - DATABASE_URL / PGDSN があれば DSN 全体をそのまま使用
           - 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
        2. config/import.yml の database セクション (不足分のフォールバック)
    """
    db_cfg = cfg.database
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def _db_connection(cfg: ImportConfig) -> Iterator[Any]:  # pragma: no cover (thin wrapper; tested via integration)
    """psycopg2 connection with explicit transactions; always closed on exit.

    COMMIT / ROLLBACK is issued by run_import, not here.
    """
    conn = psycopg2.connect(_resolve_dsn(cfg))
    try:
        conn.autocommit = False
        yield conn
    finally:
        conn.close()


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True により .env の値で既存環境変数を上書きし、PostgreSQL 接続情報を最優先化。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="xlmerge",
        description="Spreadsheet -> PostgreSQL change-aware importer",
    )
    p.add_argument("file", type=Path, help="Workbook (.xlsx); the first worksheet is imported")
    p.add_argument("--table", required=True, help="Target table as [schema.]table")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML (default: config/import.yml)")
    p.add_argument("--aliases", type=Path, default=None, help="Column alias YAML overriding the configured one")
    p.add_argument("--mode", choices=(MODE_UPSERT, MODE_INSERT), default=MODE_UPSERT, help="upsert (default) or insert-only")
    p.add_argument("--dry-run", action="store_true", help="Run the full import, then roll back")
    p.add_argument("--json", action="store_true", help="Print the import result as JSON")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--inspect-data", action="store_true", help="Print headers, alias resolution & first rows then exit")
    return p.parse_args(argv)


def _inspect_data(path: Path, cfg: ImportConfig, aliases: Mapping[str, str]) -> int:
    """Show what the importer would see, without touching the database."""
    try:
        sheet = read_rows(path, null_sentinels=cfg.null_sentinels)
    except SheetHeaderError as e:
        print(f"inspect: {e}")
        return EXIT_FATAL
    print(f"FILE: {path.name}")
    print(f"  SHEET: {sheet.sheet_name} rows={len(sheet.rows)}")
    for header in sheet.headers:
        logical = resolve_logical_name(header, aliases)
        suffix = f" -> {logical}" if logical != header else ""
        print(f"    header: {header!r}{suffix}")
    for row in sheet.rows[:INSPECT_SAMPLE_ROWS]:
        print(f"    row {row.row_number}: {dict(row.cells)}")
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    # NOTE: 空リスト [] を渡されたときに sys.argv[1:] を読まないよう None のみ判定
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)
    if args.debug:
        logger.debug("debug mode enabled")

    # .env を最優先で読み込む (DB 接続パラメータ優先順位保証)
    _load_env_file(Path(".env"), override=True)

    try:
        cfg = load_config(args.config)
        aliases = load_alias_table(args.aliases or (Path(cfg.alias_file) if cfg.alias_file else None))
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if not args.file.exists():
        logger.error(f"file not found: {args.file}")
        return EXIT_FATAL

    if args.inspect_data:
        return _inspect_data(args.file, cfg, aliases)

    try:
        with _db_connection(cfg) as conn:
            result = run_import(
                args.table,
                args.file,
                cfg,
                conn,
                aliases=aliases,
                mode=args.mode,
                dry_run=args.dry_run,
            )
    except psycopg2.Error as e:
        logger.error(f"database connection failed: {str(e).strip()}")
        return EXIT_FATAL

    # log_summary が "SUMMARY " を付けるので除去
    log_summary(render_summary_line(result)[len("SUMMARY "):])
    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False))

    if not result.success:
        return EXIT_FATAL
    if result.rejected > 0:
        return EXIT_ROWS_REJECTED
    return EXIT_SUCCESS


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
