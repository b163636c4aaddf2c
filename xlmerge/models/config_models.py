from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the spreadsheet -> PostgreSQL merge tool.

These are the typed results of config loading (xlmerge/config/loader.py). The loader validates the raw YAML against the
packaged JSON schema first, so the dataclasses carry no validation logic.
"""

DEFAULT_SCHEMA = "master"
DEFAULT_STATUS_HEADER = "status"
DEFAULT_CUSTOMER_FK_HEADER = "uot_sold_party_dp"
DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class ImportConfig:
    """Root configuration object for one import run.

    Only ``business_key_column`` is mandatory; the rest carries defaults that
    match the upstream exporters we know about.
    """
    business_key_column: str  # 照合キー列 (例: RecordNo)
    default_schema: str = DEFAULT_SCHEMA  # schema 省略時に補う
    surrogate_key_column: str | None = None  # None なら主キーを introspection で決定
    status_header: str = DEFAULT_STATUS_HEADER
    customer_fk_header: str = DEFAULT_CUSTOMER_FK_HEADER
    alias_file: str | None = None  # None -> packaged column_aliases.yml
    null_sentinels: set[str] | None = None  # 文字列→NULL 変換対象 (大文字化済)
    page_size: int = DEFAULT_PAGE_SIZE
    isolation_level: str | None = None
    error_log_dir: str | None = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
