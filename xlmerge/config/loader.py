from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    DEFAULT_CUSTOMER_FK_HEADER,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SCHEMA,
    DEFAULT_STATUS_HEADER,
    DatabaseConfig,
    ImportConfig,
)

"""Config loader.

Responsibilities:
- Load YAML config (config/import.yml by default)
- Validate against the packaged JSON schema (import_schema.json)
- Apply defaults (default_schema=master, status_header=status, ...)
- Load the column alias table (column_aliases.yml or a user supplied file)
"""

_CONFIG_DIR = Path(__file__).parent
SCHEMA_PATH = _CONFIG_DIR / "import_schema.json"
ALIAS_SCHEMA_PATH = _CONFIG_DIR / "alias_schema.json"
DEFAULT_ALIAS_PATH = _CONFIG_DIR / "column_aliases.yml"
# logging.error_log が書く JSON Lines の形式
ERROR_LOG_SCHEMA_PATH = _CONFIG_DIR / "error_log_schema.json"


class ConfigError(Exception):
    pass


def _validate_against(data: Any, schema_path: Path) -> None:
    """Validate data against a JSON schema file.

    Raises:
        ConfigError: If the schema file is missing or not valid JSON, or the
            data fails validation (missing required keys, wrong types,
            unknown keys).
    """
    if not schema_path.exists():
        raise ConfigError(f"config schema not found: {schema_path}")

    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _validate_config_schema(data: dict[str, Any]) -> None:
    _validate_against(data, SCHEMA_PATH)


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e


def load_config(path: Path) -> ImportConfig:
    data = _read_yaml(path)
    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    sentinels = data.get("null_sentinels")
    return ImportConfig(
        business_key_column=data["business_key_column"],
        default_schema=data.get("default_schema", DEFAULT_SCHEMA),
        surrogate_key_column=data.get("surrogate_key_column"),
        status_header=data.get("status_header", DEFAULT_STATUS_HEADER),
        customer_fk_header=data.get("customer_fk_header", DEFAULT_CUSTOMER_FK_HEADER),
        alias_file=data.get("alias_file"),
        # 比較は大文字で行う
        null_sentinels={s.strip().upper() for s in sentinels} if sentinels else None,
        page_size=data.get("page_size", DEFAULT_PAGE_SIZE),
        isolation_level=data.get("isolation_level"),
        error_log_dir=data.get("error_log_dir"),
        database=db,
    )


def load_alias_table(path: Path | None = None) -> dict[str, str]:
    """Load the header -> logical name alias table.

    ``path`` None loads the packaged table. Keys keep their exact spelling;
    the matcher looks up raw header text.
    """
    data = _read_yaml(path or DEFAULT_ALIAS_PATH)
    _validate_against(data, ALIAS_SCHEMA_PATH)
    return {str(k): v for k, v in data["aliases"].items()}
