from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from ..models.config_models import DEFAULT_CUSTOMER_FK_HEADER, DEFAULT_STATUS_HEADER
from ..models.row_data import CellValue, RawRow, TransformedRow
from .column_matcher import normalize_header
from .errors import ConfigurationError

"""Row transformation: raw cell text -> typed, nullable database values.

Coercion rules are applied per source column before mapping:
- status column: Active -> 1, everything else (Terminated, empty, unknown) -> 2
- customer-identifier FK column: "0" -> NULL (exact text match), else trimmed text
- any other column: empty -> NULL, else the raw text

No type inference happens beyond text/NULL; PostgreSQL casts on write.
"""

__all__ = [
    "STATUS_ACTIVE",
    "STATUS_TERMINATED",
    "TransformRules",
    "SpecialColumns",
    "TransformBatch",
    "coerce_status",
    "coerce_customer_fk",
    "coerce_default",
    "locate_special_columns",
    "resolve_business_key_header",
    "transform_row",
    "transform_rows",
]

logger = logging.getLogger(__name__)

STATUS_ACTIVE = 1
STATUS_TERMINATED = 2


@dataclass(frozen=True)
class TransformRules:
    status_header: str = DEFAULT_STATUS_HEADER
    customer_fk_header: str = DEFAULT_CUSTOMER_FK_HEADER


@dataclass(frozen=True)
class SpecialColumns:
    """Positions (0-based, in RawRow.cells) of columns with custom coercion."""
    status_index: int | None = None
    customer_fk_index: int | None = None


@dataclass(frozen=True)
class TransformBatch:
    rows: tuple[TransformedRow, ...]
    skipped_blank_keys: int = 0


def coerce_status(text: str | None) -> int:
    # 不明値は Terminated 扱い (業務判断)
    if text is None:
        return STATUS_TERMINATED
    value = text.strip().lower()
    if value == "active":
        return STATUS_ACTIVE
    return STATUS_TERMINATED


def coerce_customer_fk(text: str | None) -> str | None:
    if text is None:
        return None
    value = text.strip()
    if value == "0":
        return None
    return value


def coerce_default(text: str | None) -> str | None:
    return text


def locate_special_columns(headers: Sequence[str], rules: TransformRules) -> SpecialColumns:
    status_key = normalize_header(rules.status_header)
    fk_key = normalize_header(rules.customer_fk_header)
    status_index: int | None = None
    fk_index: int | None = None
    for idx, header in enumerate(headers):
        key = normalize_header(header)
        if not key:
            continue
        if key == status_key:
            status_index = idx
        if key == fk_key:
            fk_index = idx
    return SpecialColumns(status_index=status_index, customer_fk_index=fk_index)


def resolve_business_key_header(mapping: Mapping[str, str], business_key_column: str) -> str:
    """Return the input header that feeds the business key column.

    Raises:
        ConfigurationError: no header maps to the business key column
    """
    for header, column in mapping.items():
        if column.lower() == business_key_column.lower():
            return header
    raise ConfigurationError(
        f"Business key column '{business_key_column}' not found in spreadsheet headers."
    )


def _coerce(index: int, text: str | None, special: SpecialColumns) -> CellValue:
    if index == special.status_index:
        return coerce_status(text)
    if index == special.customer_fk_index:
        return coerce_customer_fk(text)
    return coerce_default(text)


def transform_row(
    raw: RawRow,
    mapping: Mapping[str, str],
    special: SpecialColumns,
    business_key_column: str | None = None,
) -> TransformedRow:
    """Coerce one RawRow into a TransformedRow keyed by canonical column.

    Every mapped column is present in ``values`` (None when the cell is
    missing). When several headers map to one column the right-most wins.
    """
    values: dict[str, CellValue] = {column: None for column in mapping.values()}
    for index, (header, text) in enumerate(raw.cells):
        column = mapping.get(header)
        if column is None:
            continue
        values[column] = _coerce(index, text, special)

    business_key: str | None = None
    if business_key_column is not None:
        key_value = values.get(business_key_column)
        if key_value is not None:
            business_key = str(key_value).strip() or None
        if isinstance(key_value, str):
            # 照合と書込で同じキー文字列を使う
            values[business_key_column] = business_key
    return TransformedRow(row_number=raw.row_number, values=values, business_key=business_key)


def transform_rows(
    raw_rows: Iterable[RawRow],
    mapping: Mapping[str, str],
    special: SpecialColumns,
    business_key_column: str | None = None,
) -> TransformBatch:
    """Transform all rows; with a business key, rows with a blank key are dropped."""
    rows: list[TransformedRow] = []
    skipped = 0
    for raw in raw_rows:
        row = transform_row(raw, mapping, special, business_key_column)
        if business_key_column is not None and row.business_key is None:
            skipped += 1
            logger.debug("row=%d skipped: blank business key", raw.row_number)
            continue
        rows.append(row)
    return TransformBatch(rows=tuple(rows), skipped_blank_keys=skipped)
