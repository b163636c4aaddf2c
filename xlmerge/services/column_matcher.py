from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

"""Header normalization and spreadsheet header -> database column matching.

Matching order per header (first success wins):
1. alias table lookup on the raw header text (falls back to the header itself)
2. logical name equal, ignoring case, to a normalized database column name
3. fuzzy: normalized header and normalized column name contain one another
4. otherwise the header is left out of the mapping

The fuzzy scan walks columns sorted by normalized name, so the outcome does
not depend on the order in which the schema was introspected.
"""

__all__ = [
    "normalize_header",
    "match_columns",
    "resolve_logical_name",
]

logger = logging.getLogger(__name__)

_STRIP_CHARS = ("_", " ", "-", "\r", "\n")


def normalize_header(value: str) -> str:
    """Canonical comparison form of a header. Pure and total."""
    text = value.lower()
    for ch in _STRIP_CHARS:
        text = text.replace(ch, "")
    return text.strip()


def resolve_logical_name(header: str, aliases: Mapping[str, str]) -> str:
    """Alias lookup on the raw header; unknown headers are their own logical name."""
    return aliases.get(header, header)


def _normalized_columns(db_columns: Sequence[str]) -> dict[str, str]:
    # normalized -> original, first spelling wins on collision
    normalized: dict[str, str] = {}
    for col in db_columns:
        key = normalize_header(col)
        if not key:
            continue
        if key in normalized:
            logger.warning(
                "db columns %r and %r normalize to the same name; keeping %r",
                normalized[key], col, normalized[key],
            )
            continue
        normalized[key] = col
    return normalized


def match_columns(
    excel_headers: Sequence[str],
    db_columns: Sequence[str],
    aliases: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Map spreadsheet headers to database column names.

    Parameters
    ----------
    excel_headers: header texts as read (original casing kept as mapping keys)
    db_columns: canonical column names of the target table
    aliases: raw header -> logical name table (see config/column_aliases.yml)

    Returns
    -------
    dict[str, str]: header -> database column, unmatched headers omitted
    """
    aliases = aliases or {}
    normalized_db = _normalized_columns(db_columns)
    fuzzy_order = sorted(normalized_db.items())

    mapping: dict[str, str] = {}
    for header in excel_headers:
        if header in mapping:
            continue
        normalized_header = normalize_header(header)
        if not normalized_header:
            continue

        logical = resolve_logical_name(header, aliases).lower()
        exact = normalized_db.get(logical)
        if exact is not None:
            mapping[header] = exact
            continue

        for key, original in fuzzy_order:
            if key in normalized_header or normalized_header in key:
                mapping[header] = original
                logger.debug("fuzzy match header=%r -> column=%r", header, original)
                break
        else:
            logger.debug("no column for header=%r (dropped)", header)

    _warn_shared_targets(mapping)
    return mapping


def _warn_shared_targets(mapping: Mapping[str, str]) -> None:
    seen: dict[str, str] = {}
    for header, column in mapping.items():
        if column in seen:
            logger.warning(
                "headers %r and %r both map to column %r; the right-most cell wins",
                seen[column], header, column,
            )
        else:
            seen[column] = header
