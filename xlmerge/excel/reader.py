from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

import pandas as pd

from ..models.row_data import RawRow

"""Spreadsheet reader.

Only the first worksheet is read. The first non-empty row is the header row,
everything after it is data. Cells are reported as text; empty cells become
``None`` so they stay distinguishable from the literal strings "0" and "".
Formatting and formulas are not evaluated (cached values only).
"""

__all__ = [
    "SheetHeaderError",
    "SheetData",
    "read_first_sheet",
    "read_rows",
    "cell_text",
]


class SheetHeaderError(Exception):
    """Raised when the worksheet has no header row."""


@dataclass
class SheetData:
    sheet_name: str
    headers: list[str]
    rows: list[RawRow]


def read_first_sheet(source: Path | bytes) -> tuple[str, pd.DataFrame]:
    """Read the first worksheet as a raw, header-less DataFrame of objects.

    Only truly blank cells are treated as NA: pandas' default NA strings
    ("NA", "NULL", "n/a", ...) are kept as text.
    """
    handle: Any = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    xls = pd.ExcelFile(handle, engine="openpyxl")
    if not xls.sheet_names:
        raise SheetHeaderError("workbook has no worksheets")
    name = str(xls.sheet_names[0])
    df = xls.parse(
        xls.sheet_names[0],
        header=None,
        dtype=object,
        keep_default_na=False,
        na_values=[""],
    )
    return name, df


def cell_text(value: Any) -> str | None:
    """Render one cell as text (None for empty cells)."""
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, datetime):
        # 時刻 0:00 は日付のみとして扱う
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_sheet(
    df: pd.DataFrame,
    sheet_name: str,
    null_sentinels: set[str] | None = None,
) -> SheetData:
    """Turn a raw DataFrame into headers + RawRows.

    Steps:
    1. Skip leading empty rows; the first non-empty row is the header
    2. Header width ends at the last non-empty header cell
    3. Entirely empty data rows are skipped
    4. Strings listed in null_sentinels (compared upper-cased) become empty
    """
    non_empty = [idx for idx in range(df.shape[0]) if not df.iloc[idx].isna().all()]
    if not non_empty:
        raise SheetHeaderError(f"sheet '{sheet_name}' has no header row")
    header_pos = non_empty[0]

    header_cells = [cell_text(v) for v in df.iloc[header_pos].tolist()]
    width = 0
    for i, h in enumerate(header_cells):
        if h is not None and h.strip() != "":
            width = i + 1
    headers = [(h or "").strip() for h in header_cells[:width]]

    rows: list[RawRow] = []
    for pos in range(header_pos + 1, df.shape[0]):
        raw = df.iloc[pos].tolist()[:width]
        texts: list[str | None] = []
        for val in raw:
            text = cell_text(val)
            if text is not None and null_sentinels and text.strip().upper() in null_sentinels:
                text = None
            texts.append(text)
        if all(t is None for t in texts):
            continue
        # pad short rows so every header has a cell
        texts.extend([None] * (width - len(texts)))
        rows.append(
            RawRow(
                row_number=pos + 1,  # 1-based over used rows (blank rows are not counted)
                cells=tuple(zip(headers, texts)),
            )
        )
    return SheetData(sheet_name=sheet_name, headers=headers, rows=rows)


def read_rows(source: Path | bytes, null_sentinels: set[str] | None = None) -> SheetData:
    """Read headers and data rows of the first worksheet."""
    name, df = read_first_sheet(source)
    return normalize_sheet(df, name, null_sentinels=null_sentinels)
