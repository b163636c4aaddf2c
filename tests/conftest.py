# Shared pytest fixtures
from __future__ import annotations

import io
import logging
import tempfile
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from xlmerge.logging.init import LOGGER_NAME, reset_logging


@pytest.fixture(autouse=True)
def _clean_logging():
    # setup_logging() はプロセス全体の状態を持つのでテスト毎に戻す
    reset_logging()
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """business_key_column: RecordNo
default_schema: master
status_header: status
customer_fk_header: uot_sold_party_dp
null_sentinels: ["N/A"]
page_size: 500
isolation_level: read_committed
error_log_dir: ./logs
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


def workbook_bytes(rows: list[list[Any]], sheet_name: str = "Sheet1") -> bytes:
    """Build an .xlsx in memory; the first row is written as-is (header row)."""
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        pd.DataFrame(rows).to_excel(writer, sheet_name=sheet_name, index=False, header=False)
    return buf.getvalue()


@pytest.fixture()
def make_workbook(temp_workdir: Path):
    def _make(rows: list[list[Any]], name: str = "input.xlsx", sheet_name: str = "Sheet1") -> Path:
        path = temp_workdir / "data" / name
        path.write_bytes(workbook_bytes(rows, sheet_name=sheet_name))
        return path
    return _make


@pytest.fixture()
def xlsx_bytes():
    return workbook_bytes
