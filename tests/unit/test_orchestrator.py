from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from xlmerge.db.merge import MergeError, MergeResult
from xlmerge.models.config_models import ImportConfig
from xlmerge.models.foreign_key import ForeignKeyDescriptor
from xlmerge.services.errors import ConfigurationError
from xlmerge.services.orchestrator import parse_table_name, run_import

ALIASES = {
    "pid": "RecordNo",
    "ucm_comp_name_sdt120": "CompanyName",
    "uot_sold_party_dp": "CustomerID",
}

HEADER = ["pid", "ucm_comp_name_sdt120", "status", "uot_sold_party_dp"]


class FakeRepository:
    """In-memory stand-in for SchemaRepository."""

    def __init__(
        self,
        columns=("id", "RecordNo", "CompanyName", "Status", "CustomerID"),
        primary_key=("id",),
        foreign_keys=None,
        references=None,
        snapshot=None,
    ) -> None:
        self.columns = list(columns)
        self.primary_key = list(primary_key)
        self.foreign_keys = foreign_keys if foreign_keys is not None else {
            "CustomerID": ForeignKeyDescriptor("CustomerID", "master", "CustomerMaster", "CustomerID"),
        }
        self.references = references if references is not None else {"C1"}
        self.snapshot = snapshot if snapshot is not None else [
            {"id": 10, "RecordNo": "R1", "CompanyName": "Acme", "Status": 1, "CustomerID": "C1"},
            {"id": 11, "RecordNo": "R2", "CompanyName": "Beta", "Status": 2, "CustomerID": None},
        ]
        self.reference_queries = 0
        self.snapshot_columns = None
        self.column_types = {"id": "integer", "Status": "integer"}

    def get_columns(self, schema, table):
        return self.columns

    def get_primary_key(self, schema, table):
        return self.primary_key

    def get_column_types(self, schema, table):
        return {c: self.column_types.get(c, "text") for c in self.columns}

    def get_foreign_keys(self, schema, table):
        return self.foreign_keys

    def existing_reference_values(self, descriptor, values):
        self.reference_queries += 1
        return {v for v in values if v in self.references}

    def fetch_snapshot(self, schema, table, columns):
        self.snapshot_columns = list(columns)
        return [{c: r.get(c) for c in columns} for r in self.snapshot]


class FakeMerge:
    def __init__(self, repo: FakeRepository) -> None:
        self.repo = repo
        self.calls = []

    def __call__(self, cursor, schema, table, columns, inserts, updates, business_key_column, **kwargs):
        self.calls.append(
            (schema, table, list(columns), list(inserts), list(updates), business_key_column, kwargs)
        )
        return MergeResult(inserted=len(inserts), updated=len(updates))


@pytest.fixture()
def repo():
    return FakeRepository()


@pytest.fixture()
def merge(repo):
    return FakeMerge(repo)


@pytest.fixture()
def connection():
    return MagicMock()


@pytest.fixture()
def config():
    return ImportConfig(business_key_column="RecordNo")


@pytest.fixture()
def workbook(xlsx_bytes):
    return xlsx_bytes(
        [
            HEADER,
            ["R1", "Acme", "Active", "C1"],
            ["R2", "Beta Corp", "Terminated", "0"],
            ["R3", "Gamma", "Active", "C1"],
            ["R4", "Delta", "Active", "C404"],
            [None, "No key", "Active", None],
        ]
    )


def _run(repo, merge, source, config, connection, **kwargs):
    with patch("xlmerge.services.orchestrator.SchemaRepository", lambda cursor: repo), \
        patch("xlmerge.services.orchestrator.apply_merge", merge):
        return run_import(kwargs.pop("table", "Projects"), source, config, connection, aliases=ALIASES, **kwargs)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Projects", ("master", "Projects")),
        ("sales.Orders", ("sales", "Orders")),
        (" sales . Orders ", ("sales", "Orders")),
    ],
)
def test_parse_table_name(raw, expected):
    assert parse_table_name(raw, "master") == expected


@pytest.mark.parametrize("raw", [None, "", "   ", ".Orders", "sales."])
def test_parse_table_name_invalid(raw):
    with pytest.raises(ConfigurationError):
        parse_table_name(raw, "master")


def test_run_import_upsert(repo, merge, workbook, config, connection):
    result = _run(repo, merge, workbook, config, connection)

    assert result.success is True
    assert result.table == "master.Projects"
    assert result.inserted == 1
    assert result.updated == 1
    assert result.unchanged == 1
    assert result.rejected == 1
    assert result.rows_written == 2
    assert result.errors == ["FK violation: CustomerID=C404 not found in master.CustomerMaster"]
    connection.commit.assert_called_once()
    connection.rollback.assert_not_called()

    schema, table, columns, inserts, updates, bk, kwargs = merge.calls[0]
    assert (schema, table, bk) == ("master", "Projects", "RecordNo")
    assert columns == ["RecordNo", "CompanyName", "Status", "CustomerID"]
    assert kwargs["surrogate_key_column"] == "id"
    assert [r.business_key for r in inserts] == ["R3"]
    assert [r.business_key for r in updates] == ["R2"]
    by_key = {r.business_key: r for r in inserts + updates}
    assert by_key["R2"].surrogate_id == 11
    assert by_key["R2"].values == {"RecordNo": "R2", "CompanyName": "Beta Corp", "Status": 2, "CustomerID": None}
    assert by_key["R3"].values["Status"] == 1
    # FK 参照は一括で 1 回
    assert repo.reference_queries == 1
    assert repo.snapshot_columns[0] == "RecordNo" and "id" in repo.snapshot_columns


def test_run_import_dry_run_rolls_back(repo, merge, workbook, config, connection):
    result = _run(repo, merge, workbook, config, connection, dry_run=True)
    assert result.success is True
    assert result.dry_run is True
    assert result.rows_written == 2
    connection.rollback.assert_called_once()
    connection.commit.assert_not_called()


def test_run_import_schema_qualified_table(repo, merge, workbook, config, connection):
    result = _run(repo, merge, workbook, config, connection, table="sales.Projects")
    assert result.table == "sales.Projects"
    assert merge.calls[0][0] == "sales"


def test_run_import_isolation_level(repo, merge, workbook, connection):
    cfg = ImportConfig(business_key_column="RecordNo", isolation_level="serializable")
    _run(repo, merge, workbook, cfg, connection)
    cursor = connection.cursor.return_value
    cursor.execute.assert_any_call("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")


def test_run_import_missing_table(merge, workbook, config, connection):
    repo = FakeRepository(columns=())
    result = _run(repo, merge, workbook, config, connection)
    assert result.success is False
    assert result.rows_written == 0
    assert "does not exist" in result.errors[0]
    assert merge.calls == []
    connection.rollback.assert_called_once()
    connection.commit.assert_not_called()


def test_run_import_no_matching_columns(merge, xlsx_bytes, config, connection):
    repo = FakeRepository(columns=("Foo", "Bar"))
    result = _run(repo, merge, xlsx_bytes([["xyz"], ["1"]]), config, connection)
    assert result.success is False
    assert result.errors == ["No matching columns found between spreadsheet and database table."]


def test_run_import_missing_business_key(repo, merge, xlsx_bytes, config, connection):
    source = xlsx_bytes([["ucm_comp_name_sdt120"], ["Acme"]])
    result = _run(repo, merge, source, config, connection)
    assert result.success is False
    assert "Business key column 'RecordNo' not found" in result.errors[0]


def test_run_import_merge_failure_reports_nothing_written(repo, workbook, config, connection):
    failing = MagicMock(side_effect=MergeError("merge failed for master.Projects: deadlock"))
    result = _run(repo, failing, workbook, config, connection)
    assert result.success is False
    assert result.rows_written == 0
    assert result.inserted == result.updated == result.unchanged == 0
    # 行単位の FK エラーは保持し、致命的エラーを末尾に追加
    assert result.errors[0].startswith("FK violation")
    assert result.errors[-1] == "merge failed for master.Projects: deadlock"
    connection.rollback.assert_called_once()
    connection.commit.assert_not_called()


def test_run_import_database_error_is_reported(merge, workbook, config, connection):
    repo = FakeRepository()
    repo.get_columns = MagicMock(side_effect=psycopg2.OperationalError("server closed the connection"))
    result = _run(repo, merge, workbook, config, connection)
    assert result.success is False
    assert "server closed the connection" in result.errors[0]


def test_run_import_unreadable_workbook_never_raises(repo, merge, config, connection):
    result = _run(repo, merge, b"not an xlsx", config, connection)
    assert result.success is False
    assert len(result.errors) == 1
    connection.cursor.assert_not_called()


def test_run_import_unknown_mode(repo, merge, workbook, config, connection):
    result = _run(repo, merge, workbook, config, connection, mode="replace")
    assert result.success is False
    assert "Unknown import mode" in result.errors[0]


def test_run_import_configured_surrogate_key(merge, workbook, connection):
    repo = FakeRepository(primary_key=())
    cfg = ImportConfig(business_key_column="RecordNo", surrogate_key_column="ID")
    _run(repo, merge, workbook, cfg, connection)
    assert merge.calls[0][6]["surrogate_key_column"] == "id"


def test_run_import_unknown_surrogate_key(repo, merge, workbook, connection):
    cfg = ImportConfig(business_key_column="RecordNo", surrogate_key_column="row_id")
    result = _run(repo, merge, workbook, cfg, connection)
    assert result.success is False
    assert "Surrogate key column 'row_id' not found" in result.errors[0]


def test_run_import_business_key_as_primary_key(merge, workbook, config, connection):
    repo = FakeRepository(
        columns=("RecordNo", "CompanyName", "Status", "CustomerID"),
        primary_key=("RecordNo",),
        snapshot=[{"RecordNo": "R1", "CompanyName": "Acme", "Status": 1, "CustomerID": "C1"}],
    )
    result = _run(repo, merge, workbook, config, connection)
    assert result.success is True
    assert merge.calls[0][6]["surrogate_key_column"] is None


def test_run_import_insert_mode_appends_all_rows(repo, merge, xlsx_bytes, config, connection):
    source = xlsx_bytes([["ucm_comp_name_sdt120"], ["Acme"], ["Acme"]])
    appended = MagicMock(return_value=MergeResult(inserted=2))
    with patch("xlmerge.services.orchestrator.append_rows", appended):
        result = _run(repo, merge, source, config, connection, mode="insert")
    assert result.success is True
    assert result.inserted == 2
    assert merge.calls == []
    rows = appended.call_args.args[4]
    assert [r.values for r in rows] == [{"CompanyName": "Acme"}, {"CompanyName": "Acme"}]


def test_run_import_writes_error_log(repo, merge, workbook, temp_workdir: Path, connection):
    cfg = ImportConfig(business_key_column="RecordNo", error_log_dir=str(temp_workdir / "logs"))
    result = _run(repo, merge, workbook, cfg, connection, file_label="projects.xlsx")
    assert result.rejected == 1
    logs = list((temp_workdir / "logs").glob("errors-*.log"))
    assert len(logs) == 1
    record = json.loads(logs[0].read_text(encoding="utf-8").strip())
    assert record["file"] == "projects.xlsx"
    assert record["table"] == "master.Projects"
    assert record["error_type"] == "FK_VIOLATION"
    assert record["row"] == 5
    assert "C404" in record["message"]


def test_run_import_without_failures_writes_no_log(merge, xlsx_bytes, temp_workdir: Path, connection):
    repo = FakeRepository(foreign_keys={})
    cfg = ImportConfig(business_key_column="RecordNo", error_log_dir=str(temp_workdir / "logs"))
    result = _run(repo, merge, xlsx_bytes([["pid"], ["R9"]]), cfg, connection)
    assert result.success is True
    assert result.inserted == 1
    assert list((temp_workdir / "logs").glob("errors-*.log")) == []


def test_run_import_padded_key_updates_existing_row_only(repo, merge, xlsx_bytes, config, connection):
    source = xlsx_bytes([HEADER, [" R1 ", "Acme Corp", "Active", "C1"]])
    result = _run(repo, merge, source, config, connection)
    assert result.success is True
    _, _, _, inserts, updates, _, _ = merge.calls[0]
    assert inserts == []
    assert [r.business_key for r in updates] == ["R1"]
    assert updates[0].values["RecordNo"] == "R1"
    assert updates[0].surrogate_id == 10


def test_run_import_typed_columns_compare_as_postgres_text(merge, xlsx_bytes, config, connection):
    repo = FakeRepository(
        columns=("id", "RecordNo", "StartedAt", "Flag"),
        foreign_keys={},
        snapshot=[{"id": "10", "RecordNo": "R1", "StartedAt": "2024-01-05 10:30:00", "Flag": "true"}],
    )
    repo.column_types = {
        "id": "integer",
        "StartedAt": "timestamp without time zone",
        "Flag": "boolean",
    }
    source = xlsx_bytes([["pid", "StartedAt", "Flag"], ["R1", datetime(2024, 1, 5, 10, 30), True]])
    result = _run(repo, merge, source, config, connection)
    assert result.success is True
    assert result.unchanged == 1
    _, _, _, inserts, updates, _, _ = merge.calls[0]
    assert inserts == [] and updates == []
