"""
Tests for the export engine (CSV and Google Sheets)
"""

import csv
import io

import pytest

from content_types import ValidationError
from export_engine import ExportEngine, cell_text, default_labels

LABELS = ["Id", "Name", "Html Title", "Meta Description", "Slug", "State", "Published"]


@pytest.fixture
def engine(db, hubspot, sheets):
    return ExportEngine(db, hubspot, sheets)


def test_cell_text():
    assert cell_text(None) == ""
    assert cell_text(True) == "TRUE"
    assert cell_text(False) == "FALSE"
    assert cell_text(["a", "b"]) == '["a", "b"]'
    assert cell_text(3) == 3


def test_default_labels_start_with_identity():
    labels = default_labels("site-pages")
    assert labels[:2] == ["Id", "Name"]
    assert "Html Title" in labels
    assert labels.count("Name") == 1


def test_get_field_value_tries_label_variants(engine):
    record = {"html_title": "Snake", "Slug": "exact"}
    assert engine.get_field_value(record, "Html Title", "htmlTitle") == "Snake"
    assert engine.get_field_value(record, "Slug", "slug") == "exact"
    assert engine.get_field_value(record, "Missing", "missing") is None


def test_build_rows(engine):
    records = [{"id": "1", "name": "A", "tagIds": [1, 2], "published": True, "metaDescription": None}]
    columns = engine.build_columns(["Id", "Name", "Tag Ids", "Published", "Meta Description"])
    rows = engine.build_rows(records, columns, "2024-05-01")
    assert rows[0] == ["Export Date", "Id", "Name", "Tag Ids", "Published", "Meta Description"]
    assert rows[1] == ["2024-05-01", "1", "A", "[1, 2]", "TRUE", ""]


def test_fetch_content_skips_archived(engine, hubspot):
    hubspot.records["site-pages"].append({"id": "103", "name": "Old", "archivedAt": "2022-02-02T00:00:00Z"})
    records = engine.fetch_content("site-pages")
    assert [r["id"] for r in records] == ["101", "102"]
    assert all(r["contentType"] == "Site Page" for r in records)


def test_export_csv_writes_rows_and_snapshots(engine, db):
    result = engine.export_csv("user-1", "site-pages", LABELS)

    assert result["itemsCount"] == 2
    assert result["backupId"].startswith("csv_site_pages_")
    assert result["filename"].startswith("hubspot_site-pages_2_items_")
    assert result["sizeBytes"] == len(result["csv"].encode("utf-8"))

    rows = list(csv.reader(io.StringIO(result["csv"])))
    assert rows[0] == ["Export Date"] + LABELS
    assert rows[1][1:] == ["101", "Home", "Home | Acme", "Welcome", "home", "PUBLISHED", "TRUE"]

    snapshots = db.list_page_snapshots("user-1", backup_id=result["backupId"])
    by_id = {s["hubspot_page_id"]: s for s in snapshots}
    assert set(by_id) == {"101", "102"}
    assert by_id["101"]["html_title"] == "Home | Acme"
    assert by_id["101"]["published"] is True
    assert by_id["102"]["published"] is False
    assert by_id["101"]["content_type"] == "Site Page"
    assert by_id["101"]["page_content"]["slug"] == "home"

    backups = db.get_page_backups(["101", "102"])
    assert backups["101"]["page_type"] == "Site Page"
    assert backups["101"]["content_type"] == "site-pages"


def test_export_csv_with_supplied_records_skips_hubspot(engine, hubspot):
    result = engine.export_csv("user-1", "blog-posts", ["Id", "Name"], records=[{"id": "5", "name": "Post"}])
    assert result["itemsCount"] == 1
    assert hubspot.calls == []


def test_export_sheet_replaces_tab_and_versions_snapshots(engine, db, sheets):
    first = engine.export_sheet("user-1", "site-pages", LABELS, "sheet-1", "Pages")
    assert first["rowsAdded"] == 2
    assert first["backupId"].startswith("sheet_site_pages_")

    values = sheets.read_values("sheet-1", "Pages")
    assert values[0] == ["Export Date"] + LABELS
    assert values[1][1] == "101"

    second = engine.export_sheet("user-1", "site-pages", LABELS, "sheet-1", "Pages")
    versions = [s["version_number"] for s in db.list_export_snapshots(second["exportId"])]
    assert versions == [2]

    snapshot = db.list_export_snapshots(first["exportId"])[0]
    assert snapshot["version_number"] == 1
    assert [r["id"] for r in snapshot["snapshot_json"]] == ["101", "102"]

    ct_row = db.get_content_type_row("site-pages")
    latest = db.latest_user_export("user-1", ct_row["id"], "sheet-1", "Pages")
    assert latest["id"] == second["exportId"]
    assert latest["backup_id"] == second["backupId"]


def test_export_sheet_without_sheets_connection(db, hubspot):
    engine = ExportEngine(db, hubspot)
    with pytest.raises(ValidationError):
        engine.export_sheet("user-1", "site-pages", LABELS, "sheet-1")


def test_export_unknown_content_type(engine):
    with pytest.raises(ValidationError):
        engine.export_csv("user-1", "newsletters")
