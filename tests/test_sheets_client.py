"""
Tests for the Google Sheets wrapper against a mocked discovery service
"""

from unittest.mock import MagicMock

import pytest

from sheets_client import SheetsClient, build_service, quote_title


@pytest.fixture
def service():
    return MagicMock()


def values_api(service):
    return service.spreadsheets.return_value.values.return_value


def test_quote_title():
    assert quote_title(None) == ""
    assert quote_title("Pages") == "'Pages'!"
    assert quote_title("Bob's tab") == "'Bob''s tab'!"


def test_build_service_requires_credentials():
    with pytest.raises(ValueError):
        build_service({})


def test_read_records_pads_short_rows(service):
    values_api(service).get.return_value.execute.return_value = {
        "values": [["Id", "Name", "Slug"], ["1", "Home"], ["2", "About", "about"]]
    }
    records = SheetsClient(service=service).read_records("sheet-1", "Pages")

    assert records == [
        {"Id": "1", "Name": "Home", "Slug": ""},
        {"Id": "2", "Name": "About", "Slug": "about"},
    ]
    values_api(service).get.assert_called_with(spreadsheetId="sheet-1", range="'Pages'!A:Z")


def test_read_records_empty_tab(service):
    values_api(service).get.return_value.execute.return_value = {}
    assert SheetsClient(service=service).read_records("sheet-1") == []


def test_replace_tab_contents_creates_missing_tab(service):
    spreadsheets = service.spreadsheets.return_value
    spreadsheets.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"title": "Sheet1", "sheetId": 0}}]
    }
    spreadsheets.batchUpdate.return_value.execute.return_value = {
        "replies": [{"addSheet": {"properties": {"title": "Pages", "sheetId": 77}}}]
    }

    rows = [["Export Date", "Id"], ["2024-01-01", "1"], ["2024-01-01", "2"]]
    added = SheetsClient(service=service).replace_tab_contents("sheet-1", rows, "Pages")

    assert added == 2
    values_api(service).clear.assert_called_once_with(spreadsheetId="sheet-1", range="'Pages'!A:Z", body={})
    values_api(service).update.assert_called_once_with(
        spreadsheetId="sheet-1", range="'Pages'!A1", valueInputOption="RAW", body={"values": rows}
    )
    # addSheet, then header formatting on the new tab
    format_call = spreadsheets.batchUpdate.call_args_list[-1]
    repeat_cell = format_call.kwargs["body"]["requests"][0]["repeatCell"]
    assert repeat_cell["range"]["sheetId"] == 77
    assert repeat_cell["range"]["endColumnIndex"] == 2


def test_replace_tab_contents_reuses_existing_tab(service):
    spreadsheets = service.spreadsheets.return_value
    spreadsheets.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"title": "pages", "sheetId": 5}}]
    }
    SheetsClient(service=service).replace_tab_contents("sheet-1", [["Id"]], "Pages")

    assert spreadsheets.batchUpdate.call_count == 1
    body = spreadsheets.batchUpdate.call_args.kwargs["body"]
    assert body["requests"][0]["repeatCell"]["range"]["sheetId"] == 5
