"""
Shared fixtures: a throwaway SQLite database and in-memory HubSpot / Sheets fakes
"""

import json

import pytest
import requests
from fastapi.testclient import TestClient

import database
from content_types import get_content_type
from database import EnhancedDB
from header_discovery import (
    CONTENT_TYPES_CACHE_TTL_SECONDS,
    DROPDOWN_CACHE_TTL_SECONDS,
    HEADERS_CACHE_TTL_SECONDS,
    TtlCache,
)


SITE_PAGES = [
    {
        "id": "101",
        "name": "Home",
        "htmlTitle": "Home | Acme",
        "metaDescription": "Welcome",
        "slug": "home",
        "state": "PUBLISHED",
        "currentState": "PUBLISHED",
        "published": True,
        "url": "https://acme.com/home",
        "archivedAt": "1970-01-01T00:00:00Z",
        "publishDate": "2024-01-01T00:00:00Z",
    },
    {
        "id": "102",
        "name": "About",
        "htmlTitle": "About us",
        "metaDescription": "",
        "slug": "about",
        "state": "DRAFT",
        "currentState": "DRAFT",
        "published": False,
        "url": "https://acme.com/about",
        "archivedAt": "1970-01-01T00:00:00Z",
    },
]


def make_response(status_code, body=None, headers=None, reason=None):
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason or ("OK" if status_code < 400 else "Bad Request")
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.headers.update(headers or {})
    return response


def http_error(status_code, body=None):
    response = make_response(status_code, body)
    return requests.exceptions.HTTPError(f"{status_code} error", response=response)


class FakeHubSpot:
    """Records every call; per-id errors can be queued for get and update"""

    def __init__(self, records=None):
        self.records = {"site-pages": [dict(r) for r in SITE_PAGES]}
        if records is not None:
            self.records = records
        self.pages = {}
        self.samples = {}
        self.totals = {}
        self.get_errors = {}
        self.update_errors = {}
        self.publish_errors = {}
        self.calls = []

    def fetch_all(self, content_type, limit=100, max_pages=None, **filters):
        ct = get_content_type(content_type)
        self.calls.append(("LIST", ct.api_path))
        return [dict(r) for r in self.records.get(ct.slug, [])]

    def list_page(self, content_type, after=None, limit=100, **filters):
        ct = get_content_type(content_type)
        self.calls.append(("LIST", ct.api_path))
        results = [dict(r) for r in self.records.get(ct.slug, [])]
        return {"results": results[:limit], "total": len(results)}

    def count(self, content_type, state=None):
        ct = get_content_type(content_type)
        self.calls.append(("COUNT", ct.slug, state))
        value = self.totals.get((ct.slug, state))
        if isinstance(value, Exception):
            raise value
        return value or 0

    def get_record(self, content_type, record_id):
        ct = get_content_type(content_type)
        self.calls.append(("GET", ct.record_path(record_id)))
        if record_id in self.get_errors:
            raise self.get_errors[record_id]
        return dict(self.pages.get(record_id, {"id": record_id, "name": f"Page {record_id}"}))

    def update_record(self, content_type, record_id, payload):
        ct = get_content_type(content_type)
        self.calls.append(("PATCH", ct.record_path(record_id), dict(payload)))
        if record_id in self.update_errors:
            raise self.update_errors[record_id]
        return dict(payload, id=record_id)

    def publish_action(self, content_type, record_id, action):
        ct = get_content_type(content_type)
        self.calls.append(("POST", ct.publish_action_path(record_id, action)))
        if record_id in self.publish_errors:
            raise self.publish_errors[record_id]
        return {}

    def fetch_first_object(self, content_type, **kwargs):
        ct = get_content_type(content_type)
        self.calls.append(("SAMPLE", ct.slug, kwargs))
        return self.samples.get(ct.slug)

    def writes(self):
        return [c for c in self.calls if c[0] in ("PATCH", "POST")]


class FakeSheets:
    """Stores tabs as lists of string rows, the way the Sheets API returns them"""

    def __init__(self):
        self.tabs = {}

    def replace_tab_contents(self, sheet_id, values, tab_name=None):
        self.tabs[(sheet_id, tab_name)] = [["" if c is None else str(c) for c in row] for row in values]
        return max(len(values) - 1, 0)

    def read_values(self, sheet_id, tab_name=None, cell_range="A:Z"):
        return [list(row) for row in self.tabs.get((sheet_id, tab_name), [])]

    def read_records(self, sheet_id, tab_name=None):
        values = self.read_values(sheet_id, tab_name)
        if not values:
            return []
        headers = values[0]
        return [{h: (row[i] if i < len(row) else "") for i, h in enumerate(headers)}
                for row in values[1:]]

    def set_cell(self, sheet_id, tab_name, row_id, header, value):
        """Edit the cell of the row whose Id column equals row_id"""
        values = self.tabs[(sheet_id, tab_name)]
        id_col = values[0].index("Id")
        col = values[0].index(header)
        for row in values[1:]:
            if row[id_col] == row_id:
                row[col] = value
                return
        raise KeyError(row_id)


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "IS_VERCEL", False)
    return EnhancedDB(str(tmp_path / "hubsync_test.db"))


@pytest.fixture
def hubspot():
    return FakeHubSpot()


@pytest.fixture
def sheets():
    return FakeSheets()


@pytest.fixture
def client(db, hubspot, sheets, monkeypatch):
    """Test client with fakes wired into the app globals (lifespan is not run)"""
    import app as app_module

    monkeypatch.setattr(app_module, "config", None)
    monkeypatch.setattr(app_module, "db", db)
    monkeypatch.setattr(app_module, "hubspot_client", hubspot)
    monkeypatch.setattr(app_module, "sheets_client", sheets)
    monkeypatch.setattr(app_module, "headers_cache", TtlCache(HEADERS_CACHE_TTL_SECONDS))
    monkeypatch.setattr(app_module, "content_types_cache", TtlCache(CONTENT_TYPES_CACHE_TTL_SECONDS))
    monkeypatch.setattr(app_module, "dropdown_cache", TtlCache(DROPDOWN_CACHE_TTL_SECONDS))
    return TestClient(app_module.app)
