"""
Tests for the HubSync application
"""

import pytest

import app as app_module
from conftest import http_error


LABELS = ["Id", "Name", "Html Title", "Slug", "State", "Published"]


def audit_actions(client, user_id="user-1"):
    logs = client.get("/api/audit/logs", params={"userId": user_id}).json()["logs"]
    return [log["action_type"] for log in logs]


def test_health_check(client):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data


def test_content_types(client):
    response = client.get("/api/content-types")
    assert response.status_code == 200
    types = response.json()["contentTypes"]
    assert [t["slug"] for t in types][:3] == ["landing-pages", "site-pages", "blog-posts"]
    site = next(t for t in types if t["slug"] == "site-pages")
    assert site["supportsPublish"] is True
    assert site["pageType"] == "Site Page"


def test_content_counts(client, hubspot):
    hubspot.totals = {
        ("site-pages", None): 10,
        ("site-pages", "DRAFT"): 3,
        ("blogs", None): 2,
        ("tags", None): http_error(403, {"message": "Missing scopes"}),
    }
    response = client.post("/api/hubspot/content-counts",
                           json={"contentTypes": ["site-pages", "blogs", "tags"]})
    assert response.status_code == 200
    data = response.json()
    assert data["counts"]["site-pages"] == {"total": 10, "published": 7, "draft": 3}
    assert data["counts"]["blogs"] == {"total": 2}
    assert data["counts"]["tags"] == {"total": 0, "error": "Missing scopes"}
    assert data["disclaimer"] == "All counts exclude archived content."


def test_hubspot_not_connected(client, monkeypatch):
    monkeypatch.setattr(app_module, "hubspot_client", None)
    response = client.get("/api/hubspot/header-configurations/refresh-headers")
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "HubSpot not connected"}


def test_refresh_headers(client, hubspot):
    hubspot.samples = {"site-pages": {"id": "1", "name": "Home"}}
    response = client.get("/api/hubspot/header-configurations/refresh-headers")
    assert response.status_code == 200
    headers = response.json()["headers"]
    assert {h["header"] for h in headers} == {"id", "name"}

    client.get("/api/hubspot/header-configurations/refresh-headers")
    sampled = len(hubspot.calls)
    client.get("/api/hubspot/header-configurations/refresh-headers", params={"force": "true"})
    assert len(hubspot.calls) == sampled * 2


def test_refresh_headers_when_discovery_finds_nothing(client):
    response = client.get("/api/hubspot/header-configurations/refresh-headers")
    assert response.status_code == 502
    assert "Could not fetch any headers" in response.json()["error"]


def test_header_configuration_flow(client):
    discovered = [{"header": "name", "headerType": "string",
                   "presence": {"Website Page": True, "Blogs": True}}]

    response = client.post("/api/hubspot/header-configurations/compare-headers", json={"headers": discovered})
    assert response.json()["totalMissing"] == 1

    response = client.post("/api/hubspot/header-configurations/add-missing-headers",
                           json={"headers": discovered, "userId": "user-1"})
    assert response.json() == {"success": True, "headersInserted": 1, "configurationsInserted": 2}

    configs = client.get("/api/hubspot/header-configurations").json()["configurations"]
    assert configs[0]["api_name"] == "name"
    assert configs[0]["contentType_Website Pages"] is True

    response = client.post("/api/hubspot/header-configurations", json={
        "userId": "user-1",
        "configurations": [dict(configs[0], **{"contentType_Blogs": False})],
    })
    assert response.json() == {"success": True, "upserted": 0, "deleted": 1}
    assert "header_configuration_update" in audit_actions(client)


def test_compare_defaults_and_apply(client):
    client.post("/api/hubspot/header-configurations/add-missing-headers", json={"headers": [
        {"header": "state", "headerType": "string", "presence": {"Website Page": True}},
    ]})
    discovered = [{"header": "state", "headerType": "string",
                   "presence": {"Website Page": True, "Landing Page": True}}]

    response = client.post("/api/hubspot/header-configurations/compare-defaults", json={"headers": discovered})
    assert response.json()["totalMismatches"] == 1

    response = client.post("/api/hubspot/header-configurations/apply-defaults", json={"headers": discovered})
    assert response.json() == {"success": True, "updated": 2, "deleted": 0}

    response = client.post("/api/hubspot/header-configurations/compare-defaults", json={"headers": discovered})
    assert response.json()["totalMismatches"] == 0


def test_sync_gsheets_then_compare(client):
    response = client.post("/api/hubspot/header-configurations/sync-gsheets", json={"userId": "user-1"})
    assert response.status_code == 200
    assert response.json()["upserted"] > 0

    response = client.get("/api/hubspot/header-configurations/compare-gsheets")
    assert response.json()["totalDifferences"] == 0

    headers = client.get("/api/hubspot/headers", params={"contentType": "site-pages", "inAppEdit": "true"})
    keys = {h["key"] for h in headers.json()["headers"]}
    assert "state" in keys
    assert "name" not in keys


def test_export_csv(client):
    response = client.post("/api/export/csv", json={
        "userId": "user-1", "contentType": "site-pages", "columns": LABELS,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["itemsCount"] == 2
    assert data["csv"].splitlines()[0] == "Export Date,Id,Name,Html Title,Slug,State,Published"
    assert "export_csv" in audit_actions(client)


def test_export_csv_requires_user(client):
    response = client.post("/api/export/csv", json={"contentType": "site-pages"})
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "userId" in response.json()["error"]


def test_export_csv_unknown_content_type(client):
    response = client.post("/api/export/csv", json={"userId": "user-1", "contentType": "newsletters"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid content type: newsletters"


def test_sheet_export_compare_and_poll(client, sheets):
    response = client.post("/api/google/sheets/export", json={
        "userId": "user-1", "contentType": "site-pages", "sheetId": "sheet-1",
        "tabName": "Pages", "columns": LABELS,
    })
    assert response.status_code == 200
    assert response.json()["rowsAdded"] == 2

    sheets.set_cell("sheet-1", "Pages", "102", "Slug", "about-us")

    response = client.post("/api/import/compare-sheet-data", json={
        "userId": "user-1", "sheetId": "sheet-1", "contentType": "site-pages", "tabId": "Pages",
    })
    assert response.status_code == 200
    changes = response.json()["comparison"]["fieldChanges"]
    assert [(c["id"], c["field"], c["newValue"]) for c in changes] == [("102", "slug", "about-us")]

    response = client.post("/api/import/poll-changes", json={
        "userId": "user-1", "sheetId": "sheet-1", "tabName": "Pages",
    })
    data = response.json()
    assert data["hasChanges"] is True
    assert data["changes"][0]["field"] == "slug"

    actions = audit_actions(client)
    assert "export_sheets" in actions
    assert "import_gsheet_data" in actions
    assert "polling_changes_detected" in actions


def test_sheet_export_requires_sheets(client, monkeypatch):
    monkeypatch.setattr(app_module, "sheets_client", None)
    response = client.post("/api/google/sheets/export", json={
        "userId": "user-1", "contentType": "site-pages", "sheetId": "sheet-1",
    })
    assert response.status_code == 400
    assert response.json()["error"] == "Google Sheets not connected"


def test_compare_without_export_is_404(client):
    response = client.post("/api/import/compare-sheet-data", json={
        "userId": "user-1", "sheetId": "sheet-1", "contentType": "site-pages",
    })
    assert response.status_code == 404
    assert response.json() == {"success": False,
                               "error": "No previous export found for this sheet and content type"}


def test_detect_changes_without_backup_is_404(client):
    response = client.post("/api/import/detect-changes", json={
        "userId": "user-1", "importData": [{"Id": "1", "Name": "x"}],
        "contentType": "site-pages", "importType": "csv",
    })
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_sync_to_hubspot(client, db, hubspot):
    db.upsert_page_backup("42", "Site Page", "site-pages")
    response = client.post("/api/sync/to-hubspot", json={
        "userId": "user-1",
        "changes": [
            {"pageId": "42", "fields": {"html_title": {"old": "Old", "new": "New"}}},
            {"pageId": "43", "fields": {"html_title": {"old": "Old", "new": "New"}}},
        ],
    })
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["counts"] == {"attempted": 2, "succeeded": 1, "failed": 1}
    assert data["failed"] == [{"pageId": "43", "error": "Page type not found in database backup"}]
    assert hubspot.writes() == [("PATCH", "/cms/v3/pages/site-pages/42", {"htmlTitle": "New"})]

    logs = client.get("/api/audit/logs", params={"actionType": "sync_to_hubspot"}).json()["logs"]
    assert logs[0]["details"]["status"] == "partial"


@pytest.mark.parametrize("payload", [
    {"userId": "user-1", "changes": {"pageId": "42"}},
    {"userId": "user-1"},
    {"changes": []},
    ["not", "an", "object"],
])
def test_sync_to_hubspot_rejects_bad_payload(client, hubspot, payload):
    response = client.post("/api/sync/to-hubspot", json=payload)
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["succeeded"] == []
    assert response.json()["failed"] == []
    assert hubspot.calls == []


def test_legacy_import_sync(client, hubspot):
    response = client.post("/api/import/sync-to-hubspot", json={
        "userId": "user-1", "contentType": "blog-posts",
        "importData": [{"id": "5", "name": "Post title"}],
    })
    assert response.status_code == 200
    assert response.json() == {"success": True, "synced": 1, "failed": 0, "errors": []}
    assert "import_sync_to_hubspot" in audit_actions(client)


def test_page_edit(client, hubspot):
    response = client.post("/api/pages/edit", json={
        "userId": "user-1", "pageId": 12, "contentType": "landing-pages",
        "updates": {"state": "PUBLISHED_OR_SCHEDULED"},
    })
    assert response.status_code == 200
    assert response.json() == {"success": True, "changes": {"state": "PUBLISHED_OR_SCHEDULED"}}
    assert hubspot.writes() == [("POST", "/cms/v3/pages/landing-pages/12/publish-actions/push-live")]
    assert "bulk_editing" in audit_actions(client)


def test_sync_to_hubspot_storage_failure_still_returns_arrays(client, db, monkeypatch):
    def db_down(page_ids):
        raise RuntimeError("db down")

    monkeypatch.setattr(db, "get_page_backups", db_down)
    response = client.post("/api/sync/to-hubspot", json={
        "userId": "user-1", "changes": [{"pageId": "42", "fields": {"name": {"new": "x"}}}],
    })
    assert response.status_code == 200
    data = response.json()
    assert data["succeeded"] == []
    assert data["failed"] == [{"pageId": "42", "error": "Could not load page backups: db down"}]


def test_sync_to_hubspot_unexpected_error_returns_arrays(client, monkeypatch):
    def boom(self, changes, user_id=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(app_module.SyncBackEngine, "sync_changes", boom)
    response = client.post("/api/sync/to-hubspot", json={"userId": "user-1", "changes": []})
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "boom", "succeeded": [], "failed": []}


def test_poll_changes_ignores_read_only_columns(client, sheets):
    client.post("/api/google/sheets/export", json={
        "userId": "user-1", "contentType": "site-pages", "sheetId": "sheet-1",
        "tabName": "Pages", "columns": LABELS,
    })
    sheets.set_cell("sheet-1", "Pages", "102", "Published", "TRUE")

    response = client.post("/api/import/poll-changes", json={
        "userId": "user-1", "sheetId": "sheet-1", "tabName": "Pages", "contentType": "site-pages",
    })
    assert response.json()["hasChanges"] is False
    assert "polling_changes_detected" not in audit_actions(client)


def test_bulk_edit(client, hubspot):
    response = client.post("/api/pages/bulk-edit", json={
        "userId": "user-1",
        "selectedItems": [{"pageId": "1", "contentType": "Site Page"}, {"pageId": "2"}],
        "updates": {"name": "Shared"},
    })
    assert response.status_code == 200
    data = response.json()
    assert data["successful"] == 1
    assert data["failed"] == 1
    assert data["results"][1] == {"pageId": "2", "error": "Page type not found in database backup",
                                  "success": False}
    assert hubspot.writes() == [("PATCH", "/cms/v3/pages/site-pages/1", {"name": "Shared"})]
    assert "bulk_editing" in audit_actions(client)


def test_bulk_edit_requires_updates(client):
    response = client.post("/api/pages/bulk-edit", json={
        "userId": "user-1", "selectedItems": ["1"], "updates": {},
    })
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Missing required parameters"}


def test_list_pages_with_filters(client):
    response = client.post("/api/hubspot/pages", json={
        "contentType": "site-pages", "filters": {"name": "hom"},
    })
    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data["content"]] == ["101"]
    assert data["total"] == 2
    page = data["content"][0]
    assert page["contentType"] == "Site Page"
    assert page["inAppEditHeaders"]["state"] == "PUBLISHED"
    assert page["readOnlyHeaders"]["url"] == "https://acme.com/home"
    assert "name" in {f["key"] for f in data["filterFields"]}
    assert "publicTitle" not in {f["key"] for f in data["filterFields"]}


def test_list_pages_rejects_unavailable_filter(client):
    response = client.post("/api/hubspot/pages", json={
        "contentType": "site-pages", "filters": {"publicTitle": "x"},
    })
    assert response.status_code == 400
    assert "publicTitle" in response.json()["error"]


def test_dropdown_options_are_cached(client, hubspot):
    response = client.get("/api/hubspot/dropdown-options")
    assert response.status_code == 200
    options = response.json()["dropdownOptions"]
    assert options["name"] == ["About", "Home"]
    assert options["slug"] == ["about", "home"]
    assert options["state"] == ["DRAFT", "PUBLISHED_OR_SCHEDULED"]

    listed = len(hubspot.calls)
    client.get("/api/hubspot/dropdown-options")
    assert len(hubspot.calls) == listed
    client.get("/api/hubspot/dropdown-options", params={"force": "true"})
    assert len(hubspot.calls) == listed * 2
