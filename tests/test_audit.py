"""
Tests for the audit logger
"""

import re

from audit import ActivityTypes, AuditEvent, AuditLogger, make_log_id


class BrokenDB:
    def insert_audit_log(self, *args, **kwargs):
        raise RuntimeError("database is locked")


def test_make_log_id_format():
    assert re.match(r"^export_csv_\d{13}_[a-z0-9]{9}$", make_log_id("export_csv"))


def test_log_adds_timestamp_and_status(db):
    logger = AuditLogger(db)
    assert logger.log(AuditEvent("user-1", ActivityTypes.EXPORT_CSV, "csv", "file.csv", {"itemsCount": 3})) == {
        "success": True
    }

    logs = logger.list_logs("user-1")
    assert len(logs) == 1
    entry = logs[0]
    assert entry["action_type"] == "export_csv"
    assert entry["resource_id"] == "file.csv"
    assert entry["details"]["itemsCount"] == 3
    assert entry["details"]["status"] == "success"
    assert "timestamp" in entry["details"]


def test_storage_failure_is_reported_not_raised():
    result = AuditLogger(BrokenDB()).log(AuditEvent("user-1", ActivityTypes.BULK_EDITING))
    assert result == {"success": False, "error": "database is locked"}


def test_filter_by_user_and_action(db):
    logger = AuditLogger(db)
    logger.log_csv_export("user-1", "site-pages", 2, "a.csv", ["Id"])
    logger.log_sheets_export("user-1", "site-pages", "sheet-1", "Pages", 2, ["Id"])
    logger.log_csv_data_access("user-2", "b.csv", 10)

    assert len(logger.list_logs("user-1")) == 2
    sheets_logs = logger.list_logs(action_type=ActivityTypes.EXPORT_SHEETS)
    assert [l["resource_id"] for l in sheets_logs] == ["sheet-1"]
    assert sheets_logs[0]["details"]["tabName"] == "Pages"
    assert logger.list_logs("user-2")[0]["details"]["rowCount"] == 10


def test_partial_sync_is_logged_as_partial(db):
    logger = AuditLogger(db)
    logger.log_sync_to_hubspot("user-1", {
        "counts": {"attempted": 2, "succeeded": 1, "failed": 1},
        "failed": [{"pageId": "2", "error": "boom"}],
    })
    entry = logger.list_logs(action_type=ActivityTypes.SYNC_TO_HUBSPOT)[0]
    assert entry["details"]["status"] == "partial"
    assert entry["details"]["counts"]["failed"] == 1


def test_failed_edit_is_logged_as_failed(db):
    logger = AuditLogger(db)
    logger.log_bulk_editing("user-1", "12", "landing-pages", {"name": "x"}, success=False)
    entry = logger.list_logs(action_type=ActivityTypes.BULK_EDITING)[0]
    assert entry["resource_type"] == "landing-pages"
    assert entry["details"]["status"] == "failed"
