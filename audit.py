"""
Audit Logger
Append-only activity log. Written from the HTTP layer after an operation
completes; engines never log audit rows themselves.
"""

import random
import string
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ActivityTypes:
    HUBSPOT_CONNECT = "hubspot_connect"
    HUBSPOT_DISCONNECT = "hubspot_disconnect"
    GOOGLE_CONNECT = "google_connect"
    GOOGLE_DISCONNECT = "google_disconnect"
    EXPORT_CSV = "export_csv"
    EXPORT_SHEETS = "export_sheets"
    READ_CSV_DATA = "read_csv_data"
    IMPORT_GSHEET_DATA = "import_gsheet_data"
    BULK_EDITING = "bulk_editing"
    SYNC_TO_HUBSPOT = "sync_to_hubspot"
    IMPORT_SYNC_TO_HUBSPOT = "import_sync_to_hubspot"
    POLLING_CHANGES_DETECTED = "polling_changes_detected"
    SYNC_START = "sync_start"
    SYNC_COMPLETE = "sync_complete"
    SYNC_FAILED = "sync_failed"
    HEADER_CONFIGURATION_UPDATE = "header_configuration_update"


@dataclass
class AuditEvent:
    user_id: Optional[str]
    action_type: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    status: str = "success"


def make_log_id(action_type: str) -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{action_type}_{millis}_{suffix}"


class AuditLogger:
    def __init__(self, db):
        self.db = db

    def log(self, event: AuditEvent) -> Dict[str, Any]:
        """Append one audit row. Storage failures are reported, not raised."""
        now = datetime.now(timezone.utc).isoformat()
        details = dict(event.details or {})
        details.setdefault("timestamp", now)
        details.setdefault("status", event.status)
        try:
            self.db.insert_audit_log(
                make_log_id(event.action_type),
                event.user_id,
                event.action_type,
                event.resource_type,
                event.resource_id,
                details,
                now,
            )
        except Exception as e:
            logger.error(f"Failed to write audit log {event.action_type}: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True}

    # --- convenience helpers ---

    def log_csv_export(self, user_id: str, content_type: str, items_count: int,
                       filename: str, columns: List[str]) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.EXPORT_CSV, "csv", filename, {
            "contentType": content_type,
            "itemsCount": items_count,
            "columns": columns,
            "fileName": filename,
        }))

    def log_sheets_export(self, user_id: str, content_type: str, sheet_id: str,
                          tab_name: Optional[str], rows_added: int,
                          columns: List[str]) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.EXPORT_SHEETS, "google_sheet", sheet_id, {
            "contentType": content_type,
            "sheetId": sheet_id,
            "tabName": tab_name,
            "rowsAdded": rows_added,
            "columns": columns,
        }))

    def log_sync_to_hubspot(self, user_id: str, result: Dict[str, Any],
                            source: str = "changes") -> Dict[str, Any]:
        status = "success" if not result.get("failed") else "partial"
        return self.log(AuditEvent(user_id, ActivityTypes.SYNC_TO_HUBSPOT, "hubspot", None, {
            "source": source,
            "counts": result.get("counts", {}),
            "failed": result.get("failed", []),
        }, status=status))

    def log_import_sync(self, user_id: str, content_type: str,
                        result: Dict[str, Any]) -> Dict[str, Any]:
        status = "success" if result.get("success") else "partial"
        return self.log(AuditEvent(user_id, ActivityTypes.IMPORT_SYNC_TO_HUBSPOT, "hubspot", None, {
            "contentType": content_type,
            "synced": result.get("synced", 0),
            "failed": result.get("failed", 0),
            "errors": result.get("errors", []),
        }, status=status))

    def log_bulk_editing(self, user_id: str, page_id: str, content_type: str,
                         changes: Dict[str, Any], success: bool = True) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.BULK_EDITING, content_type, page_id, {
            "changes": changes,
        }, status="success" if success else "failed"))

    def log_polling_changes(self, user_id: str, sheet_id: str, tab_name: Optional[str],
                            summary: Dict[str, Any]) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.POLLING_CHANGES_DETECTED,
                                   "google_sheet", sheet_id, {
                                       "tabName": tab_name,
                                       "summary": summary,
                                   }))

    def log_csv_data_access(self, user_id: str, filename: str, row_count: int) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.READ_CSV_DATA, "csv", filename, {
            "fileName": filename,
            "rowCount": row_count,
        }))

    def log_google_sheets_import(self, user_id: str, sheet_id: str, tab_name: Optional[str],
                                 row_count: int) -> Dict[str, Any]:
        return self.log(AuditEvent(user_id, ActivityTypes.IMPORT_GSHEET_DATA,
                                   "google_sheet", sheet_id, {
                                       "tabName": tab_name,
                                       "rowCount": row_count,
                                   }))

    def list_logs(self, user_id: Optional[str] = None, action_type: Optional[str] = None,
                  limit: int = 50) -> List[Dict[str, Any]]:
        return self.db.list_audit_logs(user_id=user_id, action_type=action_type, limit=limit)
