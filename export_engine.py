"""
Export Engine
Pulls content from HubSpot, flattens it into rows for CSV or a Google Sheet tab
and stores the point-in-time snapshots later used for change detection.
"""

import io
import csv
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from content_types import ContentType, ValidationError, get_content_type, is_archived
from field_registry import (
    EDITABLE_FIELDS,
    FILTER_FIELDS,
    camel_to_display,
    display_to_camel,
    in_app_edit_headers,
    is_field_available,
    read_only_headers,
    recommended_headers,
    to_camel,
    to_snake,
)
from reconciliation import normalize_cell_value

logger = logging.getLogger(__name__)

EXPORT_DATE_HEADER = "Export Date"

# content scanned for dropdown values, and the fields collected from it
DROPDOWN_CONTENT_TYPES = ("landing-pages", "site-pages", "blog-posts")
DROPDOWN_FIELDS = ("name", "htmlTitle", "slug", "domain", "language", "authorName",
                   "campaign", "subcategory", "tagIds", "contentGroupId")


def _as_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def cell_text(value: Any) -> Any:
    """Render a normalized value as a spreadsheet cell"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Case-insensitive substring match; list fields match on any element"""
    for key, wanted in filters.items():
        if wanted is None or str(wanted).strip() == "":
            continue
        needle = str(wanted).strip().lower()
        actual = record.get(key)
        if isinstance(actual, list):
            if not any(str(v).lower() == needle for v in actual):
                return False
        elif needle not in ("" if actual is None else str(actual)).lower():
            return False
    return True


def default_labels(content_type: str) -> List[str]:
    return ["Id", "Name"] + [camel_to_display(h) for h in recommended_headers(content_type)
                             if h not in ("id", "name")]


class ExportEngine:
    def __init__(self, db, hubspot, sheets=None, page_limit: int = 100):
        self.db = db
        self.hubspot = hubspot
        self.sheets = sheets
        self.page_limit = page_limit

    # --- fetching ---

    def fetch_content(self, content_type: Any) -> List[Dict[str, Any]]:
        ct = get_content_type(content_type)
        records = []
        for record in self.hubspot.fetch_all(ct, limit=self.page_limit):
            if is_archived(record):
                logger.debug(f"Skipping archived {ct.page_type} {record.get('id')}")
                continue
            record = dict(record)
            record["contentType"] = ct.page_type
            records.append(record)
        return records

    def describe_record(self, ct: ContentType, record: Dict[str, Any]) -> Dict[str, Any]:
        in_app = set(in_app_edit_headers(ct.slug))
        read_only = set(read_only_headers(ct.slug))
        item = dict(record)
        item["id"] = str(record.get("id"))
        item["contentType"] = ct.page_type
        item["inAppEditHeaders"] = {k: v for k, v in record.items() if k in in_app}
        item["readOnlyHeaders"] = {k: v for k, v in record.items()
                                   if k in read_only and k not in in_app}
        return item

    def list_content(self, content_type: Any, limit: int = 100, after: Optional[str] = None,
                     filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        One page of a content type listing for the bulk edit table.

        Filters apply to the fetched page only and must be available for the
        content type.
        """
        ct = get_content_type(content_type)
        filters = filters or {}
        unavailable = sorted(k for k in filters if not is_field_available(ct.slug, k))
        if unavailable:
            raise ValidationError(f"Filters not available for {ct.label}: {', '.join(unavailable)}")

        data = self.hubspot.list_page(ct, after=after, limit=limit)
        items = [self.describe_record(ct, r) for r in data.get("results", []) if not is_archived(r)]
        content = [item for item in items if matches_filters(item, filters)]
        return {
            "content": content,
            "total": data.get("total", len(items)),
            "paging": data.get("paging"),
            "filterFields": [f for f in FILTER_FIELDS if is_field_available(ct.slug, f["key"])],
        }

    def dropdown_options(self) -> Dict[str, List[Any]]:
        """Distinct values per field across pages and posts, plus fixed option lists"""
        values: Dict[str, set] = {f: set() for f in DROPDOWN_FIELDS}
        for slug in DROPDOWN_CONTENT_TYPES:
            try:
                records = self.fetch_content(slug)
            except requests.exceptions.RequestException as e:
                logger.error(f"Could not load {slug} for dropdown options: {e}")
                continue
            for record in records:
                for key in DROPDOWN_FIELDS:
                    raw = record.get(key)
                    for value in (raw if isinstance(raw, list) else [raw]):
                        if value is None or str(value).strip() == "":
                            continue
                        values[key].add(str(value).strip())

        options: Dict[str, List[Any]] = {k: sorted(v) for k, v in values.items() if v}
        for editable in EDITABLE_FIELDS:
            if editable.get("options"):
                options[editable["key"]] = list(editable["options"])
        return options

    # --- row building ---

    def build_columns(self, labels: List[str]) -> List[Dict[str, str]]:
        return [{"label": label, "key": display_to_camel(label)} for label in labels]

    def get_field_value(self, record: Dict[str, Any], label: str, key: str) -> Any:
        candidates = [key, label, label.strip(), label.lower(), label.replace(" ", ""),
                      to_camel(label), to_snake(label)]
        for candidate in candidates:
            if candidate in record:
                return normalize_cell_value(record[candidate])
        return None

    def build_rows(self, records: List[Dict[str, Any]], columns: List[Dict[str, str]],
                   export_date: str) -> List[List[Any]]:
        rows: List[List[Any]] = [[EXPORT_DATE_HEADER] + [c["label"] for c in columns]]
        for record in records:
            row = [export_date]
            for column in columns:
                row.append(cell_text(self.get_field_value(record, column["label"], column["key"])))
            rows.append(row)
        return rows

    # --- exports ---

    def _prepare(self, content_type: Any, labels: Optional[List[str]],
                 records: Optional[List[Dict[str, Any]]]):
        ct = get_content_type(content_type)
        labels = list(labels or default_labels(ct.slug))
        if records is None:
            records = self.fetch_content(ct)
        return ct, labels, records

    def export_csv(self, user_id: str, content_type: Any, labels: Optional[List[str]] = None,
                   records: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        ct, labels, records = self._prepare(content_type, labels, records)
        now = datetime.now(timezone.utc)
        rows = self.build_rows(records, self.build_columns(labels), now.isoformat())

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerows(rows)
        content = buffer.getvalue()

        backup_id = f"csv_{ct.snake}_{int(now.timestamp() * 1000)}"
        filename = f"hubspot_{ct.slug}_{len(records)}_items_{now.strftime('%Y-%m-%d')}.csv"
        self.save_snapshots(user_id, ct, records, backup_id, "csv", labels,
                            exported_at=now.isoformat())
        logger.info(f"Exported {len(records)} {ct.label} to CSV ({filename})")

        return {
            "csv": content,
            "filename": filename,
            "backupId": backup_id,
            "itemsCount": len(records),
            "sizeBytes": len(content.encode("utf-8")),
        }

    def export_sheet(self, user_id: str, content_type: Any, labels: Optional[List[str]],
                     sheet_id: str, tab_name: Optional[str] = None,
                     records: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        if self.sheets is None:
            raise ValidationError("Google Sheets not connected")
        if not sheet_id:
            raise ValidationError("Missing required field: sheetId")
        ct, labels, records = self._prepare(content_type, labels, records)
        now = datetime.now(timezone.utc)
        rows = self.build_rows(records, self.build_columns(labels), now.isoformat())

        rows_added = self.sheets.replace_tab_contents(sheet_id, rows, tab_name)

        backup_id = f"sheet_{ct.snake}_{int(now.timestamp() * 1000)}"
        export_id = self.save_snapshots(user_id, ct, records, backup_id, "google_sheets", labels,
                                        sheet_id=sheet_id, tab_name=tab_name,
                                        exported_at=now.isoformat())
        logger.info(f"Exported {rows_added} {ct.label} to sheet {sheet_id} ({tab_name or 'first tab'})")

        return {"rowsAdded": rows_added, "backupId": backup_id, "exportId": export_id}

    # --- snapshots ---

    def save_snapshots(self, user_id: str, ct: ContentType, records: List[Dict[str, Any]],
                       backup_id: str, export_type: str, labels: List[str],
                       sheet_id: Optional[str] = None, tab_name: Optional[str] = None,
                       exported_at: Optional[str] = None) -> int:
        """Persist structured per-record snapshots, the export row and its versioned JSON copy"""
        exported_at = exported_at or datetime.now(timezone.utc).isoformat()
        snapshot_rows = []
        for record in records:
            if record.get("id") is None:
                continue
            snapshot_rows.append({
                "user_id": user_id,
                "backup_id": backup_id,
                "hubspot_page_id": str(record["id"]),
                "content_type": ct.page_type,
                "name": record.get("name"),
                "html_title": record.get("htmlTitle"),
                "meta_description": record.get("metaDescription"),
                "slug": record.get("slug"),
                "state": record.get("state"),
                "current_state": record.get("currentState"),
                "published": _as_bool(record.get("published")),
                "url": record.get("url"),
                "page_content": record,
                "sheet_id": sheet_id,
                "sheet_tab_name": tab_name,
                "exported_at": exported_at,
            })
        self.db.insert_page_snapshots(snapshot_rows)

        ct_row = self.db.get_content_type_row(ct.slug)
        content_type_id = ct_row["id"] if ct_row else None
        export_id = self.db.create_user_export(user_id, content_type_id, export_type, sheet_id,
                                               tab_name, backup_id, len(records), labels)
        version = self.db.next_snapshot_version(user_id, content_type_id, sheet_id, tab_name)
        self.db.add_export_snapshot(export_id, records, version)

        for record in records:
            if record.get("id") is None:
                continue
            self.db.upsert_page_backup(str(record["id"]), ct.page_type, ct.slug,
                                       data=record, user_id=user_id)

        logger.info(f"Saved {len(snapshot_rows)} snapshots for backup {backup_id} (version {version})")
        return export_id
