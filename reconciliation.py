"""
Change Detection / Reconciliation
Diffs a later view of exported records (sheet rows or CSV import rows) against
the snapshot taken at export time, field by field, restricted to editable
fields and with value normalization so formatting noise never counts as a change.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from content_types import ValidationError, find_content_type, get_content_type
from field_registry import display_to_camel, editable_headers, to_camel, to_snake

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "ID", "hubspot_page_id")
SAMPLE_CHANGES_LIMIT = 5
HASH_SAMPLE_ROWS = 3

NO_SNAPSHOTS_MESSAGE = "No page snapshots found to compare against. Please export the data first."

# Sheet header -> page_snapshots column compared while polling.
# Only columns that are editable for the record's content type are reported.
POLL_FIELDS = {
    "Name": "name",
    "Html Title": "html_title",
    "Meta Description": "meta_description",
    "Slug": "slug",
    "State": "state",
    "Current State": "current_state",
    "Content Type": "content_type",
    "Published": "published",
}

DETECT_IGNORED_HEADERS = {"id", "export date", "created at", "updated at"}
DATE_HEADERS = {"Archived At", "Publish Date"}
EMPTY_MARKERS = {"", "n/a", "undefined", "null"}


class NotFoundError(Exception):
    """A referenced resource does not exist"""


class NoBaselineError(NotFoundError):
    """There is no export snapshot to diff against"""


# ============================================
# NORMALIZATION
# ============================================

def normalize_cell_value(value: Any) -> Any:
    """Hydrate a raw cell value. Already-typed values pass through unchanged."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text == "" or text == "EMPTY":
        return None
    if text.upper() == "TRUE":
        return True
    if text.upper() == "FALSE":
        return False
    if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def comparable(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_empty_or_na(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in EMPTY_MARKERS
    return False


def _loose_comparable(value: Any) -> str:
    """Case-insensitive comparison form used for import diffs"""
    if is_empty_or_na(value):
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


# ============================================
# DIFF
# ============================================

@dataclass
class FieldChange:
    id: str
    field: str
    previous_value: Any
    new_value: Any
    normalized_previous: Any
    normalized_new: Any
    has_changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "field": self.field,
            "originalValue": self.previous_value,
            "newValue": self.new_value,
            "hasChanged": self.has_changed,
        }


@dataclass
class DiffResult:
    changes: List[FieldChange] = field(default_factory=list)
    records_with_changes: Dict[str, bool] = field(default_factory=dict)
    skipped: int = 0

    @property
    def changed_records(self) -> int:
        return sum(1 for changed in self.records_with_changes.values() if changed)


def record_id(record: Dict[str, Any], id_fields: Iterable[str] = ID_FIELDS) -> Optional[str]:
    for key in id_fields:
        value = record.get(key)
        if value is not None and str(value).strip() != "":
            return str(value).strip()
    return None


def record_key(key: str) -> str:
    """Sheet headers (Html Title, Id) map back to record keys; record keys pass through"""
    if key[:1].isupper() or " " in key:
        return display_to_camel(key)
    return key


def _keyed(record: Dict[str, Any]) -> Dict[str, Any]:
    return {record_key(str(k)): v for k, v in record.items()}


def diff_records(before: List[Dict[str, Any]], after: List[Dict[str, Any]],
                 editable_fields: Iterable[str],
                 id_fields: Iterable[str] = ID_FIELDS) -> DiffResult:
    """
    Field-by-field diff of `after` against `before`.

    Both sides may use sheet headers or camelCase record keys. Only keys
    present on the after-record and listed in editable_fields are compared;
    a key missing from the after-record is never treated as cleared.
    `before` should hold one baseline per id; the first occurrence wins.
    """
    editable = set(editable_fields)
    id_fields = tuple(id_fields)
    result = DiffResult()

    baseline: Dict[str, Dict[str, Any]] = {}
    for rec in map(_keyed, before):
        rid = record_id(rec, id_fields)
        if rid is None:
            logger.debug("Baseline record without identifier ignored")
            continue
        baseline.setdefault(rid, rec)

    for rec in map(_keyed, after):
        rid = record_id(rec, id_fields)
        if rid is None:
            result.skipped += 1
            logger.info("Skipping record without identifier")
            continue
        base = baseline.get(rid)
        if base is None:
            result.skipped += 1
            logger.debug(f"No baseline for record {rid}, nothing to compare")
            continue

        changed = False
        for key, new_value in rec.items():
            if key not in editable or key in id_fields:
                continue
            previous_value = base.get(key)
            norm_prev = normalize_cell_value(previous_value)
            norm_new = normalize_cell_value(new_value)
            if comparable(norm_prev) != comparable(norm_new):
                changed = True
                result.changes.append(FieldChange(rid, key, previous_value, new_value,
                                                  norm_prev, norm_new))
        result.records_with_changes[rid] = changed

    return result


def map_sheet_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Title Case sheet headers -> camelCase record keys"""
    mapped: Dict[str, Any] = {}
    for header, value in row.items():
        if header.startswith("_"):
            continue
        key = display_to_camel(header)
        if not key or key.startswith("_"):
            continue
        if value == "TRUE":
            value = True
        elif value == "FALSE":
            value = False
        mapped[key] = value
    return mapped


def latest_snapshots(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the single most recent snapshot per hubspot_page_id"""
    latest: Dict[str, Dict[str, Any]] = {}

    def rank(row):
        return (row.get("version_number") or 0, row.get("created_at") or "", row.get("id") or 0)

    for row in rows:
        pid = str(row.get("hubspot_page_id"))
        current = latest.get(pid)
        if current is None or rank(row) > rank(current):
            latest[pid] = row
    return list(latest.values())


def compute_data_hash(rows: List[Dict[str, Any]]) -> str:
    """Cheap short-circuit hash over the row count and a sample of the first rows"""
    if not rows:
        return "empty"
    sample = "||".join(
        "|".join("" if v is None else str(v) for v in row.values())
        for row in rows[:HASH_SAMPLE_ROWS]
    )
    return f"{len(rows)}_{len(sample)}_{json.dumps(sample, ensure_ascii=False)[:100]}"


def summarize_changes(changes: List[FieldChange]) -> Dict[str, Dict[str, Any]]:
    summary: Dict[str, Dict[str, Any]] = {}
    for change in changes:
        entry = summary.setdefault(change.field, {"totalChanges": 0, "sampleChanges": []})
        entry["totalChanges"] += 1
        if len(entry["sampleChanges"]) < SAMPLE_CHANGES_LIMIT:
            entry["sampleChanges"].append({
                "id": change.id,
                "from": change.previous_value,
                "to": change.new_value,
            })
    return summary


def poll_state_key(user_id: str, sheet_id: str, tab_name: Optional[str]) -> str:
    return f"poll_hash:{user_id}:{sheet_id}:{tab_name or ''}"


# ============================================
# ENGINE
# ============================================

class ReconciliationEngine:
    def __init__(self, db, sheets=None, header_config=None):
        self.db = db
        self.sheets = sheets
        self.header_config = header_config

    def _require_sheets(self):
        if self.sheets is None:
            raise ValidationError("Google Sheets not connected")
        return self.sheets

    def editable_fields(self, content_type: str) -> Set[str]:
        fields: Set[str] = set()
        if self.header_config is not None:
            fields = self.header_config.editable_fields(content_type)
        if not fields:
            logger.info(f"No stored header configuration for {content_type}, using registry")
            fields = set(editable_headers(content_type))
        return fields

    def _resolve_content_type_row(self, content_type: Any) -> Dict[str, Any]:
        if isinstance(content_type, int):
            row = self.db.get_content_type_row_by_id(content_type)
        else:
            row = self.db.get_content_type_row(get_content_type(content_type).slug)
        if row is None:
            raise ValidationError("Invalid content type")
        return row

    # --- snapshot comparison ---

    def compare_sheet_data(self, user_id: str, content_type: Any, sheet_id: str,
                           tab_id: Optional[str] = None) -> Dict[str, Any]:
        ct_row = self._resolve_content_type_row(content_type)
        editable = self.editable_fields(ct_row["slug"])

        export = self.db.latest_user_export(user_id, ct_row["id"], sheet_id, tab_id)
        if export is None:
            raise NoBaselineError("No previous export found for this sheet and content type")

        snapshots = self.db.list_export_snapshots(export["id"])
        if not snapshots:
            raise NoBaselineError("No snapshot data found for this export")
        snapshot = max(snapshots, key=lambda s: s["version_number"])

        sheet_rows = self._require_sheets().read_records(sheet_id, tab_id)
        mapped = [map_sheet_row(r) for r in sheet_rows]

        diff = diff_records(snapshot["snapshot_json"], mapped, editable)
        logger.info(f"Compared {len(mapped)} sheet rows against export {export['id']}: "
                    f"{len(diff.changes)} field changes")

        return {
            "comparison": {
                "totalRows": len(mapped),
                "changedRows": diff.changed_records,
                "fieldChanges": [c.to_dict() for c in diff.changes],
                "summary": summarize_changes(diff.changes),
            },
            "exportInfo": {
                "exportId": export["id"],
                "exportDate": export["created_at"],
                "snapshotId": snapshot["id"],
                "versionNumber": snapshot["version_number"],
            },
        }

    # --- polling ---

    def poll_changes(self, user_id: str, sheet_id: str, tab_name: Optional[str] = None,
                     last_hash: Optional[str] = None,
                     content_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Diff the live sheet against the latest page snapshots of the same
        sheet and tab. Without an explicit content type each snapshot's own
        content type decides which columns are editable.
        """
        explicit_ct = get_content_type(content_type) if content_type else None
        values = self._require_sheets().read_values(sheet_id, tab_name)
        if not values:
            return {"hasChanges": False, "changes": [], "dataHash": "empty", "noBaseline": False}

        headers = [str(h) for h in values[0]]
        records = []
        for index, row in enumerate(values[1:]):
            item: Dict[str, Any] = {"id": f"gsheet_{index}"}
            for i, header in enumerate(headers):
                item[header] = row[i] if i < len(row) and row[i] is not None else ""
            records.append(item)

        data_hash = compute_data_hash(records)
        state_key = poll_state_key(user_id, sheet_id, tab_name)
        previous_hash = last_hash or self.db.get_state(state_key)
        if previous_hash and previous_hash == data_hash:
            return {"hasChanges": False, "changes": [], "dataHash": data_hash, "noBaseline": False}

        snapshots = self.db.list_page_snapshots(user_id, sheet_id=sheet_id, tab_name=tab_name)
        if not snapshots:
            return {
                "hasChanges": False,
                "changes": [],
                "dataHash": data_hash,
                "noBaseline": True,
                "message": NO_SNAPSHOTS_MESSAGE,
            }

        baseline = {str(s["hubspot_page_id"]): s for s in latest_snapshots(snapshots)}
        editable_by_type: Dict[str, Set[str]] = {}
        changes: List[Dict[str, Any]] = []
        for record in records:
            page_id = record.get("Id")
            if not page_id:
                continue
            snapshot = baseline.get(str(page_id))
            if snapshot is None:
                continue
            ct = explicit_ct or find_content_type(snapshot.get("content_type"))
            if ct is None:
                logger.warning(f"Snapshot for {page_id} has no known content type, skipping")
                continue
            if ct.slug not in editable_by_type:
                editable_by_type[ct.slug] = self.editable_fields(ct.slug)
            editable = editable_by_type[ct.slug]
            for header, column in POLL_FIELDS.items():
                if header not in record or to_camel(column) not in editable:
                    continue
                sheet_value = normalize_cell_value(record[header])
                snapshot_value = snapshot.get(column)
                if comparable(normalize_cell_value(snapshot_value)) == comparable(sheet_value):
                    continue
                changes.append({
                    "field": column,
                    "oldValue": "" if snapshot_value is None else snapshot_value,
                    "newValue": "" if sheet_value is None else sheet_value,
                    "pageId": page_id,
                    "header": header,
                    "dbColumn": column,
                })

        self.db.set_state(state_key, data_hash)
        summary = {
            "totalItems": len(records),
            "itemsWithChanges": len({c["pageId"] for c in changes}),
            "totalChanges": len(changes),
        }
        if changes:
            logger.info(f"Poll found {len(changes)} changes in sheet {sheet_id}")
        return {
            "hasChanges": bool(changes),
            "changes": changes,
            "summary": summary,
            "dataHash": data_hash,
            "noBaseline": False,
        }

    # --- import diffs ---

    def detect_changes(self, user_id: str, import_rows: List[Dict[str, Any]],
                       content_type: Optional[str] = None,
                       import_type: str = "sheets") -> Dict[str, Any]:
        if not import_rows:
            raise ValidationError("Missing or empty required fields.")
        if import_type == "csv":
            if not content_type:
                raise ValidationError("Missing required field: contentType for CSV import.")
            prefix = f"csv_{get_content_type(content_type).snake}_"
            backup_id = self.db.latest_backup_id(user_id, prefix=prefix)
        else:
            backup_id = self.db.latest_backup_id(user_id, exclude_prefix="csv_")

        if backup_id is None:
            raise NoBaselineError(
                f'No database backup found for content type "{content_type}". '
                "Please export your data first."
            )

        snapshots = self.db.list_page_snapshots(user_id, backup_id=backup_id)
        baseline = {str(s["hubspot_page_id"]): s for s in latest_snapshots(snapshots)}

        fields_to_compare = {
            header: to_snake(header)
            for header in import_rows[0].keys()
            if header.lower() not in DETECT_IGNORED_HEADERS
        }

        changes: List[Dict[str, Any]] = []
        for row in import_rows:
            page_id = row.get("Id")
            if not page_id:
                continue
            snapshot = baseline.get(str(page_id))
            if snapshot is None:
                logger.debug(f"Imported record {page_id} is not in backup {backup_id}")
                continue

            content = snapshot.get("page_content") or {}
            modified: Dict[str, Any] = {}
            for header, db_field in fields_to_compare.items():
                import_value = row.get(header)
                db_value = content.get(db_field)
                if db_value is None:
                    db_value = snapshot.get(db_field)
                if db_value is None:
                    db_value = content.get(display_to_camel(header))
                if is_empty_or_na(db_value) and is_empty_or_na(import_value):
                    continue

                new_cmp = _loose_comparable(import_value)
                old_cmp = _loose_comparable(db_value)
                if header in DATE_HEADERS:
                    new_cmp = new_cmp[:-1] + "+00:00" if new_cmp.endswith("Z") else new_cmp
                    old_cmp = old_cmp[:-1] + "+00:00" if old_cmp.endswith("Z") else old_cmp

                if old_cmp.lower() != new_cmp.lower():
                    modified[db_field] = {
                        "old": db_value,
                        "new": import_value,
                        "header": header,
                        "dbField": db_field,
                    }

            if modified:
                changes.append({
                    "pageId": page_id,
                    "name": row.get("Name") or snapshot.get("name"),
                    "type": "modified",
                    "fields": modified,
                })

        return {
            "changes": changes,
            "summary": {
                "totalItems": len(import_rows),
                "itemsWithChanges": len(changes),
                "totalChanges": sum(len(c["fields"]) for c in changes),
                "backupId": backup_id,
            },
        }
