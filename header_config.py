"""
Header Configuration Store
Reconciles discovered and registry headers against the header_definitions /
header_configurations tables. A configuration row for (header, content type)
means the field is present for that content type.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from content_types import ValidationError, all_content_types, find_content_type, get_content_type
from field_registry import HUBSPOT_HEADERS, STATE_OPTIONS, camel_to_display, get_header
from header_discovery import composite_key

logger = logging.getLogger(__name__)

CONFIG_FIELDS = ("data_type", "category", "filters", "read_only", "in_app_edit")

# stored column -> registry comparison label
GSHEET_FIELDS = {
    "data_type": "dataType",
    "category": "category",
    "read_only": "isReadOnly",
    "in_app_edit": "inAppEdit",
    "filters": "filters",
}

DEFAULT_CONFIG = {
    "data_type": "string",
    "category": "Additional",
    "filters": False,
    "read_only": False,
    "in_app_edit": False,
}


def presence_key(label: str) -> str:
    return f"contentType_{label}"


def collapse_type(data_type: Optional[str]) -> str:
    """Reduce stored data types to the four the UI renders"""
    if data_type == "date-time":
        return "datetime"
    if data_type in ("boolean", "number"):
        return data_type
    return "string"


def _registry_config(header: str, label: str, data_type: Optional[str] = None) -> Dict[str, Any]:
    reg = get_header(header, label)
    config = dict(DEFAULT_CONFIG)
    if reg:
        config.update({
            "data_type": reg.data_type,
            "category": reg.category,
            "filters": reg.filters,
            "read_only": reg.read_only,
            "in_app_edit": reg.in_app_edit,
        })
    if data_type:
        config["data_type"] = data_type
    return config


def _differs(existing: Optional[Dict[str, Any]], wanted: Dict[str, Any]) -> bool:
    if existing is None:
        return True
    return any(existing.get(f) != wanted.get(f) for f in CONFIG_FIELDS)


class HeaderConfigService:
    def __init__(self, db):
        self.db = db

    # --- helpers ---

    def _content_type_ids(self) -> Dict[str, Dict[str, Any]]:
        """label -> content_types row"""
        return {row["name"]: row for row in self.db.list_content_types()}

    def _stored(self) -> Dict[Tuple[str, str], Dict[str, Any]]:
        """(api_name, content type label) -> configuration row"""
        return {(r["api_name"], r["content_type_name"]): r
                for r in self.db.list_header_configurations()}

    def _upsert_if_changed(self, header_id: int, content_type_id: int,
                           wanted: Dict[str, Any], user_id: Optional[str]) -> bool:
        existing = self.db.get_header_configuration(header_id, content_type_id)
        if not _differs(existing, wanted):
            return False
        self.db.upsert_header_configuration(header_id, content_type_id, updated_by=user_id,
                                            **{f: wanted[f] for f in CONFIG_FIELDS})
        return True

    def _delete_if_present(self, header_id: int, content_type_id: int) -> bool:
        return self.db.delete_header_configuration(header_id, content_type_id) > 0

    # --- listing ---

    def list_configurations(self) -> List[Dict[str, Any]]:
        labels = [ct.label for ct in all_content_types()]
        pivot: Dict[int, Dict[str, Any]] = {}
        for r in self.db.list_header_configurations():
            entry = pivot.get(r["header_id"])
            if entry is None:
                entry = {
                    "id": r["header_id"],
                    "api_name": r["api_name"],
                    "display_name": r["display_name"],
                    "data_type": r["data_type"],
                    "category": r["category"],
                    "filters": r["filters"],
                    "read_only": r["read_only"],
                    "in_app_edit": r["in_app_edit"],
                    "updated_at": r["updated_at"],
                    "updated_by": r["updated_by"],
                }
                entry.update({presence_key(lbl): False for lbl in labels})
                pivot[r["header_id"]] = entry
            entry[presence_key(r["content_type_name"])] = True
        return sorted(pivot.values(), key=lambda e: e["api_name"])

    def list_headers(self, content_type: Optional[str] = None, in_app_edit: Optional[bool] = None,
                     read_only: Optional[bool] = None, filters: Optional[bool] = None,
                     category: Optional[str] = None) -> List[Dict[str, Any]]:
        label = get_content_type(content_type).label if content_type else None
        out = []
        for r in self.db.list_header_configurations():
            if label and r["content_type_name"] != label:
                continue
            if in_app_edit is not None and r["in_app_edit"] != in_app_edit:
                continue
            if read_only is not None and r["read_only"] != read_only:
                continue
            if filters is not None and r["filters"] != filters:
                continue
            if category and r["category"] != category:
                continue
            out.append({
                "key": r["api_name"],
                "label": r["display_name"] or camel_to_display(r["api_name"]),
                "type": collapse_type(r["data_type"]),
                "options": list(STATE_OPTIONS) if r["api_name"] == "state" else None,
                "category": r["category"],
                "contentType": r["content_type_name"],
                "readOnly": r["read_only"],
                "inAppEdit": r["in_app_edit"],
                "filters": r["filters"],
            })
        return out

    def editable_fields(self, content_type: str) -> Set[str]:
        """Non read-only api names configured for a content type"""
        label = get_content_type(content_type).label
        fields = {r["api_name"] for r in self.db.list_header_configurations()
                  if r["content_type_name"] == label and not r["read_only"]}
        return fields

    # --- saving ---

    def save_configurations(self, rows: List[Dict[str, Any]],
                            user_id: Optional[str] = None) -> Dict[str, int]:
        ct_rows = self._content_type_ids()
        upserted = deleted = 0
        for row in rows:
            api_name = row.get("api_name") or row.get("header")
            if not api_name:
                raise ValidationError("Each configuration needs an api_name")
            header_id, _ = self.db.upsert_header_definition(
                api_name, row.get("display_name") or camel_to_display(api_name))
            wanted = {f: row.get(f, DEFAULT_CONFIG[f]) for f in CONFIG_FIELDS}
            for label, ct_row in ct_rows.items():
                key = presence_key(label)
                if key not in row:
                    continue
                if row[key]:
                    if self._upsert_if_changed(header_id, ct_row["id"], wanted, user_id):
                        upserted += 1
                elif self._delete_if_present(header_id, ct_row["id"]):
                    deleted += 1
        logger.info(f"Saved header configurations: {upserted} upserted, {deleted} deleted")
        return {"upserted": upserted, "deleted": deleted}

    def add_missing_headers(self, headers: List[Dict[str, Any]],
                            user_id: Optional[str] = None) -> Dict[str, int]:
        ct_rows = self._content_type_ids()
        headers_inserted = configs_inserted = 0
        for item in headers:
            name = item.get("header")
            if not name:
                continue
            header_id, created = self.db.upsert_header_definition(name, camel_to_display(name))
            if created:
                headers_inserted += 1
            for present_label, present in (item.get("presence") or {}).items():
                ct = find_content_type(present_label)
                if not present or ct is None:
                    continue
                ct_id = ct_rows[ct.label]["id"]
                if self.db.get_header_configuration(header_id, ct_id) is not None:
                    continue
                wanted = dict(DEFAULT_CONFIG, data_type=item.get("headerType") or "string")
                self.db.upsert_header_configuration(header_id, ct_id, updated_by=user_id, **wanted)
                configs_inserted += 1
        logger.info(f"Added {headers_inserted} headers and {configs_inserted} configurations")
        return {"headersInserted": headers_inserted, "configurationsInserted": configs_inserted}

    # --- discovery comparisons ---

    def compare_headers(self, discovered: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Discovered headers whose (name, type) pair is not stored yet"""
        stored = {composite_key(r["api_name"], r["data_type"])
                  for r in self.db.list_header_configurations()}
        return [h for h in discovered
                if composite_key(h.get("header"), h.get("headerType")) not in stored]

    def compare_defaults(self, discovered: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        stored = self._stored()
        stored_names = {name for name, _ in stored}
        results = []
        for item in discovered:
            name = item.get("header")
            if name not in stored_names:
                continue
            mismatches = []
            types = {r["data_type"] for (n, _), r in stored.items() if n == name}
            expected_type = item.get("headerType")
            if expected_type and types != {expected_type}:
                mismatches.append({"field": "dataType",
                                   "current": ", ".join(sorted(types)),
                                   "expected": expected_type})
            presence = item.get("presence") or {}
            for ct in all_content_types():
                expected = bool(presence.get(ct.discovery_label, presence.get(ct.label, False)))
                current = (name, ct.label) in stored
                if current != expected:
                    mismatches.append({"field": presence_key(ct.label),
                                       "current": current, "expected": expected})
            if mismatches:
                results.append({"header": name, "mismatches": mismatches})
        return results

    def apply_defaults(self, items: List[Dict[str, Any]],
                       user_id: Optional[str] = None) -> Dict[str, int]:
        ct_rows = self._content_type_ids()
        updated = deleted = 0
        for item in items:
            name = item.get("header")
            if not name:
                continue
            header_id, _ = self.db.upsert_header_definition(name, camel_to_display(name))
            presence = item.get("presence") or {}
            for ct in all_content_types():
                ct_id = ct_rows[ct.label]["id"]
                present = presence.get(ct.discovery_label, presence.get(ct.label, False))
                if present:
                    wanted = _registry_config(name, ct.label, item.get("headerType"))
                    if self._upsert_if_changed(header_id, ct_id, wanted, user_id):
                        updated += 1
                elif self._delete_if_present(header_id, ct_id):
                    deleted += 1
        logger.info(f"Applied defaults: {updated} updated, {deleted} deleted")
        return {"updated": updated, "deleted": deleted}

    # --- registry (Google Sheets source of truth) ---

    def compare_gsheets(self) -> Dict[str, Any]:
        stored = self._stored()
        differences: List[Dict[str, Any]] = []
        registry_keys = set()
        for reg in HUBSPOT_HEADERS:
            for ct in all_content_types():
                present = ct.label in reg.content_types
                row = stored.get((reg.header, ct.label))
                if present:
                    registry_keys.add((reg.header, ct.label))
                if present and row is None:
                    differences.append({"header": reg.header, "contentType": ct.label,
                                        "field": "presence", "current": "Missing",
                                        "expected": "Present"})
                elif not present and row is not None:
                    differences.append({"header": reg.header, "contentType": ct.label,
                                        "field": "presence", "current": "Present",
                                        "expected": "Missing"})
                elif row is not None:
                    expected = _registry_config(reg.header, ct.label)
                    for column, label in GSHEET_FIELDS.items():
                        if row[column] != expected[column]:
                            differences.append({"header": reg.header, "contentType": ct.label,
                                                "field": label, "current": row[column],
                                                "expected": expected[column]})

        for (name, label), row in stored.items():
            if (name, label) not in registry_keys and not any(
                    d["header"] == name and d["contentType"] == label for d in differences):
                differences.append({"header": name, "contentType": label, "field": "presence",
                                    "current": "Present", "expected": "Missing"})

        return {"differences": differences, "totalDifferences": len(differences)}

    def sync_gsheets(self, user_id: Optional[str] = None) -> Dict[str, int]:
        ct_rows = self._content_type_ids()
        upserted = deleted = 0
        registry_keys = set()
        for reg in HUBSPOT_HEADERS:
            header_id, _ = self.db.upsert_header_definition(reg.header, camel_to_display(reg.header))
            for label in reg.content_types:
                registry_keys.add((reg.header, label))
                wanted = _registry_config(reg.header, label)
                if self._upsert_if_changed(header_id, ct_rows[label]["id"], wanted, user_id):
                    upserted += 1

        for (name, label), row in self._stored().items():
            if (name, label) not in registry_keys:
                if self._delete_if_present(row["header_id"], row["content_type_id"]):
                    deleted += 1

        logger.info(f"Synced configurations from registry: {upserted} upserted, {deleted} deleted")
        return {"upserted": upserted, "deleted": deleted}
