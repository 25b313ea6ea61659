"""
HubSync Sync Engine
Pushes edited CMS fields back to HubSpot. Every "sync to HubSpot" path
(reconciled changes, legacy raw rows and single in-app edits) runs through
SyncBackEngine so per-record failures are handled the same way everywhere.
"""

import os
import sys
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
import yaml

from content_types import ContentType, ValidationError, find_content_type, get_content_type, is_archived
from database import IS_VERCEL
from field_registry import is_read_only, to_hubspot_field
from hubspot_client import parse_hubspot_error
from reconciliation import normalize_cell_value


# --- Logging ---
def setup_logging():
    """Configure logging (console-only on Vercel due to read-only filesystem)"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    if not IS_VERCEL:
        try:
            if not os.path.exists('logs'):
                os.makedirs('logs')
            handlers.append(logging.FileHandler('logs/hubsync.log', encoding='utf-8'))
        except OSError:
            pass  # read-only filesystem, console logging only

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )
    return logging.getLogger(__name__)

logger = setup_logging()


# --- Configuration ---
ENV_OVERRIDES = [
    # (env var, section, key)
    ("HUBSPOT_ACCESS_TOKEN", "hubspot", "access_token"),
    ("HUBSPOT_API_KEY", "hubspot", "access_token"),
    ("GOOGLE_ACCESS_TOKEN", "google", "access_token"),
    ("GOOGLE_SERVICE_ACCOUNT_FILE", "google", "service_account_file"),
    ("DATABASE_PATH", "database", "path"),
    ("POSTGRES_URL", "database", "url"),
    ("DATABASE_URL", "database", "url"),
]


@dataclass
class Config:
    """Application configuration with validation"""
    raw: Dict[str, Any]

    @property
    def hubspot(self) -> Dict[str, Any]:
        return self.raw.get("hubspot") or {}

    @property
    def google(self) -> Dict[str, Any]:
        return self.raw.get("google") or {}

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database") or {}

    @property
    def cache(self) -> Dict[str, Any]:
        return self.raw.get("cache") or {}

    @property
    def discovery(self) -> Dict[str, Any]:
        return self.raw.get("discovery") or {}

    @property
    def export(self) -> Dict[str, Any]:
        return self.raw.get("export") or {}

    @property
    def environment(self) -> str:
        return self.raw.get("environment", "development")

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = []

        for section in ["hubspot", "google", "database", "cache", "discovery", "export"]:
            if section in self.raw and not isinstance(self.raw[section] or {}, dict):
                errors.append(f"Section {section} must be a mapping")

        if errors:
            return errors

        for key in ["headers_ttl_seconds", "content_types_ttl_seconds", "dropdown_ttl_seconds"]:
            value = self.cache.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                errors.append(f"cache.{key} must be a positive number")

        for key in ["timeout", "max_retries", "backoff_seconds"]:
            value = self.discovery.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"discovery.{key} must be a non-negative number")

        if self.environment not in ("development", "production", "test"):
            errors.append(f"Unknown environment: {self.environment}")

        return errors


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Environment variables take precedence over the YAML file"""
    merged = copy.deepcopy(raw)
    applied = set()
    for env_var, section, key in ENV_OVERRIDES:
        value = os.environ.get(env_var)
        # the first variable listed for a key wins
        if not value or (section, key) in applied:
            continue
        merged[section] = dict(merged.get(section) or {}, **{key: value})
        applied.add((section, key))
    return merged


def load_config(path: Optional[str] = None) -> Config:
    """Load and validate configuration"""
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config YAML must be a mapping at the top level.")
        logger.info(f"Configuration loaded from {path}")
    elif path:
        logger.warning(f"Config file {path} not found, using environment variables only")

    config = Config(raw=apply_env_overrides(raw))
    errors = config.validate()

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    return config


# --- Helpers ---
def safe_str(x: Any) -> str:
    """Safely convert to string"""
    if x is None:
        return ""
    return str(x).strip()

def to_iso_z(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


PAGE_TYPE_NOT_FOUND = "Page type not found in database backup"
BACKUP_LOOKUP_FAILED = "Could not load page backups"
ARCHIVED_PAGE = "Cannot update archived page"

ROW_ID_KEYS = ("id", "Id", "ID")
ROW_IGNORED_KEYS = {"contentType", "exportDate", "Export Date", "Content Type"}


class SyncEntryError(Exception):
    """A single change entry cannot be synced; the batch continues"""


class PartialSyncError(SyncEntryError):
    """The field update reached HubSpot but the state change did not"""

    def __init__(self, message: str, applied: List[str]):
        super().__init__(message)
        self.applied = applied


def publish_action_for(state: Any) -> str:
    value = safe_str(state).upper()
    if value == "DRAFT":
        return "unpublish"
    if "PUBLISH" in value:
        return "push-live"
    raise SyncEntryError(f"Unsupported state value: {state}")


@dataclass
class SyncResult:
    succeeded: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "attempted": len(self.succeeded) + len(self.failed),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed, "counts": self.counts}


class SyncBackEngine:
    """Sends only the changed, editable fields of each record to HubSpot"""

    def __init__(self, db, hubspot, header_config=None):
        self.db = db
        self.hubspot = hubspot
        self.header_config = header_config

    def _resolve_content_type(self, entry: Dict[str, Any], backups: Dict[str, Dict[str, Any]],
                              backup_error: Optional[str] = None) -> ContentType:
        ct = find_content_type(entry.get("contentType"))
        if ct is not None:
            return ct
        backup = backups.get(str(entry.get("pageId")))
        if backup:
            ct = find_content_type(backup.get("page_type")) or find_content_type(backup.get("content_type"))
        if ct is None:
            raise SyncEntryError(backup_error or PAGE_TYPE_NOT_FOUND)
        return ct

    def is_editable(self, ct: ContentType) -> Callable[[str], bool]:
        """
        Editable fields come from the header configuration store when it has
        rows for the content type, otherwise from the static registry.
        """
        configured = set()
        if self.header_config is not None:
            configured = self.header_config.editable_fields(ct.slug)
        if configured:
            return lambda api_field: api_field in configured
        return lambda api_field: not is_read_only(api_field, ct.label)

    def _build_payload(self, ct: ContentType, fields: Dict[str, Any]):
        payload: Dict[str, Any] = {}
        state = None
        skipped: List[str] = []
        editable = self.is_editable(ct)
        for db_field, change in fields.items():
            new_value = change.get("new") if isinstance(change, dict) else change
            api_field = to_hubspot_field(db_field)
            if api_field == "id":
                continue
            if not editable(api_field):
                skipped.append(api_field)
                continue
            value = normalize_cell_value(new_value)
            if api_field == "state":
                state = value
            else:
                payload[api_field] = value
        return payload, state, skipped

    def _mirror(self, ct: ContentType, page_id: str, fields: Dict[str, Any],
                applied: Dict[str, Any], current: Dict[str, Any],
                backups: Dict[str, Dict[str, Any]], user_id: Optional[str]) -> None:
        """Copy applied values into the local backup and change history"""
        backup = backups.get(page_id) or {}
        mirrored = dict(backup.get("data") or current or {})
        mirrored.update(applied)
        self.db.upsert_page_backup(page_id, ct.page_type, ct.slug, data=mirrored, user_id=user_id)
        for db_field, change in fields.items():
            api_field = to_hubspot_field(db_field)
            if api_field not in applied:
                continue
            old_value = change.get("old") if isinstance(change, dict) else current.get(api_field)
            self.db.record_change_history(user_id, page_id, ct.slug, api_field,
                                          old_value, applied[api_field])

    def _sync_entry(self, entry: Dict[str, Any], backups: Dict[str, Dict[str, Any]],
                    user_id: Optional[str], backup_error: Optional[str] = None) -> Dict[str, Any]:
        page_id = safe_str(entry.get("pageId"))
        if not page_id:
            raise SyncEntryError("Missing pageId")

        ct = self._resolve_content_type(entry, backups, backup_error)
        fields = entry.get("fields") or {}
        payload, state, skipped = self._build_payload(ct, fields)
        if not payload and state is None:
            raise SyncEntryError("No editable fields to sync")

        action = None
        if state is not None:
            if ct.supports_publish:
                action = publish_action_for(state)
            else:
                logger.info(f"Skipping state change for {ct.label} {page_id}: no publish support")
                skipped.append("state")

        current = self.hubspot.get_record(ct, page_id)
        if is_archived(current):
            raise SyncEntryError(ARCHIVED_PAGE)

        if payload:
            self.hubspot.update_record(ct, page_id, payload)

        applied = dict(payload)
        state_error = None
        if action is not None:
            try:
                self.hubspot.publish_action(ct, page_id, action)
                applied["state"] = state
            except requests.exceptions.RequestException as e:
                if not payload:
                    raise
                response = getattr(e, "response", None)
                state_error = parse_hubspot_error(response) if response is not None else str(e)

        try:
            self._mirror(ct, page_id, fields, applied, current, backups, user_id)
        except Exception as e:
            logger.warning(f"Synced {page_id} but could not update the local backup: {e}")

        if state_error is not None:
            raise PartialSyncError(
                f"Updated {', '.join(applied)} but the state change failed: {state_error}",
                list(applied),
            )

        logger.info(f"Synced {ct.page_type} {page_id}: {', '.join(applied) or 'no fields'}")
        return {
            "pageId": page_id,
            "name": entry.get("name") or current.get("name"),
            "contentType": ct.slug,
            "fields": list(applied),
            "skippedFields": skipped,
        }

    def sync_changes(self, changes: List[Dict[str, Any]],
                     user_id: Optional[str] = None) -> SyncResult:
        if not isinstance(changes, list):
            raise ValidationError("changes must be a list")

        result = SyncResult()
        backup_error = None
        try:
            backups = self.db.get_page_backups(
                safe_str(c.get("pageId")) for c in changes if isinstance(c, dict) and c.get("pageId")
            )
        except Exception as e:
            logger.exception("Failed to load page backups")
            backups = {}
            backup_error = f"{BACKUP_LOOKUP_FAILED}: {e}"

        for entry in changes:
            if not isinstance(entry, dict):
                result.failed.append({"pageId": None, "error": "Invalid change entry"})
                continue
            page_id = safe_str(entry.get("pageId")) or None
            try:
                result.succeeded.append(self._sync_entry(entry, backups, user_id, backup_error))
            except PartialSyncError as e:
                logger.error(f"Partial sync for {page_id}: {e}")
                result.failed.append({"pageId": page_id, "error": str(e), "appliedFields": e.applied})
            except SyncEntryError as e:
                logger.warning(f"Sync skipped for {page_id}: {e}")
                result.failed.append({"pageId": page_id, "error": str(e)})
            except requests.exceptions.HTTPError as e:
                message = parse_hubspot_error(e.response)
                logger.error(f"HubSpot rejected update for {page_id}: {message}")
                result.failed.append({"pageId": page_id, "error": message})
            except requests.exceptions.RequestException as e:
                logger.error(f"Network error syncing {page_id}: {e}")
                result.failed.append({"pageId": page_id, "error": str(e) or "Network error"})
            except Exception as e:
                logger.exception(f"Unexpected error syncing {page_id}")
                result.failed.append({"pageId": page_id, "error": str(e)})

        logger.info(f"Sync to HubSpot finished: {result.counts}")
        return result

    def sync_rows(self, rows: List[Dict[str, Any]], content_type: Any,
                  user_id: Optional[str] = None) -> Dict[str, Any]:
        """Legacy path: each row is a whole edited record containing its id"""
        ct = get_content_type(content_type)
        if not isinstance(rows, list):
            raise ValidationError("rows must be a list")

        changes = []
        for row in rows:
            page_id = next((row.get(k) for k in ROW_ID_KEYS if row.get(k)), None)
            fields = {
                k: {"new": v} for k, v in row.items()
                if k not in ROW_ID_KEYS and k not in ROW_IGNORED_KEYS and not k.startswith("_")
            }
            changes.append({"pageId": page_id, "contentType": ct.slug,
                            "name": row.get("name"), "fields": fields})

        result = self.sync_changes(changes, user_id)
        return {
            "success": not result.failed,
            "synced": len(result.succeeded),
            "failed": len(result.failed),
            "errors": [{"pageId": f["pageId"], "error": f["error"]} for f in result.failed],
        }

    def edit_record(self, user_id: Optional[str], page_id: str, content_type: Any,
                    updates: Dict[str, Any]) -> Dict[str, Any]:
        """In-app single record edit"""
        ct = get_content_type(content_type)
        if not page_id:
            raise ValidationError("Missing required field: pageId")
        if not updates:
            raise ValidationError("No updates provided")

        result = self.sync_changes([{
            "pageId": page_id,
            "contentType": ct.slug,
            "fields": {k: {"new": v} for k, v in updates.items()},
        }], user_id)

        if result.failed:
            return {"success": False, "changes": updates, "error": result.failed[0]["error"]}
        return {"success": True, "changes": updates}

    def bulk_edit(self, user_id: Optional[str], items: List[Any], updates: Dict[str, Any],
                  content_type: Any = None) -> Dict[str, Any]:
        """Apply the same updates to many records; items are ids or {pageId, contentType}"""
        if not items or not updates:
            raise ValidationError("Missing required parameters")
        if not isinstance(items, list):
            raise ValidationError("selectedItems must be a list")
        default_ct = get_content_type(content_type).slug if content_type else None

        fields = {k: {"new": v} for k, v in updates.items()}
        changes = []
        for item in items:
            if isinstance(item, dict):
                changes.append({"pageId": item.get("pageId"),
                                "contentType": item.get("contentType") or default_ct,
                                "fields": fields})
            else:
                changes.append({"pageId": item, "contentType": default_ct, "fields": fields})

        result = self.sync_changes(changes, user_id)
        results = [{"pageId": s["pageId"], "success": True, "changes": len(s["fields"])}
                   for s in result.succeeded]
        results += [dict(f, success=False) for f in result.failed]
        successful, failed = len(result.succeeded), len(result.failed)
        return {
            "success": True,
            "message": f"Bulk update completed: {successful} successful, {failed} failed",
            "successful": successful,
            "failed": failed,
            "results": results,
        }
