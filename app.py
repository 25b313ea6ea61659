"""
HubSync - HubSpot CMS <-> Google Sheets bulk editing
FastAPI application: export content to CSV or Sheets, detect edits against the
export snapshot and sync changed fields back to HubSpot.

Supports both local development (SQLite) and Vercel deployment (PostgreSQL)
"""

import os
import asyncio
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import requests
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audit import ActivityTypes, AuditEvent, AuditLogger
from content_types import ValidationError, all_content_types, archived_disclaimer, get_content_type
from database import EnhancedDB
from export_engine import ExportEngine
from header_config import HeaderConfigService
from header_discovery import (
    CONTENT_TYPES_CACHE_TTL_SECONDS,
    DROPDOWN_CACHE_TTL_SECONDS,
    HEADERS_CACHE_TTL_SECONDS,
    DiscoveryError,
    HeaderDiscovery,
    TtlCache,
)
from hubspot_client import HubSpotClient, parse_hubspot_error
from reconciliation import NotFoundError, ReconciliationEngine
from sheets_client import SheetsClient
from sync_engine import SyncBackEngine, load_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
CONFIG_PATH = Path(__file__).parent / "config.yaml"
CONTENT_TYPES_CACHE_KEY = "content_types"
DROPDOWN_CACHE_KEY = "dropdown_options"
SYNC_TO_HUBSPOT_PATH = "/api/sync/to-hubspot"


class NotConnectedError(Exception):
    """A required vendor account is not configured"""


# Global clients
config = None
db = None
hubspot_client = None
sheets_client = None
headers_cache = TtlCache(HEADERS_CACHE_TTL_SECONDS)
content_types_cache = TtlCache(CONTENT_TYPES_CACHE_TTL_SECONDS)
dropdown_cache = TtlCache(DROPDOWN_CACHE_TTL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    global config, db, hubspot_client, sheets_client, headers_cache, content_types_cache, dropdown_cache

    config = load_config(str(CONFIG_PATH))

    db = EnhancedDB(config.database.get("path", "hubsync.db"),
                    database_url=config.database.get("url"))

    if config.hubspot.get("access_token"):
        hubspot_client = HubSpotClient(config.hubspot)
        logger.info("HubSpot client initialized")
    else:
        logger.warning("HubSpot access token not configured")

    if config.google.get("access_token") or config.google.get("service_account_file"):
        try:
            sheets_client = SheetsClient(config.google)
        except (ValueError, OSError) as e:
            logger.error(f"Failed to initialize Google Sheets client: {e}")
    else:
        logger.warning("Google Sheets credentials not configured")

    headers_cache = TtlCache(config.cache.get("headers_ttl_seconds", HEADERS_CACHE_TTL_SECONDS))
    content_types_cache = TtlCache(
        config.cache.get("content_types_ttl_seconds", CONTENT_TYPES_CACHE_TTL_SECONDS))
    dropdown_cache = TtlCache(config.cache.get("dropdown_ttl_seconds", DROPDOWN_CACHE_TTL_SECONDS))

    logger.info("HubSync server started")

    yield

    logger.info("HubSync server stopped")


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="HubSync",
    description="HubSpot CMS bulk editing through Google Sheets and CSV",
    version=VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# ERROR HANDLING
# ============================================

def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def sync_error_response(status_code: int, message: str) -> JSONResponse:
    """Sync-back errors keep the result arrays so clients can always read them"""
    return JSONResponse(status_code=status_code, content={
        "success": False, "error": message, "succeeded": [], "failed": [],
    })


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', []) if p != 'body')}: {e.get('msg')}"
        for e in exc.errors()
    )
    if request.url.path == SYNC_TO_HUBSPOT_PATH:
        return sync_error_response(400, f"Invalid request: {details}")
    return error_response(400, f"Invalid request: {details}")


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(400, str(exc))


@app.exception_handler(NotConnectedError)
async def not_connected_handler(request: Request, exc: NotConnectedError):
    return error_response(400, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(404, str(exc))


@app.exception_handler(DiscoveryError)
async def discovery_error_handler(request: Request, exc: DiscoveryError):
    return error_response(502, str(exc))


@app.exception_handler(requests.exceptions.HTTPError)
async def hubspot_error_handler(request: Request, exc: requests.exceptions.HTTPError):
    message = parse_hubspot_error(exc.response)
    logger.error(f"Upstream error on {request.url.path}: {message}")
    return error_response(502, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return error_response(500, str(exc) or "An unexpected error occurred.")


# ============================================
# COLLABORATORS
# ============================================

def require_hubspot():
    if hubspot_client is None:
        raise NotConnectedError("HubSpot not connected")
    return hubspot_client


def require_sheets():
    if sheets_client is None:
        raise NotConnectedError("Google Sheets not connected")
    return sheets_client


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError("Missing required field: userId")
    return user_id


def audit() -> AuditLogger:
    return AuditLogger(db)


def header_config_service() -> HeaderConfigService:
    return HeaderConfigService(db)


def header_discovery() -> HeaderDiscovery:
    options = config.discovery if config is not None else {}
    return HeaderDiscovery(require_hubspot(), headers_cache, options)


def export_engine(client, sheets=None) -> ExportEngine:
    page_limit = config.export.get("page_limit", 100) if config is not None else 100
    return ExportEngine(db, client, sheets, page_limit=page_limit)


# ============================================
# MODELS
# ============================================

class HealthResponse(BaseModel):
    success: bool
    status: str
    timestamp: datetime
    version: str


class ContentCountsRequest(BaseModel):
    contentTypes: Optional[List[str]] = None


class SaveConfigurationsRequest(BaseModel):
    configurations: List[Dict[str, Any]]
    userId: Optional[str] = None


class HeadersRequest(BaseModel):
    headers: Optional[List[Dict[str, Any]]] = None
    userId: Optional[str] = None


class SyncGsheetsRequest(BaseModel):
    userId: Optional[str] = None


class ExportCsvRequest(BaseModel):
    userId: str
    contentType: str
    columns: Optional[List[str]] = None
    data: Optional[List[Dict[str, Any]]] = None


class SheetExportRequest(BaseModel):
    userId: str
    contentType: str
    sheetId: str
    tabName: Optional[str] = None
    columns: Optional[List[str]] = None
    data: Optional[List[Dict[str, Any]]] = None


class CompareSheetDataRequest(BaseModel):
    userId: str
    sheetId: str
    contentTypeId: Optional[int] = None
    contentType: Optional[str] = None
    tabId: Optional[str] = None


class PollChangesRequest(BaseModel):
    userId: str
    sheetId: str
    tabName: Optional[str] = None
    contentType: Optional[str] = None
    lastDataHash: Optional[str] = None


class DetectChangesRequest(BaseModel):
    userId: str
    importData: List[Dict[str, Any]]
    contentType: Optional[str] = None
    importType: str = "sheets"


class SyncToHubspotRequest(BaseModel):
    userId: Optional[str] = None
    changes: Any = None


class ImportSyncRequest(BaseModel):
    userId: str
    contentType: str
    importData: List[Dict[str, Any]]


class PageEditRequest(BaseModel):
    userId: str
    pageId: Union[str, int]
    contentType: str
    updates: Dict[str, Any]


class BulkEditRequest(BaseModel):
    userId: str
    selectedItems: List[Union[Dict[str, Any], str, int]]
    updates: Dict[str, Any]
    contentType: Optional[str] = None


class PagesRequest(BaseModel):
    contentType: str = "landing-pages"
    limit: int = 100
    after: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None


# ============================================
# HEALTH / CONTENT TYPES
# ============================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        success=True,
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=VERSION
    )


@app.get("/api/content-types")
async def list_content_types():
    """Active content types with their capabilities (cached)"""
    def load():
        capabilities = {ct.slug: ct.to_dict() for ct in all_content_types()}
        return [dict(row, **capabilities.get(row["slug"], {}))
                for row in db.list_content_types() if row["is_active"]]

    return {"success": True, "contentTypes": content_types_cache.get_or_load(CONTENT_TYPES_CACHE_KEY, load)}


def _count_content_type(client, ct) -> Dict[str, Any]:
    try:
        total = client.count(ct)
        if not ct.supports_state:
            return {"total": total}
        draft = client.count(ct, state="DRAFT")
        return {"total": total, "published": max(total - draft, 0), "draft": draft}
    except requests.exceptions.RequestException as e:
        message = parse_hubspot_error(e.response) if getattr(e, "response", None) is not None else str(e)
        logger.error(f"Failed to count {ct.label}: {message}")
        return {"total": 0, "error": message}


@app.post("/api/hubspot/content-counts")
async def content_counts(body: ContentCountsRequest):
    """Per content type totals, fetched in parallel"""
    client = require_hubspot()
    types = ([get_content_type(v) for v in body.contentTypes]
             if body.contentTypes else all_content_types())

    loop = asyncio.get_event_loop()
    results = await asyncio.gather(*[
        loop.run_in_executor(None, _count_content_type, client, ct) for ct in types
    ])

    return {
        "success": True,
        "counts": {ct.slug: result for ct, result in zip(types, results)},
        "disclaimer": archived_disclaimer(),
    }


@app.post("/api/hubspot/pages")
async def list_pages(body: PagesRequest):
    """One page of content for the bulk edit table, filtered by available fields"""
    result = export_engine(require_hubspot()).list_content(
        body.contentType, body.limit, body.after, body.filters)
    return {"success": True, **result}


@app.get("/api/hubspot/dropdown-options")
async def dropdown_options(force: bool = False):
    """Distinct field values for edit dropdowns (cached)"""
    client = require_hubspot()
    options = dropdown_cache.get_or_load(
        DROPDOWN_CACHE_KEY, lambda: export_engine(client).dropdown_options(), force=force)
    return {"success": True, "dropdownOptions": options}


# ============================================
# HEADER CONFIGURATIONS
# ============================================

@app.get("/api/hubspot/header-configurations/refresh-headers")
async def refresh_headers(force: bool = False):
    """Discover live HubSpot headers (cached for five minutes)"""
    result = header_discovery().refresh(force=force)
    return {"success": True, **result}


@app.get("/api/hubspot/header-configurations")
async def list_header_configurations():
    return {"success": True, "configurations": header_config_service().list_configurations()}


@app.post("/api/hubspot/header-configurations")
async def save_header_configurations(body: SaveConfigurationsRequest):
    result = header_config_service().save_configurations(body.configurations, body.userId)
    audit().log(AuditEvent(body.userId, ActivityTypes.HEADER_CONFIGURATION_UPDATE,
                           "header_configuration", None, {"source": "manual", **result}))
    return {"success": True, **result}


def _discovered(body: HeadersRequest) -> List[Dict[str, Any]]:
    if body.headers is not None:
        return body.headers
    return header_discovery().refresh()["headers"]


@app.post("/api/hubspot/header-configurations/add-missing-headers")
async def add_missing_headers(body: HeadersRequest):
    result = header_config_service().add_missing_headers(_discovered(body), body.userId)
    audit().log(AuditEvent(body.userId, ActivityTypes.HEADER_CONFIGURATION_UPDATE,
                           "header_configuration", None, {"source": "add_missing", **result}))
    return {"success": True, **result}


@app.post("/api/hubspot/header-configurations/compare-headers")
async def compare_headers(body: HeadersRequest):
    missing = header_config_service().compare_headers(_discovered(body))
    return {"success": True, "missingHeaders": missing, "totalMissing": len(missing)}


@app.post("/api/hubspot/header-configurations/compare-defaults")
async def compare_defaults(body: HeadersRequest):
    mismatches = header_config_service().compare_defaults(_discovered(body))
    return {"success": True, "mismatches": mismatches, "totalMismatches": len(mismatches)}


@app.post("/api/hubspot/header-configurations/apply-defaults")
async def apply_defaults(body: HeadersRequest):
    result = header_config_service().apply_defaults(_discovered(body), body.userId)
    audit().log(AuditEvent(body.userId, ActivityTypes.HEADER_CONFIGURATION_UPDATE,
                           "header_configuration", None, {"source": "apply_defaults", **result}))
    return {"success": True, **result}


@app.get("/api/hubspot/header-configurations/compare-gsheets")
async def compare_gsheets():
    return {"success": True, **header_config_service().compare_gsheets()}


@app.post("/api/hubspot/header-configurations/sync-gsheets")
async def sync_gsheets(body: SyncGsheetsRequest):
    result = header_config_service().sync_gsheets(body.userId)
    audit().log(AuditEvent(body.userId, ActivityTypes.HEADER_CONFIGURATION_UPDATE,
                           "header_configuration", None, {"source": "gsheets", **result}))
    return {"success": True, **result}


@app.get("/api/hubspot/headers")
async def list_headers(
    contentType: Optional[str] = None,
    inAppEdit: Optional[bool] = None,
    readOnly: Optional[bool] = None,
    filters: Optional[bool] = None,
    category: Optional[str] = None,
):
    headers = header_config_service().list_headers(contentType, inAppEdit, readOnly, filters, category)
    return {"success": True, "headers": headers}


# ============================================
# EXPORTS
# ============================================

@app.post("/api/export/csv")
async def export_csv(body: ExportCsvRequest):
    user_id = require_user(body.userId)
    ct = get_content_type(body.contentType)
    client = hubspot_client if body.data is not None else require_hubspot()
    result = export_engine(client).export_csv(user_id, ct, body.columns, records=body.data)
    audit().log_csv_export(user_id, ct.slug, result["itemsCount"], result["filename"],
                           body.columns or [])
    return {"success": True, **result}


@app.post("/api/google/sheets/export")
async def export_sheet(body: SheetExportRequest):
    user_id = require_user(body.userId)
    ct = get_content_type(body.contentType)
    sheets = require_sheets()
    client = hubspot_client if body.data is not None else require_hubspot()
    result = export_engine(client, sheets).export_sheet(
        user_id, ct, body.columns, body.sheetId, body.tabName, records=body.data)
    audit().log_sheets_export(user_id, ct.slug, body.sheetId, body.tabName,
                              result["rowsAdded"], body.columns or [])
    return {"success": True, **result}


# ============================================
# IMPORT / CHANGE DETECTION
# ============================================

@app.post("/api/import/compare-sheet-data")
async def compare_sheet_data(body: CompareSheetDataRequest):
    user_id = require_user(body.userId)
    content_type = body.contentTypeId if body.contentTypeId is not None else body.contentType
    if content_type is None:
        raise ValidationError("Missing required fields: contentTypeId and sheetId")
    engine = ReconciliationEngine(db, require_sheets(), header_config_service())
    result = engine.compare_sheet_data(user_id, content_type, body.sheetId, body.tabId)
    audit().log_google_sheets_import(user_id, body.sheetId, body.tabId,
                                     result["comparison"]["totalRows"])
    return {"success": True, **result}


@app.post("/api/import/poll-changes")
async def poll_changes(body: PollChangesRequest):
    user_id = require_user(body.userId)
    engine = ReconciliationEngine(db, require_sheets(), header_config_service())
    result = engine.poll_changes(user_id, body.sheetId, body.tabName, body.lastDataHash,
                                 body.contentType)
    if result.get("hasChanges"):
        audit().log_polling_changes(user_id, body.sheetId, body.tabName,
                                    dict(result["summary"], dataHash=result["dataHash"]))
    return {"success": True, **result}


@app.post("/api/import/detect-changes")
async def detect_changes(body: DetectChangesRequest):
    user_id = require_user(body.userId)
    engine = ReconciliationEngine(db)
    result = engine.detect_changes(user_id, body.importData, body.contentType, body.importType)
    return {"success": True, **result}


# ============================================
# SYNC BACK
# ============================================

@app.post(SYNC_TO_HUBSPOT_PATH)
async def sync_to_hubspot(body: SyncToHubspotRequest):
    try:
        user_id = require_user(body.userId)
        if not isinstance(body.changes, list):
            raise ValidationError("Invalid request: changes must be an array")
        engine = SyncBackEngine(db, require_hubspot(), header_config_service())
        result = engine.sync_changes(body.changes, user_id).to_dict()
    except (ValidationError, NotConnectedError) as e:
        return sync_error_response(400, str(e))
    except Exception as e:
        logger.exception("Sync to HubSpot failed")
        return sync_error_response(500, str(e) or "An unexpected error occurred.")
    audit().log_sync_to_hubspot(user_id, result)
    return {"success": True, **result}


@app.post("/api/import/sync-to-hubspot")
async def import_sync_to_hubspot(body: ImportSyncRequest):
    user_id = require_user(body.userId)
    ct = get_content_type(body.contentType)
    engine = SyncBackEngine(db, require_hubspot(), header_config_service())
    result = engine.sync_rows(body.importData, ct, user_id)
    audit().log_import_sync(user_id, ct.slug, result)
    return result


@app.post("/api/pages/edit")
async def edit_page(body: PageEditRequest):
    user_id = require_user(body.userId)
    ct = get_content_type(body.contentType)
    page_id = str(body.pageId)
    engine = SyncBackEngine(db, require_hubspot(), header_config_service())
    result = engine.edit_record(user_id, page_id, ct, body.updates)
    audit().log_bulk_editing(user_id, page_id, ct.slug, body.updates, success=result["success"])
    return result


@app.post("/api/pages/bulk-edit")
async def bulk_edit_pages(body: BulkEditRequest):
    user_id = require_user(body.userId)
    engine = SyncBackEngine(db, require_hubspot(), header_config_service())
    result = engine.bulk_edit(user_id, body.selectedItems, body.updates, body.contentType)
    audit().log(AuditEvent(user_id, ActivityTypes.BULK_EDITING, body.contentType or "pages", None, {
        "updates": body.updates,
        "successful": result["successful"],
        "failed": result["failed"],
        "status": "success" if not result["failed"] else "partial",
    }))
    return result


# ============================================
# AUDIT
# ============================================

@app.get("/api/audit/logs")
async def list_audit_logs(
    userId: Optional[str] = None,
    actionType: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
):
    return {"success": True, "logs": audit().list_logs(userId, actionType, limit)}


def start_server():
    """Start the server manually"""
    import uvicorn
    port = int(os.environ.get("PORT", 8004))
    print("Starting HubSync dashboard API...")
    print(f"API available at: http://localhost:{port}")
    print(f"API Documentation at: http://localhost:{port}/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run(app, host="0.0.0.0", port=port)
    except KeyboardInterrupt:
        print("\nServer stopped")


if __name__ == "__main__":
    start_server()
