"""
HubSync Database Abstraction Layer
Supports both SQLite (local development) and PostgreSQL (Vercel/production)
"""

import os
import json
import sqlite3
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from abc import ABC, abstractmethod

from content_types import all_content_types

logger = logging.getLogger(__name__)

# Check if we're on Vercel (PostgreSQL) or local (SQLite)
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None
DATABASE_URL = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')

SNAPSHOT_CHUNK_SIZE = 500

# {pk} is replaced with the backend's auto-increment primary key declaration
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS content_types (
        id {pk},
        slug TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        is_active INTEGER DEFAULT 1,
        sort_order INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS header_definitions (
        id {pk},
        api_name TEXT UNIQUE NOT NULL,
        display_name TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS header_configurations (
        id {pk},
        header_id INTEGER NOT NULL,
        content_type_id INTEGER NOT NULL,
        data_type TEXT DEFAULT 'string',
        category TEXT DEFAULT 'Additional',
        filters INTEGER DEFAULT 0,
        read_only INTEGER DEFAULT 0,
        in_app_edit INTEGER DEFAULT 0,
        updated_at TEXT,
        updated_by TEXT,
        UNIQUE(header_id, content_type_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_exports (
        id {pk},
        user_id TEXT NOT NULL,
        content_type_id INTEGER,
        export_type TEXT NOT NULL,
        sheet_id TEXT,
        tab_id TEXT,
        backup_id TEXT,
        items_count INTEGER DEFAULT 0,
        columns TEXT,
        status TEXT DEFAULT 'active',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_export_snapshots (
        id {pk},
        user_export_id INTEGER NOT NULL,
        snapshot_json TEXT NOT NULL,
        version_number INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page_snapshots (
        id {pk},
        user_id TEXT NOT NULL,
        backup_id TEXT NOT NULL,
        hubspot_page_id TEXT NOT NULL,
        content_type TEXT,
        name TEXT,
        html_title TEXT,
        meta_description TEXT,
        slug TEXT,
        state TEXT,
        current_state TEXT,
        published INTEGER,
        url TEXT,
        page_content TEXT,
        sheet_id TEXT,
        sheet_tab_name TEXT,
        exported_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page_backups (
        hubspot_page_id TEXT PRIMARY KEY,
        user_id TEXT,
        page_type TEXT NOT NULL,
        content_type TEXT,
        data TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action_type TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_history (
        id {pk},
        user_id TEXT,
        hubspot_page_id TEXT NOT NULL,
        content_type TEXT,
        field_name TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        change_type TEXT DEFAULT 'update',
        changed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        k TEXT PRIMARY KEY,
        v TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_page_snapshots_lookup ON page_snapshots(user_id, sheet_id, sheet_tab_name)",
    "CREATE INDEX IF NOT EXISTS idx_page_snapshots_page ON page_snapshots(hubspot_page_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_exports_lookup ON user_exports(user_id, content_type_id, sheet_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_user ON audit_logs(user_id, created_at)",
]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _bool_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


class DatabaseInterface(ABC):
    """Abstract base class for database operations"""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        pass

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        pass

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def insert(self, query: str, params: tuple = ()) -> int:
        """Run an INSERT and return the new row id"""
        pass

    def fetchall_dicts(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cur = self.execute(query, params)
        columns = [d[0] for d in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]


class SQLiteDatabase(DatabaseInterface):
    """SQLite implementation for local development"""

    def __init__(self, path: str = "hubsync.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.conn.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def insert(self, query: str, params: tuple = ()) -> int:
        cur = self.conn.execute(query, params)
        return cur.lastrowid

    def _init_schema(self) -> None:
        """Initialize SQLite schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement.format(pk="INTEGER PRIMARY KEY AUTOINCREMENT"))
        self.conn.commit()


class PostgreSQLDatabase(DatabaseInterface):
    """PostgreSQL implementation for Vercel/production"""

    def __init__(self, database_url: str = None):
        import psycopg2

        self.database_url = database_url or DATABASE_URL
        if not self.database_url:
            raise ValueError("No PostgreSQL database URL provided. Set POSTGRES_URL environment variable.")

        self.conn = psycopg2.connect(self.database_url)
        self.conn.autocommit = False
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        # Convert SQLite-style ? placeholders to PostgreSQL-style %s
        query = self._convert_placeholders(query)
        cur = self.conn.cursor()
        cur.execute(query, params)
        return cur

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def insert(self, query: str, params: tuple = ()) -> int:
        cur = self.execute(query.rstrip() + " RETURNING id", params)
        result = cur.fetchone()
        return result[0] if result else None

    def _convert_placeholders(self, query: str) -> str:
        """Convert SQLite ? placeholders to PostgreSQL %s"""
        return query.replace('?', '%s')

    def _init_schema(self) -> None:
        """Initialize PostgreSQL schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement.format(pk="SERIAL PRIMARY KEY"))
        self.conn.commit()


class EnhancedDB:
    """
    Enhanced database wrapper that works with both SQLite and PostgreSQL.
    Automatically selects the appropriate backend based on environment.
    """

    def __init__(self, path: str = "hubsync.db", database_url: Optional[str] = None):
        url = database_url or (DATABASE_URL if IS_VERCEL else None)
        self.is_postgres = bool(url)

        if self.is_postgres:
            logger.info("Using PostgreSQL database")
            self._db = PostgreSQLDatabase(url)
        else:
            logger.info(f"Using SQLite database: {path}")
            self._db = SQLiteDatabase(path)
            self.path = path

        self.seed_content_types()

    @property
    def conn(self):
        return self._db.conn

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self._db.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self._db.fetchone(query, params)

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self._db.fetchall(query, params)

    def fetchall_dicts(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        return self._db.fetchall_dicts(query, params)

    def commit(self) -> None:
        self._db.commit()

    # ============================================
    # CONTENT TYPES
    # ============================================

    def seed_content_types(self) -> None:
        for order, ct in enumerate(all_content_types()):
            self.execute("""
                INSERT INTO content_types(slug, name, is_active, sort_order)
                VALUES(?, ?, 1, ?)
                ON CONFLICT(slug) DO NOTHING
            """, (ct.slug, ct.label, order))
        self.commit()

    def list_content_types(self) -> List[Dict[str, Any]]:
        rows = self.fetchall_dicts("""
            SELECT id, slug, name, is_active, sort_order
            FROM content_types
            ORDER BY sort_order, name
        """)
        for r in rows:
            r["is_active"] = bool(r["is_active"])
        return rows

    def get_content_type_row(self, slug: str) -> Optional[Dict[str, Any]]:
        rows = self.fetchall_dicts(
            "SELECT id, slug, name FROM content_types WHERE slug = ?", (slug,)
        )
        return rows[0] if rows else None

    def get_content_type_row_by_id(self, content_type_id: int) -> Optional[Dict[str, Any]]:
        rows = self.fetchall_dicts(
            "SELECT id, slug, name FROM content_types WHERE id = ?", (content_type_id,)
        )
        return rows[0] if rows else None

    # ============================================
    # HEADER DEFINITIONS / CONFIGURATIONS
    # ============================================

    def get_header_definition(self, api_name: str) -> Optional[Dict[str, Any]]:
        rows = self.fetchall_dicts(
            "SELECT id, api_name, display_name FROM header_definitions WHERE api_name = ?",
            (api_name,)
        )
        return rows[0] if rows else None

    def upsert_header_definition(self, api_name: str, display_name: str) -> Tuple[int, bool]:
        """Insert a header definition if missing; returns (id, created)"""
        existing = self.get_header_definition(api_name)
        if existing:
            return existing["id"], False
        now = utc_now_iso()
        header_id = self._db.insert("""
            INSERT INTO header_definitions(api_name, display_name, created_at, updated_at)
            VALUES(?, ?, ?, ?)
        """, (api_name, display_name, now, now))
        self.commit()
        return header_id, True

    def list_header_configurations(self) -> List[Dict[str, Any]]:
        rows = self.fetchall_dicts("""
            SELECT hc.id, hc.header_id, hd.api_name, hd.display_name,
                   hc.content_type_id, ct.slug AS content_type_slug,
                   ct.name AS content_type_name,
                   hc.data_type, hc.category, hc.filters, hc.read_only, hc.in_app_edit,
                   hc.updated_at, hc.updated_by
            FROM header_configurations hc
            JOIN header_definitions hd ON hd.id = hc.header_id
            JOIN content_types ct ON ct.id = hc.content_type_id
            ORDER BY hd.api_name, ct.sort_order
        """)
        for r in rows:
            for flag in ("filters", "read_only", "in_app_edit"):
                r[flag] = bool(r[flag])
        return rows

    def get_header_configuration(self, header_id: int, content_type_id: int) -> Optional[Dict[str, Any]]:
        rows = self.fetchall_dicts("""
            SELECT id, header_id, content_type_id, data_type, category,
                   filters, read_only, in_app_edit, updated_at, updated_by
            FROM header_configurations
            WHERE header_id = ? AND content_type_id = ?
        """, (header_id, content_type_id))
        if not rows:
            return None
        row = rows[0]
        for flag in ("filters", "read_only", "in_app_edit"):
            row[flag] = bool(row[flag])
        return row

    def upsert_header_configuration(self, header_id: int, content_type_id: int,
                                    data_type: str = "string", category: str = "Additional",
                                    filters: bool = False, read_only: bool = False,
                                    in_app_edit: bool = False,
                                    updated_by: Optional[str] = None) -> None:
        now = utc_now_iso()
        self.execute("""
            INSERT INTO header_configurations(header_id, content_type_id, data_type, category,
                                              filters, read_only, in_app_edit,
                                              updated_at, updated_by)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(header_id, content_type_id) DO UPDATE SET
                data_type = EXCLUDED.data_type,
                category = EXCLUDED.category,
                filters = EXCLUDED.filters,
                read_only = EXCLUDED.read_only,
                in_app_edit = EXCLUDED.in_app_edit,
                updated_at = EXCLUDED.updated_at,
                updated_by = EXCLUDED.updated_by
        """, (header_id, content_type_id, data_type, category,
              1 if filters else 0, 1 if read_only else 0, 1 if in_app_edit else 0,
              now, updated_by))
        self.commit()

    def delete_header_configuration(self, header_id: int, content_type_id: int) -> int:
        cur = self.execute("""
            DELETE FROM header_configurations
            WHERE header_id = ? AND content_type_id = ?
        """, (header_id, content_type_id))
        self.commit()
        return cur.rowcount

    # ============================================
    # EXPORTS AND SNAPSHOTS
    # ============================================

    def create_user_export(self, user_id: str, content_type_id: Optional[int], export_type: str,
                           sheet_id: Optional[str], tab_id: Optional[str], backup_id: str,
                           items_count: int, columns: List[str]) -> int:
        export_id = self._db.insert("""
            INSERT INTO user_exports(user_id, content_type_id, export_type, sheet_id, tab_id,
                                     backup_id, items_count, columns, status, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
        """, (user_id, content_type_id, export_type, sheet_id, tab_id, backup_id,
              items_count, _dumps(columns), utc_now_iso()))
        self.commit()
        return export_id

    def next_snapshot_version(self, user_id: str, content_type_id: Optional[int],
                              sheet_id: Optional[str], tab_id: Optional[str]) -> int:
        row = self.fetchone("""
            SELECT MAX(s.version_number)
            FROM user_export_snapshots s
            JOIN user_exports e ON e.id = s.user_export_id
            WHERE e.user_id = ? AND e.content_type_id IS ? AND e.sheet_id IS ? AND e.tab_id IS ?
        """ if not self.is_postgres else """
            SELECT MAX(s.version_number)
            FROM user_export_snapshots s
            JOIN user_exports e ON e.id = s.user_export_id
            WHERE e.user_id = ? AND e.content_type_id IS NOT DISTINCT FROM ?
              AND e.sheet_id IS NOT DISTINCT FROM ? AND e.tab_id IS NOT DISTINCT FROM ?
        """, (user_id, content_type_id, sheet_id, tab_id))
        current = row[0] if row and row[0] is not None else 0
        return current + 1

    def add_export_snapshot(self, user_export_id: int, snapshot: List[Dict[str, Any]],
                            version_number: int) -> int:
        snapshot_id = self._db.insert("""
            INSERT INTO user_export_snapshots(user_export_id, snapshot_json, version_number, created_at)
            VALUES(?, ?, ?, ?)
        """, (user_export_id, _dumps(snapshot), version_number, utc_now_iso()))
        self.commit()
        return snapshot_id

    def latest_user_export(self, user_id: str, content_type_id: int, sheet_id: str,
                           tab_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = """
            SELECT id, user_id, content_type_id, export_type, sheet_id, tab_id,
                   backup_id, items_count, created_at
            FROM user_exports
            WHERE user_id = ? AND content_type_id = ? AND sheet_id = ? AND status = 'active'
        """
        params: Tuple = (user_id, content_type_id, sheet_id)
        if tab_id:
            query += " AND tab_id = ?"
            params += (tab_id,)
        else:
            # no tab means the sheet's first tab, which only untabbed exports wrote to
            query += " AND tab_id IS NULL"
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"
        rows = self.fetchall_dicts(query, params)
        return rows[0] if rows else None

    def list_export_snapshots(self, user_export_id: int) -> List[Dict[str, Any]]:
        rows = self.fetchall_dicts("""
            SELECT id, user_export_id, snapshot_json, version_number, created_at
            FROM user_export_snapshots
            WHERE user_export_id = ?
        """, (user_export_id,))
        for r in rows:
            r["snapshot_json"] = _loads(r["snapshot_json"]) or []
        return rows

    def insert_page_snapshots(self, rows: List[Dict[str, Any]],
                              chunk_size: int = SNAPSHOT_CHUNK_SIZE) -> int:
        """Insert structured per-record snapshots in chunks"""
        inserted = 0
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start:start + chunk_size]
            for r in chunk:
                self.execute("""
                    INSERT INTO page_snapshots(user_id, backup_id, hubspot_page_id, content_type,
                                               name, html_title, meta_description, slug, state,
                                               current_state, published, url, page_content,
                                               sheet_id, sheet_tab_name, exported_at, created_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    r["user_id"], r["backup_id"], str(r["hubspot_page_id"]), r.get("content_type"),
                    r.get("name"), r.get("html_title"), r.get("meta_description"), r.get("slug"),
                    r.get("state"), r.get("current_state"), _bool_or_none(r.get("published")),
                    r.get("url"), _dumps(r.get("page_content") or {}),
                    r.get("sheet_id"), r.get("sheet_tab_name"),
                    r.get("exported_at"), r.get("created_at") or utc_now_iso(),
                ))
            self.commit()
            inserted += len(chunk)
            logger.debug(f"Saved snapshot chunk of {len(chunk)} rows")
        return inserted

    def list_page_snapshots(self, user_id: str, sheet_id: Optional[str] = None,
                            tab_name: Optional[str] = None,
                            backup_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Snapshots for a user, newest first"""
        query = """
            SELECT id, user_id, backup_id, hubspot_page_id, content_type, name, html_title,
                   meta_description, slug, state, current_state, published, url, page_content,
                   sheet_id, sheet_tab_name, exported_at, created_at
            FROM page_snapshots
            WHERE user_id = ?
        """
        params: Tuple = (user_id,)
        if sheet_id is not None:
            query += " AND sheet_id = ?"
            params += (sheet_id,)
        if tab_name is not None:
            query += " AND sheet_tab_name = ?"
            params += (tab_name,)
        if backup_id is not None:
            query += " AND backup_id = ?"
            params += (backup_id,)
        query += " ORDER BY created_at DESC, id DESC"
        rows = self.fetchall_dicts(query, params)
        for r in rows:
            r["page_content"] = _loads(r["page_content"]) or {}
            r["published"] = None if r["published"] is None else bool(r["published"])
        return rows

    def latest_backup_id(self, user_id: str, prefix: Optional[str] = None,
                         exclude_prefix: Optional[str] = None) -> Optional[str]:
        query = "SELECT backup_id FROM page_snapshots WHERE user_id = ?"
        params: Tuple = (user_id,)
        if prefix:
            query += " AND backup_id LIKE ?"
            params += (f"{prefix}%",)
        if exclude_prefix:
            query += " AND backup_id NOT LIKE ?"
            params += (f"{exclude_prefix}%",)
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"
        row = self.fetchone(query, params)
        return row[0] if row else None

    # ============================================
    # PAGE BACKUPS (content type lookup / local mirror)
    # ============================================

    def upsert_page_backup(self, hubspot_page_id: str, page_type: str, content_type: str,
                           data: Optional[Dict[str, Any]] = None,
                           user_id: Optional[str] = None) -> None:
        self.execute("""
            INSERT INTO page_backups(hubspot_page_id, user_id, page_type, content_type, data, updated_at)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(hubspot_page_id) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                page_type = EXCLUDED.page_type,
                content_type = EXCLUDED.content_type,
                data = EXCLUDED.data,
                updated_at = EXCLUDED.updated_at
        """, (str(hubspot_page_id), user_id, page_type, content_type,
              _dumps(data or {}), utc_now_iso()))
        self.commit()

    def get_page_backups(self, page_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [str(i) for i in page_ids]
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.fetchall_dicts(f"""
            SELECT hubspot_page_id, user_id, page_type, content_type, data, updated_at
            FROM page_backups
            WHERE hubspot_page_id IN ({placeholders})
        """, tuple(ids))
        out = {}
        for r in rows:
            r["data"] = _loads(r["data"]) or {}
            out[r["hubspot_page_id"]] = r
        return out

    # ============================================
    # CHANGE HISTORY
    # ============================================

    def record_change_history(self, user_id: Optional[str], hubspot_page_id: str,
                              content_type: str, field_name: str, old_value: Any,
                              new_value: Any, change_type: str = "update") -> None:
        self.execute("""
            INSERT INTO change_history(user_id, hubspot_page_id, content_type, field_name,
                                       old_value, new_value, change_type, changed_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
        """, (user_id, str(hubspot_page_id), content_type, field_name,
              _dumps(old_value), _dumps(new_value), change_type, utc_now_iso()))
        self.commit()

    def list_change_history(self, hubspot_page_id: Optional[str] = None,
                            limit: int = 100) -> List[Dict[str, Any]]:
        query = """
            SELECT id, user_id, hubspot_page_id, content_type, field_name,
                   old_value, new_value, change_type, changed_at
            FROM change_history
        """
        params: Tuple = ()
        if hubspot_page_id is not None:
            query += " WHERE hubspot_page_id = ?"
            params = (str(hubspot_page_id),)
        query += " ORDER BY id DESC LIMIT ?"
        rows = self.fetchall_dicts(query, params + (limit,))
        for r in rows:
            r["old_value"] = _loads(r["old_value"])
            r["new_value"] = _loads(r["new_value"])
        return rows

    # ============================================
    # AUDIT LOGS
    # ============================================

    def insert_audit_log(self, log_id: str, user_id: Optional[str], action_type: str,
                         resource_type: Optional[str], resource_id: Optional[str],
                         details: Dict[str, Any], created_at: str) -> None:
        self.execute("""
            INSERT INTO audit_logs(id, user_id, action_type, resource_type, resource_id,
                                   details, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
        """, (log_id, user_id, action_type, resource_type, resource_id,
              _dumps(details or {}), created_at))
        self.commit()

    def list_audit_logs(self, user_id: Optional[str] = None, action_type: Optional[str] = None,
                        limit: int = 50) -> List[Dict[str, Any]]:
        query = """
            SELECT id, user_id, action_type, resource_type, resource_id, details, created_at
            FROM audit_logs
            WHERE 1 = 1
        """
        params: Tuple = ()
        if user_id is not None:
            query += " AND user_id = ?"
            params += (user_id,)
        if action_type is not None:
            query += " AND action_type = ?"
            params += (action_type,)
        query += " ORDER BY created_at DESC LIMIT ?"
        rows = self.fetchall_dicts(query, params + (limit,))
        for r in rows:
            r["details"] = _loads(r["details"]) or {}
        return rows

    # ============================================
    # STATE MANAGEMENT
    # ============================================

    def get_state(self, k: str) -> Optional[str]:
        row = self.fetchone("SELECT v FROM sync_state WHERE k = ?", (k,))
        return row[0] if row else None

    def set_state(self, k: str, v: str) -> None:
        self.execute("""
            INSERT INTO sync_state(k, v) VALUES(?, ?)
            ON CONFLICT(k) DO UPDATE SET v = EXCLUDED.v
        """, (k, v))
        self.commit()
