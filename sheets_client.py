"""
Google Sheets Integration Module
Thin wrapper over the Sheets v4 API (values get/update/clear and batchUpdate
for tab creation and header formatting).
"""

import logging
from typing import Any, Dict, List, Optional

from google.oauth2 import credentials as user_credentials
from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

HEADER_BACKGROUND = {"red": 0.9, "green": 0.9, "blue": 0.9}


def quote_title(title: Optional[str]) -> str:
    """Return the A1 range prefix for a tab ('' for the first sheet)"""
    if not title:
        return ""
    escaped = title.replace("'", "''")
    return f"'{escaped}'!"


def build_service(config: Dict[str, Any]):
    """Build a Sheets v4 service from an OAuth access token or a service account file"""
    access_token = config.get("access_token")
    service_account_file = config.get("service_account_file")
    if access_token:
        creds = user_credentials.Credentials(token=access_token)
    elif service_account_file:
        creds = service_account.Credentials.from_service_account_file(
            service_account_file, scopes=SCOPES
        )
    else:
        raise ValueError("Google Sheets not connected")
    return build("sheets", "v4", credentials=creds, cache_discovery=False)


class SheetsClient:
    """Google Sheets API integration"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, service=None):
        self.service = service if service is not None else build_service(config or {})
        logger.info("Google Sheets client initialized")

    @property
    def _spreadsheets(self):
        return self.service.spreadsheets()

    # ==================== TABS ====================

    def list_tabs(self, sheet_id: str) -> List[Dict[str, Any]]:
        info = self._spreadsheets.get(spreadsheetId=sheet_id).execute()
        return [s.get("properties", {}) for s in info.get("sheets", [])]

    def find_tab(self, sheet_id: str, tab_name: str) -> Optional[Dict[str, Any]]:
        for props in self.list_tabs(sheet_id):
            if (props.get("title") or "").lower() == tab_name.lower():
                return props
        return None

    def add_tab(self, sheet_id: str, tab_name: str) -> Dict[str, Any]:
        res = self._spreadsheets.batchUpdate(
            spreadsheetId=sheet_id,
            body={"requests": [{"addSheet": {"properties": {"title": tab_name}}}]},
        ).execute()
        replies = res.get("replies") or [{}]
        props = replies[0].get("addSheet", {}).get("properties", {})
        logger.info(f"Created tab '{tab_name}' in sheet {sheet_id}")
        return props

    def ensure_tab(self, sheet_id: str, tab_name: Optional[str]) -> int:
        """Return the numeric sheetId of the tab, creating it if missing"""
        if not tab_name:
            return 0
        props = self.find_tab(sheet_id, tab_name) or self.add_tab(sheet_id, tab_name)
        return props.get("sheetId", 0)

    # ==================== VALUES ====================

    def read_values(self, sheet_id: str, tab_name: Optional[str] = None,
                    cell_range: str = "A:Z") -> List[List[Any]]:
        res = self._spreadsheets.values().get(
            spreadsheetId=sheet_id, range=f"{quote_title(tab_name)}{cell_range}"
        ).execute()
        return res.get("values", [])

    def read_records(self, sheet_id: str, tab_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read a tab as a list of {header: value} dicts (row 0 holds the headers)"""
        values = self.read_values(sheet_id, tab_name)
        if not values:
            return []
        headers = [str(h) for h in values[0]]
        records = []
        for row in values[1:]:
            records.append({h: (row[i] if i < len(row) else "") for i, h in enumerate(headers)})
        return records

    def clear(self, sheet_id: str, tab_name: Optional[str] = None, cell_range: str = "A:Z") -> None:
        self._spreadsheets.values().clear(
            spreadsheetId=sheet_id, range=f"{quote_title(tab_name)}{cell_range}", body={}
        ).execute()

    def write_values(self, sheet_id: str, values: List[List[Any]],
                     tab_name: Optional[str] = None) -> Dict[str, Any]:
        return self._spreadsheets.values().update(
            spreadsheetId=sheet_id,
            range=f"{quote_title(tab_name)}A1",
            valueInputOption="RAW",
            body={"values": values},
        ).execute()

    def format_header_row(self, sheet_id: str, tab_sheet_id: int, column_count: int) -> None:
        """Bold header row on a light grey background"""
        self._spreadsheets.batchUpdate(
            spreadsheetId=sheet_id,
            body={"requests": [{
                "repeatCell": {
                    "range": {
                        "sheetId": tab_sheet_id,
                        "startRowIndex": 0,
                        "endRowIndex": 1,
                        "startColumnIndex": 0,
                        "endColumnIndex": column_count,
                    },
                    "cell": {
                        "userEnteredFormat": {
                            "backgroundColor": HEADER_BACKGROUND,
                            "textFormat": {"bold": True},
                        }
                    },
                    "fields": "userEnteredFormat(backgroundColor,textFormat)",
                }
            }]},
        ).execute()

    def replace_tab_contents(self, sheet_id: str, values: List[List[Any]],
                             tab_name: Optional[str] = None) -> int:
        """Clear the tab, write values from A1 and format the header row"""
        tab_sheet_id = self.ensure_tab(sheet_id, tab_name)
        self.clear(sheet_id, tab_name)
        self.write_values(sheet_id, values, tab_name)
        if values:
            self.format_header_row(sheet_id, tab_sheet_id, len(values[0]))
        return max(len(values) - 1, 0)
