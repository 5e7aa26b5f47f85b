"""
Google Sheets mirror of the roster.

Each record type lives on its own tab with a fixed header row; the first
column holds the record id. Calls go straight to the Sheets v4 REST API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import requests

from bus_manager.roster import RosterStore

logger = logging.getLogger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"

HEADERS = {
    "buses": ["id", "name", "startLocation", "endLocation", "notes", "createdAt"],
    "students": ["id", "firstName", "lastName", "address", "busId", "createdAt"],
    "users": ["uid", "email", "role", "createdAt"],
}

NOT_CONNECTED = "יש להתחבר ל-Google Sheets תחילה"


class SheetsError(Exception):
    """Raised when the Sheets API rejects a request or is not configured."""


def headers_for(sheet_name: str) -> list[str]:
    return HEADERS.get(sheet_name, [])


def _row_values(sheet_name: str, record: dict) -> list:
    return [record.get(header) or "" for header in headers_for(sheet_name)]


@dataclass
class GoogleSheetsClient:
    spreadsheet_id: str = ""
    access_token: str = ""
    api_key: str = ""
    timeout: float = 30.0
    session: Optional[requests.Session] = None

    def __post_init__(self):
        if self.session is None:
            self.session = requests.Session()

    def is_ready(self) -> bool:
        return bool(self.spreadsheet_id and (self.access_token or self.api_key))

    def _request(self, method: str, suffix: str = "", **kwargs) -> dict:
        if not self.is_ready():
            raise SheetsError(NOT_CONNECTED)
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        params = dict(kwargs.pop("params", None) or {})
        if self.api_key:
            params["key"] = self.api_key
        url = f"{SHEETS_API_URL}/{self.spreadsheet_id}{suffix}"
        try:
            response = self.session.request(
                method, url, headers=headers, params=params, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise SheetsError(f"Sheets request failed: {exc}") from exc
        if not response.ok:
            raise SheetsError(f"Sheets API error: {response.status_code}")
        return response.json() if response.content else {}

    def _values_path(self, a1_range: str) -> str:
        return "/values/" + quote(a1_range, safe="!:")

    def _sheet_properties(self, sheet_name: str) -> Optional[dict]:
        spreadsheet = self._request("GET", params={"fields": "sheets.properties"})
        for sheet in spreadsheet.get("sheets", []):
            props = sheet.get("properties", {})
            if props.get("title") == sheet_name:
                return props
        return None

    def ensure_sheet(self, sheet_name: str) -> bool:
        """Create the tab (with its header row) when it does not exist yet.

        Returns True when the tab was created.
        """
        if self._sheet_properties(sheet_name):
            return False
        self._request(
            "POST",
            ":batchUpdate",
            json={"requests": [{"addSheet": {"properties": {"title": sheet_name}}}]},
        )
        headers = headers_for(sheet_name)
        if headers:
            self.write_row(sheet_name, 1, headers)
        logger.info("Created sheet %s", sheet_name)
        return True

    def read_sheet(self, sheet_name: str) -> list[dict]:
        payload = self._request("GET", self._values_path(f"{sheet_name}!A:Z"))
        values = payload.get("values") or []
        if len(values) <= 1:
            return []
        header = values[0]
        return [
            {name: (row[i] if i < len(row) else "") for i, name in enumerate(header)}
            for row in values[1:]
        ]

    def write_row(self, sheet_name: str, row_index: int, values: list) -> None:
        self._request(
            "PUT",
            self._values_path(f"{sheet_name}!A{row_index}"),
            params={"valueInputOption": "RAW"},
            json={"values": [values]},
        )

    def append_row(self, sheet_name: str, record: dict) -> None:
        self._request(
            "POST",
            self._values_path(f"{sheet_name}!A:Z") + ":append",
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"values": [_row_values(sheet_name, record)]},
        )

    def _find_row(self, sheet_name: str, record_id: str) -> Optional[int]:
        """1-based row number of ``record_id`` in column A, skipping the header."""
        payload = self._request("GET", self._values_path(f"{sheet_name}!A:A"))
        values = payload.get("values") or []
        for index, row in enumerate(values[1:], start=2):
            if row and row[0] == record_id:
                return index
        return None

    def update_row(self, sheet_name: str, record_id: str, record: dict) -> None:
        row_index = self._find_row(sheet_name, record_id)
        if row_index is None:
            self.append_row(sheet_name, record)
            return
        self.write_row(sheet_name, row_index, _row_values(sheet_name, record))

    def delete_row(self, sheet_name: str, record_id: str) -> bool:
        props = self._sheet_properties(sheet_name)
        if not props:
            return False
        row_index = self._find_row(sheet_name, record_id)
        if row_index is None:
            return False
        self._request(
            "POST",
            ":batchUpdate",
            json={
                "requests": [
                    {
                        "deleteDimension": {
                            "range": {
                                "sheetId": props.get("sheetId"),
                                "dimension": "ROWS",
                                "startIndex": row_index - 1,
                                "endIndex": row_index,
                            }
                        }
                    }
                ]
            },
        )
        return True


class SheetsSync:
    """Push the roster to the spreadsheet or pull it back."""

    def __init__(self, store: RosterStore, client: GoogleSheetsClient):
        self.store = store
        self.client = client

    def sync_to_sheets(self) -> dict:
        if not self.client.is_ready():
            raise SheetsError(NOT_CONNECTED)
        counts = {}
        for sheet_name, records, key in (
            ("buses", self.store.list_buses(), "id"),
            ("students", self.store.list_students(), "id"),
            ("users", self.store.list_users(), "uid"),
        ):
            self.client.ensure_sheet(sheet_name)
            for record in records:
                self.client.update_row(sheet_name, record.get(key), record)
            counts[sheet_name] = len(records)
        logger.info("Synced roster to sheets: %s", counts)
        return counts

    def sync_from_sheets(self) -> dict:
        if not self.client.is_ready():
            raise SheetsError(NOT_CONNECTED)
        buses = [row for row in self.client.read_sheet("buses") if row.get("id")]
        students = [row for row in self.client.read_sheet("students") if row.get("id")]
        if buses:
            self.store.save_buses(buses, f"Import {len(buses)} buses from sheets")
        if students:
            self.store.save_students(students, f"Import {len(students)} students from sheets")
        counts = {"buses": len(buses), "students": len(students)}
        logger.info("Imported roster from sheets: %s", counts)
        return counts


class SheetsMirror:
    """Copy single roster writes to the spreadsheet while it is connected.

    The roster write has already happened by the time these run, so Sheets
    failures are logged and reported as False.
    """

    def __init__(self, client: GoogleSheetsClient):
        self.client = client

    def saved(self, sheet_name: str, record: dict) -> bool:
        if not self.client.is_ready():
            return False
        record_id = record.get("uid" if sheet_name == "users" else "id")
        try:
            self.client.update_row(sheet_name, record_id, record)
        except SheetsError as exc:
            logger.warning("Could not mirror %s %s to sheets: %s", sheet_name, record_id, exc)
            return False
        return True

    def deleted(self, sheet_name: str, record_id: str) -> bool:
        if not self.client.is_ready():
            return False
        try:
            return self.client.delete_row(sheet_name, record_id)
        except SheetsError as exc:
            logger.warning("Could not remove %s %s from sheets: %s", sheet_name, record_id, exc)
            return False
