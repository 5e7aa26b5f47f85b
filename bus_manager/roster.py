"""
Roster store: buses, students, users and settings on top of a StorageClient.

Buses and students share ``data.json``; users and settings have their own
documents. Records are plain dicts so unknown fields survive a round trip.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from bus_manager.storage import StorageClient

logger = logging.getLogger(__name__)

DATA_FILE = "data.json"
USERS_FILE = "users.json"
SETTINGS_FILE = "settings.json"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(query: str, *values: Optional[str]) -> bool:
    needle = query.lower()
    return any(needle in (value or "").lower() for value in values)


def student_name(student: dict) -> str:
    return f"{student.get('firstName', '')} {student.get('lastName', '')}".strip()


class RosterStore:
    """CRUD over the roster documents."""

    def __init__(self, storage: StorageClient):
        self.storage = storage

    # ----- documents -----

    def _load_data(self) -> dict:
        data = self.storage.get_json(DATA_FILE) or {}
        data.setdefault("buses", [])
        data.setdefault("students", [])
        return data

    def _save_data(self, data: dict, message: str) -> None:
        self.storage.put_json(DATA_FILE, data, message)

    def _load_users(self) -> list[dict]:
        doc = self.storage.get_json(USERS_FILE) or {}
        return doc.get("users", [])

    def _save_users(self, users: list[dict], message: str) -> None:
        self.storage.put_json(USERS_FILE, {"users": users}, message)

    @staticmethod
    def _new_id(prefix: str, existing: list[dict]) -> str:
        taken = {item.get("id") for item in existing}
        stamp = int(time.time() * 1000)
        while f"{prefix}_{stamp}" in taken:
            stamp += 1
        return f"{prefix}_{stamp}"

    def _upsert(self, items: list[dict], record: dict, prefix: str) -> dict:
        record = dict(record)
        if not record.get("id"):
            record["id"] = self._new_id(prefix, items)
            record.setdefault("createdAt", _now_iso())
        for index, item in enumerate(items):
            if item.get("id") == record["id"]:
                items[index] = record
                break
        else:
            items.append(record)
        return record

    # ----- buses -----

    def list_buses(self) -> list[dict]:
        return self._load_data()["buses"]

    def get_bus(self, bus_id: str) -> Optional[dict]:
        return next((b for b in self.list_buses() if b.get("id") == bus_id), None)

    def save_bus(self, bus: dict) -> dict:
        data = self._load_data()
        saved = self._upsert(data["buses"], bus, "bus")
        self._save_data(data, f"Update bus: {saved.get('name') or saved['id']}")
        return saved

    def save_buses(self, buses: list[dict], message: str) -> None:
        data = self._load_data()
        for bus in buses:
            self._upsert(data["buses"], bus, "bus")
        self._save_data(data, message)

    def delete_bus(self, bus_id: str) -> None:
        data = self._load_data()
        data["buses"] = [b for b in data["buses"] if b.get("id") != bus_id]
        self._save_data(data, f"Delete bus: {bus_id}")

    def search_buses(self, query: str = "") -> list[dict]:
        buses = self.list_buses()
        if not query:
            return buses
        return [
            b
            for b in buses
            if _matches(query, b.get("name"), b.get("startLocation"), b.get("endLocation"))
        ]

    def student_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for student in self.list_students():
            bus_id = student.get("busId")
            if bus_id:
                counts[bus_id] = counts.get(bus_id, 0) + 1
        return counts

    # ----- students -----

    def list_students(self) -> list[dict]:
        return self._load_data()["students"]

    def get_student(self, student_id: str) -> Optional[dict]:
        return next(
            (s for s in self.list_students() if s.get("id") == student_id), None
        )

    def save_student(self, student: dict) -> dict:
        data = self._load_data()
        saved = self._upsert(data["students"], student, "student")
        label = student_name(saved) or saved["id"]
        self._save_data(data, f"Update student: {label}")
        return saved

    def save_students(self, students: list[dict], message: str) -> None:
        """Upsert many students in a single write."""
        data = self._load_data()
        for student in students:
            self._upsert(data["students"], student, "student")
        self._save_data(data, message)

    def delete_student(self, student_id: str) -> None:
        data = self._load_data()
        data["students"] = [s for s in data["students"] if s.get("id") != student_id]
        self._save_data(data, f"Delete student: {student_id}")

    def students_by_bus(self, bus_id: str) -> list[dict]:
        return [s for s in self.list_students() if s.get("busId") == bus_id]

    def search_students(
        self, query: str = "", bus_id: Optional[str] = None
    ) -> list[dict]:
        students = self.list_students()
        if query:
            students = [
                s
                for s in students
                if _matches(query, s.get("firstName"), s.get("lastName"), s.get("address"))
            ]
        if bus_id:
            students = [s for s in students if s.get("busId") == bus_id]
        return students

    # ----- users -----

    def list_users(self) -> list[dict]:
        return self._load_users()

    def get_user(self, uid: str) -> Optional[dict]:
        return next((u for u in self._load_users() if u.get("uid") == uid), None)

    def save_user(self, user: dict) -> dict:
        if not user.get("uid"):
            raise ValueError("uid is required")
        users = self._load_users()
        user = dict(user)
        for index, existing in enumerate(users):
            if existing.get("uid") == user["uid"]:
                users[index] = user
                break
        else:
            user.setdefault("createdAt", _now_iso())
            users.append(user)
        self._save_users(users, f"Update user: {user.get('email') or user['uid']}")
        return user

    def _patch_user(self, uid: str, changes: dict, message: str) -> bool:
        users = self._load_users()
        for user in users:
            if user.get("uid") == uid:
                user.update(changes)
                self._save_users(users, message)
                return True
        return False

    def update_user_role(self, uid: str, role: str) -> bool:
        return self._patch_user(uid, {"role": role}, f"Update role: {uid}")

    def approve_user(self, uid: str) -> bool:
        return self._patch_user(uid, {"approved": True}, f"Approve user: {uid}")

    def delete_user(self, uid: str) -> None:
        users = [u for u in self._load_users() if u.get("uid") != uid]
        self._save_users(users, f"Delete user: {uid}")

    # ----- settings -----

    def get_settings_doc(self) -> dict:
        return self.storage.get_json(SETTINGS_FILE) or {}

    def replace_settings(self, settings: dict) -> dict:
        self.storage.put_json(SETTINGS_FILE, settings, "Update settings")
        return settings

    def merge_settings(self, patch: dict) -> dict:
        merged = {**self.get_settings_doc(), **patch}
        self.storage.put_json(SETTINGS_FILE, merged, "Update settings")
        return merged

    # ----- stats -----

    def get_stats(self) -> dict:
        data = self._load_data()
        buses = data["buses"]
        return {
            "totalBuses": len(buses),
            "totalStudents": len(data["students"]),
            "totalRoutes": len(
                [b for b in buses if b.get("startLocation") and b.get("endLocation")]
            ),
            "totalUsers": len(self._load_users()),
        }

    def recent_items(self, limit: int = 5) -> dict:
        data = self._load_data()
        return {
            "buses": list(reversed(data["buses"][-limit:])) if limit else [],
            "students": list(reversed(data["students"][-limit:])) if limit else [],
        }
