"""
Request identity.

In ``open`` mode there are no credentials and every caller is the guest
administrator. In ``header`` mode the ``X-User-Id`` header names a user in
``users.json``; that user must be approved, and mutations need the admin role.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException

from bus_manager.config import Settings, get_settings
from bus_manager.dependencies import get_roster_store
from bus_manager.roster import RosterStore
from bus_manager.storage import StorageError

GUEST_USER = {
    "uid": "guest",
    "username": "guest",
    "email": "guest@example.com",
    "role": "admin",
    "approved": True,
}


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    store: RosterStore = Depends(get_roster_store),
) -> dict:
    if settings.auth_mode != "header":
        return dict(GUEST_USER)
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        user = store.get_user(x_user_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail="Failed to read users") from exc
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    if not user.get("approved"):
        raise HTTPException(status_code=403, detail="User is pending approval")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin role required")
    return user
