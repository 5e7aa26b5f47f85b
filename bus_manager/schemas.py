"""
Pydantic schemas for the bus manager API.

Roster records keep their stored camelCase field names and allow extra
fields, so anything a client stores on a bus or student survives a save.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecordModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    def record(self) -> dict:
        return self.model_dump(exclude_none=True)


class BusPayload(RecordModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    startLocation: Optional[str] = None
    endLocation: Optional[str] = None
    notes: Optional[str] = None


class StudentPayload(RecordModel):
    id: Optional[str] = None
    firstName: str = Field(..., min_length=1, max_length=100)
    lastName: str = Field(default="", max_length=100)
    address: Optional[str] = None
    busId: Optional[str] = None
    autoAssign: bool = False

    def record(self) -> dict:
        return self.model_dump(exclude_none=True, exclude={"autoAssign"})


class UserPayload(RecordModel):
    uid: str = Field(..., min_length=1)
    email: Optional[str] = None
    role: Optional[str] = None
    approved: Optional[bool] = None


class RoleUpdate(BaseModel):
    role: Literal["admin", "user"]


class SuccessResponse(BaseModel):
    success: bool = True


class ReorderRequest(BaseModel):
    old_index: int = Field(..., ge=0)
    new_index: int = Field(..., ge=0)


class BestBusResponse(BaseModel):
    student_id: str
    bus: Optional[dict] = None
    score: Optional[float] = None
    details: dict = Field(default_factory=dict)
    assigned: bool = False


class ReassignResponse(BaseModel):
    updated: int


class MapsKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class MapsKeyResponse(BaseModel):
    configured: bool
    source: Optional[str] = None


class SheetsConfigRequest(BaseModel):
    spreadsheet_id: str = Field(..., min_length=1)
    access_token: Optional[str] = None
    api_key: Optional[str] = None


class SheetsConfigResponse(BaseModel):
    spreadsheet_id: str = ""
    has_access_token: bool = False
    has_api_key: bool = False
    ready: bool = False


class SyncResponse(BaseModel):
    success: bool = True
    counts: dict


class AssignmentRequest(BaseModel):
    algorithm: Literal["greedy", "local_search", "genetic"] = "local_search"
    max_bus_capacity: Optional[int] = Field(default=None, ge=1)
    max_ride_time_minutes: Optional[float] = Field(default=None, gt=0)
    max_total_route_minutes: Optional[float] = Field(default=None, gt=0)
    adaptive: bool = True
    bus_ids: Optional[list[str]] = None


class JobStatusResponse(BaseModel):
    job_id: str
    kind: str
    status: str
    stage: Optional[str] = None
    progress_percent: Optional[float] = None
    error: Optional[str] = None


class AssignmentResultResponse(BaseModel):
    job_id: str
    status: str
    result: Optional[dict] = None


class ApplyAssignmentResponse(BaseModel):
    job_id: str
    updated: int


class GitHubStatusResponse(BaseModel):
    configured: bool
    owner: Optional[str] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    connection: Optional[dict] = None
    detected: Optional[dict] = None


class RestoreTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    owner: Optional[str] = None
    repo: Optional[str] = None


class RestoreTokenResponse(BaseModel):
    success: bool
    owner: Optional[str] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    error: Optional[str] = None
