"""
HTTP routes for the bus manager API.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from bus_manager.assignment import find_best_bus, reassign_all_students, apply_assignment
from bus_manager.auth import get_current_user, is_admin, require_admin
from bus_manager.config import Settings, get_settings
from bus_manager.db import DbClient, JobRecord, JobStatus
from bus_manager.dependencies import (
    get_db_client,
    get_geocoder,
    get_github_client,
    get_queue_client,
    get_roster_store,
    get_route_service,
    build_sheets_client,
    get_sheets_client,
    maps_key_source,
    reset_maps_clients,
    reset_sheets_client,
    reset_storage,
)
from bus_manager.maps import Geocoder, MapsError
from bus_manager.queue import JobQueue
from bus_manager.roster import RosterStore
from bus_manager.route_planner import RouteService
from bus_manager.schemas import (
    ApplyAssignmentResponse,
    AssignmentRequest,
    AssignmentResultResponse,
    BestBusResponse,
    BusPayload,
    GitHubStatusResponse,
    JobStatusResponse,
    MapsKeyRequest,
    MapsKeyResponse,
    ReassignResponse,
    ReorderRequest,
    RestoreTokenRequest,
    RestoreTokenResponse,
    RoleUpdate,
    SheetsConfigRequest,
    SheetsConfigResponse,
    StudentPayload,
    SuccessResponse,
    SyncResponse,
    UserPayload,
)
from bus_manager.sheets import (
    NOT_CONNECTED,
    GoogleSheetsClient,
    SheetsError,
    SheetsMirror,
    SheetsSync,
)
from bus_manager.storage import (
    GitHubStorageClient,
    StorageError,
    auto_detect_repo,
    backup_github_token,
    restore_github_token,
)
from bus_manager.worker import ASSIGNMENT_JOB, process_job

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def storage_errors(detail: str):
    """Turn storage failures into a 500 carrying ``detail``."""
    try:
        yield
    except StorageError as exc:
        logger.exception(detail)
        raise HTTPException(status_code=500, detail=detail) from exc


def _riders_by_bus(students: list[dict], exclude_id: Optional[str] = None) -> dict:
    riders: dict[str, list[dict]] = {}
    for student in students:
        if student.get("busId") and student.get("id") != exclude_id:
            riders.setdefault(student["busId"], []).append(student)
    return riders


@router.get("/health")
def health():
    return {"status": "ok"}


# ----- auth -----


@router.get("/auth/me")
def auth_me(user: dict = Depends(get_current_user)):
    return {"user": user, "isAdmin": is_admin(user)}


@router.post("/auth/login")
def auth_login(user: dict = Depends(get_current_user)):
    return {"success": True, "user": user}


@router.post("/auth/logout", response_model=SuccessResponse)
def auth_logout():
    return SuccessResponse()


# ----- users -----


@router.get("/users")
def list_users(
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read users"):
        return store.list_users()


@router.get("/users/{uid}")
def get_user(
    uid: str,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read user"):
        user = store.get_user(uid)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/users")
def save_user(
    payload: UserPayload,
    store: RosterStore = Depends(get_roster_store),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to save user"):
        saved = store.save_user(payload.record())
    SheetsMirror(sheets).saved("users", saved)
    return saved


@router.patch("/users/{uid}/role", response_model=SuccessResponse)
def update_user_role(
    uid: str,
    payload: RoleUpdate,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to update role"):
        found = store.update_user_role(uid, payload.role)
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return SuccessResponse()


@router.patch("/users/{uid}/approve", response_model=SuccessResponse)
def approve_user(
    uid: str,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to approve user"):
        found = store.approve_user(uid)
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return SuccessResponse()


@router.delete("/users/{uid}", response_model=SuccessResponse)
def delete_user(
    uid: str,
    store: RosterStore = Depends(get_roster_store),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to delete user"):
        store.delete_user(uid)
    SheetsMirror(sheets).deleted("users", uid)
    return SuccessResponse()


# ----- buses -----


@router.get("/buses")
def list_buses(
    q: str = Query(default=""),
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read buses"):
        buses = store.search_buses(q)
        counts = store.student_counts()
    return [dict(bus, studentCount=counts.get(bus.get("id"), 0)) for bus in buses]


@router.get("/buses/{bus_id}")
def get_bus(
    bus_id: str,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read buses"):
        bus = store.get_bus(bus_id)
    if not bus:
        raise HTTPException(status_code=404, detail="Bus not found")
    return bus


@router.post("/buses")
def save_bus(
    payload: BusPayload,
    store: RosterStore = Depends(get_roster_store),
    routes: RouteService = Depends(get_route_service),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to save bus"):
        saved = store.save_bus(payload.record())
    SheetsMirror(sheets).saved("buses", saved)
    routes.clear_cache(saved["id"])
    return saved


@router.delete("/buses/{bus_id}", response_model=SuccessResponse)
def delete_bus(
    bus_id: str,
    store: RosterStore = Depends(get_roster_store),
    routes: RouteService = Depends(get_route_service),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to delete bus"):
        store.delete_bus(bus_id)
    SheetsMirror(sheets).deleted("buses", bus_id)
    routes.clear_cache(bus_id)
    return SuccessResponse()


@router.get("/buses/{bus_id}/students")
def bus_students(
    bus_id: str,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read students"):
        return store.students_by_bus(bus_id)


@router.get("/buses/{bus_id}/route")
def cached_bus_route(
    bus_id: str,
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(get_current_user),
):
    route = routes.cached_route(bus_id)
    if not route:
        raise HTTPException(status_code=404, detail="Route not calculated")
    return route


@router.post("/buses/{bus_id}/route")
def calculate_bus_route(
    bus_id: str,
    force: bool = Query(default=False),
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(get_current_user),
):
    try:
        with storage_errors("Failed to read buses"):
            return routes.calculate_for_bus(bus_id, force=force)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=exc.args[0]) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MapsError as exc:
        logger.warning("Route calculation for %s failed: %s", bus_id, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/buses/{bus_id}/route/reorder")
def reorder_bus_route(
    bus_id: str,
    payload: ReorderRequest,
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(get_current_user),
):
    try:
        with storage_errors("Failed to read buses"):
            return routes.reorder_stop(bus_id, payload.old_index, payload.new_index)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=exc.args[0]) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MapsError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.delete("/routes/cache", response_model=SuccessResponse)
def clear_route_cache(
    bus_id: Optional[str] = Query(default=None),
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(get_current_user),
):
    routes.clear_cache(bus_id)
    return SuccessResponse()


# ----- students -----


@router.get("/students")
def list_students(
    q: str = Query(default=""),
    bus_id: Optional[str] = Query(default=None),
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read students"):
        return store.search_students(q, bus_id)


@router.post("/students/reassign", response_model=ReassignResponse)
def reassign_students(
    store: RosterStore = Depends(get_roster_store),
    geocoder: Geocoder = Depends(get_geocoder),
    routes: RouteService = Depends(get_route_service),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to save student"):
        updated = reassign_all_students(store, geocoder, settings.max_bus_capacity)
    if updated:
        routes.clear_cache()
    return ReassignResponse(updated=updated)


@router.get("/students/{student_id}")
def get_student(
    student_id: str,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read students"):
        student = store.get_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


@router.post("/students")
def save_student(
    payload: StudentPayload,
    store: RosterStore = Depends(get_roster_store),
    geocoder: Geocoder = Depends(get_geocoder),
    routes: RouteService = Depends(get_route_service),
    settings: Settings = Depends(get_settings),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    record = payload.record()
    with storage_errors("Failed to save student"):
        previous = store.get_student(record["id"]) if record.get("id") else None
        if payload.autoAssign and record.get("address"):
            best = find_best_bus(
                record["address"],
                store.list_buses(),
                _riders_by_bus(store.list_students(), exclude_id=record.get("id")),
                geocoder,
                settings.max_bus_capacity,
            )
            if best:
                record["busId"] = best["bus"]["id"]
        saved = store.save_student(record)
    SheetsMirror(sheets).saved("students", saved)

    for bus_id in {saved.get("busId"), (previous or {}).get("busId")}:
        if bus_id:
            routes.clear_cache(bus_id)
    return saved


@router.delete("/students/{student_id}", response_model=SuccessResponse)
def delete_student(
    student_id: str,
    store: RosterStore = Depends(get_roster_store),
    routes: RouteService = Depends(get_route_service),
    sheets: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to delete student"):
        student = store.get_student(student_id)
        store.delete_student(student_id)
    SheetsMirror(sheets).deleted("students", student_id)
    if student and student.get("busId"):
        routes.clear_cache(student["busId"])
    return SuccessResponse()


@router.post("/students/{student_id}/best-bus", response_model=BestBusResponse)
def best_bus_for_student(
    student_id: str,
    apply: bool = Query(default=False),
    store: RosterStore = Depends(get_roster_store),
    geocoder: Geocoder = Depends(get_geocoder),
    routes: RouteService = Depends(get_route_service),
    settings: Settings = Depends(get_settings),
    user: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read students"):
        student = store.get_student(student_id)
        if not student:
            raise HTTPException(status_code=404, detail="Student not found")
        if not student.get("address"):
            raise HTTPException(status_code=400, detail="Student has no address")
        best = find_best_bus(
            student["address"],
            store.list_buses(),
            _riders_by_bus(store.list_students(), exclude_id=student_id),
            geocoder,
            settings.max_bus_capacity,
        )
    if not best:
        return BestBusResponse(student_id=student_id)

    assigned = False
    if apply and best["bus"]["id"] != student.get("busId"):
        if not is_admin(user):
            raise HTTPException(status_code=403, detail="Admin role required")
        previous_bus = student.get("busId")
        student["busId"] = best["bus"]["id"]
        with storage_errors("Failed to save student"):
            store.save_student(student)
        routes.clear_cache(best["bus"]["id"])
        if previous_bus:
            routes.clear_cache(previous_bus)
        assigned = True
    return BestBusResponse(
        student_id=student_id,
        bus=best["bus"],
        score=best["score"],
        details=best["details"],
        assigned=assigned,
    )


# ----- settings -----


@router.get("/settings")
def get_settings_doc(
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read settings"):
        return store.get_settings_doc()


@router.post("/settings")
def replace_settings_doc(
    payload: dict,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to save settings"):
        saved = store.replace_settings(payload)
    reset_maps_clients()
    reset_sheets_client()
    return saved


@router.patch("/settings")
def update_settings_doc(
    payload: dict,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to update settings"):
        saved = store.merge_settings(payload)
    reset_maps_clients()
    reset_sheets_client()
    return saved


@router.get("/settings/maps-key", response_model=MapsKeyResponse)
def get_maps_key_status(
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    source = maps_key_source(store)
    return MapsKeyResponse(configured=source is not None, source=source)


@router.put("/settings/maps-key", response_model=MapsKeyResponse)
def save_maps_key(
    payload: MapsKeyRequest,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to update settings"):
        store.merge_settings({"googleMapsKey": payload.api_key})
    reset_maps_clients()
    source = maps_key_source(store)
    return MapsKeyResponse(configured=source is not None, source=source)


def _sheets_status(client: GoogleSheetsClient) -> SheetsConfigResponse:
    return SheetsConfigResponse(
        spreadsheet_id=client.spreadsheet_id,
        has_access_token=bool(client.access_token),
        has_api_key=bool(client.api_key),
        ready=client.is_ready(),
    )


@router.get("/settings/sheets-config", response_model=SheetsConfigResponse)
def get_sheets_config(
    client: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(get_current_user),
):
    return _sheets_status(client)


@router.put("/settings/sheets-config", response_model=SheetsConfigResponse)
def save_sheets_config(
    payload: SheetsConfigRequest,
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(require_admin),
):
    config = {"spreadsheetId": payload.spreadsheet_id}
    if payload.access_token:
        config["accessToken"] = payload.access_token
    if payload.api_key:
        config["apiKey"] = payload.api_key
    with storage_errors("Failed to update settings"):
        store.merge_settings({"googleSheetsConfig": config})
    reset_sheets_client()
    return _sheets_status(build_sheets_client(store))


# ----- stats -----


@router.get("/stats")
def stats(
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read stats"):
        return store.get_stats()


@router.get("/stats/recent")
def recent(
    limit: int = Query(default=5, ge=0, le=50),
    store: RosterStore = Depends(get_roster_store),
    _: dict = Depends(get_current_user),
):
    with storage_errors("Failed to read stats"):
        return store.recent_items(limit)


# ----- smart assignment -----


def _run_inline(job_id: str, db: DbClient, store: RosterStore, geocoder: Geocoder) -> None:
    job = db.claim_job(job_id)
    if job:
        process_job(job, db, store=store, geocoder=geocoder)


def _job_status(job: JobRecord) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.job_id,
        kind=job.kind,
        status=job.status.value,
        stage=job.stage,
        progress_percent=job.progress_percent,
        error=job.error,
    )


@router.post("/assignments", response_model=JobStatusResponse, status_code=202)
def request_assignment(
    payload: AssignmentRequest,
    background_tasks: BackgroundTasks,
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
    store: RosterStore = Depends(get_roster_store),
    geocoder: Geocoder = Depends(get_geocoder),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_admin),
):
    """
    Create an assignment job. It runs in a background task or on a worker.
    """
    job = db.create_job(ASSIGNMENT_JOB, payload.model_dump(exclude_none=True))
    if settings.process_jobs_inline:
        background_tasks.add_task(_run_inline, job.job_id, db, store, geocoder)
    else:
        queue.enqueue(job.job_id)
    logger.info("Queued assignment job %s (%s)", job.job_id, payload.algorithm)
    return _job_status(job)


@router.get("/assignments", response_model=list[JobStatusResponse])
def list_assignments(
    limit: int = Query(default=20, ge=1, le=100),
    db: DbClient = Depends(get_db_client),
    _: dict = Depends(get_current_user),
):
    """Most recent jobs first."""
    return [_job_status(job) for job in db.list_jobs(limit=limit)]


@router.get("/job-status/{job_id}", response_model=JobStatusResponse)
def job_status(
    job_id: str,
    db: DbClient = Depends(get_db_client),
    _: dict = Depends(get_current_user),
):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_status(job)


@router.get("/assignments/{job_id}", response_model=AssignmentResultResponse)
def assignment_result(
    job_id: str,
    db: DbClient = Depends(get_db_client),
    _: dict = Depends(get_current_user),
):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return AssignmentResultResponse(job_id=job.job_id, status=job.status.value, result=job.result)


@router.post("/assignments/{job_id}/apply", response_model=ApplyAssignmentResponse)
def apply_assignment_result(
    job_id: str,
    db: DbClient = Depends(get_db_client),
    store: RosterStore = Depends(get_roster_store),
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(require_admin),
):
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.SUCCESS or not job.result:
        raise HTTPException(status_code=409, detail="Assignment is not finished")
    with storage_errors("Failed to save student"):
        updated = apply_assignment(store, job.result)
    routes.clear_cache()
    return ApplyAssignmentResponse(job_id=job_id, updated=updated)


# ----- google sheets -----


def _sync(action, client: GoogleSheetsClient) -> SyncResponse:
    if not client.is_ready():
        raise HTTPException(status_code=400, detail=NOT_CONNECTED)
    try:
        return SyncResponse(counts=action())
    except SheetsError as exc:
        logger.warning("Sheets sync failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/sheets/sync-to", response_model=SyncResponse)
def sync_to_sheets(
    store: RosterStore = Depends(get_roster_store),
    client: GoogleSheetsClient = Depends(get_sheets_client),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to read roster"):
        return _sync(SheetsSync(store, client).sync_to_sheets, client)


@router.post("/sheets/sync-from", response_model=SyncResponse)
def sync_from_sheets(
    store: RosterStore = Depends(get_roster_store),
    client: GoogleSheetsClient = Depends(get_sheets_client),
    routes: RouteService = Depends(get_route_service),
    _: dict = Depends(require_admin),
):
    with storage_errors("Failed to save roster"):
        response = _sync(SheetsSync(store, client).sync_from_sheets, client)
    routes.clear_cache()
    return response


# ----- github -----


@router.get("/github/status", response_model=GitHubStatusResponse)
def github_status(
    check: bool = Query(default=False),
    pages_url: Optional[str] = Query(default=None),
    client: GitHubStorageClient = Depends(get_github_client),
    _: dict = Depends(get_current_user),
):
    """With ``pages_url``, also report the owner/repo a GitHub Pages
    address points at."""
    detected = auto_detect_repo(pages_url) if pages_url else None
    if not client.is_configured():
        return GitHubStatusResponse(configured=False, detected=detected)
    return GitHubStatusResponse(
        configured=True,
        owner=client.owner,
        repo=client.repo,
        branch=client.branch,
        connection=client.test_connection() if check else None,
        detected=detected,
    )


@router.post("/github/backup-token", response_model=SuccessResponse)
def github_backup_token(
    client: GitHubStorageClient = Depends(get_github_client),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_admin),
):
    if not client.is_configured():
        raise HTTPException(status_code=400, detail="GitHub not configured")
    try:
        backup_github_token(client, settings.token_encryption_key)
    except StorageError as exc:
        logger.warning("Token backup failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SuccessResponse()


@router.post("/github/restore-token", response_model=RestoreTokenResponse)
def github_restore_token(
    payload: RestoreTokenRequest,
    client: GitHubStorageClient = Depends(get_github_client),
    settings: Settings = Depends(get_settings),
    _: dict = Depends(require_admin),
):
    try:
        restored = restore_github_token(
            client,
            payload.token,
            settings.token_encryption_key,
            owner=payload.owner,
            repo=payload.repo,
        )
    except StorageError as exc:
        logger.warning("Token restore failed: %s", exc)
        return RestoreTokenResponse(success=False, error=str(exc))
    reset_storage()
    return RestoreTokenResponse(success=True, **restored)
