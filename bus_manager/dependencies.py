"""
Dependency wiring for the FastAPI app.

Clients are module-level singletons chosen from settings. Clients that depend
on keys stored in the settings document (maps, sheets) or on the GitHub
configuration can be rebuilt with the ``reset_*`` helpers after those change.
"""

from __future__ import annotations

import logging
from typing import Optional

from bus_manager.config import get_settings
from bus_manager.db import DbClient, InMemoryDbClient, SqlDbClient
from bus_manager.maps import (
    DirectionsClient,
    Geocoder,
    GoogleDirectionsClient,
    GoogleGeocoder,
    StaticGeocoder,
    StraightLineDirectionsClient,
)
from bus_manager.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from bus_manager.roster import RosterStore
from bus_manager.route_planner import RoutePlanner, RouteService
from bus_manager.sheets import GoogleSheetsClient
from bus_manager.storage import (
    CosStorageClient,
    FallbackStorageClient,
    GitHubStorageClient,
    InMemoryStorageClient,
    LocalFileStorageClient,
    StorageClient,
    StorageError,
)

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_queue_client: JobQueue | None = None
_github_client: GitHubStorageClient | None = None
_storage_client: StorageClient | None = None
_roster_store: RosterStore | None = None
_geocoder: Geocoder | None = None
_directions_client: DirectionsClient | None = None
_route_service: RouteService | None = None
_sheets_client: GoogleSheetsClient | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so job state persists across requests.
    """
    global _db_client
    if _db_client is not None:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> JobQueue:
    global _queue_client
    if _queue_client is not None:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_github_client() -> GitHubStorageClient:
    global _github_client
    if _github_client is not None:
        return _github_client

    settings = get_settings()
    _github_client = GitHubStorageClient(
        owner=settings.github_owner,
        repo=settings.github_repo,
        token=settings.github_token,
        branch=settings.github_branch,
        api_url=settings.github_api_url,
    )
    return _github_client


def get_storage_client() -> StorageClient:
    """GitHub first (when configured) with a local or bucket copy behind it."""
    global _storage_client
    if _storage_client is not None:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _storage_client = InMemoryStorageClient()
        return _storage_client

    if settings.cos_bucket:
        local: StorageClient = CosStorageClient(
            bucket=settings.cos_bucket,
            region=settings.cos_region or "",
            endpoint=settings.cos_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    else:
        local = LocalFileStorageClient(settings.data_dir)

    github = get_github_client()
    if github.is_configured():
        logger.info("Storage: GitHub %s/%s@%s", github.owner, github.repo, github.branch)
        _storage_client = FallbackStorageClient(primary=github, fallback=local)
    else:
        _storage_client = local
    return _storage_client


def get_roster_store() -> RosterStore:
    global _roster_store
    if _roster_store is not None:
        return _roster_store
    _roster_store = RosterStore(get_storage_client())
    return _roster_store


def reset_storage() -> None:
    """Drop storage-backed singletons, e.g. after the GitHub token changes."""
    global _storage_client, _roster_store, _route_service
    _storage_client = None
    _roster_store = None
    _route_service = None


def _settings_doc(store: Optional[RosterStore] = None) -> dict:
    try:
        return (store or get_roster_store()).get_settings_doc()
    except StorageError:
        logger.exception("Could not read the settings document")
        return {}


def resolve_maps_key() -> str:
    """Environment first, then ``googleMapsKey`` in the settings document."""
    settings = get_settings()
    if settings.google_maps_api_key:
        return settings.google_maps_api_key
    return _settings_doc().get("googleMapsKey") or ""


def resolve_sheets_config(store: Optional[RosterStore] = None) -> dict:
    settings = get_settings()
    stored = _settings_doc(store).get("googleSheetsConfig") or {}
    return {
        "spreadsheetId": settings.google_sheets_spreadsheet_id or stored.get("spreadsheetId") or "",
        "accessToken": settings.google_sheets_access_token or stored.get("accessToken") or "",
        "apiKey": settings.google_sheets_api_key or stored.get("apiKey") or "",
    }


def _build_maps_clients() -> None:
    global _geocoder, _directions_client
    settings = get_settings()
    key = resolve_maps_key()
    if key:
        _geocoder = GoogleGeocoder(
            api_key=key, language=settings.maps_language, region=settings.maps_region
        )
        _directions_client = GoogleDirectionsClient(api_key=key, language=settings.maps_language)
    else:
        logger.warning("No Google Maps key configured; using offline maps clients")
        _geocoder = StaticGeocoder()
        _directions_client = StraightLineDirectionsClient()


def get_geocoder() -> Geocoder:
    if _geocoder is None:
        _build_maps_clients()
    return _geocoder


def get_directions_client() -> DirectionsClient:
    if _directions_client is None:
        _build_maps_clients()
    return _directions_client


def get_route_service() -> RouteService:
    global _route_service
    if _route_service is not None:
        return _route_service
    planner = RoutePlanner(get_geocoder(), get_directions_client())
    _route_service = RouteService(get_roster_store(), planner)
    return _route_service


def reset_maps_clients() -> None:
    global _geocoder, _directions_client, _route_service
    _geocoder = None
    _directions_client = None
    _route_service = None


def build_sheets_client(store: Optional[RosterStore] = None) -> GoogleSheetsClient:
    config = resolve_sheets_config(store)
    return GoogleSheetsClient(
        spreadsheet_id=config["spreadsheetId"],
        access_token=config["accessToken"],
        api_key=config["apiKey"],
    )


def get_sheets_client() -> GoogleSheetsClient:
    global _sheets_client
    if _sheets_client is None:
        _sheets_client = build_sheets_client()
    return _sheets_client


def reset_sheets_client() -> None:
    global _sheets_client
    _sheets_client = None


def maps_key_source(store: Optional[RosterStore] = None) -> Optional[str]:
    """Where the active maps key comes from: "environment", "settings" or None."""
    if get_settings().google_maps_api_key:
        return "environment"
    if _settings_doc(store).get("googleMapsKey"):
        return "settings"
    return None
