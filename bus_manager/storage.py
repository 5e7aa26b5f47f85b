"""
Document storage for the bus manager.

Every piece of state lives in a handful of JSON documents (``data.json``,
``users.json``, ``settings.json``). The clients here read and write those
documents whole: on local disk, in a GitHub repository through the contents
API (one commit per save), in an S3-compatible bucket, or in memory for tests.
"""

from __future__ import annotations

import base64
import copy
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

GITHUB_PAGES_PATTERN = re.compile(r"https?://([^.]+)\.github\.io/([^/]+)")


class StorageError(Exception):
    """Raised when a storage backend cannot read or write a document."""


class StorageClient(Protocol):
    """Defines the operations the roster needs from document storage."""

    def get_json(self, path: str) -> Optional[Any]:
        ...

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    documents: dict = None
    commits: list = field(default_factory=list)

    def __post_init__(self):
        if self.documents is None:
            self.documents = {}

    def get_json(self, path: str) -> Optional[Any]:
        stored = self.documents.get(path)
        if stored is None:
            return None
        return copy.deepcopy(stored)

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        # Round-trip through JSON to mimic real persistence
        self.documents[path] = json.loads(json.dumps(payload, default=str))
        self.commits.append(message or f"Update {path}")


@dataclass
class LocalFileStorageClient:
    """One pretty-printed UTF-8 JSON file per document under ``data_dir``."""

    data_dir: str

    def _path(self, path: str) -> str:
        return os.path.join(self.data_dir, path)

    def get_json(self, path: str) -> Optional[Any]:
        full_path = self._path(path)
        if not os.path.exists(full_path):
            return None
        try:
            with open(full_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            logger.error("Error reading %s: %s", full_path, exc)
            raise StorageError(f"Failed to read {path}") from exc

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        """Write to a temporary file beside the target, then swap it in."""
        full_path = self._path(path)
        directory = os.path.dirname(full_path) or "."
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, suffix=".tmp", delete=False
            ) as f:
                tmp_path = f.name
                json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, full_path)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Error writing %s: %s", full_path, exc)
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Failed to write {path}") from exc


@dataclass
class GitHubStorageClient:
    """
    Stores documents as files in a GitHub repository via the contents API.

    Each ``put_json`` creates one commit. Blob SHAs are cached per path so
    updates do not need an extra GET; a stale SHA is refreshed and the write
    retried once.
    """

    owner: Optional[str]
    repo: Optional[str]
    token: Optional[str]
    branch: str = "main"
    api_url: str = "https://api.github.com"
    timeout: float = 30.0
    session: Optional[requests.Session] = None

    def __post_init__(self):
        if self.session is None:
            self.session = requests.Session()
        self._sha_cache: dict[str, str] = {}

    def is_configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)

    def _require_config(self) -> None:
        if not self.is_configured():
            raise StorageError("GitHub not configured")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github.v3+json",
        }

    def _contents_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{path}"

    def _fetch(self, path: str) -> Optional[dict]:
        try:
            response = self.session.get(
                self._contents_url(path),
                params={"ref": self.branch},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(f"GitHub API error: {exc}") from exc
        if response.status_code == 404:
            return None
        if not response.ok:
            raise StorageError(f"GitHub API error: {response.status_code}")
        return response.json()

    def get_json(self, path: str) -> Optional[Any]:
        self._require_config()
        data = self._fetch(path)
        if data is None:
            self._sha_cache.pop(path, None)
            return None
        self._sha_cache[path] = data.get("sha")
        raw = base64.b64decode(data.get("content", "")).decode("utf-8")
        return json.loads(raw)

    def _current_sha(self, path: str) -> Optional[str]:
        """SHA of the stored file, or None when it is missing or unreadable.

        An unreadable file is written without a SHA; GitHub rejects that
        write if the file does exist.
        """
        try:
            data = self._fetch(path)
        except StorageError as exc:
            logger.warning("Could not read SHA of %s: %s", path, exc)
            return None
        return data.get("sha") if data else None

    def _put(self, path: str, body: dict) -> requests.Response:
        try:
            return self.session.put(
                self._contents_url(path),
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(f"GitHub API error: {exc}") from exc

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            return response.json().get("message") or str(response.status_code)
        except ValueError:
            return str(response.status_code)

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        self._require_config()
        text = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        body = {
            "message": message or f"Update {path}",
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        sha = self._sha_cache.get(path) or self._current_sha(path)
        if sha:
            body["sha"] = sha

        response = self._put(path, body)
        if not response.ok:
            error = self._error_message(response)
            if "does not match" not in error:
                raise StorageError(f"GitHub API error: {error}")
            logger.info("SHA mismatch for %s, refetching and retrying", path)
            sha = self._current_sha(path)
            if sha:
                body["sha"] = sha
            else:
                body.pop("sha", None)
            response = self._put(path, body)
            if not response.ok:
                raise StorageError(
                    f"GitHub API error: {self._error_message(response)}"
                )

        try:
            new_sha = (response.json().get("content") or {}).get("sha")
        except ValueError:
            logger.warning("GitHub returned no JSON body for %s", path)
            new_sha = None
        if new_sha:
            self._sha_cache[path] = new_sha
        else:
            self._sha_cache.pop(path, None)
        logger.info("Saved %s to GitHub (%s)", path, body["message"])

    def get_repo_info(self) -> dict:
        self._require_config()
        try:
            response = self.session.get(
                f"{self.api_url}/repos/{self.owner}/{self.repo}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(f"GitHub API error: {exc}") from exc
        if not response.ok:
            raise StorageError(f"GitHub API error: {response.status_code}")
        return response.json()

    def test_connection(self) -> dict:
        try:
            info = self.get_repo_info()
        except StorageError as exc:
            logger.warning("GitHub connection failed: %s", exc)
            return {"success": False, "error": str(exc)}
        logger.info("Connected to GitHub: %s", info.get("full_name"))
        return {"success": True, "repo": info}


@dataclass
class CosStorageClient:
    """
    S3-compatible storage client (Tencent COS, AWS S3, MinIO).
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    prefix: str = ""

    def __post_init__(self):
        # Virtual-hosted style addressing is required by COS.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _key(self, path: str) -> str:
        return f"{self.prefix.rstrip('/')}/{path}" if self.prefix else path

    def get_json(self, path: str) -> Optional[Any]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self._key(path))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise StorageError(f"Failed to read {path}") from exc
        return json.loads(response["Body"].read().decode("utf-8"))

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        body = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self._key(path),
                Body=body.encode("utf-8"),
                ContentType="application/json",
            )
        except ClientError as exc:
            raise StorageError(f"Failed to write {path}") from exc


@dataclass
class FallbackStorageClient:
    """
    Uses ``primary`` and falls back to ``fallback`` when it fails.

    Successful primary writes are mirrored to the fallback so it stays a
    usable local backup.
    """

    primary: StorageClient
    fallback: StorageClient

    def get_json(self, path: str) -> Optional[Any]:
        try:
            return self.primary.get_json(path)
        except StorageError as exc:
            logger.warning("Primary storage read of %s failed (%s), using fallback", path, exc)
            return self.fallback.get_json(path)

    def put_json(self, path: str, payload: Any, message: Optional[str] = None) -> None:
        try:
            self.primary.put_json(path, payload, message)
        except StorageError as exc:
            logger.warning("Primary storage write of %s failed (%s), using fallback", path, exc)
        self.fallback.put_json(path, payload, message)


def obfuscate_token(text: str, key: str) -> str:
    """XOR ``text`` with a repeating ``key`` and base64 the result.

    This is obfuscation for the settings backup, not encryption.
    """
    if not text:
        return ""
    mixed = "".join(
        chr(ord(ch) ^ ord(key[i % len(key)])) for i, ch in enumerate(text)
    )
    return base64.b64encode(mixed.encode("latin-1")).decode("ascii")


def reveal_token(encoded: str, key: str) -> str:
    """Reverse :func:`obfuscate_token`. Returns "" on malformed input."""
    if not encoded:
        return ""
    try:
        mixed = base64.b64decode(encoded, validate=True).decode("latin-1")
    except ValueError:
        logger.error("Token decoding failed")
        return ""
    return "".join(
        chr(ord(ch) ^ ord(key[i % len(key)])) for i, ch in enumerate(mixed)
    )


def auto_detect_repo(url: str) -> dict:
    """Guess owner/repo from a GitHub Pages URL like https://owner.github.io/repo/."""
    match = GITHUB_PAGES_PATTERN.match(url or "")
    if not match:
        return {"owner": None, "repo": None, "detected": False}
    return {"owner": match.group(1), "repo": match.group(2), "detected": True}


def backup_github_token(
    client: GitHubStorageClient, key: str, settings_path: str = "settings.json"
) -> None:
    """Store the client's token (obfuscated) and repo coordinates in the
    settings document of that same repository."""
    client._require_config()
    settings = client.get_json(settings_path) or {}
    settings.update(
        githubToken=obfuscate_token(client.token, key),
        githubOwner=client.owner,
        githubRepo=client.repo,
        githubBranch=client.branch,
    )
    client.put_json(settings_path, settings, "Backup GitHub token")
    logger.info("GitHub token backed up to %s", settings_path)


def restore_github_token(
    client: GitHubStorageClient,
    temporary_token: str,
    key: str,
    owner: Optional[str] = None,
    repo: Optional[str] = None,
    settings_path: str = "settings.json",
) -> dict:
    """Read the backed-up token with ``temporary_token`` and reconfigure
    ``client`` with it."""
    probe = GitHubStorageClient(
        owner=owner or client.owner,
        repo=repo or client.repo,
        token=temporary_token,
        branch=client.branch,
        api_url=client.api_url,
        timeout=client.timeout,
        session=client.session,
    )
    settings = probe.get_json(settings_path) or {}
    if not settings.get("githubToken"):
        raise StorageError(f"No GitHub token found in {settings_path}")
    token = reveal_token(settings["githubToken"], key)
    owner = settings.get("githubOwner")
    repo = settings.get("githubRepo")
    if not (token and owner and repo):
        raise StorageError("Invalid or missing GitHub config in settings")

    client.token = token
    client.owner = owner
    client.repo = repo
    client.branch = settings.get("githubBranch") or "main"
    client._sha_cache.clear()
    logger.info("GitHub token restored for %s/%s", owner, repo)
    return {"owner": owner, "repo": repo, "branch": client.branch}
