"""Google Drive backup adapter.

Phones back up Health Connect archives and RENPHO CSV exports into one
Drive folder.  This adapter lists that folder through the Drive v3 REST
API, downloads the files it recognizes and hands them to the matching
file adapter:

    Health Connect zips — every file named like ``health connect`` /
                          ``health_connect`` / ``healthconnect`` + ``.zip``
    RENPHO CSVs         — only the most recently modified ``renpho`` file
                          (each export contains the full history)

Records are stored under the ``google_drive`` source.  A file that fails to
download or parse is recorded in the result's ``errors`` and the remaining
files are still imported.

Environment variables:
    GOOGLE_DRIVE_ACCESS_TOKEN — OAuth2 bearer token with drive.file scope
    GOOGLE_DRIVE_FOLDER_ID    — Backup folder id
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import UUID

import httpx

from src.config import get_settings
from src.reconcile.adapters.health_connect import HealthConnectAdapter, is_health_connect_archive
from src.reconcile.adapters.renpho import RenphoAdapter, is_renpho_file
from src.reconcile.base import ExtractionResult, SourceAdapter
from src.reconcile.config_loader import ReconcileConfig
from src.reconcile.errors import ParseError, PayloadTooLarge
from src.reconcile.sync.dedup import InMemoryDedupCache, import_file_key

logger = logging.getLogger("healthsync.reconcile.adapters.google_drive")

_FILE_FIELDS = "nextPageToken, files(id, name, modifiedTime, size, mimeType)"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DriveFile:
    """Metadata of one Drive file.

    Attributes:
        id:            Drive file id.
        name:          File name.
        modified_time: Last modification (UTC), if reported.
        size:          Size in bytes, if reported.
        mime_type:     MIME type.
    """

    id: str
    name: str
    modified_time: datetime | None = None
    size: int | None = None
    mime_type: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "DriveFile":
        modified = SourceAdapter._parse_iso_datetime(data.get("modifiedTime"))
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            modified_time=modified,
            size=int(size) if size is not None else None,
            mime_type=data.get("mimeType"),
        )


class GoogleDriveClient:
    """Minimal Drive v3 REST client: list, download, upload.

    Args:
        access_token: OAuth2 bearer token (GOOGLE_DRIVE_ACCESS_TOKEN).
        http_client:  Optional pre-configured httpx client (for testing).
    """

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._token = access_token or settings.google_drive_access_token
        self._api_url = settings.google_drive_api_url.rstrip("/")
        self._upload_url = settings.google_drive_upload_url.rstrip("/")
        self._timeout = settings.http_timeout_seconds
        self._max_download_bytes = settings.max_download_bytes
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def list_files(self, folder_id: str) -> list[DriveFile]:
        """List non-trashed files in a folder, most recently modified first."""
        files: list[DriveFile] = []
        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": _FILE_FIELDS,
            "orderBy": "modifiedTime desc",
            "pageSize": 100,
        }
        async with self._client() as client:
            while True:
                response = await client.get(f"{self._api_url}/files", params=params, headers=self._headers)
                response.raise_for_status()
                data = response.json()
                files.extend(DriveFile.from_api(f) for f in data.get("files", []))
                token = data.get("nextPageToken")
                if not token:
                    break
                params["pageToken"] = token
        logger.debug("Drive folder %s holds %d files", folder_id, len(files))
        return files

    async def download(self, file: DriveFile) -> bytes:
        """Download a file's content.

        Raises:
            PayloadTooLarge:  If the file exceeds ``max_download_bytes``.
            httpx.HTTPError:  On network or HTTP failure.
        """
        limit = self._max_download_bytes
        if file.size is not None and file.size > limit:
            raise PayloadTooLarge(f"{file.name} is {file.size} bytes (limit {limit})", origin=file.name)

        chunks: list[bytes] = []
        received = 0
        async with self._client() as client:
            async with client.stream(
                "GET", f"{self._api_url}/files/{file.id}", params={"alt": "media"}, headers=self._headers
            ) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > limit:
                        raise PayloadTooLarge(f"{file.name} exceeded {limit} bytes", origin=file.name)
                    chunks.append(chunk)
        return b"".join(chunks)

    async def upload(
        self,
        name: str,
        content: bytes,
        folder_id: str,
        mime_type: str = "application/octet-stream",
    ) -> DriveFile:
        """Upload a file into a folder (multipart upload)."""
        boundary = f"healthsync-{uuid.uuid4().hex}"
        metadata = json.dumps({"name": name, "parents": [folder_id]})
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n{metadata}\r\n".encode(),
            f"--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n".encode(),
            content,
            f"\r\n--{boundary}--".encode(),
        ])
        headers = {**self._headers, "Content-Type": f"multipart/related; boundary={boundary}"}
        async with self._client() as client:
            response = await client.post(
                f"{self._upload_url}/files",
                params={"uploadType": "multipart", "fields": "id, name, modifiedTime, size, mimeType"},
                content=body,
                headers=headers,
            )
            response.raise_for_status()
        uploaded = DriveFile.from_api(response.json())
        logger.info("Uploaded %s to Drive folder %s (id %s)", name, folder_id, uploaded.id)
        return uploaded


class DriveBackupAdapter(SourceAdapter):
    """Imports Health Connect and RENPHO files from a Drive backup folder.

    Args:
        config:        Reconciliation policy.
        timezone_name: User's IANA timezone.
        client:        Drive client (defaults to one built from settings).
        health_connect: Adapter used for archives.
        renpho:        Adapter used for CSVs.
    """

    SOURCE_ID = "google_drive"
    DISPLAY_NAME = "Google Drive"

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
        client: GoogleDriveClient | None = None,
        health_connect: HealthConnectAdapter | None = None,
        renpho: RenphoAdapter | None = None,
    ) -> None:
        super().__init__(config, timezone_name)
        self._drive = client or GoogleDriveClient()
        tz_name = self._tz.key
        self._health_connect = health_connect or HealthConnectAdapter(self._config, tz_name)
        self._renpho = renpho or RenphoAdapter(self._config, tz_name)
        self._seen = InMemoryDedupCache()

    @staticmethod
    def select_files(files: list[DriveFile]) -> list[DriveFile]:
        """Pick every Health Connect archive and the newest RENPHO file."""
        archives = [f for f in files if is_health_connect_archive(f.name)]
        renpho = [f for f in files if is_renpho_file(f.name)]
        selected = list(archives)
        if renpho:
            selected.append(max(renpho, key=lambda f: f.modified_time or _EPOCH))
        return selected

    async def extract(self, user_id: UUID, origin: Any = None) -> ExtractionResult:
        """Import recognized files from a folder.

        Args:
            user_id: Internal HealthSync user UUID.
            origin:  Folder id (defaults to GOOGLE_DRIVE_FOLDER_ID).
        """
        folder_id = origin or get_settings().google_drive_folder_id
        result = ExtractionResult(source=self.SOURCE_ID)
        if not folder_id:
            result.errors.append("No Google Drive folder configured")
            return result

        try:
            files = await self._drive.list_files(folder_id)
        except httpx.HTTPError as exc:
            logger.error("Listing Drive folder %s failed: %s", folder_id, exc)
            result.errors.append(f"folder {folder_id}: {exc}")
            return result

        selected = self.select_files(files)
        logger.info("Drive folder %s: %d of %d files selected", folder_id, len(selected), len(files))

        for drive_file in selected:
            key = import_file_key(user_id, self.SOURCE_ID, drive_file.name, drive_file.modified_time)
            if self._seen.is_seen(key):
                logger.debug("Skipping already imported file %s", drive_file.name)
                continue
            try:
                content = await self._drive.download(drive_file)
                if is_health_connect_archive(drive_file.name):
                    part = await self._health_connect.read_archive(user_id, content, drive_file.name)
                else:
                    part = self._renpho.parse_csv(user_id, content, drive_file.name)
            except (httpx.HTTPError, ParseError) as exc:
                logger.warning("Drive file %s failed: %s", drive_file.name, exc)
                result.errors.append(f"{drive_file.name}: {exc}")
                continue

            for item in part:
                item.raw.source = self.SOURCE_ID
            result.merge(part)
            self._seen.mark_seen(key)

        return result

    async def upload_backup(self, name: str, content: bytes, folder_id: str | None = None) -> DriveFile:
        """Upload a file into the backup folder (used by the external backup scheduler)."""
        target = folder_id or get_settings().google_drive_folder_id
        if not target:
            raise ValueError("No Google Drive folder configured")
        return await self._drive.upload(name, content, target)
