"""Google Drive backend using the Drive v3 REST API.

Drive addresses files by id and allows several files with the same name
in one folder, so this backend keeps a path -> id cache filled by
``list()`` and resolves paths on demand for anything not cached.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Optional

from ..exceptions import InvalidResponseError, RemoteNotFoundError
from ..utils import format_timestamp, normalize_relative_path, parse_iso_timestamp
from .base import RemoteObjectRecord
from .http import HttpBackend

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Docs, Sheets, shortcuts... have no binary content to sync
GOOGLE_APPS_PREFIX = "application/vnd.google-apps."

_FILE_FIELDS = "id, name, mimeType, size, md5Checksum, modifiedTime, version"


def _escape_query(value: str) -> str:
    """Escape a value for use inside a single-quoted Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveBackend(HttpBackend):
    """Stores files in a Google Drive folder."""

    name = "gdrive"
    hash_algorithm = "md5"
    api_url = "https://www.googleapis.com/drive/v3"
    upload_url = "https://www.googleapis.com/upload/drive/v3/files"

    def __init__(
        self,
        access_token: str,
        remote_root: str = "",
        root_folder_id: str = "root",
        use_trash: bool = True,
        timeout: float = 60.0,
        page_size: int = 1000,
    ):
        """Initialize the Google Drive backend.

        Args:
            access_token: OAuth access token with a Drive scope
            remote_root: Folder path below root_folder_id mirroring the local root
            root_folder_id: Drive folder id the remote root is resolved from
            use_trash: If True, deletions move files to the trash
            timeout: Request timeout in seconds
            page_size: Number of files requested per page
        """
        super().__init__(access_token, timeout=timeout)
        self.remote_root = normalize_relative_path(remote_root)
        self.root_folder_id = root_folder_id
        self.use_trash = use_trash
        self.page_size = page_size

        self._lock = threading.RLock()
        self._file_ids: dict[str, str] = {}
        self._folder_ids: dict[str, str] = {}

    # =========================
    # Lookups
    # =========================

    def _query(self, q: str) -> list[dict[str, Any]]:
        """Run a files.list query, following nextPageToken pages."""
        items: list[dict[str, Any]] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "q": q,
                "fields": f"nextPageToken, files({_FILE_FIELDS})",
                "pageSize": self.page_size,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            }
            if page_token:
                params["pageToken"] = page_token

            data = self._request("GET", "/files", params=params)
            items.extend(data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

    def _find_child(self, parent_id: str, name: str, folder: bool) -> Optional[dict]:
        q = f"'{_escape_query(parent_id)}' in parents and name = '{_escape_query(name)}'"
        q += " and trashed = false"
        if folder:
            q += f" and mimeType = '{FOLDER_MIME_TYPE}'"
        else:
            q += f" and mimeType != '{FOLDER_MIME_TYPE}'"
        matches = self._query(q)
        if not matches:
            return None
        # Duplicate names: take the most recently modified one
        return max(matches, key=lambda item: item.get("modifiedTime", ""))

    def _create_folder(self, parent_id: str, name: str) -> str:
        item = self._request(
            "POST",
            "/files",
            params={"fields": "id", "supportsAllDrives": "true"},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        logger.debug(f"Created Drive folder {name} ({item.get('id')})")
        return item["id"]

    def _resolve_folder(self, folder_path: str, create: bool) -> Optional[str]:
        """Resolve a folder path relative to the remote root to its id.

        Args:
            folder_path: Relative folder path ("" for the remote root)
            create: Create missing folders along the way

        Returns:
            Folder id, or None if missing and create is False
        """
        full = "/".join(p for p in (self.remote_root, folder_path) if p)
        with self._lock:
            if full in self._folder_ids:
                return self._folder_ids[full]

            current_id = self.root_folder_id
            walked = ""
            for part in full.split("/") if full else []:
                walked = f"{walked}/{part}" if walked else part
                cached = self._folder_ids.get(walked)
                if cached:
                    current_id = cached
                    continue
                child = self._find_child(current_id, part, folder=True)
                if child is None:
                    if not create:
                        return None
                    current_id = self._create_folder(current_id, part)
                else:
                    current_id = child["id"]
                self._folder_ids[walked] = current_id

            self._folder_ids[full] = current_id
            return current_id

    def _resolve_file_id(self, relative_path: str) -> str:
        with self._lock:
            cached = self._file_ids.get(relative_path)
        if cached:
            return cached

        parent, _, name = relative_path.rpartition("/")
        parent_id = self._resolve_folder(parent, create=False)
        child = self._find_child(parent_id, name, folder=False) if parent_id else None
        if child is None:
            raise RemoteNotFoundError(f"{relative_path} not found on Google Drive")

        with self._lock:
            self._file_ids[relative_path] = child["id"]
        return child["id"]

    def _to_record(self, relative_path: str, item: dict[str, Any]) -> RemoteObjectRecord:
        if "id" not in item:
            raise InvalidResponseError(f"Drive file without id for {relative_path}")
        version = item.get("version")
        return RemoteObjectRecord(
            relative_path=relative_path,
            remote_id=item["id"],
            mtime=parse_iso_timestamp(item.get("modifiedTime")),
            size=int(item.get("size", 0)),
            revision=str(version) if version is not None else None,
            content_hash=item.get("md5Checksum"),
        )

    # =========================
    # StorageBackend
    # =========================

    def list(self) -> dict[str, RemoteObjectRecord]:
        """List every file below the remote root."""
        records: dict[str, RemoteObjectRecord] = {}
        modified: dict[str, str] = {}

        root_id = self._resolve_folder("", create=False)
        if root_id is None:
            logger.debug(f"Remote root '{self.remote_root}' not found")
            return records

        pending: list[tuple[str, str]] = [("", root_id)]
        while pending:
            prefix, folder_id = pending.pop()
            q = f"'{_escape_query(folder_id)}' in parents and trashed = false"
            for item in self._query(q):
                name = item.get("name", "")
                relative_path = normalize_relative_path(
                    f"{prefix}/{name}" if prefix else name
                )
                mime_type = item.get("mimeType", "")

                if mime_type == FOLDER_MIME_TYPE:
                    full = "/".join(p for p in (self.remote_root, relative_path) if p)
                    with self._lock:
                        self._folder_ids[full] = item["id"]
                    pending.append((relative_path, item["id"]))
                    continue
                if mime_type.startswith(GOOGLE_APPS_PREFIX):
                    logger.debug(f"Skipping Google native file {relative_path}")
                    continue

                if relative_path in records:
                    logger.warning(f"Duplicate file name on Google Drive: {relative_path}")
                    if item.get("modifiedTime", "") <= modified[relative_path]:
                        continue
                records[relative_path] = self._to_record(relative_path, item)
                modified[relative_path] = item.get("modifiedTime", "")

        with self._lock:
            self._file_ids.update(
                {path: record.remote_id for path, record in records.items()}
            )
        logger.debug(f"Listed {len(records)} remote file(s) on Google Drive")
        return records

    @staticmethod
    def _upload_params() -> dict[str, str]:
        return {
            "uploadType": "multipart",
            "fields": _FILE_FIELDS,
            "supportsAllDrives": "true",
        }

    def _multipart_body(self, metadata: dict, data: bytes) -> tuple[bytes, str]:
        """Encode metadata and content as a multipart/related body."""
        boundary = f"cloudsync-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                b"Content-Type: application/octet-stream\r\n\r\n",
                data,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )
        return body, f"multipart/related; boundary={boundary}"

    def upload(
        self, relative_path: str, data: bytes, local_mtime: float
    ) -> RemoteObjectRecord:
        """Upload a file, updating the existing Drive file if there is one."""
        metadata: dict[str, Any] = {"modifiedTime": format_timestamp(local_mtime)}

        try:
            file_id: Optional[str] = self._resolve_file_id(relative_path)
        except RemoteNotFoundError:
            file_id = None

        item: Optional[dict[str, Any]] = None
        if file_id is not None:
            body, content_type = self._multipart_body(metadata, data)
            try:
                item = self._request(
                    "PATCH",
                    f"{self.upload_url}/{file_id}",
                    params=self._upload_params(),
                    content=body,
                    headers={"Content-Type": content_type},
                )
            except RemoteNotFoundError:
                # Cached id went stale (deleted by another client)
                logger.debug(f"Cached Drive id for {relative_path} is gone")
                with self._lock:
                    self._file_ids.pop(relative_path, None)

        if item is None:
            parent, _, name = relative_path.rpartition("/")
            parent_id = self._resolve_folder(parent, create=True)
            metadata.update({"name": name, "parents": [parent_id]})
            body, content_type = self._multipart_body(metadata, data)
            item = self._request(
                "POST",
                self.upload_url,
                params=self._upload_params(),
                content=body,
                headers={"Content-Type": content_type},
            )

        record = self._to_record(relative_path, item)
        with self._lock:
            self._file_ids[relative_path] = record.remote_id
        return record

    def download(self, relative_path: str) -> bytes:
        file_id = self._resolve_file_id(relative_path)
        response = self._send(
            "GET",
            f"/files/{file_id}",
            params={"alt": "media", "supportsAllDrives": "true"},
        )
        return response.content

    def delete(self, relative_path: str) -> None:
        file_id = self._resolve_file_id(relative_path)
        if self.use_trash:
            self._request(
                "PATCH",
                f"/files/{file_id}",
                params={"supportsAllDrives": "true", "fields": "id"},
                json={"trashed": True},
            )
        else:
            self._send("DELETE", f"/files/{file_id}", params={"supportsAllDrives": "true"})

        with self._lock:
            self._file_ids.pop(relative_path, None)
