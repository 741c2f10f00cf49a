"""OneDrive backend using the Microsoft Graph API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..exceptions import InvalidResponseError, NetworkError, RemoteNotFoundError
from ..utils import format_timestamp, normalize_relative_path, parse_iso_timestamp
from .base import RemoteObjectRecord
from .http import HttpBackend

logger = logging.getLogger(__name__)

# Files up to this size are uploaded with a single PUT (Graph limit: 4 MB)
SIMPLE_UPLOAD_LIMIT: int = 4 * 1024 * 1024

# Upload session chunk size, must be a multiple of 320 KiB
UPLOAD_CHUNK_SIZE: int = 32 * 320 * 1024

_ITEM_FIELDS = "id,name,size,file,folder,fileSystemInfo,lastModifiedDateTime,cTag"


class OneDriveBackend(HttpBackend):
    """Stores files in a OneDrive folder, addressed by path."""

    name = "onedrive"
    hash_algorithm = "sha1"
    api_url = "https://graph.microsoft.com/v1.0"

    def __init__(
        self,
        access_token: str,
        remote_root: str = "",
        timeout: float = 30.0,
        page_size: int = 200,
    ):
        """Initialize the OneDrive backend.

        Args:
            access_token: Microsoft Graph access token
            remote_root: Folder below the drive root mirroring the local root
            timeout: Request timeout in seconds
            page_size: Number of children requested per page
        """
        super().__init__(access_token, timeout=timeout)
        self.remote_root = normalize_relative_path(remote_root)
        self.page_size = page_size

    def _full_path(self, relative_path: str) -> str:
        if self.remote_root:
            return f"{self.remote_root}/{relative_path}"
        return relative_path

    def _item_endpoint(self, relative_path: str) -> str:
        """Path-addressed item endpoint, e.g. /me/drive/root:/docs/a.txt"""
        return f"/me/drive/root:/{quote(self._full_path(relative_path), safe='/')}"

    def _root_children_endpoint(self) -> str:
        if not self.remote_root:
            return "/me/drive/root/children"
        return f"/me/drive/root:/{quote(self.remote_root, safe='/')}:/children"

    def _to_record(self, relative_path: str, item: dict[str, Any]) -> RemoteObjectRecord:
        if "id" not in item:
            raise InvalidResponseError(f"OneDrive item without id for {relative_path}")

        fs_info = item.get("fileSystemInfo") or {}
        mtime = parse_iso_timestamp(
            fs_info.get("lastModifiedDateTime") or item.get("lastModifiedDateTime")
        )
        hashes = (item.get("file") or {}).get("hashes") or {}
        sha1 = hashes.get("sha1Hash")

        return RemoteObjectRecord(
            relative_path=relative_path,
            remote_id=item["id"],
            mtime=mtime,
            size=int(item.get("size", 0)),
            revision=item.get("cTag"),
            content_hash=sha1.lower() if sha1 else None,
        )

    def _iter_children(self, endpoint: str):
        """Yield child items of a folder, following @odata.nextLink pages."""
        params: dict[str, Any] | None = {
            "$select": _ITEM_FIELDS,
            "$top": self.page_size,
        }
        next_url: str | None = endpoint
        while next_url:
            data = self._request("GET", next_url, params=params)
            yield from data.get("value", [])
            next_url = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None

    def list(self) -> dict[str, RemoteObjectRecord]:
        """List every file below the remote root."""
        records: dict[str, RemoteObjectRecord] = {}
        pending: list[tuple[str, str]] = [("", self._root_children_endpoint())]

        while pending:
            prefix, endpoint = pending.pop()
            try:
                children = list(self._iter_children(endpoint))
            except RemoteNotFoundError:
                if prefix == "":
                    # Remote root does not exist yet, nothing synced so far
                    logger.debug(f"Remote root '{self.remote_root}' not found")
                    return {}
                raise

            for item in children:
                name = item.get("name", "")
                relative_path = normalize_relative_path(
                    f"{prefix}/{name}" if prefix else name
                )
                if "folder" in item:
                    pending.append(
                        (relative_path, f"/me/drive/items/{item['id']}/children")
                    )
                elif "file" in item:
                    records[relative_path] = self._to_record(relative_path, item)

        logger.debug(f"Listed {len(records)} remote file(s) on OneDrive")
        return records

    def upload(
        self, relative_path: str, data: bytes, local_mtime: float
    ) -> RemoteObjectRecord:
        """Upload a file, replacing whatever is stored at the path."""
        file_system_info = {"lastModifiedDateTime": format_timestamp(local_mtime)}

        if len(data) <= SIMPLE_UPLOAD_LIMIT:
            item = self._request(
                "PUT",
                f"{self._item_endpoint(relative_path)}:/content",
                params={"@microsoft.graph.conflictBehavior": "replace"},
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
            if not isinstance(item, dict) or "id" not in item:
                raise InvalidResponseError(f"Upload of {relative_path} returned no id")
            # Simple uploads cannot carry metadata, set the mtime afterwards
            item = self._request(
                "PATCH",
                f"/me/drive/items/{item['id']}",
                json={"fileSystemInfo": file_system_info},
            )
        else:
            item = self._upload_session(relative_path, data, file_system_info)

        return self._to_record(relative_path, item)

    def _build_upload_client(self) -> httpx.Client:
        # The pre-authenticated upload URL must not receive the bearer token
        return httpx.Client(timeout=httpx.Timeout(self.timeout))

    def _upload_session(
        self, relative_path: str, data: bytes, file_system_info: dict[str, str]
    ) -> dict[str, Any]:
        """Upload large content in chunks through an upload session."""
        session = self._request(
            "POST",
            f"{self._item_endpoint(relative_path)}:/createUploadSession",
            json={
                "item": {
                    "@microsoft.graph.conflictBehavior": "replace",
                    "fileSystemInfo": file_system_info,
                }
            },
        )
        upload_url = session.get("uploadUrl")
        if not upload_url:
            raise InvalidResponseError("Upload session without uploadUrl")

        total = len(data)
        item: dict[str, Any] = {}
        with self._build_upload_client() as client:
            for start in range(0, total, UPLOAD_CHUNK_SIZE):
                chunk = data[start : start + UPLOAD_CHUNK_SIZE]
                end = start + len(chunk) - 1
                try:
                    response = client.put(
                        upload_url,
                        content=chunk,
                        headers={
                            "Content-Length": str(len(chunk)),
                            "Content-Range": f"bytes {start}-{end}/{total}",
                        },
                    )
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise self._map_http_error(e) from e
                except httpx.RequestError as e:
                    raise NetworkError(f"Network error during upload: {e}") from e

                logger.debug(f"Uploaded bytes {start}-{end}/{total} of {relative_path}")
                if response.status_code in (200, 201):
                    try:
                        item = response.json()
                    except ValueError as e:
                        raise InvalidResponseError(
                            f"Invalid JSON completing upload of {relative_path}"
                        ) from e

        if "id" not in item:
            raise InvalidResponseError(f"Upload session for {relative_path} incomplete")
        return item

    def download(self, relative_path: str) -> bytes:
        response = self._send("GET", f"{self._item_endpoint(relative_path)}:/content")
        return response.content

    def delete(self, relative_path: str) -> None:
        self._send("DELETE", self._item_endpoint(relative_path))
