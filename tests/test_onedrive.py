"""Tests for the OneDrive backend."""

import json
from unittest.mock import patch

import httpx
import pytest

from cloudsync.backends import OneDriveBackend, create_backend
from cloudsync.exceptions import (
    AuthError,
    CloudSyncError,
    ConfigError,
    InvalidResponseError,
    NetworkError,
    RateLimitError,
    RemoteNotFoundError,
    RemotePermissionError,
    TransientError,
)

GRAPH = "https://graph.microsoft.com/v1.0"


def make_backend(handler, **kwargs):
    backend = OneDriveBackend("token", **kwargs)
    backend._build_client = lambda: httpx.Client(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer token"},
    )
    return backend


def file_item(item_id, name, size=3, modified="2023-08-06T13:23:00Z", sha1=None):
    item = {
        "id": item_id,
        "name": name,
        "size": size,
        "file": {"hashes": {"sha1Hash": sha1}} if sha1 else {},
        "fileSystemInfo": {"lastModifiedDateTime": modified},
        "cTag": f"ctag-{item_id}",
    }
    return item


class TestList:
    """Listing the remote tree."""

    def test_lists_files_recursively_with_paging(self):
        def handler(request):
            path = request.url.path
            if path == "/v1.0/me/drive/root:/Sync:/children":
                if request.url.params.get("$skiptoken") == "2":
                    return httpx.Response(200, json={"value": [file_item("f2", "b.txt")]})
                assert request.url.params["$top"] == "200"
                return httpx.Response(
                    200,
                    json={
                        "value": [
                            file_item("f1", "a.txt", sha1="ABCDEF"),
                            {"id": "d1", "name": "docs", "folder": {"childCount": 1}},
                        ],
                        "@odata.nextLink": f"{GRAPH}/me/drive/root:/Sync:/children"
                        "?$skiptoken=2",
                    },
                )
            if path == "/v1.0/me/drive/items/d1/children":
                return httpx.Response(
                    200, json={"value": [file_item("f3", "c.txt", size=1)]}
                )
            return httpx.Response(404)

        records = make_backend(handler, remote_root="Sync").list()

        assert sorted(records) == ["a.txt", "b.txt", "docs/c.txt"]
        a = records["a.txt"]
        assert a.remote_id == "f1"
        assert a.mtime == 1691328180.0
        assert a.size == 3
        assert a.content_hash == "abcdef"
        assert a.revision == "ctag-f1"
        assert records["docs/c.txt"].content_hash is None

    def test_lists_drive_root(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"value": []})

        assert make_backend(handler).list() == {}
        assert seen == ["/v1.0/me/drive/root/children"]

    def test_missing_remote_root_is_empty(self):
        backend = make_backend(lambda request: httpx.Response(404), remote_root="New")
        assert backend.list() == {}

    def test_item_without_id_is_invalid(self):
        def handler(request):
            return httpx.Response(200, json={"value": [{"name": "x", "file": {}}]})

        with pytest.raises(InvalidResponseError):
            make_backend(handler).list()


class TestTransfers:
    """Uploading, downloading and deleting."""

    def test_small_upload_sets_modification_time(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "PUT":
                return httpx.Response(201, json={"id": "f1"})
            body = json.loads(request.content)
            modified = body["fileSystemInfo"]["lastModifiedDateTime"]
            return httpx.Response(
                200, json=file_item("f1", "a.txt", size=5, modified=modified)
            )

        record = make_backend(handler, remote_root="Sync").upload(
            "docs/a.txt", b"hello", 1691328180.0
        )

        put, patch_request = requests
        assert put.url.path == "/v1.0/me/drive/root:/Sync/docs/a.txt:/content"
        assert put.url.params["@microsoft.graph.conflictBehavior"] == "replace"
        assert put.content == b"hello"
        assert patch_request.method == "PATCH"
        assert patch_request.url.path == "/v1.0/me/drive/items/f1"
        assert record.relative_path == "docs/a.txt"
        assert record.mtime == 1691328180.0

    def test_upload_response_without_id_is_invalid(self):
        backend = make_backend(lambda request: httpx.Response(201, json={}))
        with pytest.raises(InvalidResponseError, match="no id"):
            backend.upload("a.txt", b"hello", 1691328180.0)

    def test_large_upload_uses_session_without_token(self):
        api_requests = []
        chunk_requests = []

        def api_handler(request):
            api_requests.append(request)
            return httpx.Response(
                200, json={"uploadUrl": "https://upload.example.com/session/1"}
            )

        def upload_handler(request):
            chunk_requests.append(request)
            if request.headers["Content-Range"].endswith("9/10"):
                return httpx.Response(201, json=file_item("f9", "big.bin", size=10))
            return httpx.Response(202, json={"nextExpectedRanges": []})

        backend = make_backend(api_handler)
        backend._build_upload_client = lambda: httpx.Client(
            transport=httpx.MockTransport(upload_handler)
        )
        with patch("cloudsync.backends.onedrive.SIMPLE_UPLOAD_LIMIT", 4), patch(
            "cloudsync.backends.onedrive.UPLOAD_CHUNK_SIZE", 4
        ):
            record = backend.upload("big.bin", b"0123456789", 1691328180.0)

        assert record.remote_id == "f9"
        assert api_requests[0].url.path == "/v1.0/me/drive/root:/big.bin:/createUploadSession"
        assert [r.headers["Content-Range"] for r in chunk_requests] == [
            "bytes 0-3/10",
            "bytes 4-7/10",
            "bytes 8-9/10",
        ]
        assert all("Authorization" not in r.headers for r in chunk_requests)

    def test_download_returns_content(self):
        def handler(request):
            assert request.url.path == "/v1.0/me/drive/root:/a b.txt:/content"
            return httpx.Response(200, content=b"payload")

        assert make_backend(handler).download("a b.txt") == b"payload"

    def test_delete_by_path(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        make_backend(handler, remote_root="Sync").delete("docs/a.txt")

        assert requests[0].method == "DELETE"
        assert requests[0].url.path == "/v1.0/me/drive/root:/Sync/docs/a.txt"


class TestErrors:
    """HTTP errors map onto the exception hierarchy."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, AuthError),
            (403, RemotePermissionError),
            (404, RemoteNotFoundError),
            (500, TransientError),
            (503, TransientError),
        ],
    )
    def test_status_mapping(self, status, error):
        backend = make_backend(lambda request: httpx.Response(status))
        with pytest.raises(error):
            backend.download("a.txt")

    def test_rate_limit_carries_retry_after(self):
        backend = make_backend(
            lambda request: httpx.Response(429, headers={"Retry-After": "5"})
        )
        with pytest.raises(RateLimitError) as exc_info:
            backend.download("a.txt")
        assert exc_info.value.retry_after == 5.0

    def test_connection_error_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            make_backend(handler).download("a.txt")

    def test_error_detail_is_included(self):
        backend = make_backend(
            lambda request: httpx.Response(
                400, json={"error": {"code": "invalidRequest", "message": "Bad name"}}
            )
        )
        with pytest.raises(CloudSyncError, match="Bad name"):
            backend.delete("a.txt")

    def test_empty_token_is_rejected(self):
        with pytest.raises(AuthError):
            OneDriveBackend("")


class TestCreateBackend:
    """Backend factory."""

    def test_creates_onedrive(self):
        backend = create_backend("OneDrive", "token", remote_root="Sync")
        assert isinstance(backend, OneDriveBackend)
        assert backend.remote_root == "Sync"

    def test_unknown_service(self):
        with pytest.raises(ConfigError, match="Unknown service"):
            create_backend("dropbox", "token")

    def test_unknown_option(self):
        with pytest.raises(ConfigError, match="Invalid options"):
            create_backend("onedrive", "token", use_trash=False)
