"""Tests for the Drive uploader against a mocked HTTP transport."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bookify.drive import DriveUploader
from bookify.errors import UploadError
from bookify.queue import Account


class FakeDrive:
    """Minimal stand-in for the OAuth token endpoint and the Drive API."""

    def __init__(self, upload_status=200, token_status=200):
        self.upload_status = upload_status
        self.token_status = token_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})
        if request.url.path == "/upload/drive/v3/files":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, json={"error": "forbidden"})
            return httpx.Response(200, json={"id": "file-abc"})
        if request.url.path == "/drive/v3/about":
            return httpx.Response(
                200, json={"user": {"displayName": "Reader", "emailAddress": "r@example.com"}}
            )
        if request.url.path.startswith("/drive/v3/files/"):
            folder_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={
                    "id": folder_id,
                    "name": "Books",
                    "mimeType": "application/vnd.google-apps.folder",
                },
            )
        return httpx.Response(404)


def make_uploader(store, drive):
    client = httpx.Client(transport=httpx.MockTransport(drive))
    return DriveUploader(store, client_id="cid", client_secret="secret", http_client=client)


@pytest.fixture
def fresh_account(store, account):
    """Account whose access token is valid for another hour."""
    account.token_expiry = datetime.now() + timedelta(hours=1)
    store.update_account(account)
    return account


@pytest.fixture
def book(temp_dir):
    path = temp_dir / "book.kepub.epub"
    path.write_bytes(b"PK\x03\x04kepub-bytes")
    return path


class TestUpload:
    """Test multipart upload and token refresh."""

    def test_upload_returns_share_url(self, store, fresh_account, book):
        drive = FakeDrive()
        url = make_uploader(store, drive).upload(fresh_account, str(book), "book.kepub.epub")

        assert url == "https://drive.google.com/file/d/file-abc/view"
        assert len(drive.requests) == 1

        request = drive.requests[0]
        assert request.headers["Authorization"] == "Bearer access"
        assert request.url.params["uploadType"] == "multipart"
        assert request.url.params["supportsAllDrives"] == "true"
        assert request.headers["Content-Type"].startswith("multipart/related; boundary=")

        body = request.content
        assert b'"name": "book.kepub.epub"' in body
        assert b'"parents": ["folder-123"]' in body
        assert b"kepub-bytes" in body

    def test_expired_token_refreshed_and_stored(self, store, account, book):
        account.token_expiry = datetime.now() - timedelta(minutes=5)
        store.update_account(account)
        drive = FakeDrive()

        make_uploader(store, drive).upload(account, str(book), "book.kepub.epub")

        token_request, upload_request = drive.requests
        assert b"grant_type=refresh_token" in token_request.content
        assert b"refresh_token=refresh" in token_request.content
        assert upload_request.headers["Authorization"] == "Bearer fresh-token"

        stored = store.get_account(account.id)
        assert stored.access_token == "fresh-token"
        assert stored.token_expiry > datetime.now()

    def test_token_near_expiry_refreshed(self, store, account, book):
        account.token_expiry = datetime.now() + timedelta(seconds=10)
        drive = FakeDrive()

        make_uploader(store, drive).upload(account, str(book), "book.kepub.epub")

        assert drive.requests[0].url.host == "oauth2.googleapis.com"

    def test_offset_expiry_from_store(self, store, account, book):
        account.token_expiry = datetime.fromisoformat("2099-01-01T00:00:00+00:00")
        store.update_account(account)
        stored = store.get_account(account.id)
        drive = FakeDrive()

        url = make_uploader(store, drive).upload(stored, str(book), "book.kepub.epub")

        assert url == "https://drive.google.com/file/d/file-abc/view"
        assert len(drive.requests) == 1
        assert drive.requests[0].headers["Authorization"] == "Bearer access"

    def test_offset_expiry_assigned_in_memory(self, store, account, book):
        account.token_expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        drive = FakeDrive()

        make_uploader(store, drive).upload(account, str(book), "book.kepub.epub")

        assert drive.requests[0].url.host == "oauth2.googleapis.com"
        assert store.get_account(account.id).token_expiry > datetime.now()

    def test_missing_credentials(self, store, book):
        account = store.create_account(Account(name="no-oauth", folder_id="f"))
        with pytest.raises(UploadError, match="not authenticated with OAuth"):
            make_uploader(store, FakeDrive()).upload(account, str(book), "book.kepub.epub")

    def test_refresh_failure(self, store, account, book):
        drive = FakeDrive(token_status=400)
        with pytest.raises(UploadError, match="failed to refresh token"):
            make_uploader(store, drive).upload(account, str(book), "book.kepub.epub")
        assert len(drive.requests) == 1

    def test_http_error(self, store, fresh_account, book):
        drive = FakeDrive(upload_status=403)
        with pytest.raises(UploadError, match="failed to upload file: 403"):
            make_uploader(store, drive).upload(fresh_account, str(book), "book.kepub.epub")

    def test_missing_file(self, store, fresh_account, temp_dir):
        with pytest.raises(UploadError, match="failed to open file"):
            make_uploader(store, FakeDrive()).upload(
                fresh_account, str(temp_dir / "gone.epub"), "gone.kepub.epub"
            )


class TestConnectionChecks:
    """Test credential and folder checks."""

    def test_connection(self, store, fresh_account):
        user = make_uploader(store, FakeDrive()).test_connection(fresh_account)
        assert user["emailAddress"] == "r@example.com"

    def test_folder_access(self, store, fresh_account):
        drive = FakeDrive()
        folder = make_uploader(store, drive).test_folder_access(fresh_account)

        assert folder["id"] == "folder-123"
        assert folder["name"] == "Books"
        assert drive.requests[0].url.params["supportsAllDrives"] == "true"

    def test_refresh_token_if_needed_skips_valid_token(self, store, fresh_account):
        drive = FakeDrive()
        make_uploader(store, drive).refresh_token_if_needed(fresh_account)
        assert drive.requests == []


def test_multipart_metadata_is_json(store, fresh_account, book):
    drive = FakeDrive()
    make_uploader(store, drive).upload(fresh_account, str(book), "book.kepub.epub")

    body = drive.requests[0].content
    boundary = drive.requests[0].headers["Content-Type"].split("boundary=")[1]
    parts = body.split(f"--{boundary}".encode())
    metadata = json.loads(parts[1].split(b"\r\n\r\n", 1)[1].strip())
    assert metadata == {"name": "book.kepub.epub", "parents": ["folder-123"]}
