"""Google Drive uploader over the Drive v3 REST API.

Accounts carry an OAuth access/refresh token pair obtained elsewhere (the
consent flow is not part of this package). Before each call the access
token is refreshed when it is missing an expiry or about to expire, and a
refreshed token is written back to the job store.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from .errors import BookifyError, UploadError
from .queue.backends import JobStore, Uploader
from .queue.models import Account, local_naive

logger = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
SHARE_URL_TEMPLATE = "https://drive.google.com/file/d/{file_id}/view"
EPUB_MIME_TYPE = "application/epub+zip"

# Refresh this long before the recorded expiry
EXPIRY_LEEWAY = timedelta(seconds=60)


class DriveUploader(Uploader):
    """Uploads converted books into an account's Drive folder.

    Args:
        store: Job store used to persist refreshed access tokens
        client_id: OAuth client ID used for token refresh
        client_secret: OAuth client secret used for token refresh
        token_url: OAuth token endpoint
        timeout_s: HTTP timeout per request
        http_client: Pre-built httpx client (tests pass one with a mock transport)
    """

    def __init__(
        self,
        store: JobStore,
        client_id: str = "",
        client_secret: str = "",
        token_url: str = DEFAULT_TOKEN_URL,
        timeout_s: float = 60.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.client = http_client or httpx.Client(timeout=timeout_s)

        if not client_id or not client_secret:
            logger.warning("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set for token refresh")

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _needs_refresh(self, account: Account, now: datetime) -> bool:
        if account.token_expiry is None:
            return True
        return now + EXPIRY_LEEWAY >= local_naive(account.token_expiry)

    def _refresh_access_token(self, account: Account, now: datetime) -> None:
        """Exchange the refresh token for a new access token."""
        try:
            response = self.client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": account.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UploadError(f"failed to refresh token: {e}") from e

        new_token = payload.get("access_token")
        if not new_token:
            raise UploadError("failed to refresh token: response has no access_token")

        expires_in = int(payload.get("expires_in", 3600))
        changed = new_token != account.access_token
        account.access_token = new_token
        account.token_expiry = now + timedelta(seconds=expires_in)

        if changed:
            try:
                self.store.update_account(account)
            except BookifyError as e:
                logger.warning("Failed to update refreshed token for account %s: %s", account.name, e)

    def _access_token(self, account: Account) -> str:
        if not account.has_oauth_credentials:
            raise UploadError("account not authenticated with OAuth")

        now = datetime.now()
        if self._needs_refresh(account, now):
            self._refresh_access_token(account, now)
        return account.access_token

    def _headers(self, account: Account) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token(account)}"}

    def refresh_token_if_needed(self, account: Account) -> None:
        """Refresh the stored access token if it has expired."""
        self._access_token(account)

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    def upload(self, account: Account, file_path: str, destination_name: str) -> str:
        """Upload ``file_path`` as ``destination_name`` and return its share URL."""
        headers = self._headers(account)

        try:
            with open(file_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise UploadError(f"failed to open file: {e}") from e

        metadata = {"name": destination_name, "parents": [account.folder_id]}
        boundary = f"bookify-{uuid.uuid4().hex}"
        body = _multipart_related(boundary, metadata, data, EPUB_MIME_TYPE)
        headers["Content-Type"] = f"multipart/related; boundary={boundary}"

        logger.info(
            "Uploading %s (%d bytes) to folder %s", destination_name, len(data), account.folder_id
        )
        try:
            response = self.client.post(
                DRIVE_UPLOAD_URL,
                params={"uploadType": "multipart", "supportsAllDrives": "true", "fields": "id"},
                headers=headers,
                content=body,
            )
            response.raise_for_status()
            file_id = response.json()["id"]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise UploadError(f"failed to upload file: {_describe(e)}") from e

        return SHARE_URL_TEMPLATE.format(file_id=file_id)

    def test_connection(self, account: Account) -> Dict[str, Any]:
        """Fetch the authorized user to prove the credential works."""
        try:
            response = self.client.get(
                f"{DRIVE_API_URL}/about", params={"fields": "user"}, headers=self._headers(account)
            )
            response.raise_for_status()
            return response.json().get("user", {})
        except (httpx.HTTPError, ValueError) as e:
            raise UploadError(f"failed to test Drive connection: {_describe(e)}") from e

    def test_folder_access(self, account: Account) -> Dict[str, Any]:
        """Fetch the destination folder's metadata."""
        logger.info("Testing access to folder ID: %s", account.folder_id)
        try:
            response = self.client.get(
                f"{DRIVE_API_URL}/files/{account.folder_id}",
                params={"fields": "id, name, mimeType", "supportsAllDrives": "true"},
                headers=self._headers(account),
            )
            response.raise_for_status()
            folder = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UploadError(f"failed to access folder: {_describe(e)}") from e

        logger.info(
            "Accessed folder: %s (ID: %s, Type: %s)",
            folder.get("name"),
            folder.get("id"),
            folder.get("mimeType"),
        )
        return folder


def _multipart_related(boundary: str, metadata: Dict[str, Any], data: bytes, mime_type: str) -> bytes:
    """Build a Drive multipart upload body (JSON metadata part + media part)."""
    delimiter = f"--{boundary}\r\n".encode()
    return b"".join([
        delimiter,
        b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
        json.dumps(metadata).encode("utf-8"),
        b"\r\n",
        delimiter,
        f"Content-Type: {mime_type}\r\n\r\n".encode(),
        data,
        f"\r\n--{boundary}--\r\n".encode(),
    ])


def _describe(error: Exception) -> str:
    """Include the API's error body for HTTP status failures."""
    if isinstance(error, httpx.HTTPStatusError):
        return f"{error.response.status_code} {error.response.text[:300]}"
    return str(error)
