"""Google Drive remote directory client and OAuth credential lifecycle.

Provides:
- Paginated listing of folders, files and shared drives (Drive v3)
- Node lookup with 404 mapped to "not found"
- Changes API page tokens and push-notification channels
- OAuth2 authorization, token refresh, encryption and revocation

Remote failures surface as ``GoogleDriveError`` (an ``UpstreamUnavailableError``)
and are never retried here; retry policy belongs to the job queue.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx
from cryptography.fernet import Fernet
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as OAuthCredentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db.models import FOLDER_MIME_TYPE, Connector, GoogleCredentials
from connectors.exceptions import UpstreamUnavailableError
from connectors.utils import as_utc, from_epoch_ms, parse_rfc3339, to_epoch_ms

logger = get_logger(__name__)

# Google Drive API scopes
SCOPES = [
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",  # Google auto-adds this with userinfo.email
]

TOKEN_URI = "https://oauth2.googleapis.com/token"
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"

FILE_FIELDS = "id, name, mimeType, parents, modifiedTime, webViewLink, trashed, driveId"
CHANGES_PAGE_SIZE = 100
DRIVES_PAGE_SIZE = 100

# Name Drive gives the personal root
MY_DRIVE_NAME = "My Drive"


class GoogleDriveError(UpstreamUnavailableError):
    """Base exception for Google Drive errors."""

    def __init__(self, message: str, code: str = "GOOGLE_DRIVE_ERROR"):
        super().__init__(message, code)


class GoogleAuthError(GoogleDriveError):
    """Raised when authentication fails."""

    def __init__(self, message: str):
        super().__init__(message, "GOOGLE_AUTH_ERROR")


class GoogleAccessDeniedError(GoogleDriveError):
    """Raised when access is denied to a resource."""

    def __init__(self, message: str):
        super().__init__(message, "GOOGLE_ACCESS_DENIED")


class GoogleNotFoundError(GoogleDriveError):
    """Raised when a file or folder is not found."""

    def __init__(self, message: str):
        super().__init__(message, "GOOGLE_NOT_FOUND")


class GoogleRateLimitError(GoogleDriveError):
    """Raised when rate limited by Google API."""

    def __init__(self, message: str = "Google API rate limit exceeded", retry_after: int | None = None):
        super().__init__(message, "GOOGLE_RATE_LIMITED")
        self.retry_after = retry_after


def _is_rate_limit(error: HttpError) -> bool:
    if error.resp.status == 429:
        return True
    if error.resp.status == 403:
        text = str(error).lower()
        return "rate limit" in text or "quota" in text or "automated queries" in text
    return False


def translate_http_error(error: HttpError, operation: str) -> GoogleDriveError:
    """Map a googleapiclient HttpError to the client's exception hierarchy."""
    status = error.resp.status
    if _is_rate_limit(error):
        retry_after = error.resp.get("retry-after")
        return GoogleRateLimitError(
            f"Rate limited during {operation}: {error}",
            retry_after=int(retry_after) if retry_after and str(retry_after).isdigit() else None,
        )
    if status == 404:
        return GoogleNotFoundError(f"Not found during {operation}: {error}")
    if status in (401, 403):
        return GoogleAccessDeniedError(f"Access denied during {operation}: {error}")
    return GoogleDriveError(f"Google API error during {operation}: {error}")


class RequestPacer:
    """Rate limiter for Google API requests.

    Implements:
    - Minimum delay between requests (prevents burst requests)
    - Per-minute request limiting with sliding window
    """

    def __init__(
        self,
        min_delay: float = 0.1,
        requests_per_minute: int = 600,
    ):
        self.min_delay = min_delay
        self.requests_per_minute = requests_per_minute
        self._last_request: datetime | None = None
        self._request_times: list[datetime] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until it's safe to make a request."""
        async with self._lock:
            now = datetime.now(timezone.utc)

            cutoff = now - timedelta(seconds=60)
            self._request_times = [t for t in self._request_times if t > cutoff]

            if len(self._request_times) >= self.requests_per_minute:
                oldest = self._request_times[0]
                wait_time = 60 - (now - oldest).total_seconds()
                if wait_time > 0:
                    logger.debug(
                        "rate_pacer_waiting",
                        wait_seconds=round(wait_time, 2),
                        reason="per_minute_limit",
                    )
                    await asyncio.sleep(wait_time)
                    now = datetime.now(timezone.utc)

            if self._last_request and self.min_delay > 0:
                elapsed = (now - self._last_request).total_seconds()
                if elapsed < self.min_delay:
                    await asyncio.sleep(self.min_delay - elapsed)

            self._last_request = datetime.now(timezone.utc)
            self._request_times.append(self._last_request)


# Global pacer instance (initialized lazily with settings)
_pacer: RequestPacer | None = None


def get_request_pacer() -> RequestPacer:
    """Get or create the global request pacer."""
    global _pacer
    if _pacer is None:
        _pacer = RequestPacer(
            min_delay=settings.google_request_delay,
            requests_per_minute=settings.google_requests_per_minute,
        )
    return _pacer


# ========== Normalized descriptors ==========


class NodeKind(str, enum.Enum):
    """Kind of a remote node."""

    FOLDER = "folder"
    FILE = "file"


class RemoteNode(BaseModel):
    """Immutable snapshot of a Drive file, folder or drive at fetch time."""

    model_config = {"frozen": True}

    id: str
    parent_id: str | None = None
    name: str = ""
    kind: NodeKind
    mime_type: str = FOLDER_MIME_TYPE
    modified_at: datetime | None = None
    web_view_link: str | None = None

    @property
    def is_folder(self) -> bool:
        return self.kind == NodeKind.FOLDER

    @property
    def modified_at_ms(self) -> int | None:
        return to_epoch_ms(self.modified_at)

    @classmethod
    def from_api(cls, data: dict[str, Any], fallback_parent: str | None = None) -> RemoteNode:
        """Build a node from a Drive v3 ``File`` resource."""
        mime_type = data.get("mimeType", "")
        parents = data.get("parents") or []
        return cls(
            id=data["id"],
            parent_id=parents[0] if parents else fallback_parent,
            name=data.get("name") or "",
            kind=NodeKind.FOLDER if mime_type == FOLDER_MIME_TYPE else NodeKind.FILE,
            mime_type=mime_type,
            modified_at=parse_rfc3339(data.get("modifiedTime")),
            web_view_link=data.get("webViewLink"),
        )


class RemoteChange(BaseModel):
    """One entry of the Drive changes feed."""

    file_id: str
    removed: bool = False
    node: RemoteNode | None = None


class ChangesPage(BaseModel):
    """A page of the Drive changes feed.

    Exactly one of ``next_page_token`` (more pages) and
    ``new_start_page_token`` (feed exhausted) is set.
    """

    changes: list[RemoteChange] = Field(default_factory=list)
    next_page_token: str | None = None
    new_start_page_token: str | None = None


class WatchChannel(BaseModel):
    """A push-notification channel Drive accepted."""

    id: str
    resource_id: str | None = None
    expires_at: datetime


class RemoteDirectoryClient(Protocol):
    """Contract the permission reconciler and sync activities consume."""

    async def list_children(
        self,
        parent_id: str,
        page_token: str | None = None,
        *,
        folders_only: bool = False,
        page_size: int | None = None,
    ) -> tuple[list[RemoteNode], str | None]: ...

    async def get_node(self, node_id: str) -> RemoteNode | None: ...

    async def list_drives(self) -> list[RemoteNode]: ...

    async def has_child_folders(self, folder_id: str) -> bool: ...

    async def get_start_page_token(self) -> str: ...

    async def list_changes(self, page_token: str) -> ChangesPage: ...

    async def watch_changes(self, channel_id: str, address: str, ttl_seconds: int) -> WatchChannel: ...

    async def stop_channel(self, channel_id: str, resource_id: str | None) -> None: ...

    async def sanity_check(self) -> None: ...


# ========== Drive client ==========


class GoogleDriveClient:
    """Async facade over a Drive v3 service resource.

    Each blocking ``execute()`` runs in a worker thread, so pagination loops
    yield to the event loop between pages. The resource's httplib2 transport
    is not thread-safe, so a client runs one ``execute()`` at a time.
    """

    def __init__(self, service: Any, pacer: RequestPacer | None = None):
        """Initialize the client.

        Args:
            service: A ``googleapiclient`` Drive v3 resource.
            pacer: Request pacer; defaults to the process-wide pacer.
        """
        self._service = service
        self._pacer = pacer or get_request_pacer()
        self._lock = asyncio.Lock()

    async def _execute(self, request_factory: Callable[[], Any], operation: str) -> dict[str, Any]:
        async with self._lock:
            await self._pacer.acquire()
            try:
                return await asyncio.to_thread(lambda: request_factory().execute())
            except HttpError as e:
                raise translate_http_error(e, operation) from e

    async def list_children(
        self,
        parent_id: str,
        page_token: str | None = None,
        *,
        folders_only: bool = False,
        page_size: int | None = None,
    ) -> tuple[list[RemoteNode], str | None]:
        """List one page of children of a folder.

        Args:
            parent_id: Drive folder ID.
            page_token: Token for pagination.
            folders_only: Only return child folders.
            page_size: Number of entries per page.

        Returns:
            Tuple of (list of RemoteNode, next_page_token or None).
        """
        query = f"'{parent_id}' in parents and trashed = false"
        if folders_only:
            query += f" and mimeType = '{FOLDER_MIME_TYPE}'"

        result = await self._execute(
            lambda: self._service.files().list(
                corpora="allDrives",
                q=query,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageToken=page_token,
                pageSize=page_size or settings.listing_page_size,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ),
            "list_children",
        )

        nodes = [
            RemoteNode.from_api(f, fallback_parent=parent_id)
            for f in result.get("files", [])
        ]
        return nodes, result.get("nextPageToken")

    async def get_node(self, node_id: str) -> RemoteNode | None:
        """Get a single node, or None if Drive reports it missing or trashed."""
        try:
            data = await self._execute(
                lambda: self._service.files().get(
                    fileId=node_id,
                    fields=FILE_FIELDS,
                    supportsAllDrives=True,
                ),
                "get_node",
            )
        except GoogleNotFoundError:
            return None

        if data.get("trashed"):
            return None
        node = RemoteNode.from_api(data)
        # Shared drive roots come back named "Drive" with no parent
        if data.get("driveId") == node.id:
            drive = await self._execute(
                lambda: self._service.drives().get(driveId=node.id, fields="id, name"),
                "get_drive",
            )
            node = node.model_copy(update={"name": drive.get("name", node.name)})
        return node

    async def list_drives(self) -> list[RemoteNode]:
        """List the personal drive root followed by every shared drive."""
        drives: list[RemoteNode] = []

        my_drive = await self.get_node("root")
        if my_drive is not None:
            drives.append(my_drive.model_copy(update={"name": MY_DRIVE_NAME, "parent_id": None}))

        page_token: str | None = None
        while True:
            result = await self._execute(
                lambda: self._service.drives().list(
                    pageSize=DRIVES_PAGE_SIZE,
                    fields="nextPageToken, drives(id, name)",
                    pageToken=page_token,
                ),
                "list_drives",
            )
            for d in result.get("drives", []):
                drives.append(RemoteNode(id=d["id"], name=d.get("name", ""), kind=NodeKind.FOLDER))
            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return drives

    async def has_child_folders(self, folder_id: str) -> bool:
        """Whether a folder has at least one child folder remotely."""
        nodes, _ = await self.list_children(folder_id, folders_only=True, page_size=1)
        return bool(nodes)

    # ========== Change Tokens (Incremental Sync) ==========

    async def get_start_page_token(self) -> str:
        """Get the starting page token for change tracking."""
        response = await self._execute(
            lambda: self._service.changes().getStartPageToken(supportsAllDrives=True),
            "get_start_page_token",
        )
        token = response.get("startPageToken")
        if not token:
            raise GoogleDriveError("Drive returned no start page token")
        return token

    async def list_changes(self, page_token: str) -> ChangesPage:
        """List one page of changes since ``page_token``."""
        response = await self._execute(
            lambda: self._service.changes().list(
                pageToken=page_token,
                pageSize=CHANGES_PAGE_SIZE,
                fields=f"nextPageToken, newStartPageToken, changes(fileId, removed, file({FILE_FIELDS}))",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ),
            "list_changes",
        )

        changes: list[RemoteChange] = []
        for change in response.get("changes", []):
            file_data = change.get("file")
            removed = bool(change.get("removed")) or bool(file_data and file_data.get("trashed"))
            file_id = change.get("fileId") or (file_data or {}).get("id")
            if not file_id:
                continue
            changes.append(
                RemoteChange(
                    file_id=file_id,
                    removed=removed,
                    node=RemoteNode.from_api(file_data) if file_data and not removed else None,
                )
            )

        logger.debug(
            "changes_listed",
            changes_count=len(changes),
            has_more="nextPageToken" in response,
        )

        return ChangesPage(
            changes=changes,
            next_page_token=response.get("nextPageToken"),
            new_start_page_token=response.get("newStartPageToken"),
        )

    # ========== Push notifications ==========

    async def watch_changes(self, channel_id: str, address: str, ttl_seconds: int) -> WatchChannel:
        """Open a push-notification channel on the changes feed.

        Args:
            channel_id: Channel id to register (echoed in X-Goog-Channel-Id).
            address: HTTPS address Drive posts notifications to.
            ttl_seconds: Requested lifetime; Drive may shorten it.

        Returns:
            The accepted channel with its provider-supplied expiry.
        """
        page_token = await self.get_start_page_token()
        requested_expiry = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "expiration": str(to_epoch_ms(requested_expiry)),
        }

        result = await self._execute(
            lambda: self._service.changes().watch(
                pageToken=page_token,
                body=body,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ),
            "watch_changes",
        )

        returned_id = result.get("id")
        if not returned_id:
            raise GoogleDriveError(f"Drive watch returned invalid channel id: {returned_id!r}")

        return WatchChannel(
            id=returned_id,
            resource_id=result.get("resourceId"),
            expires_at=from_epoch_ms(result.get("expiration")) or requested_expiry,
        )

    async def stop_channel(self, channel_id: str, resource_id: str | None) -> None:
        """Stop a push-notification channel."""
        body: dict[str, Any] = {"id": channel_id}
        if resource_id:
            body["resourceId"] = resource_id
        await self._execute(
            lambda: self._service.channels().stop(body=body),
            "stop_channel",
        )

    # ========== Account ==========

    async def sanity_check(self) -> None:
        """Confirm the credentials grant the access a connector needs.

        Raises:
            GoogleDriveError: If any of the check calls fails.
        """
        await asyncio.gather(
            self._execute(lambda: self._service.about().get(fields="*"), "sanity_about"),
            self._execute(lambda: self._service.files().get(fileId="root"), "sanity_files_get"),
            self._execute(
                lambda: self._service.drives().list(pageSize=10, fields="nextPageToken, drives(id, name)"),
                "sanity_drives_list",
            ),
        )


_generated_key: bytes | None = None


# ========== Credential lifecycle ==========


class GoogleCredentialsService:
    """Stores, refreshes and revokes Google OAuth credentials."""

    def __init__(self, db: AsyncSession):
        """Initialize the credentials service.

        Args:
            db: AsyncSession for database operations.
        """
        self.db = db
        self._encryption_key: bytes | None = None

    # ========== OAuth2 Flow ==========

    def _flow(self) -> Flow:
        return Flow.from_client_config(
            {
                "web": {
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "auth_uri": AUTH_URI,
                    "token_uri": TOKEN_URI,
                }
            },
            scopes=SCOPES,
            redirect_uri=settings.google_redirect_uri,
        )

    def get_oauth_url(self, state: str | None = None) -> str:
        """Get the OAuth2 authorization URL.

        Args:
            state: Optional state parameter for CSRF protection.

        Returns:
            OAuth2 authorization URL.

        Raises:
            GoogleAuthError: If OAuth is not configured.
        """
        if not settings.google_oauth_configured:
            raise GoogleAuthError(
                "Google OAuth not configured. Set CONNECTORS_GOOGLE_CLIENT_ID and CONNECTORS_GOOGLE_CLIENT_SECRET"
            )

        auth_url, _ = self._flow().authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
            state=state,
        )
        return auth_url

    async def handle_oauth_callback(self, code: str) -> GoogleCredentials:
        """Exchange an authorization code and store the credentials.

        Args:
            code: Authorization code from callback.

        Returns:
            The stored GoogleCredentials.

        Raises:
            GoogleAuthError: If token exchange fails.
        """
        if not settings.google_oauth_configured:
            raise GoogleAuthError("Google OAuth not configured")

        try:
            flow = self._flow()
            await asyncio.to_thread(flow.fetch_token, code=code)
            creds = flow.credentials

            oauth2 = build("oauth2", "v2", credentials=creds, cache_discovery=False)
            user_info = await asyncio.to_thread(lambda: oauth2.userinfo().get().execute())
        except Exception as e:
            raise GoogleAuthError(f"OAuth callback failed: {e}") from e

        email = user_info.get("email", "unknown")

        existing = await self._get_credentials_by_email(email)
        if existing:
            existing.access_token_encrypted = self._encrypt(creds.token)
            if creds.refresh_token:
                existing.refresh_token_encrypted = self._encrypt(creds.refresh_token)
            existing.expires_at = as_utc(creds.expiry)
            await self.db.flush()
            logger.info("credentials_updated", email=email)
            return existing

        credentials = GoogleCredentials(
            email=email,
            access_token_encrypted=self._encrypt(creds.token),
            refresh_token_encrypted=self._encrypt(creds.refresh_token) if creds.refresh_token else None,
            expires_at=as_utc(creds.expiry),
        )
        self.db.add(credentials)
        await self.db.flush()

        logger.info("credentials_created", email=email, credentials_id=credentials.id)
        return credentials

    async def revoke_token(self, credentials: GoogleCredentials) -> None:
        """Revoke the refresh (or access) token with Google.

        Raises:
            GoogleAuthError: If Google does not confirm the revocation.
        """
        encrypted = credentials.refresh_token_encrypted or credentials.access_token_encrypted
        if not encrypted:
            raise GoogleAuthError(f"Credentials {credentials.id} hold no token to revoke")

        token = self._decrypt(encrypted)
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(REVOKE_URI, params={"token": token})
        except httpx.HTTPError as e:
            raise GoogleAuthError(f"Token revocation request failed: {e}") from e

        if response.status_code != 200:
            raise GoogleAuthError(
                f"Could not revoke token (status {response.status_code}): {response.text}"
            )
        logger.info("credentials_token_revoked", credentials_id=credentials.id)

    async def delete_credentials(self, credentials_id: str) -> None:
        """Delete stored credentials.

        Raises:
            GoogleAuthError: If credentials not found.
        """
        credentials = await self.get_credentials(credentials_id)
        if not credentials:
            raise GoogleAuthError(f"Credentials {credentials_id} not found")

        await self.db.delete(credentials)
        await self.db.flush()
        logger.info("credentials_deleted", credentials_id=credentials_id)

    # ========== Credential Management ==========

    async def get_credentials(self, credentials_id: str) -> GoogleCredentials | None:
        """Get stored credentials by ID."""
        result = await self.db.execute(
            select(GoogleCredentials).where(GoogleCredentials.id == credentials_id)
        )
        return result.scalar_one_or_none()

    async def list_credentials(self) -> list[GoogleCredentials]:
        """List all stored Google credentials ordered by email."""
        result = await self.db.execute(
            select(GoogleCredentials).order_by(GoogleCredentials.email)
        )
        return list(result.scalars().all())

    async def _get_credentials_by_email(self, email: str) -> GoogleCredentials | None:
        result = await self.db.execute(
            select(GoogleCredentials).where(GoogleCredentials.email == email)
        )
        return result.scalar_one_or_none()

    async def _refresh_if_needed(self, credentials: GoogleCredentials) -> None:
        """Refresh the access token if it expires in the next 5 minutes."""
        expires_at = as_utc(credentials.expires_at)
        if expires_at is None or expires_at > datetime.now(timezone.utc) + timedelta(minutes=5):
            return

        if not credentials.refresh_token_encrypted:
            logger.warning("cannot_refresh_no_refresh_token", email=credentials.email)
            return

        creds = self._oauth_credentials(credentials)
        try:
            await asyncio.to_thread(creds.refresh, Request())
        except Exception as e:
            raise GoogleAuthError(f"Token refresh failed for {credentials.email}: {e}") from e

        credentials.access_token_encrypted = self._encrypt(creds.token)
        credentials.expires_at = as_utc(creds.expiry)
        await self.db.flush()

        logger.info("credentials_refreshed", email=credentials.email)

    def _oauth_credentials(self, credentials: GoogleCredentials) -> OAuthCredentials:
        return OAuthCredentials(
            token=self._decrypt(credentials.access_token_encrypted) if credentials.access_token_encrypted else None,
            refresh_token=self._decrypt(credentials.refresh_token_encrypted) if credentials.refresh_token_encrypted else None,
            token_uri=TOKEN_URI,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )

    async def build_client(self, credentials: GoogleCredentials) -> GoogleDriveClient:
        """Build a Drive client authenticated with stored credentials."""
        await self._refresh_if_needed(credentials)
        service = build(
            "drive", "v3", credentials=self._oauth_credentials(credentials), cache_discovery=False
        )
        return GoogleDriveClient(service)

    async def build_client_for_connection(self, connection_id: str) -> GoogleDriveClient:
        """Build a Drive client for a connection (stored credentials) id.

        Raises:
            GoogleAuthError: If the credentials do not exist.
        """
        credentials = await self.get_credentials(connection_id)
        if credentials is None:
            raise GoogleAuthError(f"Credentials {connection_id} not found")
        return await self.build_client(credentials)

    # ========== Encryption ==========

    def _get_encryption_key(self) -> bytes:
        if self._encryption_key:
            return self._encryption_key

        global _generated_key
        if settings.encryption_key:
            # Fernet expects the key as base64-encoded bytes (not decoded)
            self._encryption_key = settings.encryption_key.encode()
        else:
            # Shared per process so every session can decrypt what another stored
            if _generated_key is None:
                _generated_key = Fernet.generate_key()
            self._encryption_key = _generated_key
            logger.warning(
                "encryption_key_generated",
                message="Using auto-generated encryption key. Set CONNECTORS_ENCRYPTION_KEY for persistence.",
            )

        return self._encryption_key

    def _encrypt(self, data: str) -> str:
        return Fernet(self._get_encryption_key()).encrypt(data.encode()).decode()

    def _decrypt(self, encrypted_data: str) -> str:
        return Fernet(self._get_encryption_key()).decrypt(encrypted_data.encode()).decode()


async def build_drive_client(db: AsyncSession, connector: Connector) -> RemoteDirectoryClient:
    """Default client factory: a Drive client for the connector's credentials."""
    return await GoogleCredentialsService(db).build_client_for_connection(connector.connection_id)


ClientFactory = Callable[[Connector], Awaitable[RemoteDirectoryClient]]
