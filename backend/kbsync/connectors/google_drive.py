"""
Google Drive Adapter
=====================
Drive v3 Changes API via googleapiclient.

The cursor is the Drive ``startPageToken``. Without one the adapter lists
every non-trashed file and then asks for a fresh start token, so the next
run is incremental. The client library is blocking; each call runs in a
worker thread and is retried with tenacity on transient failures.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from kbsync.connectors.base import RetryAfterWait, SourceAdapter
from kbsync.core.errors import ProviderError, SourceAuthError, TransientProviderError
from kbsync.models import ChangeBatch, ChangedItem, DriveFileItem, ProviderType

logger = structlog.get_logger()

T = TypeVar("T")

FOLDER_MIME = "application/vnd.google-apps.folder"
EXPORT_FORMATS = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
}
FILE_FIELDS = "id,name,mimeType,webViewLink,createdTime,modifiedTime,size,parents,trashed,owners(displayName)"
MAX_PARENT_DEPTH = 10
# Drive throttles with 403 as well as 429
RATE_LIMIT_REASONS = {"userRateLimitExceeded", "rateLimitExceeded"}
PAGE_SIZE = 100


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _error_reasons(error) -> Set[str]:
    """The ``errors[].reason`` values of a Drive error response."""
    details = getattr(error, "error_details", None)
    if not isinstance(details, list) or not any(isinstance(d, dict) and d.get("reason") for d in details):
        content = getattr(error, "content", b"") or b""
        try:
            body = json.loads(content.decode("utf-8") if isinstance(content, bytes) else content)
        except ValueError:
            return set()
        err = body.get("error") if isinstance(body, dict) else None
        details = err.get("errors") if isinstance(err, dict) else None
    return {d["reason"] for d in details or [] if isinstance(d, dict) and d.get("reason")}


class GoogleDriveAdapter(SourceAdapter):
    provider = ProviderType.GOOGLE_DRIVE

    def __init__(self, service, max_retries: int = 3, retry_base_seconds: float = 0.5):
        self.service = service
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._parents: Dict[str, List[str]] = {}

    @classmethod
    def from_credentials(cls, credentials: Dict[str, Any], **kwargs) -> "GoogleDriveAdapter":
        """Build from the authorized-user info stored by the OAuth flow."""
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = Credentials.from_authorized_user_info(credentials)
        service = build("drive", "v3", credentials=creds, cache_discovery=False)
        return cls(service, **kwargs)

    async def list_changes(self, cursor: Optional[str]) -> ChangeBatch:
        if cursor is None:
            return await self._full_scan()

        items: List[ChangedItem] = []
        total = 0
        page_token: Optional[str] = cursor
        new_cursor: Optional[str] = cursor

        while page_token:
            resp = await self._call(
                lambda token=page_token: self.service.changes()
                .list(
                    pageToken=token,
                    pageSize=PAGE_SIZE,
                    includeRemoved=True,
                    fields=f"nextPageToken,newStartPageToken,changes(fileId,removed,file({FILE_FIELDS}))",
                )
                .execute()
            )
            for change in resp.get("changes", []):
                total += 1
                items.append(self._normalize_change(change))
            if "newStartPageToken" in resp:
                new_cursor = resp["newStartPageToken"]
            page_token = resp.get("nextPageToken")

        logger.info("Drive changes listed", checked=total, items=len(items))
        return ChangeBatch(items=items, new_cursor=new_cursor, total_checked=total)

    async def fetch_content(self, external_id: str) -> str:
        meta = await self._call(
            lambda: self.service.files().get(fileId=external_id, fields="id,name,mimeType,size").execute()
        )
        mime_type = meta.get("mimeType", "")
        name = meta.get("name", external_id)

        if mime_type in EXPORT_FORMATS:
            data = await self._call(
                lambda: self.service.files()
                .export(fileId=external_id, mimeType=EXPORT_FORMATS[mime_type])
                .execute()
            )
        elif mime_type.startswith("text/"):
            data = await self._call(lambda: self.service.files().get_media(fileId=external_id).execute())
        else:
            return f"[{mime_type} file: {name}]"

        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        return str(data)

    async def is_in_scope(self, item: ChangedItem, scope_ids: Sequence[str]) -> bool:
        if not isinstance(item, DriveFileItem):
            return False
        wanted = set(scope_ids)
        frontier = list(item.parents)
        seen = set()
        for _ in range(MAX_PARENT_DEPTH):
            if not frontier:
                return False
            if wanted.intersection(frontier):
                return True
            next_frontier: List[str] = []
            for folder_id in frontier:
                if folder_id in seen:
                    continue
                seen.add(folder_id)
                next_frontier.extend(await self._folder_parents(folder_id))
            frontier = next_frontier
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _full_scan(self) -> ChangeBatch:
        items: List[ChangedItem] = []
        page_token: Optional[str] = None
        while True:
            resp = await self._call(
                lambda token=page_token: self.service.files()
                .list(
                    q="trashed=false",
                    pageSize=PAGE_SIZE,
                    pageToken=token,
                    fields=f"nextPageToken,files({FILE_FIELDS})",
                )
                .execute()
            )
            items.extend(self._normalize_file(f) for f in resp.get("files", []))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        start = await self._call(lambda: self.service.changes().getStartPageToken().execute())
        logger.info("Drive full scan completed", items=len(items))
        return ChangeBatch(items=items, new_cursor=start.get("startPageToken"), total_checked=len(items))

    def _normalize_change(self, change: Dict[str, Any]) -> DriveFileItem:
        file = change.get("file")
        if change.get("removed") or not file:
            return DriveFileItem(
                external_id=change.get("fileId", ""),
                title=change.get("fileId", ""),
                removed=True,
            )
        return self._normalize_file(file)

    def _normalize_file(self, file: Dict[str, Any]) -> DriveFileItem:
        owners = file.get("owners") or []
        parents = file.get("parents") or []
        self._parents.setdefault(file["id"], parents)
        return DriveFileItem(
            external_id=file["id"],
            title=file.get("name", file["id"]),
            author=owners[0].get("displayName") if owners else None,
            created_at=_parse_time(file.get("createdTime")),
            modified_at=_parse_time(file.get("modifiedTime")),
            source_url=file.get("webViewLink"),
            removed=bool(file.get("trashed")),
            mime_type=file.get("mimeType", ""),
            parents=parents,
            trashed=bool(file.get("trashed")),
            size_bytes=int(file["size"]) if file.get("size") else None,
        )

    async def _folder_parents(self, folder_id: str) -> List[str]:
        if folder_id not in self._parents:
            meta = await self._call(
                lambda: self.service.files().get(fileId=folder_id, fields="id,parents").execute()
            )
            self._parents[folder_id] = meta.get("parents") or []
        return self._parents[folder_id]

    async def _call(self, func: Callable[[], T]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.max_retries, 0) + 1),
            wait=RetryAfterWait(self.retry_base_seconds),
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        ):
            with attempt:
                return await self._execute(func)
        raise ProviderError("Drive request not attempted")

    async def _execute(self, func: Callable[[], T]) -> T:
        from google.auth.exceptions import RefreshError
        from googleapiclient.errors import HttpError

        try:
            return await asyncio.to_thread(func)
        except RefreshError as e:
            raise SourceAuthError(f"Drive credentials could not be refreshed: {e}", status_code=401) from e
        except HttpError as e:
            status = getattr(e, "status_code", None) or int(getattr(e.resp, "status", 0) or 0)
            if status == 403 and RATE_LIMIT_REASONS & _error_reasons(e):
                raise TransientProviderError(f"Drive rate limit exceeded ({status})", status_code=status) from e
            if status in (401, 403):
                raise SourceAuthError(f"Drive rejected credentials ({status})", status_code=status) from e
            if status == 429 or status >= 500:
                raise TransientProviderError(f"Drive request failed ({status})", status_code=status) from e
            raise ProviderError(f"Drive request failed ({status}): {e}", status_code=status) from e
        except (TimeoutError, ConnectionError, OSError) as e:
            raise TransientProviderError(f"Drive request failed: {e}") from e
