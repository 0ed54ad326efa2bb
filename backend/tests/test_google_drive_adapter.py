"""Google Drive adapter against a scripted stand-in for the Drive v3 service."""

import json
from typing import Any, Dict, List

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from kbsync.connectors.google_drive import GoogleDriveAdapter
from kbsync.core.errors import SourceAuthError, TransientProviderError
from kbsync.models import DriveFileItem, TeamsMessageItem

FOLDER = "application/vnd.google-apps.folder"
GDOC = "application/vnd.google-apps.document"


class Call:
    def __init__(self, result):
        self.result = result

    def execute(self):
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakeDrive:
    """Mimics ``service.files()`` / ``service.changes()`` request chains."""

    def __init__(self):
        self.file_pages: List[Dict[str, Any]] = []
        self.change_pages: Dict[str, Dict[str, Any]] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.exports: Dict[str, bytes] = {}
        self.media: Dict[str, bytes] = {}
        self.start_token = "token-1"
        self.failures: List[BaseException] = []
        self.calls: List[str] = []

    def files(self):
        return self

    def changes(self):
        return _Changes(self)

    def _call(self, name, result):
        self.calls.append(name)
        if self.failures:
            return Call(self.failures.pop(0))
        return Call(result)

    # files()
    def list(self, pageToken=None, **kwargs):
        index = int(pageToken) if pageToken else 0
        return self._call("files.list", self.file_pages[index])

    def get(self, fileId, fields=None):
        return self._call("files.get", self.metadata[fileId])

    def export(self, fileId, mimeType):
        return self._call(f"files.export:{mimeType}", self.exports[fileId])

    def get_media(self, fileId):
        return self._call("files.get_media", self.media[fileId])


class _Changes:
    def __init__(self, drive):
        self.drive = drive

    def list(self, pageToken, **kwargs):
        return self.drive._call("changes.list", self.drive.change_pages[pageToken])

    def getStartPageToken(self):
        return self.drive._call("changes.getStartPageToken", {"startPageToken": self.drive.start_token})


def drive_file(file_id, name, mime="text/plain", parents=("folder-a",), **extra):
    data = {
        "id": file_id,
        "name": name,
        "mimeType": mime,
        "parents": list(parents),
        "createdTime": "2024-05-30T08:00:00Z",
        "modifiedTime": "2024-05-31T09:30:00.000Z",
        "owners": [{"displayName": "Ada Lovelace"}],
        "webViewLink": f"https://drive.test/{file_id}",
    }
    data.update(extra)
    return data


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def adapter(drive):
    return GoogleDriveAdapter(drive, retry_base_seconds=0)


# ---------------------------------------------------------------------------
# list_changes
# ---------------------------------------------------------------------------
async def test_full_scan_lists_files_then_takes_start_token(drive, adapter):
    drive.file_pages = [
        {"files": [drive_file("f1", "Runbook.txt", size="120")], "nextPageToken": "1"},
        {"files": [drive_file("folder-b", "Archive", mime=FOLDER)]},
    ]

    batch = await adapter.list_changes(None)

    assert [i.external_id for i in batch.items] == ["f1", "folder-b"]
    assert batch.new_cursor == "token-1"
    assert batch.total_checked == 2
    runbook, folder = batch.items
    assert runbook.author == "Ada Lovelace"
    assert runbook.size_bytes == 120
    assert runbook.modified_at.isoformat() == "2024-05-31T09:30:00+00:00"
    assert folder.is_container is True
    assert drive.calls[-1] == "changes.getStartPageToken"


async def test_incremental_changes_follow_pages(drive, adapter):
    drive.change_pages = {
        "token-1": {
            "changes": [
                {"fileId": "f1", "file": drive_file("f1", "Runbook.txt")},
                {"fileId": "gone", "removed": True},
            ],
            "nextPageToken": "token-1b",
        },
        "token-1b": {
            "changes": [{"fileId": "f2", "file": drive_file("f2", "Old.txt", trashed=True)}],
            "newStartPageToken": "token-2",
        },
    }

    batch = await adapter.list_changes("token-1")

    assert [i.external_id for i in batch.items] == ["f1", "gone", "f2"]
    assert [i.removed for i in batch.items] == [False, True, True]
    assert batch.new_cursor == "token-2"
    assert batch.total_checked == 3


async def test_unchanged_token_is_kept_without_new_start_token(drive, adapter):
    drive.change_pages = {"token-1": {"changes": []}}

    batch = await adapter.list_changes("token-1")

    assert batch.items == []
    assert batch.new_cursor == "token-1"


# ---------------------------------------------------------------------------
# fetch_content
# ---------------------------------------------------------------------------
async def test_google_docs_are_exported_as_text(drive, adapter):
    drive.metadata["doc"] = {"id": "doc", "name": "Deploy guide", "mimeType": GDOC}
    drive.exports["doc"] = "Step 1: build\nStep 2: ship".encode("utf-8")

    assert await adapter.fetch_content("doc") == "Step 1: build\nStep 2: ship"
    assert "files.export:text/plain" in drive.calls


async def test_text_files_are_downloaded(drive, adapter):
    drive.metadata["notes"] = {"id": "notes", "name": "notes.md", "mimeType": "text/markdown"}
    drive.media["notes"] = b"# Notes\ncaf\xc3\xa9"

    assert await adapter.fetch_content("notes") == "# Notes\ncafé"


async def test_binary_files_get_a_placeholder(drive, adapter):
    drive.metadata["img"] = {"id": "img", "name": "diagram.png", "mimeType": "image/png"}

    assert await adapter.fetch_content("img") == "[image/png file: diagram.png]"
    assert "files.get_media" not in drive.calls


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------
async def test_scope_walks_up_the_folder_tree(drive, adapter):
    drive.metadata["folder-a"] = {"id": "folder-a", "parents": ["folder-root"]}
    drive.metadata["folder-root"] = {"id": "folder-root", "parents": []}
    item = DriveFileItem(external_id="f1", title="Runbook.txt", parents=["folder-a"])

    assert await adapter.is_in_scope(item, ["folder-root"]) is True
    assert await adapter.is_in_scope(item, ["folder-a"]) is True
    assert await adapter.is_in_scope(item, ["folder-other"]) is False
    # Parent lookups are cached
    assert drive.calls.count("files.get") == 2


async def test_scope_rejects_foreign_items(adapter):
    item = TeamsMessageItem(external_id="m1", title="hi", team_id="t", channel_id="c")

    assert await adapter.is_in_scope(item, ["t/c"]) is False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
async def test_transient_failures_are_retried(drive, adapter):
    drive.failures = [TimeoutError("read timed out")]
    drive.change_pages = {"token-1": {"changes": [], "newStartPageToken": "token-2"}}

    batch = await adapter.list_changes("token-1")

    assert batch.new_cursor == "token-2"
    assert drive.calls.count("changes.list") == 2


async def test_persistent_transient_failures_surface(drive):
    adapter = GoogleDriveAdapter(drive, max_retries=1, retry_base_seconds=0)
    drive.failures = [ConnectionError("reset"), ConnectionError("reset")]
    drive.change_pages = {"token-1": {"changes": []}}

    with pytest.raises(TransientProviderError):
        await adapter.list_changes("token-1")


async def test_refresh_failure_is_an_auth_error(drive, adapter):
    drive.failures = [RefreshError("invalid_grant")]
    drive.change_pages = {"token-1": {"changes": []}}

    with pytest.raises(SourceAuthError):
        await adapter.list_changes("token-1")
    assert drive.calls.count("changes.list") == 1


def drive_error(status, reason):
    body = {"error": {"code": status, "message": reason, "errors": [{"domain": "usageLimits", "reason": reason}]}}
    return HttpError(httplib2.Response({"status": status}), json.dumps(body).encode("utf-8"))


async def test_rate_limit_403_is_retried_not_an_auth_error(drive, adapter):
    drive.failures = [drive_error(403, "userRateLimitExceeded")]
    drive.file_pages = [{"files": [drive_file("f1", "Runbook.txt")]}]

    batch = await adapter.list_changes(None)

    assert [i.external_id for i in batch.items] == ["f1"]
    assert drive.calls.count("files.list") == 2


async def test_persistent_rate_limit_surfaces_as_transient(drive):
    adapter = GoogleDriveAdapter(drive, max_retries=1, retry_base_seconds=0)
    drive.failures = [drive_error(403, "rateLimitExceeded"), drive_error(403, "rateLimitExceeded")]
    drive.change_pages = {"token-1": {"changes": []}}

    with pytest.raises(TransientProviderError) as raised:
        await adapter.list_changes("token-1")
    assert not isinstance(raised.value, SourceAuthError)


async def test_permission_403_is_an_auth_error(drive, adapter):
    drive.failures = [drive_error(403, "insufficientPermissions")]
    drive.change_pages = {"token-1": {"changes": []}}

    with pytest.raises(SourceAuthError):
        await adapter.list_changes("token-1")
    assert drive.calls.count("changes.list") == 1
