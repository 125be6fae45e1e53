"""Shared fixtures: an in-memory SharePoint site and a local mirror."""

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from spmirror.exceptions import (
    SharePointAPIError,
    SharePointDownloadError,
    SharePointNotFoundError,
    SharePointThresholdError,
)
from spmirror.log import SyncLogger
from spmirror.models import DateRangeQuery, DocumentLibrary, FileItem, FolderItem
from spmirror.sync import (
    CreationTimeStore,
    LocalFilesystem,
    LocalStateInspector,
    SyncEngine,
)

SITE = "/sites/team"

THRESHOLD_MESSAGE = (
    "The attempted operation is prohibited because it exceeds the list view "
    "threshold. (Microsoft.SharePoint.SPQueryThrottledException)"
)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _parent(url: str) -> str:
    return url.rsplit("/", 1)[0]


class FakeSharePoint:
    """In-memory stand-in for SharePointClient.

    Folders and files are keyed by server-relative URL. Downloads are
    counted and instrumented for concurrency.
    """

    def __init__(self, site: str = SITE, threshold: int = 5000):
        self.server_relative_url = site
        self.threshold = threshold
        self.libraries: dict[str, str] = {}
        self.folders: dict[str, FolderItem] = {}
        self.files: dict[str, FileItem] = {}
        self.contents: dict[str, bytes] = {}

        self.download_delay = 0.0
        self.fail_downloads: set[str] = set()
        self.fail_listings: set[str] = set()
        self.query_error: Optional[Exception] = None
        self.fail_library_listing = False

        self._lock = threading.Lock()
        self.downloads: list[str] = []
        self.queries: list[tuple[datetime, datetime]] = []
        self.listed: list[str] = []
        self.folder_lookups: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    # Building the tree

    def add_library(
        self,
        title: str,
        name: Optional[str] = None,
        created: datetime = utc(2020, 1, 1),
        modified: datetime = utc(2020, 1, 1),
    ) -> str:
        url = f"{self.server_relative_url}/{name or title}"
        self.libraries[title] = url
        self.folders[url] = FolderItem(name or title, url, created, modified)
        return url

    def add_folder(
        self,
        url: str,
        created: datetime = utc(2021, 1, 1),
        modified: datetime = utc(2021, 1, 2),
    ) -> str:
        self.folders[url] = FolderItem(url.rsplit("/", 1)[-1], url, created, modified)
        return url

    def add_file(
        self,
        url: str,
        content: bytes = b"data",
        created: datetime = utc(2022, 3, 1, 9, 30),
        modified: datetime = utc(2022, 3, 2, 10, 0),
    ) -> str:
        self.files[url] = FileItem(
            url.rsplit("/", 1)[-1], url, created, modified, size=len(content)
        )
        self.contents[url] = content
        return url

    def touch(self, url: str, created: datetime, modified: datetime) -> None:
        item = self.files[url]
        self.files[url] = FileItem(item.name, url, created, modified, item.size)

    # Client interface

    def close(self) -> None:
        pass

    def connect(self) -> dict:
        return {"Title": "Team", "ServerRelativeUrl": self.server_relative_url}

    def list_document_libraries(self) -> list[DocumentLibrary]:
        if self.fail_library_listing:
            raise SharePointAPIError("API request failed with status 500")
        return [DocumentLibrary(title, url) for title, url in self.libraries.items()]

    def get_folder(self, path: str) -> FolderItem:
        with self._lock:
            self.folder_lookups.append(path)
        if path not in self.folders:
            raise SharePointNotFoundError(f"Folder not found: {path}")
        return self.folders[path]

    def list_folder_children(self, path: str) -> list:
        with self._lock:
            self.listed.append(path)
        if path in self.fail_listings:
            raise SharePointAPIError(f"API request failed with status 500: {path}")
        if path not in self.folders:
            raise SharePointNotFoundError(f"Folder not found: {path}")
        children: list = [f for u, f in self.folders.items() if _parent(u) == path]
        children.extend(f for u, f in self.files.items() if _parent(u) == path)
        return children

    def list_library_items(
        self,
        library: str,
        page_size: int = 5000,
        fields: tuple = (),
        query: Optional[DateRangeQuery] = None,
    ) -> list:
        root = self.libraries.get(library)
        if root is None:
            raise SharePointNotFoundError(f"List '{library}' does not exist")
        if query is None:
            return self.list_folder_children(root)

        with self._lock:
            self.queries.append((query.start, query.end))
        if self.query_error is not None:
            raise self.query_error

        attribute = (
            "time_last_modified" if query.field_name == "Modified" else "time_created"
        )
        matches = [
            item
            for url, item in self.files.items()
            if url.startswith(root + "/")
            and query.start <= getattr(item, attribute) < query.end
        ]
        if len(matches) > self.threshold:
            raise SharePointThresholdError(THRESHOLD_MESSAGE)
        return matches[: query.row_limit]

    def get_file_metadata(self, path: str) -> FileItem:
        if path not in self.files:
            raise SharePointNotFoundError(f"File not found: {path}")
        return self.files[path]

    def download_file(self, path: str, destination: Path) -> int:
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.download_delay:
                time.sleep(self.download_delay)
            if path in self.fail_downloads:
                raise SharePointDownloadError(f"Download failed: {path}")
            content = self.contents[path]
            destination.write_bytes(content)
            with self._lock:
                self.downloads.append(path)
            return len(content)
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def fake_sp():
    """An empty in-memory site."""
    return FakeSharePoint()


@pytest.fixture
def local_root(tmp_path):
    """Root directory of the mirror."""
    root = tmp_path / "mirror"
    root.mkdir()
    return root


@pytest.fixture
def state_dir(tmp_path):
    """Directory for creation time state files."""
    return tmp_path / "state"


@pytest.fixture
def local_fs(local_root, state_dir):
    """Local filesystem keeping creation times in a temporary store."""
    store = CreationTimeStore(local_root, state_dir=state_dir)
    return LocalFilesystem(local_root, store=store, native_creation_time=False)


@pytest.fixture
def sync_log(tmp_path):
    """Run log writing to a temporary file and keeping entries in memory."""
    log = SyncLogger(log_file=tmp_path / "run.log", echo=False, keep_entries=True)
    yield log
    log.close()


@pytest.fixture
def make_engine(fake_sp, local_root, local_fs, sync_log):
    """Factory for sync engines over the fake site and the temporary mirror."""

    def factory(**kwargs):
        inspector = kwargs.pop("inspector", None) or LocalStateInspector(local_fs)
        return SyncEngine(
            fake_sp, local_root, sync_log, inspector=inspector, fs=local_fs, **kwargs
        )

    return factory
