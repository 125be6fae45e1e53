"""Data models for remote store items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from .utils import LIST_VIEW_THRESHOLD, parse_iso_timestamp

# List item fields requested from library queries
LIST_ITEM_FIELDS: tuple[str, ...] = (
    "ID",
    "FileLeafRef",
    "FileRef",
    "FSObjType",
    "Created",
    "Modified",
    "File_x0020_Size",
)

# FSObjType values
FS_OBJ_FILE = 0
FS_OBJ_FOLDER = 1


@dataclass(frozen=True)
class FolderItem:
    """A folder in a document library."""

    name: str
    server_relative_url: str
    time_created: datetime | None = None
    time_last_modified: datetime | None = None
    item_count: int | None = None

    @property
    def is_folder(self) -> bool:
        return True

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> FolderItem:
        """Create a folder from a ``SP.Folder`` resource."""
        return cls(
            name=data.get("Name", ""),
            server_relative_url=data.get("ServerRelativeUrl", ""),
            time_created=parse_iso_timestamp(data.get("TimeCreated")),
            time_last_modified=parse_iso_timestamp(data.get("TimeLastModified")),
            item_count=data.get("ItemCount"),
        )


@dataclass(frozen=True)
class FileItem:
    """A file in a document library.

    ``server_relative_url`` doubles as the content reference used to fetch
    the file's bytes.
    """

    name: str
    server_relative_url: str
    time_created: datetime | None = None
    time_last_modified: datetime | None = None
    size: int = 0

    @property
    def is_folder(self) -> bool:
        return False

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> FileItem:
        """Create a file from a ``SP.File`` resource."""
        return cls(
            name=data.get("Name", ""),
            server_relative_url=data.get("ServerRelativeUrl", ""),
            time_created=parse_iso_timestamp(data.get("TimeCreated")),
            time_last_modified=parse_iso_timestamp(data.get("TimeLastModified")),
            size=int(data.get("Length") or 0),
        )


RemoteItem = Union[FolderItem, FileItem]


def item_from_list_item(data: dict[str, Any]) -> RemoteItem:
    """Classify a list item returned by a library query.

    Args:
        data: List item with ``FileLeafRef``, ``FileRef``, ``FSObjType``,
            ``Created`` and ``Modified`` fields

    Returns:
        FolderItem or FileItem
    """
    name = data.get("FileLeafRef") or data.get("FileRef", "").rsplit("/", 1)[-1]
    url = data.get("FileRef", "")
    created = parse_iso_timestamp(data.get("Created"))
    modified = parse_iso_timestamp(data.get("Modified"))

    if int(data.get("FSObjType") or FS_OBJ_FILE) == FS_OBJ_FOLDER:
        return FolderItem(
            name=name,
            server_relative_url=url,
            time_created=created,
            time_last_modified=modified,
        )

    return FileItem(
        name=name,
        server_relative_url=url,
        time_created=created,
        time_last_modified=modified,
        size=int(data.get("File_x0020_Size") or 0),
    )


@dataclass(frozen=True)
class DocumentLibrary:
    """A document library and the server-relative URL of its root folder."""

    title: str
    server_relative_url: str

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> DocumentLibrary:
        root = data.get("RootFolder") or {}
        return cls(
            title=data.get("Title", ""),
            server_relative_url=root.get("ServerRelativeUrl", ""),
        )


@dataclass(frozen=True)
class DateRangeQuery:
    """Date-range-and-type filter over a named list field.

    Matches items where ``start <= field < end``. The query is recursive over
    all folders of the library and capped at ``row_limit`` rows.
    """

    field_name: str
    start: datetime
    end: datetime
    files_only: bool = True
    row_limit: int = LIST_VIEW_THRESHOLD
    view_fields: tuple[str, ...] = field(default=LIST_ITEM_FIELDS)
