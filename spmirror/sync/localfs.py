"""Local filesystem access for the mirror."""

import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..utils import from_posix, to_utc
from .state import CreationTimeStore

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".spmirror-part"


@dataclass(frozen=True)
class LocalTimestamps:
    """Observed timestamps of a local file or directory."""

    created: Optional[datetime]
    """Creation time (None when the platform cannot report it)"""

    modified: datetime
    """Last modification time"""


FILE_WRITE_ATTRIBUTES = 0x100
FILE_SHARE_ALL = 0x1 | 0x2 | 0x4  # read, write, delete
OPEN_EXISTING = 3
FILE_FLAG_BACKUP_SEMANTICS = 0x02000000  # required to open directories
FILETIME_EPOCH_OFFSET = 116444736000000000  # 100ns intervals to 1970-01-01


def _kernel32() -> Any:
    """Load kernel32 with the prototypes of the functions used here.

    Without an explicit ``restype`` ctypes returns a C int, which truncates
    HANDLE values on 64-bit Python.
    """
    import ctypes
    from ctypes import wintypes

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    kernel32.CreateFileW.argtypes = [
        wintypes.LPCWSTR,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.LPVOID,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.HANDLE,
    ]
    kernel32.CreateFileW.restype = wintypes.HANDLE
    filetime_p = ctypes.POINTER(wintypes.FILETIME)
    kernel32.SetFileTime.argtypes = [
        wintypes.HANDLE,
        filetime_p,
        filetime_p,
        filetime_p,
    ]
    kernel32.SetFileTime.restype = wintypes.BOOL
    kernel32.CloseHandle.argtypes = [wintypes.HANDLE]
    kernel32.CloseHandle.restype = wintypes.BOOL
    return kernel32


def _set_windows_creation_time(path: Path, created: datetime) -> None:
    """Set the creation time of a file or directory through SetFileTime."""
    import ctypes
    from ctypes import wintypes

    kernel32 = _kernel32()
    invalid_handle = wintypes.HANDLE(-1).value

    intervals = int(to_utc(created).timestamp() * 10_000_000) + FILETIME_EPOCH_OFFSET
    filetime = wintypes.FILETIME(intervals & 0xFFFFFFFF, intervals >> 32)

    handle = kernel32.CreateFileW(
        str(path),
        FILE_WRITE_ATTRIBUTES,
        FILE_SHARE_ALL,
        None,
        OPEN_EXISTING,
        FILE_FLAG_BACKUP_SEMANTICS,
        None,
    )
    if handle is None or handle == invalid_handle:
        raise OSError(f"Cannot open {path} to set creation time")
    try:
        if not kernel32.SetFileTime(handle, ctypes.byref(filetime), None, None):
            raise OSError(f"SetFileTime failed for {path}")
    finally:
        kernel32.CloseHandle(handle)


class LocalFilesystem:
    """Key-value style view of the local mirror.

    Supports existence checks, idempotent directory creation and reading and
    writing of (created, modified) timestamps. Creation times are written
    natively on Windows and kept in a CreationTimeStore elsewhere.
    """

    def __init__(
        self,
        root: Path,
        store: Optional[CreationTimeStore] = None,
        native_creation_time: Optional[bool] = None,
    ):
        """Initialize the filesystem view.

        Args:
            root: Root directory of the mirror
            store: Creation time store (created on demand if not given)
            native_creation_time: Write creation times to the filesystem
                itself. Defaults to True on Windows.
        """
        self.root = root
        if native_creation_time is None:
            native_creation_time = sys.platform == "win32"
        self.native_creation_time = native_creation_time
        if store is None and not native_creation_time:
            store = CreationTimeStore(root)
        self.store = store

    def exists(self, path: Path) -> bool:
        return path.exists()

    def create_directory(self, path: Path) -> bool:
        """Create a directory and any missing parents.

        Concurrent callers creating the same directory are fine; the loser of
        the race sees the directory and returns False.

        Returns:
            True if this call created the directory
        """
        if path.is_dir():
            return False
        try:
            path.mkdir(parents=True, exist_ok=False)
            return True
        except FileExistsError:
            if path.is_dir():
                return False
            raise

    def partial_path(self, path: Path) -> Path:
        """Temporary path a download is written to before it is committed."""
        return path.with_name(path.name + PARTIAL_SUFFIX)

    def commit(self, partial: Path, path: Path) -> None:
        """Move a finished download into place."""
        os.replace(partial, path)

    def discard(self, partial: Path) -> None:
        """Remove a partial download, if any."""
        try:
            partial.unlink()
        except FileNotFoundError:
            pass

    def get_timestamps(self, path: Path) -> Optional[LocalTimestamps]:
        """Read (created, modified) of a path.

        Returns:
            LocalTimestamps, or None if the path does not exist
        """
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None

        created: Optional[datetime] = None
        if self.native_creation_time:
            stat_any: Any = stat  # platform-specific attributes
            birthtime = getattr(stat_any, "st_birthtime", None)
            if birthtime is None and sys.platform == "win32":
                birthtime = stat.st_ctime
            if birthtime is not None:
                created = from_posix(birthtime)
        elif self.store is not None:
            stored = self.store.get(path)
            if stored is not None:
                created = from_posix(stored)

        return LocalTimestamps(created=created, modified=from_posix(stat.st_mtime))

    def set_timestamps(
        self,
        path: Path,
        created: Optional[datetime],
        modified: Optional[datetime],
    ) -> None:
        """Overwrite the timestamps of a path.

        Args:
            path: Existing file or directory
            created: New creation time (skipped if None)
            modified: New modification time (skipped if None)

        Raises:
            OSError: If the timestamps cannot be written
        """
        if modified is not None:
            mtime = to_utc(modified).timestamp()
            os.utime(path, (mtime, mtime))

        if created is None:
            return

        if self.native_creation_time:
            if sys.platform == "win32":
                _set_windows_creation_time(path, created)
            else:
                logger.debug("Cannot set creation time natively for %s", path)
        elif self.store is not None:
            self.store.set(path, to_utc(created).timestamp())

    def save_state(self) -> None:
        """Persist the creation time store."""
        if self.store is not None:
            self.store.save()
