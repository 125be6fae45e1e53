"""Decides whether a remote item needs to be downloaded."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from ..utils import same_second, to_utc
from .localfs import LocalFilesystem


class SyncAction(str, Enum):
    """Actions that can be taken for a remote file."""

    DOWNLOAD = "download"
    """Download remote file to local"""

    SKIP = "skip"
    """Skip file (local copy is up to date)"""


class MismatchPolicy(str, Enum):
    """What to do when a local file's creation time differs from the remote."""

    REDOWNLOAD = "redownload"
    """Download the file again"""

    SKIP = "skip"
    """Keep the local file, log the discrepancy and fix the timestamps"""


@dataclass(frozen=True)
class DateFilters:
    """Optional thresholds that force re-downloads of newer remote items."""

    modified_after: Optional[datetime] = None
    created_after: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.modified_after is not None or self.created_after is not None


@dataclass(frozen=True)
class SyncDecision:
    """Represents a decision about one local path."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    mismatch: bool = False
    """True when the local creation time disagreed with the remote"""

    def __bool__(self) -> bool:
        return self.action == SyncAction.DOWNLOAD


class LocalStateInspector:
    """Compares local state to remote metadata.

    Policy:
        - Local path absent: download.
        - Date filters configured: download when the remote modified time is
          strictly after ``modified_after`` or the remote created time is
          strictly after ``created_after``; otherwise skip.
        - Otherwise: skip when the local creation time equals the remote
          creation time, else follow the MismatchPolicy.

    Timestamps are compared at one-second precision.
    """

    def __init__(
        self,
        fs: LocalFilesystem,
        filters: Optional[DateFilters] = None,
        mismatch_policy: MismatchPolicy = MismatchPolicy.REDOWNLOAD,
    ):
        self.fs = fs
        self.filters = filters or DateFilters()
        self.mismatch_policy = mismatch_policy

    def should_download(
        self,
        remote_created: Optional[datetime],
        remote_modified: Optional[datetime],
        local_path: Path,
    ) -> SyncDecision:
        """Decide whether a remote file must be fetched to ``local_path``.

        Args:
            remote_created: Remote creation time
            remote_modified: Remote modification time
            local_path: Target path in the mirror

        Returns:
            SyncDecision (truthy when the file should be downloaded)
        """
        local = self.fs.get_timestamps(local_path)
        if local is None:
            return SyncDecision(SyncAction.DOWNLOAD, "Not present locally")

        if self.filters.active:
            return self._apply_date_filters(remote_created, remote_modified)

        if same_second(local.created, remote_created):
            return SyncDecision(SyncAction.SKIP, "Creation time matches")

        reason = (
            f"Creation time differs (local {_fmt(local.created)}, "
            f"remote {_fmt(remote_created)})"
        )
        if self.mismatch_policy == MismatchPolicy.REDOWNLOAD:
            return SyncDecision(SyncAction.DOWNLOAD, reason, mismatch=True)
        return SyncDecision(SyncAction.SKIP, reason, mismatch=True)

    def _apply_date_filters(
        self,
        remote_created: Optional[datetime],
        remote_modified: Optional[datetime],
    ) -> SyncDecision:
        modified_after = self.filters.modified_after
        created_after = self.filters.created_after

        if (
            modified_after is not None
            and remote_modified is not None
            and to_utc(remote_modified) > to_utc(modified_after)
        ):
            return SyncDecision(
                SyncAction.DOWNLOAD,
                f"Modified {_fmt(remote_modified)} after {_fmt(modified_after)}",
            )
        if (
            created_after is not None
            and remote_created is not None
            and to_utc(remote_created) > to_utc(created_after)
        ):
            return SyncDecision(
                SyncAction.DOWNLOAD,
                f"Created {_fmt(remote_created)} after {_fmt(created_after)}",
            )
        return SyncDecision(SyncAction.SKIP, "Not newer than the date filters")

    def folder_exists(self, local_path: Path) -> bool:
        return self.fs.exists(local_path)

    def reconcile(
        self,
        local_path: Path,
        remote_created: Optional[datetime],
        remote_modified: Optional[datetime],
    ) -> None:
        """Make local timestamps equal the remote ones.

        Raises:
            OSError: If the timestamps cannot be written
        """
        self.fs.set_timestamps(local_path, remote_created, remote_modified)


def _fmt(value: Optional[datetime]) -> str:
    if value is None:
        return "unknown"
    return to_utc(value).strftime("%Y-%m-%d %H:%M:%S")
