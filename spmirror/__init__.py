"""spmirror - mirror SharePoint document libraries to a local directory."""

from .api import SharePointClient
from .exceptions import (
    SharePointAPIError,
    SharePointAuthenticationError,
    SharePointConfigError,
    SharePointDownloadError,
    SharePointInvalidResponseError,
    SharePointNetworkError,
    SharePointNotFoundError,
    SharePointPermissionError,
    SharePointRateLimitError,
    SharePointThresholdError,
    SyncAbortedError,
    SyncError,
    SyncSetupError,
)
from .log import LogEntry, Severity, SyncLogger
from .models import DateRangeQuery, DocumentLibrary, FileItem, FolderItem, RemoteItem

__version__ = "0.1.0"

__all__ = [
    "SharePointClient",
    "SharePointAPIError",
    "SharePointAuthenticationError",
    "SharePointConfigError",
    "SharePointDownloadError",
    "SharePointInvalidResponseError",
    "SharePointNetworkError",
    "SharePointNotFoundError",
    "SharePointPermissionError",
    "SharePointRateLimitError",
    "SharePointThresholdError",
    "SyncError",
    "SyncSetupError",
    "SyncAbortedError",
    "SyncLogger",
    "LogEntry",
    "Severity",
    "DateRangeQuery",
    "DocumentLibrary",
    "FileItem",
    "FolderItem",
    "RemoteItem",
]
