"""Exceptions raised by spmirror."""


class SharePointAPIError(Exception):
    """Base exception for remote store errors."""


class SharePointConfigError(SharePointAPIError):
    """Raised when the site URL or access token is missing or invalid."""


class SharePointAuthenticationError(SharePointAPIError):
    """Raised when the access token is rejected."""


class SharePointPermissionError(SharePointAPIError):
    """Raised when the token lacks permission for a resource."""


class SharePointNotFoundError(SharePointAPIError):
    """Raised when a folder, file or library does not exist."""


class SharePointRateLimitError(SharePointAPIError):
    """Raised when the server throttles requests (HTTP 429)."""


class SharePointNetworkError(SharePointAPIError):
    """Raised on connection-level failures."""


class SharePointInvalidResponseError(SharePointAPIError):
    """Raised when the server returns something other than the expected JSON."""


class SharePointDownloadError(SharePointAPIError):
    """Raised when a file download fails."""


class SharePointThresholdError(SharePointAPIError):
    """Raised when a list query exceeds the list view threshold.

    The remote store refuses to return result sets larger than its configured
    cap (5000 rows by default). Callers can narrow the query and retry.
    """


class SyncError(Exception):
    """Base exception for sync run failures."""


class SyncSetupError(SyncError):
    """Raised when a run cannot start (authentication, inaccessible root)."""


class SyncAbortedError(SyncError):
    """Raised when an unexpected remote error aborts the whole run."""
