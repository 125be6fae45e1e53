"""Utility functions for spmirror."""

from datetime import datetime, timezone
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

# Maximum number of rows a single list query may return
LIST_VIEW_THRESHOLD: int = 5000

# Page size for one-level library listings
DEFAULT_PAGE_SIZE: int = 5000

# Number of concurrent downloads/folder listings
DEFAULT_WORKERS: int = 10

# Default separator token used by the name filter
DEFAULT_FILTER_TOKEN: str = "_"

# Downloads between saves of the creation time store during a run
DEFAULT_CHECKPOINT_EVERY: int = 100

# Step ladder for date-range partitioning (minutes)
DEFAULT_STEP_MINUTES: int = 24 * 60
HOURLY_STEP_MINUTES: int = 60
MIN_STEP_MINUTES: int = 1

# Retry configuration for transient HTTP errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 2.0  # seconds


# =============================================================================
# Timestamp utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp returned by the REST API.

    Timestamps without an offset are treated as UTC, which is what the API
    returns for ``TimeCreated``/``Created`` style fields.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2024-01-15T10:30:00Z")

    Returns:
        Timezone-aware UTC datetime, or None if parsing fails
    """
    if not timestamp_str:
        return None

    try:
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"

        try:
            dt = datetime.fromisoformat(timestamp_str)
        except ValueError:
            # Fractional seconds with more than 6 digits
            if "." in timestamp_str:
                head, _, tail = timestamp_str.partition(".")
                offset = ""
                for sign in ("+", "-"):
                    if sign in tail:
                        offset = sign + tail.split(sign, 1)[1]
                        break
                timestamp_str = head + offset
            dt = datetime.fromisoformat(timestamp_str)

        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, AttributeError):
        return None


def parse_cli_datetime(value: str) -> datetime:
    """Parse a date or datetime given on the command line.

    Accepts "2024-01-01" and "2024-01-01T12:00:00" (with or without offset).
    Naive values are interpreted as UTC.

    Raises:
        ValueError: If the value is not an ISO date/datetime
    """
    dt = parse_iso_timestamp(value.strip())
    if dt is None:
        raise ValueError(f"Invalid date: {value!r}")
    return dt


def to_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_posix(timestamp: float) -> datetime:
    """Convert a POSIX timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def format_query_datetime(dt: datetime) -> str:
    """Format a datetime for a CAML ``DateTime`` value (UTC, second precision)."""
    return to_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def same_second(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """Check whether two timestamps are equal at one-second precision.

    The remote store reports whole seconds while local filesystems keep
    sub-second precision.
    """
    if a is None or b is None:
        return False
    return int(to_utc(a).timestamp()) == int(to_utc(b).timestamp())


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def join_url(base: str, name: str) -> str:
    """Join a server-relative URL and a child name."""
    return f"{base.rstrip('/')}/{name}"
