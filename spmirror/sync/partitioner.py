"""Time-partitioned library queries with adaptive window splitting.

A library is processed as a sequence of time windows over one date field.
When the remote store refuses a window because its result set exceeds the
list view threshold, the window is split into smaller consecutive windows
and those are queried instead. Step sizes follow a fixed ladder that halves
the step down to one hour, then down to one minute. A window that still
fails at one minute is skipped for this run with a warning.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..api import SharePointClient, is_threshold_message
from ..exceptions import SharePointAPIError, SharePointThresholdError, SyncAbortedError
from ..log import SyncLogger
from ..models import DateRangeQuery, RemoteItem
from ..utils import (
    DEFAULT_STEP_MINUTES,
    HOURLY_STEP_MINUTES,
    LIST_VIEW_THRESHOLD,
    MIN_STEP_MINUTES,
    format_query_datetime,
    to_utc,
)

logger = logging.getLogger(__name__)

WindowHandler = Callable[["TimeWindow", list[RemoteItem]], None]


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time interval ``[start, end)`` and the step that produced it."""

    start: datetime
    end: datetime
    step_minutes: int

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Empty time window: {self.start} - {self.end}")
        if self.step_minutes < MIN_STEP_MINUTES:
            raise ValueError(f"Step must be at least {MIN_STEP_MINUTES} minute")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def split(self, step_minutes: int) -> list["TimeWindow"]:
        """Tile this window with consecutive windows of ``step_minutes``.

        The last window is cut at ``end`` and may be shorter.
        """
        return tile(self.start, self.end, step_minutes)

    def __str__(self) -> str:
        return (
            f"[{format_query_datetime(self.start)}, "
            f"{format_query_datetime(self.end)}) step {self.step_minutes}m"
        )


def tile(start: datetime, end: datetime, step_minutes: int) -> list[TimeWindow]:
    """Decompose ``[start, end)`` into consecutive windows of a fixed step.

    Args:
        start: Inclusive start
        end: Exclusive end
        step_minutes: Window size in minutes

    Returns:
        Chronologically ordered windows covering the range exactly once
    """
    start = to_utc(start)
    end = to_utc(end)
    step = timedelta(minutes=step_minutes)
    windows: list[TimeWindow] = []

    current = start
    while current < end:
        upper = min(current + step, end)
        windows.append(TimeWindow(current, upper, step_minutes))
        current = upper

    return windows


def next_step(step_minutes: int) -> Optional[int]:
    """Next smaller step on the ladder, or None at the one-minute floor.

    Steps above one hour are halved but never below one hour; steps of one
    hour or less are halved down to one minute.

    Examples:
        >>> next_step(1440)
        720
        >>> next_step(90)
        60
        >>> next_step(60)
        30
        >>> next_step(1) is None
        True
    """
    if step_minutes <= MIN_STEP_MINUTES:
        return None
    if step_minutes > HOURLY_STEP_MINUTES:
        return max(step_minutes // 2, HOURLY_STEP_MINUTES)
    return max(step_minutes // 2, MIN_STEP_MINUTES)


def step_for_split(window: TimeWindow) -> Optional[int]:
    """Step to split ``window`` with, skipping steps that would not shrink it."""
    step = next_step(window.step_minutes)
    while step is not None and timedelta(minutes=step) >= window.duration:
        step = next_step(step)
    return step


class DateRangePartitioner:
    """Runs date-range queries over a library, splitting on threshold errors.

    Windows are kept on an explicit stack instead of recursing, so the depth
    of splitting never grows the call stack. Sub-windows are pushed in
    reverse so they are processed in chronological order.
    """

    def __init__(
        self,
        client: SharePointClient,
        library: str,
        handler: WindowHandler,
        log: SyncLogger,
        date_field: str = "Modified",
        row_limit: int = LIST_VIEW_THRESHOLD,
    ):
        """Initialize the partitioner.

        Args:
            client: Shared SharePoint client
            library: Library title
            handler: Called with each successfully queried window and its items
            log: Run log
            date_field: List field the windows filter on
            row_limit: Row cap per query
        """
        self.client = client
        self.library = library
        self.handler = handler
        self.log = log
        self.date_field = date_field
        self.row_limit = row_limit

        self.windows_queried = 0
        self.windows_split = 0
        self.windows_skipped = 0

    def initial_windows(
        self, start: datetime, end: datetime, step_minutes: int = DEFAULT_STEP_MINUTES
    ) -> list[TimeWindow]:
        return tile(start, end, step_minutes)

    def run(
        self, start: datetime, end: datetime, step_minutes: int = DEFAULT_STEP_MINUTES
    ) -> None:
        """Process every window of ``[start, end)``."""
        for window in self.initial_windows(start, end, step_minutes):
            self.process_window(window)

    def _query(self, window: TimeWindow) -> list[RemoteItem]:
        query = DateRangeQuery(
            field_name=self.date_field,
            start=window.start,
            end=window.end,
            files_only=True,
            row_limit=self.row_limit,
        )
        return self.client.list_library_items(self.library, query=query)

    def process_window(self, window: TimeWindow) -> None:
        """Query a window, splitting it until every piece fits the threshold.

        Args:
            window: Window to process

        Raises:
            SyncAbortedError: If a query fails for any reason other than the
                list view threshold
        """
        stack: list[TimeWindow] = [window]

        while stack:
            current = stack.pop()
            self.windows_queried += 1
            self.log.debug(f"Querying {self.library} {self.date_field} {current}")

            try:
                items = self._query(current)
            except SharePointThresholdError as e:
                self._split(current, stack, str(e))
                continue
            except SharePointAPIError as e:
                if is_threshold_message(str(e)):
                    self._split(current, stack, str(e))
                    continue
                self.log.error(f"Query for {current} failed: {e}")
                raise SyncAbortedError(
                    f"Unexpected error querying {self.library} for {current}: {e}"
                ) from e
            except Exception as e:
                self.log.error(f"Query for {current} failed: {e}")
                raise SyncAbortedError(
                    f"Unexpected error querying {self.library} for {current}: {e}"
                ) from e

            if len(items) >= self.row_limit:
                # A full page may have been truncated at the row cap
                reason = f"{len(items)} rows reached the row limit"
                if self._split(current, stack, reason, final=False):
                    continue
                self.log.warning(
                    f"Window {current} returned {len(items)} rows at the minimum "
                    f"step; results may be incomplete"
                )

            self.log.debug(f"Window {current}: {len(items)} item(s)")
            self.handler(current, items)

    def _split(
        self,
        window: TimeWindow,
        stack: list[TimeWindow],
        reason: str,
        final: bool = True,
    ) -> bool:
        """Replace ``window`` with smaller windows on the stack.

        Args:
            window: Window that was refused
            stack: Worklist to push onto
            reason: Error text for the log
            final: Log a permanent skip when the floor is reached

        Returns:
            True if the window was split, False at the minimum step
        """
        step = step_for_split(window)
        if step is None:
            if final:
                self.windows_skipped += 1
                self.log.warning(
                    f"Skipping {self.library} window {window}: still over the "
                    f"list view threshold at the minimum step ({reason})"
                )
            return False

        sub_windows = window.split(step)
        self.windows_split += 1
        self.log.info(
            f"Window {window} over threshold, splitting into "
            f"{len(sub_windows)} window(s) of {step}m"
        )
        logger.debug("Split reason: %s", reason)
        stack.extend(reversed(sub_windows))
        return True
