"""Core sync engine that mirrors remote containers to the local filesystem."""

import dataclasses
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..api import SharePointClient
from ..exceptions import SharePointAPIError, SyncAbortedError, SyncSetupError
from ..log import SyncLogger
from ..models import FileItem, FolderItem, RemoteItem
from ..utils import (
    DEFAULT_CHECKPOINT_EVERY,
    DEFAULT_PAGE_SIZE,
    DEFAULT_STEP_MINUTES,
    DEFAULT_WORKERS,
    format_size,
    join_url,
)
from .filters import NameFilter
from .inspector import LocalStateInspector
from .localfs import LocalFilesystem
from .operations import SyncOperations
from .partitioner import DateRangePartitioner, TimeWindow
from .scheduler import DownloadScheduler, SyncTask, TaskKind
from .walker import Container, ContainerKind, RemoteTreeWalker

logger = logging.getLogger(__name__)

FolderTimes = tuple[Optional[datetime], Optional[datetime]]


class SyncStats:
    """Thread-safe counters for one sync run."""

    FIELDS = (
        "downloaded",
        "skipped",
        "failed",
        "folders",
        "pruned",
        "bytes",
        "windows",
        "windows_split",
        "windows_skipped",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(self.FIELDS, 0)

    def increment(self, name: str, amount: int = 1) -> int:
        """Add to a counter and return its new value."""
        with self._lock:
            self._counts[name] += amount
            return self._counts[name]

    def __getitem__(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def as_dict(self) -> dict:
        with self._lock:
            return dict(self._counts)

    def summary(self) -> str:
        counts = self.as_dict()
        text = (
            f"{counts['downloaded']} downloaded ({format_size(counts['bytes'])}), "
            f"{counts['skipped']} up to date, {counts['failed']} failed, "
            f"{counts['folders']} folder(s), {counts['pruned']} pruned"
        )
        if counts["windows"]:
            text += (
                f", {counts['windows']} window(s) queried, "
                f"{counts['windows_split']} split, "
                f"{counts['windows_skipped']} skipped"
            )
        return text


class SyncEngine:
    """Mirrors a remote tree, or a time-partitioned slice of a library.

    For each container the engine applies the name filter to subfolders,
    asks the local state inspector which files are out of date, and hands
    downloads and subfolder recursion to the download scheduler. Directory
    timestamps are applied once all work has finished, deepest first, so
    files written into a directory do not disturb its modification time.

    Examples:
        >>> engine = SyncEngine(client, Path("/mirror"), log)
        >>> stats = engine.mirror()
        >>> stats = engine.mirror_date_range(
        ...     "Proj_A", datetime(2024, 1, 1), datetime(2024, 2, 1)
        ... )
    """

    def __init__(
        self,
        client: SharePointClient,
        local_root: Path,
        log: SyncLogger,
        name_filter: Optional[NameFilter] = None,
        inspector: Optional[LocalStateInspector] = None,
        fs: Optional[LocalFilesystem] = None,
        workers: int = DEFAULT_WORKERS,
        page_size: int = DEFAULT_PAGE_SIZE,
        checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY,
    ):
        """Initialize sync engine.

        Args:
            client: Shared SharePoint client (already connected)
            local_root: Root directory of the mirror
            log: Run log
            name_filter: Filter for auto-discovered containers
            inspector: Local state inspector (built over ``fs`` if omitted)
            fs: Local filesystem view (built for ``local_root`` if omitted)
            workers: Maximum concurrent downloads/listings
            page_size: Rows per page for library listings
            checkpoint_every: Downloads between saves of the local state, so
                a killed run keeps the creation times it already applied
        """
        self.client = client
        self.local_root = local_root
        self.log = log
        self.name_filter = name_filter or NameFilter()
        self.fs = fs or (inspector.fs if inspector else LocalFilesystem(local_root))
        self.inspector = inspector or LocalStateInspector(self.fs)
        self.walker = RemoteTreeWalker(client, page_size=page_size)
        self.operations = SyncOperations(client, self.fs)
        self.scheduler = DownloadScheduler(limit=workers, log=log)
        self.stats = SyncStats()
        self.checkpoint_every = max(1, checkpoint_every)

        self._lock = threading.Lock()
        self._folder_times: dict[Path, FolderTimes] = {}
        self._folder_cache: dict[str, Optional[FolderItem]] = {}
        self._libraries: dict[str, Container] = {}

    # =========================
    # Paths
    # =========================

    def local_path_for(self, server_relative_url: str) -> Path:
        """Map a server-relative URL to its path in the mirror.

        The site's own server-relative URL is stripped, so
        ``/sites/team/Proj_A/report.docx`` maps to
        ``<local_root>/Proj_A/report.docx``.

        Raises:
            ValueError: If the URL contains relative path segments
        """
        site = (self.client.server_relative_url or "").rstrip("/")
        url = server_relative_url
        if site and (url == site or url.startswith(site + "/")):
            url = url[len(site) :]

        parts = [part for part in url.split("/") if part]
        if any(part in (".", "..") for part in parts):
            raise ValueError(f"Refusing unsafe remote path: {server_relative_url}")
        return self.local_root.joinpath(*parts)

    # =========================
    # Tree mirror
    # =========================

    def mirror(self, start_path: Optional[str] = None) -> SyncStats:
        """Mirror the site's libraries, or one explicit subtree.

        Without ``start_path`` every document library whose title passes the
        name filter is mirrored. With ``start_path`` that folder or library
        is mirrored without filtering it (its subfolders are still
        filtered).

        Args:
            start_path: Optional server-relative folder path or library title

        Returns:
            Run statistics

        Raises:
            SyncSetupError: If the root cannot be resolved or listed
        """
        start = time.time()
        self.log.info(
            f"Mirroring {start_path or 'all document libraries'} "
            f"to {self.local_root}",
            console=True,
        )

        if start_path:
            tasks = self._expand_explicit_root(start_path)
        else:
            tasks = self._discover_library_tasks()

        completed = False
        try:
            self._run_tasks(tasks)
            completed = True
        finally:
            self._finish(start, completed)

        return self.stats

    def _expand_explicit_root(self, start_path: str) -> list[SyncTask]:
        """Resolve and list an explicit root; failures abort the run."""
        try:
            container = self.walker.classify(start_path)
            local_path = self.local_path_for(container.server_relative_url)
        except (SharePointAPIError, OSError, ValueError) as e:
            self.log.error(f"Cannot resolve {start_path}: {e}")
            raise SyncSetupError(f"Cannot resolve {start_path}: {e}") from e

        if container.kind == ContainerKind.LIBRARY:
            self._libraries[container.server_relative_url] = container

        try:
            return self._expand_container(container, local_path)
        except (SharePointAPIError, OSError) as e:
            self.log.error(f"Cannot list {start_path}: {e}")
            raise SyncSetupError(f"Cannot list {start_path}: {e}") from e

    def _discover_library_tasks(self) -> list[SyncTask]:
        """Build recursion tasks for every matching document library."""
        try:
            libraries = self.walker.discover_libraries()
        except SharePointAPIError as e:
            self.log.error(f"Cannot list document libraries: {e}")
            raise SyncSetupError(f"Cannot list document libraries: {e}") from e

        tasks: list[SyncTask] = []
        for library in libraries:
            if not self.name_filter.matches(library.title or library.name):
                self.stats.increment("pruned")
                self.log.debug(f"Pruned library {library.title}: name filter")
                continue

            self._libraries[library.server_relative_url] = library
            tasks.append(
                SyncTask(
                    kind=TaskKind.RECURSE,
                    item=FolderItem(
                        name=library.name,
                        server_relative_url=library.server_relative_url,
                    ),
                    local_path=self.local_path_for(library.server_relative_url),
                )
            )

        self.log.info(
            f"Found {len(libraries)} document libraries, {len(tasks)} matching",
            console=True,
        )
        return tasks

    def execute_task(self, task: SyncTask) -> list[SyncTask]:
        """Execute one task in a worker thread.

        Returns:
            Follow-up tasks (children of a folder)
        """
        if task.kind == TaskKind.RECURSE:
            container = self._libraries.get(task.item.server_relative_url)
            if container is None and isinstance(task.item, FolderItem):
                container = Container.from_folder(task.item)
            if container is None:
                raise TypeError(f"Cannot recurse into file {task.label}")
            return self._expand_container(container, task.local_path)

        if not isinstance(task.item, FileItem):
            raise TypeError(f"Cannot download folder {task.label}")
        self._download(task.item, task.local_path)
        return []

    def _expand_container(
        self, container: Container, local_path: Path
    ) -> list[SyncTask]:
        """Create the local directory, list children and plan their tasks."""
        if self.fs.create_directory(local_path):
            self.log.debug(f"Created directory {local_path}")
        self.stats.increment("folders")

        folder = container.folder or self._folder_metadata(
            container.server_relative_url
        )
        if folder is not None:
            self._record_folder_times(
                local_path, folder.time_created, folder.time_last_modified
            )

        children = self.walker.list_children(container)
        self.log.debug(
            f"Listed {container.server_relative_url}: {len(children)} item(s)"
        )

        tasks: list[SyncTask] = []
        for child in children:
            child_path = local_path / child.name
            if isinstance(child, FolderItem):
                if not self.name_filter.matches(child.name):
                    self.stats.increment("pruned")
                    self.log.debug(
                        f"Pruned folder {child.server_relative_url}: name filter"
                    )
                    continue
                tasks.append(SyncTask(TaskKind.RECURSE, child, child_path))
            else:
                task = self._plan_file(child, child_path)
                if task is not None:
                    tasks.append(task)

        return tasks

    # =========================
    # Files
    # =========================

    def _plan_file(self, item: FileItem, local_path: Path) -> Optional[SyncTask]:
        """Decide whether a file needs downloading.

        Skipped files get their timestamps reconciled. Errors are logged and
        only affect this file.

        Returns:
            Download task, or None when the file is skipped or failed
        """
        try:
            if item.time_created is None or item.time_last_modified is None:
                metadata = self.client.get_file_metadata(item.server_relative_url)
                item = dataclasses.replace(
                    item,
                    time_created=item.time_created or metadata.time_created,
                    time_last_modified=(
                        item.time_last_modified or metadata.time_last_modified
                    ),
                )

            decision = self.inspector.should_download(
                item.time_created, item.time_last_modified, local_path
            )
            if decision:
                self.log.debug(
                    f"Queued {item.server_relative_url}: {decision.reason}"
                )
                return SyncTask(TaskKind.DOWNLOAD, item, local_path)

            if decision.mismatch:
                self.log.info(
                    f"Kept {item.server_relative_url}: {decision.reason}; "
                    f"updating local timestamps"
                )
            else:
                self.log.debug(
                    f"Skipped {item.server_relative_url}: {decision.reason}"
                )
            self.inspector.reconcile(
                local_path, item.time_created, item.time_last_modified
            )
            self.stats.increment("skipped")
        except (SharePointAPIError, OSError) as e:
            self.stats.increment("failed")
            self.log.error(f"Failed to check {item.server_relative_url}: {e}")
        return None

    def _download(self, item: FileItem, local_path: Path) -> None:
        start = time.time()
        size = self.operations.download_file(item, local_path)
        downloaded = self.stats.increment("downloaded")
        self.stats.increment("bytes", size)
        if downloaded % self.checkpoint_every == 0:
            self.fs.save_state()
        self.log.info(
            f"Downloaded {item.server_relative_url} ({format_size(size)}, "
            f"{time.time() - start:.1f}s)",
            console=True,
        )

    def _run_tasks(self, tasks: list[SyncTask]) -> None:
        failed_before = self.scheduler.failed
        self.scheduler.run(tasks, self.execute_task)
        self.stats.increment("failed", self.scheduler.failed - failed_before)

    # =========================
    # Folder timestamps
    # =========================

    def _folder_metadata(self, server_relative_url: str) -> Optional[FolderItem]:
        """Fetch folder metadata once per run (None if unavailable)."""
        with self._lock:
            if server_relative_url in self._folder_cache:
                return self._folder_cache[server_relative_url]

        folder: Optional[FolderItem]
        try:
            folder = self.client.get_folder(server_relative_url)
        except SharePointAPIError as e:
            self.log.warning(
                f"No metadata for folder {server_relative_url}: {e}", console=False
            )
            folder = None

        with self._lock:
            self._folder_cache[server_relative_url] = folder
        return folder

    def _record_folder_times(
        self,
        local_path: Path,
        created: Optional[datetime],
        modified: Optional[datetime],
    ) -> None:
        with self._lock:
            self._folder_times[local_path] = (created, modified)

    def _apply_folder_times(self) -> None:
        """Set directory timestamps, deepest directories first."""
        with self._lock:
            folder_times = sorted(
                self._folder_times.items(),
                key=lambda entry: len(entry[0].parts),
                reverse=True,
            )
            self._folder_times = {}

        for path, (created, modified) in folder_times:
            if not self.fs.exists(path):
                continue
            try:
                self.inspector.reconcile(path, created, modified)
            except OSError as e:
                self.stats.increment("failed")
                self.log.error(f"Failed to set timestamps on {path}: {e}")

    def _finish(self, start: float, completed: bool) -> None:
        """Apply folder timestamps, persist state and log the outcome."""
        self._apply_folder_times()
        self.fs.save_state()
        logger.debug("Run stats: %s", self.stats.as_dict())
        elapsed = time.time() - start
        if completed:
            self.log.info(
                f"Sync complete in {elapsed:.1f}s: {self.stats.summary()}",
                console=True,
            )
        else:
            self.log.warning(
                f"Sync stopped after {elapsed:.1f}s: {self.stats.summary()}"
            )

    # =========================
    # Date-range mirror
    # =========================

    def mirror_date_range(
        self,
        library: str,
        start: datetime,
        end: datetime,
        step_minutes: int = DEFAULT_STEP_MINUTES,
        date_field: str = "Modified",
    ) -> SyncStats:
        """Mirror the files of a library whose date field falls in a range.

        The range is processed window by window; windows over the list view
        threshold are split (see DateRangePartitioner). Every folder between
        the library root and a file must pass the name filter. Missing
        ancestor directories are created and their timestamps reconciled.

        Args:
            library: Library title or root folder URL (not filtered)
            start: Inclusive start of the range
            end: Exclusive end of the range
            step_minutes: Initial window size
            date_field: List field to filter on ("Modified" or "Created")

        Returns:
            Run statistics

        Raises:
            SyncSetupError: If the library cannot be resolved
            SyncAbortedError: If a query fails unexpectedly
        """
        started = time.time()
        self.log.info(
            f"Mirroring {library} items with {date_field} in "
            f"[{start.isoformat()}, {end.isoformat()}) to {self.local_root}",
            console=True,
        )

        try:
            container = self.walker.find_library(library)
            root_path = self.local_path_for(container.server_relative_url)
        except (SharePointAPIError, ValueError) as e:
            self.log.error(f"Cannot resolve library {library}: {e}")
            raise SyncSetupError(f"Cannot resolve library {library}: {e}") from e

        partitioner = DateRangePartitioner(
            client=self.client,
            library=container.title or container.name,
            handler=lambda window, items: self._handle_window(
                container, window, items
            ),
            log=self.log,
            date_field=date_field,
        )

        completed = False
        try:
            self.fs.create_directory(root_path)
            root = self._folder_metadata(container.server_relative_url)
            if root is not None:
                self._record_folder_times(
                    root_path, root.time_created, root.time_last_modified
                )
            partitioner.run(start, end, step_minutes)
            completed = True
        except SyncAbortedError:
            self.log.error("Run aborted after an unexpected query error")
            raise
        finally:
            self.stats.increment("windows", partitioner.windows_queried)
            self.stats.increment("windows_split", partitioner.windows_split)
            self.stats.increment("windows_skipped", partitioner.windows_skipped)
            self._finish(started, completed)

        return self.stats

    def _handle_window(
        self, container: Container, window: TimeWindow, items: list[RemoteItem]
    ) -> None:
        """Filter, reconcile ancestors, decide and download one window's items."""
        root_url = container.server_relative_url.rstrip("/")
        tasks: list[SyncTask] = []

        for item in items:
            if not isinstance(item, FileItem):
                continue

            url = item.server_relative_url
            if url.startswith(root_url + "/"):
                relative = url[len(root_url) + 1 :]
            else:
                relative = url
            folders = [part for part in relative.split("/") if part][:-1]

            rejected = self.name_filter.first_mismatch(folders)
            if rejected is not None:
                self.stats.increment("pruned")
                self.log.debug(
                    f"Pruned {url}: folder '{rejected}' fails the name filter"
                )
                continue

            try:
                local_path = self.local_path_for(url)
                self._ensure_ancestors(root_url, folders)
            except (SharePointAPIError, OSError, ValueError) as e:
                self.stats.increment("failed")
                self.log.error(f"Failed to prepare folders for {url}: {e}")
                continue

            task = self._plan_file(item, local_path)
            if task is not None:
                tasks.append(task)

        self.log.debug(f"Window {window}: {len(tasks)} download(s) scheduled")
        self._run_tasks(tasks)
        self.fs.save_state()

    def _ensure_ancestors(self, root_url: str, folders: list[str]) -> None:
        """Create missing directories from the library root down to a file."""
        url = root_url
        for name in folders:
            url = join_url(url, name)
            local_path = self.local_path_for(url)
            if self.fs.create_directory(local_path):
                self.stats.increment("folders")
                self.log.debug(f"Created directory {local_path}")

            folder = self._folder_metadata(url)
            if folder is not None:
                self._record_folder_times(
                    local_path, folder.time_created, folder.time_last_modified
                )
