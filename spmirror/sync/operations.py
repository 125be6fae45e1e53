"""Download operation with the timestamp anchor."""

from pathlib import Path

from ..api import SharePointClient
from ..models import FileItem
from .localfs import LocalFilesystem


class SyncOperations:
    """Fetches files into the mirror."""

    def __init__(self, client: SharePointClient, fs: LocalFilesystem):
        """Initialize sync operations.

        Args:
            client: Shared SharePoint client
            fs: Local filesystem view
        """
        self.client = client
        self.fs = fs

    def download_file(self, remote_file: FileItem, local_path: Path) -> int:
        """Download a remote file and stamp it with the remote timestamps.

        The content is written to a temporary sibling and moved into place
        once complete, so an interrupted download never looks like a synced
        file on the next run. After the move the local (created, modified)
        timestamps are set to the remote ones.

        Args:
            remote_file: Remote file to download
            local_path: Local path where file should be saved

        Returns:
            Number of bytes written
        """
        self.fs.create_directory(local_path.parent)

        partial = self.fs.partial_path(local_path)
        try:
            size = self.client.download_file(remote_file.server_relative_url, partial)
            self.fs.commit(partial, local_path)
        except BaseException:
            self.fs.discard(partial)
            raise

        self.fs.set_timestamps(
            local_path, remote_file.time_created, remote_file.time_last_modified
        )
        return size
