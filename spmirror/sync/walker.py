"""One-level listing of remote containers."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..api import SharePointClient
from ..exceptions import SharePointNotFoundError
from ..models import FolderItem, RemoteItem
from ..utils import DEFAULT_PAGE_SIZE, join_url

# Hidden folder holding a library's view pages
FORMS_FOLDER = "Forms"


class ContainerKind(str, Enum):
    """Kinds of things that can list children."""

    FOLDER = "folder"
    LIBRARY = "library"


@dataclass(frozen=True)
class Container:
    """A folder or document library root."""

    kind: ContainerKind
    server_relative_url: str
    name: str
    title: Optional[str] = None
    """Library title (libraries only)"""

    folder: Optional[FolderItem] = None
    """Folder metadata, when known"""

    @classmethod
    def from_folder(cls, folder: FolderItem) -> "Container":
        return cls(
            kind=ContainerKind.FOLDER,
            server_relative_url=folder.server_relative_url,
            name=folder.name,
            folder=folder,
        )


class RemoteTreeWalker:
    """Classifies remote paths and lists their immediate children.

    The walker never recurses; the sync engine decides per level which
    subfolders to expand.
    """

    def __init__(self, client: SharePointClient, page_size: int = DEFAULT_PAGE_SIZE):
        """Initialize the walker.

        Args:
            client: Shared SharePoint client
            page_size: Rows per page for library listings
        """
        self.client = client
        self.page_size = page_size

    def classify(self, path: str) -> Container:
        """Resolve a path to a folder or a document library root.

        Folder retrieval is tried first; paths without a leading slash are
        taken relative to the site. When no folder exists at ``path``, the
        path is matched against the site's document libraries by title or
        by root folder URL.

        Args:
            path: Server-relative folder path, or library title/URL

        Returns:
            Container for the path

        Raises:
            SharePointNotFoundError: If the path is neither
        """
        folder_path = path
        if not path.startswith("/"):
            folder_path = join_url(self.client.server_relative_url or "", path)

        try:
            folder = self.client.get_folder(folder_path)
            return Container.from_folder(folder)
        except SharePointNotFoundError:
            pass

        try:
            return self.find_library(path)
        except SharePointNotFoundError:
            raise SharePointNotFoundError(
                f"No folder or document library at '{path}'"
            ) from None

    def find_library(self, name: str) -> Container:
        """Find a document library by title or root folder URL.

        Raises:
            SharePointNotFoundError: If no library matches
        """
        wanted = name.rstrip("/")
        for library in self.client.list_document_libraries():
            root_url = library.server_relative_url.rstrip("/")
            if library.title == wanted or (root_url and root_url == wanted):
                return self._library_container(library.title, root_url)

        raise SharePointNotFoundError(f"Document library not found: {name}")

    def discover_libraries(self) -> list[Container]:
        """List the site's document libraries as containers."""
        return [
            self._library_container(
                library.title, library.server_relative_url.rstrip("/")
            )
            for library in self.client.list_document_libraries()
        ]

    @staticmethod
    def _library_container(title: str, root_url: str) -> Container:
        return Container(
            kind=ContainerKind.LIBRARY,
            server_relative_url=root_url,
            name=root_url.rsplit("/", 1)[-1] or title,
            title=title,
        )

    def list_children(self, container: Container) -> list[RemoteItem]:
        """List one level of children of a container.

        Args:
            container: Folder or library root

        Returns:
            Folders and files directly inside the container
        """
        if container.kind == ContainerKind.LIBRARY:
            children = self.client.list_library_items(
                container.title or container.name, page_size=self.page_size
            )
            return [
                child
                for child in children
                if not (child.is_folder and child.name == FORMS_FOLDER)
            ]

        return self.client.list_folder_children(container.server_relative_url)
