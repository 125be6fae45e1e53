"""REST client for SharePoint document libraries."""

from __future__ import annotations

import random
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from .config import config
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
)
from .models import (
    LIST_ITEM_FIELDS,
    DateRangeQuery,
    DocumentLibrary,
    FileItem,
    FolderItem,
    RemoteItem,
    item_from_list_item,
)
from .utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RETRY_DELAY,
    format_query_datetime,
)

FOLDER_FIELDS = "Name,ServerRelativeUrl,TimeCreated,TimeLastModified,ItemCount"
FILE_FIELDS = "Name,ServerRelativeUrl,TimeCreated,TimeLastModified,Length"

# Error text the server uses when a query exceeds the list view threshold
THRESHOLD_MARKERS = ("list view threshold", "SPQueryThrottledException")

# Document library list template
DOCUMENT_LIBRARY_TEMPLATE = 101


def is_threshold_message(message: str) -> bool:
    """Check whether an error message signals the list view threshold."""
    lowered = message.lower()
    return any(marker.lower() in lowered for marker in THRESHOLD_MARKERS)


def _path_literal(path: str) -> str:
    """Quote a server-relative path for use inside an OData string literal."""
    return quote(path.replace("'", "''"), safe="/")


def build_view_xml(
    query: DateRangeQuery | None = None,
    fields: tuple[str, ...] = LIST_ITEM_FIELDS,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> str:
    """Build the CAML view for a library query.

    Without a query the view lists one level (the library root folder) in
    pages of ``page_size``. With a query the view is recursive over all
    folders, filtered to ``start <= field < end`` and capped at the query's
    row limit.
    """
    view_fields = "".join(f"<FieldRef Name='{name}'/>" for name in fields)

    if query is None:
        return (
            "<View>"
            f"<ViewFields>{view_fields}</ViewFields>"
            f"<RowLimit Paged='TRUE'>{page_size}</RowLimit>"
            "</View>"
        )

    start = format_query_datetime(query.start)
    end = format_query_datetime(query.end)
    date_value = "<Value Type='DateTime' IncludeTimeValue='TRUE' StorageTZ='TRUE'>"
    where = (
        "<And>"
        f"<Geq><FieldRef Name='{query.field_name}'/>{date_value}{start}</Value></Geq>"
        f"<Lt><FieldRef Name='{query.field_name}'/>{date_value}{end}</Value></Lt>"
        "</And>"
    )
    if query.files_only:
        where = (
            "<And>"
            f"{where}"
            "<Eq><FieldRef Name='FSObjType'/><Value Type='Integer'>0</Value></Eq>"
            "</And>"
        )
    query_fields = "".join(f"<FieldRef Name='{name}'/>" for name in query.view_fields)

    return (
        "<View Scope='RecursiveAll'>"
        f"<Query><Where>{where}</Where></Query>"
        f"<ViewFields>{query_fields}</ViewFields>"
        f"<RowLimit>{query.row_limit}</RowLimit>"
        "</View>"
    )


class SharePointClient:
    """Client for the SharePoint REST API of one site.

    A single instance is shared by all sync workers; the underlying
    ``httpx.Client`` connection pool is thread-safe.
    """

    def __init__(
        self,
        site_url: str | None = None,
        access_token: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 60.0,
        max_connections: int = 20,
    ):
        """Initialize the client.

        Args:
            site_url: Absolute site URL (uses config if not provided)
            access_token: OAuth bearer token (uses config if not provided)
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 2.0)
            timeout: Request timeout in seconds (default: 60.0)
            max_connections: Connection pool size, usually the worker count
        """
        self.site_url = (site_url or config.site_url or "").rstrip("/")
        self.access_token = access_token or config.access_token
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.max_connections = max_connections

        if not self.site_url:
            raise SharePointConfigError(
                "Site URL not configured. Please set SPMIRROR_SITE_URL "
                "or run 'spmirror init'."
            )
        if not self.access_token:
            raise SharePointConfigError(
                "Access token not configured. Please set SPMIRROR_ACCESS_TOKEN "
                "or run 'spmirror init'."
            )

        self.api_url = f"{self.site_url}/_api"
        # Server-relative URL of the site, refined by connect()
        self.server_relative_url = urlparse(self.site_url).path.rstrip("/")
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Accept": "application/json;odata=nometadata",
                },
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=self.max_connections),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> SharePointClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================
    # Request handling
    # =========================

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- 25% jitter."""
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str | None:
        """Pull the server's error text out of an OData error body."""
        try:
            if not response.content:
                return None
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        error = data.get("odata.error") or data.get("error") or {}
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, dict):
                message = message.get("value")
            code = error.get("code") or ""
            if message:
                return f"{message} ({code})" if code else str(message)
        elif isinstance(error, str):
            return error
        return None

    def _handle_http_error(
        self, e: httpx.HTTPStatusError, attempt: int
    ) -> tuple[Exception, bool]:
        """Map an HTTP error to an exception and decide whether to retry.

        Args:
            e: The HTTP error exception
            attempt: Current attempt number

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = e.response.status_code
        detail = self._extract_error_message(e.response)

        if detail and is_threshold_message(detail):
            return (SharePointThresholdError(detail), False)

        if status_code == 401:
            error = SharePointAuthenticationError("Invalid or expired access token")
            return (error, False)
        if status_code == 403:
            return (
                SharePointPermissionError(
                    detail or "Access forbidden - check your permissions"
                ),
                False,
            )
        if status_code == 404:
            return (SharePointNotFoundError(detail or "Resource not found"), False)
        if status_code == 429:
            error = SharePointRateLimitError(
                "Rate limit exceeded - please try again later"
            )
            return (error, attempt < self.max_retries)

        error_msg = f"API request failed with status {status_code}"
        if detail:
            error_msg = f"{error_msg}: {detail}"
        should_retry = 500 <= status_code < 600 and attempt < self.max_retries
        return (SharePointAPIError(error_msg), should_retry)

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: Endpoint path below ``/_api`` or an absolute URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            SharePointAPIError: If the request fails after all retries
        """
        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = f"{self.api_url}/{endpoint.lstrip('/')}"
        last_exception: Exception | None = None
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()

                content_type = response.headers.get("Content-Type", "")
                if response.content and "application/json" not in content_type:
                    # Sign-in pages come back as HTML with status 200
                    if "text/html" in content_type:
                        raise SharePointAuthenticationError(
                            "Server returned HTML instead of JSON - "
                            "the access token was probably rejected"
                        )
                    raise SharePointInvalidResponseError(
                        f"Unexpected response type: {content_type}"
                    )

                if response.content:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise SharePointInvalidResponseError(
                            "Invalid JSON response from server"
                        ) from e
                return {}

            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt)
                last_exception = error

                if should_retry:
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    time.sleep(delay)
                    continue
                raise error from e
            except SharePointAPIError:
                raise
            except httpx.RequestError as e:
                error = SharePointNetworkError(f"Network error: {e}")
                last_exception = error
                if attempt < self.max_retries:
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

        if last_exception:
            raise last_exception
        raise SharePointAPIError("Request failed after all retry attempts")

    def _get_collection(
        self, endpoint: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """GET a collection, following ``odata.nextLink`` pages."""
        results: list[dict[str, Any]] = []
        data = self._request("GET", endpoint, params=params)

        while True:
            results.extend(data.get("value", []))
            next_link = data.get("odata.nextLink")
            if not next_link:
                break
            data = self._request("GET", next_link)

        return results

    # =========================
    # Site and libraries
    # =========================

    def connect(self) -> dict[str, Any]:
        """Validate the token and fetch basic site information.

        Returns:
            Site information with ``Title`` and ``ServerRelativeUrl``

        Raises:
            SharePointAuthenticationError: If the token is rejected
        """
        web = self._request(
            "GET", "web", params={"$select": "Title,ServerRelativeUrl"}
        )
        url = web.get("ServerRelativeUrl")
        if url is not None:
            self.server_relative_url = url.rstrip("/")
        return web

    def list_document_libraries(self) -> list[DocumentLibrary]:
        """List the visible document libraries of the site."""
        items = self._get_collection(
            "web/lists",
            params={
                "$filter": (
                    f"BaseTemplate eq {DOCUMENT_LIBRARY_TEMPLATE} and Hidden eq false"
                ),
                "$select": "Title,RootFolder/ServerRelativeUrl",
                "$expand": "RootFolder",
            },
        )
        return [DocumentLibrary.from_api_response(item) for item in items]

    # =========================
    # Folders and files
    # =========================

    def get_folder(self, path: str) -> FolderItem:
        """Get a folder by server-relative path.

        Raises:
            SharePointNotFoundError: If no folder exists at the path
        """
        data = self._request(
            "GET",
            f"web/GetFolderByServerRelativePath(decodedurl='{_path_literal(path)}')",
            params={"$select": f"{FOLDER_FIELDS},Exists"},
        )
        if not data or data.get("Exists") is False:
            raise SharePointNotFoundError(f"Folder not found: {path}")
        return FolderItem.from_api_response(data)

    def list_folder_children(self, path: str) -> list[RemoteItem]:
        """List the immediate subfolders and files of a folder."""
        base = f"web/GetFolderByServerRelativePath(decodedurl='{_path_literal(path)}')"
        folders = self._get_collection(
            f"{base}/Folders", params={"$select": FOLDER_FIELDS}
        )
        files = self._get_collection(f"{base}/Files", params={"$select": FILE_FIELDS})

        children: list[RemoteItem] = [
            FolderItem.from_api_response(folder) for folder in folders
        ]
        children.extend(FileItem.from_api_response(f) for f in files)
        return children

    def list_library_items(
        self,
        library: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        fields: tuple[str, ...] = LIST_ITEM_FIELDS,
        query: DateRangeQuery | None = None,
    ) -> list[RemoteItem]:
        """List items of a document library.

        Args:
            library: Library title
            page_size: Rows per page for one-level listings
            fields: List item fields to request
            query: Optional date-range filter. When given, the listing is
                recursive and returns at most ``query.row_limit`` rows in one
                request.

        Returns:
            Folders and files (files only when the query says so)

        Raises:
            SharePointThresholdError: If the result set exceeds the list
                view threshold
        """
        title = library.replace("'", "''")
        endpoint = f"web/lists/GetByTitle('{quote(title)}')/GetItems"
        select_fields = query.view_fields if query is not None else fields
        params = {"$select": ",".join(select_fields)}
        view_xml = build_view_xml(query=query, fields=fields, page_size=page_size)

        if query is not None:
            data = self._request(
                "POST", endpoint, params=params, json={"query": {"ViewXml": view_xml}}
            )
            return [item_from_list_item(row) for row in data.get("value", [])]

        items: list[RemoteItem] = []
        paging_info: str | None = None
        while True:
            body: dict[str, Any] = {"ViewXml": view_xml}
            if paging_info:
                body["ListItemCollectionPosition"] = {"PagingInfo": paging_info}
            data = self._request("POST", endpoint, params=params, json={"query": body})
            rows = data.get("value", [])
            items.extend(item_from_list_item(row) for row in rows)

            if len(rows) < page_size or not rows:
                break
            paging_info = f"Paged=TRUE&p_ID={rows[-1].get('ID')}"

        return items

    def get_file_metadata(self, path: str) -> FileItem:
        """Fetch created/modified timestamps of a file.

        Raises:
            SharePointNotFoundError: If the file does not exist
        """
        data = self._request(
            "GET",
            f"web/GetFileByServerRelativePath(decodedurl='{_path_literal(path)}')",
            params={"$select": FILE_FIELDS},
        )
        return FileItem.from_api_response(data)

    # =========================
    # Download Operations
    # =========================

    def download_file(self, path: str, destination: Path) -> int:
        """Stream a file's content to a local path.

        Args:
            path: Server-relative path of the file
            destination: Local file to write (overwritten)

        Returns:
            Number of bytes written

        Raises:
            SharePointDownloadError: If the download fails
        """
        url = (
            f"{self.api_url}/web/GetFileByServerRelativePath"
            f"(decodedurl='{_path_literal(path)}')/$value"
        )
        client = self._get_client()
        bytes_written = 0

        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=65536):
                        if chunk:
                            f.write(chunk)
                            bytes_written += len(chunk)
            return bytes_written

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 404:
                raise SharePointNotFoundError(f"File not found: {path}") from e
            raise SharePointDownloadError(
                f"Download failed with status {status_code}: {path}"
            ) from e
        except httpx.RequestError as e:
            raise SharePointNetworkError(f"Network error during download: {e}") from e
        except OSError as e:
            raise SharePointDownloadError(f"Failed to write file: {e}") from e
