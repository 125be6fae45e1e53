"""Unit tests for the SharePoint API client."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from spmirror.api import SharePointClient, build_view_xml, is_threshold_message
from spmirror.exceptions import (
    SharePointAPIError,
    SharePointAuthenticationError,
    SharePointConfigError,
    SharePointInvalidResponseError,
    SharePointNotFoundError,
    SharePointPermissionError,
    SharePointRateLimitError,
    SharePointThresholdError,
)
from spmirror.models import DateRangeQuery, FileItem, FolderItem

SITE_URL = "https://contoso.sharepoint.com/sites/team"


def make_client(handler, **kwargs) -> SharePointClient:
    """Create a client whose HTTP traffic is served by ``handler``."""
    client = SharePointClient(
        site_url=SITE_URL, access_token="token", retry_delay=0.0, **kwargs
    )
    client._client = httpx.Client(transport=httpx.MockTransport(handler))
    return client


def json_response(status: int, data: dict) -> httpx.Response:
    return httpx.Response(
        status,
        content=json.dumps(data).encode(),
        headers={"Content-Type": "application/json;odata=nometadata"},
    )


def odata_error(message: str, code: str = "") -> dict:
    return {"odata.error": {"code": code, "message": {"value": message}}}


class TestSharePointClient:
    """Tests for client initialization."""

    def test_init(self):
        """Test client initialization with explicit settings."""
        client = SharePointClient(site_url=SITE_URL + "/", access_token="token")
        assert client.site_url == SITE_URL
        assert client.api_url == f"{SITE_URL}/_api"
        assert client.server_relative_url == "/sites/team"

    def test_init_without_token_raises_error(self):
        """Test that a missing token raises a configuration error."""
        with patch("spmirror.api.config") as mock_config:
            mock_config.access_token = None
            mock_config.site_url = None
            with pytest.raises(SharePointConfigError, match="Access token"):
                SharePointClient(site_url=SITE_URL)

    def test_init_without_site_raises_error(self):
        """Test that a missing site URL raises a configuration error."""
        with patch("spmirror.api.config") as mock_config:
            mock_config.site_url = None
            with pytest.raises(SharePointConfigError, match="Site URL"):
                SharePointClient(access_token="token")

    def test_headers_set_correctly(self):
        """Test the bearer token and OData headers are sent."""
        client = SharePointClient(site_url=SITE_URL, access_token="secret")
        http = client._get_client()
        try:
            assert http.headers["Authorization"] == "Bearer secret"
            assert "odata=nometadata" in http.headers["Accept"]
        finally:
            client.close()


class TestAPIRequest:
    """Tests for the _request method."""

    def test_successful_json_response(self):
        """Test a successful request returns parsed JSON."""
        client = make_client(lambda request: json_response(200, {"Title": "Team"}))
        assert client._request("GET", "web") == {"Title": "Team"}

    def test_empty_response(self):
        """Test an empty body returns an empty dict."""
        client = make_client(lambda request: httpx.Response(204))
        assert client._request("GET", "web") == {}

    def test_html_response_raises_auth_error(self):
        """Test a sign-in page is reported as an authentication failure."""
        client = make_client(
            lambda request: httpx.Response(
                200, content=b"<html></html>", headers={"Content-Type": "text/html"}
            )
        )
        with pytest.raises(SharePointAuthenticationError, match="HTML"):
            client._request("GET", "web")

    def test_unexpected_content_type(self):
        """Test other content types raise an invalid response error."""
        client = make_client(
            lambda request: httpx.Response(
                200, content=b"x", headers={"Content-Type": "text/plain"}
            )
        )
        with pytest.raises(SharePointInvalidResponseError):
            client._request("GET", "web")

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, SharePointAuthenticationError),
            (403, SharePointPermissionError),
            (404, SharePointNotFoundError),
        ],
    )
    def test_client_errors(self, status, error):
        """Test HTTP status codes map to exceptions without retrying."""
        calls = []

        def handler(request):
            calls.append(request)
            return json_response(status, odata_error("nope"))

        client = make_client(handler)
        with pytest.raises(error):
            client._request("GET", "web")
        assert len(calls) == 1

    def test_threshold_error_is_not_retried(self):
        """Test the list view threshold error is raised immediately."""
        calls = []

        def handler(request):
            calls.append(request)
            return json_response(
                500,
                odata_error(
                    "The attempted operation is prohibited because it exceeds "
                    "the list view threshold.",
                    "-2147024860, Microsoft.SharePoint.SPQueryThrottledException",
                ),
            )

        client = make_client(handler)
        with pytest.raises(SharePointThresholdError, match="list view threshold"):
            client._request("POST", "web/lists/GetByTitle('Proj_A')/GetItems")
        assert len(calls) == 1

    @patch("spmirror.api.time.sleep")
    def test_server_error_is_retried(self, mock_sleep):
        """Test 5xx responses are retried before succeeding."""
        responses = [
            json_response(503, odata_error("busy")),
            json_response(200, {"ok": True}),
        ]
        client = make_client(lambda request: responses.pop(0))

        assert client._request("GET", "web") == {"ok": True}
        mock_sleep.assert_called_once()

    @patch("spmirror.api.time.sleep")
    def test_rate_limit_uses_retry_after(self, mock_sleep):
        """Test 429 responses honor the Retry-After header."""
        responses = [
            httpx.Response(429, headers={"Retry-After": "7"}),
            json_response(200, {"ok": True}),
        ]
        client = make_client(lambda request: responses.pop(0))

        assert client._request("GET", "web") == {"ok": True}
        mock_sleep.assert_called_once_with(7.0)

    @patch("spmirror.api.time.sleep")
    def test_rate_limit_exhausted(self, mock_sleep):
        """Test a persistent 429 raises after all retries."""
        client = make_client(lambda request: httpx.Response(429), max_retries=2)
        with pytest.raises(SharePointRateLimitError):
            client._request("GET", "web")
        assert mock_sleep.call_count == 2

    @patch("spmirror.api.time.sleep")
    def test_error_message_is_extracted(self, mock_sleep):
        """Test the server's error text is included in the exception."""
        client = make_client(
            lambda request: json_response(500, odata_error("Something broke")),
            max_retries=0,
        )
        with pytest.raises(SharePointAPIError, match="Something broke"):
            client._request("GET", "web")


class TestViewXml:
    """Tests for CAML view construction."""

    def test_one_level_view(self):
        """Test a plain listing is paged and not recursive."""
        xml = build_view_xml(page_size=500)
        assert "RecursiveAll" not in xml
        assert "<RowLimit Paged='TRUE'>500</RowLimit>" in xml
        assert "<FieldRef Name='FileRef'/>" in xml

    def test_date_range_view(self):
        """Test a date-range query is recursive, half-open and files only."""
        query = DateRangeQuery(
            field_name="Modified",
            start=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )
        xml = build_view_xml(query=query)

        assert xml.startswith("<View Scope='RecursiveAll'>")
        assert "<Geq><FieldRef Name='Modified'/>" in xml
        assert "2024-01-01T00:00:00Z</Value></Geq>" in xml
        assert "2024-01-02T00:00:00Z</Value></Lt>" in xml
        assert "<FieldRef Name='FSObjType'/><Value Type='Integer'>0</Value>" in xml
        assert "<RowLimit>5000</RowLimit>" in xml

    def test_threshold_message_detection(self):
        """Test threshold error texts are recognized."""
        assert is_threshold_message("exceeds the List View Threshold")
        assert is_threshold_message("Microsoft.SharePoint.SPQueryThrottledException")
        assert not is_threshold_message("Access denied")


class TestEndpoints:
    """Tests for the typed endpoint methods."""

    def test_connect_updates_server_relative_url(self):
        """Test connect() reads the site's server-relative URL."""
        client = make_client(
            lambda request: json_response(
                200, {"Title": "Team", "ServerRelativeUrl": "/sites/Team"}
            )
        )
        web = client.connect()
        assert web["Title"] == "Team"
        assert client.server_relative_url == "/sites/Team"

    @patch("spmirror.api.SharePointClient._request")
    def test_list_document_libraries(self, mock_request):
        """Test libraries are parsed with their root folder URL."""
        mock_request.return_value = {
            "value": [
                {
                    "Title": "Proj_A",
                    "RootFolder": {"ServerRelativeUrl": "/sites/team/Proj_A"},
                }
            ]
        }
        client = SharePointClient(site_url=SITE_URL, access_token="token")

        libraries = client.list_document_libraries()

        assert [(lib.title, lib.server_relative_url) for lib in libraries] == [
            ("Proj_A", "/sites/team/Proj_A")
        ]
        params = mock_request.call_args.kwargs["params"]
        assert "BaseTemplate eq 101" in params["$filter"]

    @patch("spmirror.api.SharePointClient._request")
    def test_get_folder_missing(self, mock_request):
        """Test a folder reported as non-existent raises not found."""
        mock_request.return_value = {"Exists": False}
        client = SharePointClient(site_url=SITE_URL, access_token="token")
        with pytest.raises(SharePointNotFoundError):
            client.get_folder("/sites/team/Nope")

    def test_list_folder_children(self):
        """Test subfolders and files are listed together."""

        def handler(request):
            if request.url.path.endswith("/Folders"):
                return json_response(
                    200,
                    {
                        "value": [
                            {
                                "Name": "Sub_1",
                                "ServerRelativeUrl": "/sites/team/Proj_A/Sub_1",
                                "TimeCreated": "2021-01-01T00:00:00Z",
                                "TimeLastModified": "2021-01-02T00:00:00Z",
                            }
                        ]
                    },
                )
            return json_response(
                200,
                {
                    "value": [
                        {
                            "Name": "a.txt",
                            "ServerRelativeUrl": "/sites/team/Proj_A/a.txt",
                            "TimeCreated": "2022-01-01T00:00:00Z",
                            "TimeLastModified": "2022-01-02T00:00:00Z",
                            "Length": "12",
                        }
                    ]
                },
            )

        client = make_client(handler)
        children = client.list_folder_children("/sites/team/Proj_A")

        assert isinstance(children[0], FolderItem)
        assert isinstance(children[1], FileItem)
        assert children[1].size == 12
        assert children[1].time_created == datetime(2022, 1, 1, tzinfo=timezone.utc)

    @patch("spmirror.api.SharePointClient._request")
    def test_list_library_items_pages(self, mock_request):
        """Test one-level listings follow paging positions."""
        row = {
            "FileRef": "/sites/team/Proj_A/f.txt",
            "FileLeafRef": "f.txt",
            "FSObjType": 0,
        }
        mock_request.side_effect = [
            {"value": [dict(row, ID=1), dict(row, ID=2)]},
            {"value": [dict(row, ID=3)]},
        ]
        client = SharePointClient(site_url=SITE_URL, access_token="token")

        items = client.list_library_items("Proj_A", page_size=2)

        assert len(items) == 3
        second_body = mock_request.call_args_list[1].kwargs["json"]["query"]
        assert second_body["ListItemCollectionPosition"] == {
            "PagingInfo": "Paged=TRUE&p_ID=2"
        }

    @patch("spmirror.api.SharePointClient._request")
    def test_list_library_items_query(self, mock_request):
        """Test a date-range query is sent as a single request."""
        mock_request.return_value = {
            "value": [
                {
                    "FileRef": "/sites/team/Proj_A/Sub_1/f.txt",
                    "FileLeafRef": "f.txt",
                    "FSObjType": "0",
                    "Modified": "2024-01-01T05:00:00Z",
                }
            ]
        }
        client = SharePointClient(site_url=SITE_URL, access_token="token")
        query = DateRangeQuery(
            field_name="Modified",
            start=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )

        items = client.list_library_items("Proj_A", query=query)

        assert mock_request.call_count == 1
        assert items[0].server_relative_url == "/sites/team/Proj_A/Sub_1/f.txt"
        view = mock_request.call_args.kwargs["json"]["query"]["ViewXml"]
        assert "RecursiveAll" in view

    def test_download_file(self, tmp_path):
        """Test file content is streamed to disk."""

        def handler(request):
            assert request.url.path.endswith("/$value")
            return httpx.Response(200, content=b"hello world")

        client = make_client(handler)
        destination = tmp_path / "out.txt"

        size = client.download_file("/sites/team/Proj_A/a.txt", destination)

        assert size == 11
        assert destination.read_bytes() == b"hello world"

    def test_download_missing_file(self, tmp_path):
        """Test a 404 during download raises not found."""
        client = make_client(lambda request: httpx.Response(404))
        with pytest.raises(SharePointNotFoundError):
            client.download_file("/sites/team/gone.txt", tmp_path / "gone.txt")
