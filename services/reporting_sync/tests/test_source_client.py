"""
Tests for the paginated source API client.

Uses httpx.MockTransport so requests go through a real httpx.Client.
"""

import httpx
import pytest

from services.reporting_sync.errors import FetchError
from services.reporting_sync.source_client import SourceClient, parse_content_range_total


def make_client(handler) -> SourceClient:
    return SourceClient(
        "https://source.example.com/",
        "svc-key",
        transport=httpx.MockTransport(handler),
    )


def paged_handler(rows, requests, total_header=True):
    """Serve `rows` honouring the Range header, recording each request."""
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        start, end = (int(x) for x in request.headers["Range"].split("-"))
        page = rows[start:end + 1]
        headers = {}
        if total_header:
            last = start + len(page) - 1 if page else start
            headers["Content-Range"] = f"{start}-{last}/{len(rows)}"
        return httpx.Response(206 if page else 200, json=page, headers=headers)
    return handler


class TestContentRange:
    """Test Content-Range parsing."""

    @pytest.mark.parametrize("header,expected", [
        ("0-999/5000", 5000),
        ("0-0/1", 1),
        ("*/0", 0),
        ("0-999/*", None),
        ("", None),
        (None, None),
        ("garbage", None),
    ])
    def test_parse(self, header, expected):
        assert parse_content_range_total(header) == expected


class TestFetchAll:
    """Test pagination, filtering and termination."""

    def test_request_shape(self):
        """Projection, ordering, watermark filter and auth headers are sent."""
        requests = []
        client = make_client(paged_handler([{"id": 1}], requests))

        client.fetch_all(
            "custom_usage_reports",
            select_columns="id,created_at",
            watermark="2025-01-01T00:00:00+00:00",
            watermark_column="created_at",
            page_size=10,
        )

        request = requests[0]
        assert request.url.path == "/rest/v1/custom_usage_reports"
        assert request.url.params["select"] == "id,created_at"
        assert request.url.params["order"] == "created_at.asc"
        assert request.url.params["created_at"] == "gt.2025-01-01T00:00:00+00:00"
        assert request.headers["apikey"] == "svc-key"
        assert request.headers["Authorization"] == "Bearer svc-key"
        assert request.headers["Range"] == "0-9"
        assert request.headers["Prefer"] == "count=exact"

    def test_no_watermark_filter_without_watermark(self):
        requests = []
        client = make_client(paged_handler([], requests))

        client.fetch_all("endpoints", watermark=None, watermark_column="updated_at")

        assert "updated_at" not in requests[0].url.params
        assert requests[0].url.params["order"] == "updated_at.asc"

    def test_order_column_override(self):
        requests = []
        client = make_client(paged_handler([], requests))

        client.fetch_all("active_bundles", watermark_column="created_at", order_column="collected_at")

        assert requests[0].url.params["order"] == "collected_at.asc"

    def test_paginates_until_total(self):
        """Pages advance by page size and stop at the reported total."""
        rows = [{"id": i} for i in range(25)]
        requests = []
        client = make_client(paged_handler(rows, requests))

        result = client.fetch_all("endpoints", page_size=10)

        assert result == rows
        assert [r.headers["Range"] for r in requests] == ["0-9", "10-19", "20-29"]

    def test_exact_multiple_stops_on_total(self):
        """A full last page does not trigger an extra empty request when the total is known."""
        rows = [{"id": i} for i in range(20)]
        requests = []
        client = make_client(paged_handler(rows, requests))

        result = client.fetch_all("endpoints", page_size=10)

        assert len(result) == 20
        assert len(requests) == 2

    def test_short_page_stops_without_total(self):
        rows = [{"id": i} for i in range(15)]
        requests = []
        client = make_client(paged_handler(rows, requests, total_header=False))

        result = client.fetch_all("endpoints", page_size=10)

        assert len(result) == 15
        assert len(requests) == 2

    def test_unknown_total_keeps_paging(self):
        """A '*' total is not a stop condition."""
        rows = [{"id": i} for i in range(15)]
        requests = []

        def handler(request):
            requests.append(request)
            start, end = (int(x) for x in request.headers["Range"].split("-"))
            return httpx.Response(200, json=rows[start:end + 1],
                                  headers={"Content-Range": f"{start}-{end}/*"})

        client = make_client(handler)
        result = client.fetch_all("endpoints", page_size=10)

        assert len(result) == 15
        assert len(requests) == 2

    def test_max_records_stops_on_whole_pages(self):
        """The cap is checked after each page; the page is not truncated."""
        rows = [{"id": i} for i in range(100)]
        requests = []
        client = make_client(paged_handler(rows, requests))

        result = client.fetch_all("custom_usage_reports", page_size=10, max_records=25)

        assert len(result) == 30
        assert len(requests) == 3

    def test_max_records_runs_through_tie(self):
        """A cap landing inside rows sharing one created_at keeps paging past them."""
        created = ["t1", "t2", "t2", "t2", "t3", "t4", "t5"]
        rows = [{"id": i, "created_at": f"2025-01-05T10:00:0{c[1]}+00:00"} for i, c in enumerate(created)]
        requests = []
        client = make_client(paged_handler(rows, requests))

        result = client.fetch_all("custom_usage_reports", page_size=2, max_records=2)

        assert [r["id"] for r in result] == [0, 1, 2, 3, 4, 5]
        assert len(requests) == 3

    def test_max_records_stops_when_page_ends_past_cap_value(self):
        rows = [{"id": i, "created_at": f"2025-01-05T10:00:0{i}+00:00"} for i in range(6)]
        requests = []
        client = make_client(paged_handler(rows, requests))

        result = client.fetch_all("custom_usage_reports", page_size=3, max_records=2)

        assert len(result) == 3
        assert len(requests) == 1

    def test_max_offset_safety_limit(self):
        """Pagination stops once the offset passes the ceiling."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[{"id": 0}] * 10)

        client = make_client(handler)
        result = client.fetch_all("endpoints", page_size=10, max_offset=30)

        assert len(requests) == 4
        assert len(result) == 40


class TestFetchErrors:
    """Test failures surface as FetchError without retries."""

    def test_non_success_status(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(500, text="internal error")

        client = make_client(handler)
        with pytest.raises(FetchError) as exc_info:
            client.fetch_all("endpoints")

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "internal error"
        assert exc_info.value.table == "endpoints"
        assert "(500)" in str(exc_info.value)
        assert len(requests) == 1

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(FetchError, match="ConnectError"):
            client.fetch_all("endpoints")

    def test_non_list_body(self):
        client = make_client(lambda request: httpx.Response(200, json={"message": "nope"}))
        with pytest.raises(FetchError, match="Expected a JSON list"):
            client.fetch_all("endpoints")

    def test_malformed_json(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(FetchError, match="Malformed JSON"):
            client.fetch_all("endpoints")


class TestClientSetup:
    """Test construction from settings."""

    def test_from_settings(self, make_settings):
        config = make_settings(source_api_url="https://src.example.com/", source_timeout=12)
        requests = []

        client = SourceClient.from_settings(config, transport=httpx.MockTransport(paged_handler([], requests)))
        with client:
            client.fetch_all("endpoints")

        assert requests[0].url.host == "src.example.com"
        assert requests[0].headers["apikey"] == "test-service-key"
        assert requests[0].headers["User-Agent"].startswith("reporting-sync/")
