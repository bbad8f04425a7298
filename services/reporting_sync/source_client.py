"""
Paginated, watermark-filtered reader for the source data API.

The source exposes one REST list endpoint per table (``/rest/v1/<table>``)
accepting a column projection, an ascending sort, an optional ``gt.`` filter
on a watermark column and a ``Range`` header page selector. Responses may
carry ``Content-Range: <start>-<end>/<total>``.

No retries: a failed request surfaces as FetchError and the next scheduled
run resumes from the last committed watermark.
"""

import re
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .errors import FetchError

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 1000
DEFAULT_MAX_OFFSET = 1_000_000

_CONTENT_RANGE_TOTAL = re.compile(r"/(\d+|\*)\s*$")

# Truncate error bodies carried on FetchError
_MAX_ERROR_BODY = 2000


def parse_content_range_total(header: Optional[str]) -> Optional[int]:
    """
    Extract the total from a Content-Range header.

    Returns None when the header is absent or the total is unknown ("*").

    Example:
        >>> parse_content_range_total("0-999/5000")
        5000
    """
    if not header:
        return None
    match = _CONTENT_RANGE_TOTAL.search(header)
    if not match or match.group(1) == "*":
        return None
    return int(match.group(1))


class SourceClient:
    """
    Read-only client for the source data API using the service key.

    Usable as a context manager; owns one httpx.Client for its lifetime.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        **client_kwargs
    ):
        """
        Initialize source client.

        Args:
            base_url: Source API base URL (no trailing slash required)
            service_key: Service key sent as ``apikey`` and bearer token
            timeout: Request timeout in seconds
            headers: Extra default headers
            **client_kwargs: Additional arguments for httpx.Client
                (e.g. ``transport`` in tests)
        """
        self.base_url = base_url.rstrip("/")
        default_headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        if headers:
            default_headers.update(headers)

        client_kwargs.setdefault("timeout", timeout)
        self._client = httpx.Client(headers=default_headers, **client_kwargs)

    @classmethod
    def from_settings(cls, config, **client_kwargs) -> "SourceClient":
        """Build a client from ReportingSyncSettings."""
        return cls(
            config.source_api_url,
            config.source_service_key,
            timeout=config.source_timeout,
            headers=config.get_source_headers(),
            **client_kwargs
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._client.close()

    def close(self):
        """Close the underlying HTTP client."""
        self._client.close()

    def _fetch_page(
        self,
        table: str,
        params: Dict[str, str],
        offset: int,
        page_size: int,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        headers = {
            "Range": f"{offset}-{offset + page_size - 1}",
            "Prefer": "count=exact",
        }

        try:
            response = self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise FetchError(table, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY]
            raise FetchError(table, body, status_code=response.status_code, body=body)

        return response

    def fetch_all(
        self,
        table: str,
        select_columns: str = "*",
        watermark: Optional[str] = None,
        watermark_column: str = "created_at",
        page_size: int = DEFAULT_PAGE_SIZE,
        order_column: Optional[str] = None,
        max_records: Optional[int] = None,
        max_offset: int = DEFAULT_MAX_OFFSET,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every row newer than the watermark, in ascending order.

        Pagination stops when a short page arrives, the server-reported total
        is reached, ``max_records`` rows have been accumulated, or the offset
        passes ``max_offset``. Pages are never truncated, so the result may
        exceed ``max_records`` by less than one page.

        The cap never ends the fetch inside a run of rows sharing one
        ``watermark_column`` value: paging continues until a page ends past
        the value of the row at the cap. Otherwise a run of tied rows longer
        than the cap could never be fetched past by the ``gt.`` filter.

        Args:
            table: Source table name
            select_columns: Comma-separated column projection
            watermark: Exclusive lower bound on ``watermark_column``
            watermark_column: Column the watermark filters on
            page_size: Rows per request
            order_column: Ascending sort column (defaults to ``watermark_column``)
            max_records: Stop once this many rows are accumulated
            max_offset: Safety ceiling on the pagination offset

        Returns:
            Rows in ascending ``order_column`` order

        Raises:
            FetchError: Non-success status, transport error, or non-list body
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")

        order_column = order_column or watermark_column
        params = {
            "select": select_columns,
            "order": f"{order_column}.asc",
        }
        if watermark:
            params[watermark_column] = f"gt.{watermark}"

        records: List[Dict[str, Any]] = []
        offset = 0
        pages = 0
        start_time = time.monotonic()

        while True:
            response = self._fetch_page(table, params, offset, page_size)
            try:
                page = response.json()
            except ValueError as e:
                raise FetchError(table, f"Malformed JSON response: {e}",
                                 status_code=response.status_code) from e
            if not isinstance(page, list):
                raise FetchError(table, f"Expected a JSON list, got {type(page).__name__}",
                                 status_code=response.status_code)

            records.extend(page)
            pages += 1

            if max_records and len(records) >= max_records:
                boundary = records[max_records - 1].get(watermark_column)
                if boundary is None or records[-1].get(watermark_column) != boundary:
                    logger.info("Reached max records limit", table=table, max_records=max_records,
                                records=len(records))
                    break

            total = parse_content_range_total(response.headers.get("content-range"))
            if total is not None and offset + page_size >= total:
                break

            if len(page) < page_size:
                break

            offset += page_size
            if offset > max_offset:
                logger.warning("Pagination safety limit reached", table=table, offset=offset)
                break

        logger.info(
            "Fetched source records",
            table=table,
            records=len(records),
            pages=pages,
            watermark=watermark,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
        return records
