"""
Notion API wrapper for the clients database.

Provides a high-level interface to the Notion API for:
- Fetching a single page as a SourceRecord
- Querying the clients database with cursor pagination and an optional
  last-edited filter
- Extracting the plain text of a page's child blocks
- Rate limiting of every call and exponential backoff on 429 responses

Errors are classified so callers can tell a deleted page (the only signal
that may remove a tenant) from a transient failure.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from notion_client import APIErrorCode, APIResponseError, Client
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from tenant_sync.api.rate_limit import RateLimiter
from tenant_sync.sync.record import SourceRecord, blocks_to_text

# Maximum page size accepted by Notion list endpoints
DEFAULT_PAGE_SIZE = 100

# Retry configuration defaults (429 responses only)
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Base class for Notion source failures."""

    pass


class RecordNotFoundError(SourceError):
    """Raised when a page is gone, archived or in the trash."""

    def __init__(self, record_id: str, message: Optional[str] = None):
        self.record_id = record_id
        super().__init__(message or f"Record not found: {record_id}")


class TransientSourceError(SourceError):
    """Raised for failures that may succeed later (5xx, timeouts, network)."""

    pass


class RateLimitError(TransientSourceError):
    """Raised when rate limit retries are exhausted."""

    pass


class NotionSource:
    """
    Notion API wrapper for the clients database.

    Attributes:
        client: notion_client.Client used for all requests
        rate_limiter: Spacing applied before every request
        max_retries: Attempts made for rate limited requests

    Usage:
        source = NotionSource(token="secret_...")
        record = source.get_record(page_id)
        records = source.query_collection(database_id, modified_after=since)
        page_info = source.get_child_content(page_id)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        client: Optional[Client] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the Notion source.

        Args:
            token: Notion integration token. Ignored when client is given.
            client: Preconfigured notion_client.Client (used by tests)
            rate_limiter: Shared limiter; a default 0.35s limiter otherwise
            timeout: Per-request timeout in seconds
            max_retries: Attempts for rate limited requests
            initial_retry_delay: First backoff delay in seconds
            max_retry_delay: Backoff ceiling in seconds
            sleep: Sleep function used for backoff
        """
        if client is None:
            if not token:
                raise ValueError("A Notion token or client is required")
            client = Client(auth=token, timeout_ms=int(timeout * 1000))
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep

    def _call(
        self,
        operation: Callable[[], Any],
        operation_name: str,
        record_id: Optional[str] = None,
    ) -> Any:
        """
        Execute one API request with rate limiting and error classification.

        Rate limited responses are retried with exponential backoff, honoring
        Retry-After when Notion sends it. Every other failure is raised
        immediately.

        Raises:
            RecordNotFoundError: For 404 / object_not_found when record_id is set
            RateLimitError: If retries are exhausted due to rate limits
            TransientSourceError: For 5xx, timeouts and network errors
            SourceError: For other API errors
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            self.rate_limiter.wait()
            try:
                return operation()

            except APIResponseError as e:
                if e.code == APIErrorCode.RateLimited or e.status == 429:
                    if attempt < self.max_retries - 1:
                        wait = _retry_after(e) or delay
                        logger.warning(
                            f"{operation_name} rate limited, retrying in "
                            f"{wait:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                        )
                        self._sleep(wait)
                        delay = min(delay * 2, self.max_retry_delay)
                        continue
                    raise RateLimitError(
                        f"Rate limit exceeded for {operation_name} "
                        f"after {self.max_retries} attempts"
                    ) from e

                if record_id and (
                    e.code == APIErrorCode.ObjectNotFound or e.status == 404
                ):
                    raise RecordNotFoundError(record_id) from e

                if e.status >= 500:
                    raise TransientSourceError(
                        f"{operation_name} failed with status {e.status}: {e}"
                    ) from e

                logger.error(f"{operation_name} failed with status {e.status}: {e}")
                raise SourceError(f"{operation_name} failed: {e}") from e

            except RequestTimeoutError as e:
                raise TransientSourceError(f"{operation_name} timed out") from e

            except HTTPResponseError as e:
                if record_id and e.status == 404:
                    raise RecordNotFoundError(record_id) from e
                raise TransientSourceError(
                    f"{operation_name} failed with status {e.status}: {e}"
                ) from e

            except httpx.HTTPError as e:
                raise TransientSourceError(f"{operation_name} failed: {e}") from e

        raise RateLimitError(f"{operation_name} failed after all retries")

    def get_record(self, record_id: str, include_archived: bool = False) -> SourceRecord:
        """
        Fetch one page.

        Args:
            record_id: Notion page id
            include_archived: Return archived or trashed pages instead of
                              treating them as not found

        Raises:
            RecordNotFoundError: If the page does not exist or is archived
            TransientSourceError: If Notion could not be reached
        """
        page = self._call(
            lambda: self.client.pages.retrieve(page_id=record_id),
            f"get_record({record_id})",
            record_id=record_id,
        )
        record = SourceRecord.from_api_response(page)
        if record.archived and not include_archived:
            raise RecordNotFoundError(record_id, f"Record archived: {record_id}")
        return record

    def query_collection(
        self, collection_id: str, modified_after: Optional[datetime] = None
    ) -> list[SourceRecord]:
        """
        Return every live page of a database, following pagination cursors.

        Args:
            collection_id: Notion database id
            modified_after: Only pages edited strictly after this instant

        Returns:
            List of SourceRecord objects; archived pages are skipped
        """
        query_filter = None
        if modified_after is not None:
            if modified_after.tzinfo is None:
                modified_after = modified_after.replace(tzinfo=timezone.utc)
            query_filter = {
                "timestamp": "last_edited_time",
                "last_edited_time": {"after": modified_after.isoformat()},
            }

        records: list[SourceRecord] = []
        cursor: Optional[str] = None
        page_count = 0

        while True:
            kwargs: dict[str, Any] = {
                "database_id": collection_id,
                "page_size": DEFAULT_PAGE_SIZE,
            }
            if query_filter:
                kwargs["filter"] = query_filter
            if cursor:
                kwargs["start_cursor"] = cursor

            response = self._call(
                lambda: self.client.databases.query(**kwargs),
                f"query_collection({collection_id})",
            )
            page_count += 1

            for page in response.get("results", []):
                record = SourceRecord.from_api_response(page)
                if not record.archived:
                    records.append(record)

            if not response.get("has_more"):
                break
            cursor = response.get("next_cursor")
            if not cursor:
                break

        logger.debug(
            f"Fetched {len(records)} records from {collection_id} "
            f"in {page_count} page(s)"
        )
        return records

    def get_child_content(self, record_id: str) -> str:
        """
        Plain text of a page's child blocks, one block per line.

        Raises:
            RecordNotFoundError: If the page does not exist
            TransientSourceError: If Notion could not be reached
        """
        lines: list[str] = []
        cursor: Optional[str] = None

        while True:
            kwargs: dict[str, Any] = {
                "block_id": record_id,
                "page_size": DEFAULT_PAGE_SIZE,
            }
            if cursor:
                kwargs["start_cursor"] = cursor

            response = self._call(
                lambda: self.client.blocks.children.list(**kwargs),
                f"get_child_content({record_id})",
                record_id=record_id,
            )
            lines.extend(blocks_to_text(response.get("results", [])))

            if not response.get("has_more"):
                break
            cursor = response.get("next_cursor")
            if not cursor:
                break

        return "\n".join(lines)


def _retry_after(error: APIResponseError) -> Optional[float]:
    """Seconds from a Retry-After header, if Notion sent one."""
    headers = getattr(error, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
