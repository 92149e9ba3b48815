"""
Table-scoped transport for the records API.

The transport issues the network calls and translates failures into two
kinds of errors: `ServerSideRateLimitError` for throttling (HTTP 429) and
`TransportError` for everything else. Retries are not its concern.

Available implementations:
    - RequestsTableTransport: Calls the REST API with `requests`.

Example:
    >>> from airbaker._transport import RequestsTableTransport
    >>> from airbaker._models import Table
    >>> transport = RequestsTableTransport(api_key="pat-123")
    >>> page = transport.select_page(Table("appXXXXXXXXXXXXXX", "Tasks"), {"page_size": 100})
    >>> page.records, page.offset
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, override
from urllib.parse import quote

import requests

from airbaker._models import Page, Record, Table

logger = logging.getLogger(__name__)

# Python option name -> API parameter name
SELECT_OPTION_NAMES: dict[str, str] = {
    "fields": "fields",
    "filter_by_formula": "filterByFormula",
    "max_records": "maxRecords",
    "page_size": "pageSize",
    "sort": "sort",
    "view": "view",
    "cell_format": "cellFormat",
    "time_zone": "timeZone",
    "user_locale": "userLocale",
    "return_fields_by_field_id": "returnFieldsByFieldId",
    "record_metadata": "recordMetadata",
}


# =============================================================================
# Exceptions
# =============================================================================


class TransportError(RuntimeError):
    """
    Raised when a call to the API fails.

    Keeps the diagnostic fields sent by the server so callers can inspect
    them after the error crosses the retry layer unchanged.

    Attributes:
        message: Human-readable message (from the API when available).
        status_code: HTTP status code, or None for network failures.
        error: API error type (e.g. "INVALID_REQUEST_UNKNOWN"), when available.
        response: The HTTP response, when available.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error: str | None = None,
        response: requests.Response | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error = error
        self.response = response

    def __str__(self) -> str:
        details = ", ".join(
            part for part in (
                self.error,
                f"HTTP {self.status_code}" if self.status_code is not None else None,
            ) if part
        )
        return f"{self.message} ({details})" if details else self.message


class ServerSideRateLimitError(TransportError):
    """
    Raised when the server returns HTTP 429 (Too Many Requests).

    The retry layer turns it into a delayed retry when rate limiting is
    active; otherwise it reaches the caller like any other TransportError.
    """

    def __init__(self, response: requests.Response | None = None):
        super().__init__(
            "Server rate limit exceeded (HTTP 429)",
            status_code=429,
            error="TOO_MANY_REQUESTS",
            response=response,
        )


# =============================================================================
# Abstract Base Class
# =============================================================================


class TableTransport(ABC):
    """
    Abstract base class for table-scoped API calls.

    Each method issues exactly one request, so the caller can gate every
    request (including every page of a select) individually.
    """

    @abstractmethod
    def select_page(
        self,
        table: Table,
        options: dict[str, Any] | None = None,
        offset: str | None = None,
    ) -> Page:
        """
        Fetch one page of records.

        Args:
            table: Table to read.
            options: Select options using Python names (see SELECT_OPTION_NAMES).
            offset: Continuation token returned by the previous page.

        Raises:
            ServerSideRateLimitError: On HTTP 429.
            TransportError: On any other failure.
        """
        pass

    @abstractmethod
    def create(
        self,
        table: Table,
        records: list[dict[str, Any]],
        typecast: bool = True,
    ) -> list[Record]:
        """Create records from a list of field mappings (one request)."""
        pass

    @abstractmethod
    def update(
        self,
        table: Table,
        records: list[dict[str, Any]],
        typecast: bool = True,
    ) -> list[Record]:
        """Patch records given as `{"id": ..., "fields": {...}}` (one request)."""
        pass


# =============================================================================
# Requests Implementation
# =============================================================================


class RequestsTableTransport(TableTransport):
    """
    TableTransport calling the REST API with `requests`.

    Selects are sent as `POST .../listRecords` so long formulas are not
    limited by the maximum URL length of GET requests.

    Args:
        api_key: Personal access token, sent as bearer credential.
        base_url: Root URL of the API.
        request_timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.airtable.com",
        request_timeout: int = 30,
    ):
        assert api_key, "API key can not be empty."
        assert base_url, "Base URL can not be empty."
        assert request_timeout > 0, "Timeout must be greater than 0."

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout

    def table_url(self, table: Table) -> str:
        return f"{self.base_url}/v0/{quote(table.base_id, safe='')}/{quote(table.name, safe='')}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @override
    def select_page(
        self,
        table: Table,
        options: dict[str, Any] | None = None,
        offset: str | None = None,
    ) -> Page:
        body = to_api_options(options or {})
        if offset is not None:
            body["offset"] = offset

        data = self._send("POST", f"{self.table_url(table)}/listRecords", body)
        return Page(
            records=[Record.from_api(r) for r in data.get("records", [])],
            offset=data.get("offset"),
        )

    @override
    def create(
        self,
        table: Table,
        records: list[dict[str, Any]],
        typecast: bool = True,
    ) -> list[Record]:
        body = {
            "records": [{"fields": fields} for fields in records],
            "typecast": typecast,
        }
        data = self._send("POST", self.table_url(table), body)
        return [Record.from_api(r) for r in data.get("records", [])]

    @override
    def update(
        self,
        table: Table,
        records: list[dict[str, Any]],
        typecast: bool = True,
    ) -> list[Record]:
        body = {
            "records": [{"id": r["id"], "fields": r.get("fields", {})} for r in records],
            "typecast": typecast,
        }
        data = self._send("PATCH", self.table_url(table), body)
        return [Record.from_api(r) for r in data.get("records", [])]

    def _send(self, method: str, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = requests.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            logger.debug(f"{method} {url} failed: {type(e).__name__}: {e}")
            raise TransportError(f"Request to {url} failed: {e}", error=type(e).__name__) from e

        logger.debug(f"{method} {url} -> HTTP {response.status_code}")
        raise_for_status(response)

        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid JSON response from {url}",
                status_code=response.status_code,
                response=response,
            ) from e
        return data


def to_api_options(options: dict[str, Any]) -> dict[str, Any]:
    """
    Rename select options to API parameter names, dropping None values.

    Raises:
        ValueError: If an option is unknown.
    """
    check_select_options(options)
    return {
        SELECT_OPTION_NAMES[name]: value
        for name, value in options.items()
        if value is not None
    }


def check_select_options(options: Mapping[str, Any]) -> None:
    """Raise ValueError if `options` holds a name that is not a select option."""
    unknown = set(options) - set(SELECT_OPTION_NAMES)
    if unknown:
        raise ValueError(
            f"Unknown select options: {sorted(unknown)}. "
            f"Valid options are: {sorted(SELECT_OPTION_NAMES)}"
        )


def raise_for_status(response: requests.Response) -> None:
    """
    Raise the transport error matching a failed response.

    Raises:
        ServerSideRateLimitError: On HTTP 429.
        TransportError: On any other non-2xx status.
    """
    if response.ok:
        return

    if response.status_code == 429:
        raise ServerSideRateLimitError(response)

    error, message = _parse_error_body(response)
    raise TransportError(
        message or f"HTTP {response.status_code} {response.reason}",
        status_code=response.status_code,
        error=error,
        response=response,
    )


def _parse_error_body(response: requests.Response) -> tuple[str | None, str | None]:
    # The API sends either {"error": "TYPE"} or {"error": {"type": ..., "message": ...}}
    try:
        payload = response.json()
    except ValueError:
        return None, None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("type"), error.get("message")
    if isinstance(error, str):
        return error, None
    return None, None
