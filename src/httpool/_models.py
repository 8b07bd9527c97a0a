"""
Data models for requests issued through a Client.

This module contains the data classes describing an outgoing request
(``RequestData`` plus one of the body variants) and the response
received back (``ResponseData``).

A request carries at most one body. The variants are:
    - RawBody: bytes, text or a binary stream sent as-is.
    - JsonBody: any JSON-serializable payload.
    - FormBody: multipart/form-data fields and files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    import requests


# =============================================================================
# Body Variants
# =============================================================================


@dataclass(frozen=True)
class RawBody:
    """
    Raw request body, sent without any encoding.

    Attributes:
        data: Bytes, text or a binary file-like object.
        content_type: Optional Content-Type header for the body.
    """
    data: bytes | str | IO[bytes]
    content_type: str | None = None


@dataclass(frozen=True)
class JsonBody:
    """
    JSON request body.

    Attributes:
        payload: Any JSON-serializable value.
    """
    payload: Any


@dataclass(frozen=True)
class FormBody:
    """
    Multipart form request body.

    Always encoded as ``multipart/form-data``, even when there are no files.

    Attributes:
        fields: Plain form fields.
        files: Files keyed by form field name. Values are paths (opened and
            closed by the client) or binary file-like objects (left open).
    """
    fields: dict[str, str] = field(default_factory=dict)
    files: dict[str, str | Path | IO[bytes]] = field(default_factory=dict)


# Type alias for the request body variants
Body = RawBody | JsonBody | FormBody


# =============================================================================
# Request
# =============================================================================


def _as_multi_valued(values: dict[str, Any] | None) -> dict[str, list[str]]:
    if not values:
        return {}
    return {
        key: [value] if isinstance(value, str) else list(value)
        for key, value in values.items()
    }


@dataclass
class RequestData:
    """
    Represents an HTTP request to be issued by a Client.

    Query parameters and headers are multi-valued. A plain string value is
    accepted and treated as a single-element list.

    Attributes:
        url: The request URL.
        method: HTTP method (default: "GET").
        params: Query parameters, name -> list of values.
        headers: Headers, name -> list of values.
        cookies: Cookies to send, name -> value.
        body: The request body, or None for no body.

    Example:
        >>> request = RequestData(
        ...     url="https://postman-echo.com/post",
        ...     method="POST",
        ...     params={"page": ["1"]},
        ...     body=JsonBody({"hello": "world"}),
        ... )
    """
    url: str
    method: str = "GET"
    params: dict[str, list[str]] = field(default_factory=dict)
    headers: dict[str, list[str]] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    body: Body | None = None

    def __post_init__(self) -> None:
        assert self.url, "URL cannot be empty."
        assert self.method, "Method cannot be empty."
        assert self.body is None or isinstance(self.body, (RawBody, JsonBody, FormBody)), \
            "body must be a RawBody, JsonBody or FormBody."

        self.method = self.method.upper()
        self.params = _as_multi_valued(self.params)
        self.headers = _as_multi_valued(self.headers)
        self.cookies = dict(self.cookies or {})

    @classmethod
    def from_fields(
        cls,
        url: str,
        method: str = "GET",
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
        cookies: dict[str, str] | None = None,
        raw_data: bytes | str | IO[bytes] | None = None,
        json_data: Any = None,
        form_data: dict[str, str] | None = None,
        form_files: dict[str, str | Path | IO[bytes]] | None = None,
    ) -> RequestData:
        """
        Build a request from separate optional body fields.

        When several body fields are given, raw data wins over JSON data,
        which wins over form data/files.

        Returns:
            A RequestData with exactly one body variant (or none).
        """
        body: Body | None = None
        if raw_data is not None:
            body = RawBody(raw_data)
        elif json_data is not None:
            body = JsonBody(json_data)
        elif form_data is not None or form_files is not None:
            body = FormBody(fields=dict(form_data or {}), files=dict(form_files or {}))

        return cls(
            url=url,
            method=method,
            params=params or {},
            headers=headers or {},
            cookies=cookies or {},
            body=body,
        )


# =============================================================================
# Response
# =============================================================================


@dataclass(frozen=True)
class ResponseData:
    """
    Represents the response to a request issued by a Client.

    Attributes:
        status: The status line, e.g. "200 OK".
        status_code: The HTTP status code.
        body: The raw response body.
        cookies: Cookies set by the response, name -> value.
        headers: Response headers.
    """
    status: str
    status_code: int
    body: bytes = b""
    cookies: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_response(cls, response: requests.Response) -> ResponseData:
        """Build a ResponseData from a `requests.Response` (reads the whole body)."""
        reason = response.reason or ""
        return cls(
            status=f"{response.status_code} {reason}".strip(),
            status_code=response.status_code,
            body=response.content or b"",
            cookies={cookie.name: cookie.value or "" for cookie in response.cookies},
            headers=dict(response.headers),
        )

    def is_success(self) -> bool:
        """Returns True for 2xx status codes."""
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        """The body decoded as UTF-8 (invalid bytes replaced)."""
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """
        Parse the body as JSON.

        Raises:
            json.JSONDecodeError: If the body is not valid JSON.
        """
        return json.loads(self.body)

    def json_field(self, key: str) -> Any:
        """
        Return a top-level field of the JSON body.

        Raises:
            ResponseKeyError: If the body is not a JSON object or has no such key.
        """
        from httpool._http import ResponseKeyError

        data = self.json()
        if not isinstance(data, dict) or key not in data:
            raise ResponseKeyError(key=key, source="response body")
        return data[key]
