"""
Request plumbing for httpool clients.

This module turns a ``RequestData`` into a call on a ``requests.Session``,
reads the response into a ``ResponseData`` and classifies the outcome:

- 2xx: success, the ResponseData is returned.
- 429: ServerSideRateLimitError.
- Any other status: ResponseStatusError.

Transport failures (connection errors, timeouts, proxy errors) propagate
as the original ``requests.RequestException``.

Nothing here retries: classification only.
"""

import json
import logging
from contextlib import ExitStack
from pathlib import Path
from typing import Any

import requests

from httpool._models import FormBody, JsonBody, RawBody, RequestData, ResponseData

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class RequestError(Exception):
    """
    Base exception for errors classified from a response.

    Example:
        >>> try:
        ...     client.quick_request(request)
        ... except RequestError as e:
        ...     print(f"Request failed: {e}")
    """

    pass


class ServerSideRateLimitError(RequestError):
    """
    Raised when the server returns HTTP 429 (Too Many Requests).

    The library does not retry; callers decide what to do with it, e.g.
    lower the client/pool delays or read the Retry-After header.

    Attributes:
        response: The response with status code 429.

    Example:
        >>> try:
        ...     pool.quick_request(request)
        ... except ServerSideRateLimitError as e:
        ...     retry_after = e.response.headers.get("Retry-After")
    """

    def __init__(self, response: ResponseData):
        self.response = response
        super().__init__("429: Too many requests.")


class ResponseStatusError(RequestError):
    """
    Raised when the server returns a non-2xx status other than 429.

    Attributes:
        response: The response received.
        request: The request that produced it.
    """

    MAX_BODY_LENGTH = 500

    def __init__(self, response: ResponseData, request: RequestData):
        self.response = response
        self.request = request
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        body = self.response.text
        if len(body) > self.MAX_BODY_LENGTH:
            body = body[: self.MAX_BODY_LENGTH - 3] + "..."

        lines = [
            f"{self.response.status_code}: {self.response.status}",
            f" {self.request.method} URL: {self.request.url}",
            f" Body: {body}",
            " Params:",
            *(f"   {key}: {values}" for key, values in self.request.params.items()),
            " Headers:",
            *(f"   {key}: {values}" for key, values in self.request.headers.items()),
        ]
        return "\n".join(lines)


class ResponseKeyError(RequestError, KeyError):
    """
    Raised when an expected key is missing from a response payload.

    Attributes:
        key: The missing key.
        source: Where the key was looked up (e.g. "response body").
    """

    def __init__(self, key: Any, source: str):
        self.key = key
        self.source = source
        super().__init__(f'Key "{key}" does not exist in {source}')

    def __str__(self) -> str:
        return str(self.args[0])


# =============================================================================
# Request Building
# =============================================================================


def _join_header_values(headers: dict[str, list[str]], user_agent: str | None) -> dict[str, str]:
    merged = {name: ", ".join(values) for name, values in headers.items()}
    if user_agent:
        merged = {name: value for name, value in merged.items() if name.lower() != "user-agent"}
        merged["User-Agent"] = user_agent
    return merged


def _form_files(body: FormBody, stack: ExitStack) -> list[tuple[str, tuple[str | None, Any]]]:
    parts: list[tuple[str, tuple[str | None, Any]]] = [
        (name, (None, value)) for name, value in body.fields.items()
    ]
    for name, file in body.files.items():
        if isinstance(file, (str, Path)):
            path = Path(file)
            parts.append((name, (path.name, stack.enter_context(path.open(mode="rb")))))
        else:
            file_name = Path(getattr(file, "name", None) or name).name
            parts.append((name, (file_name, file)))
    return parts


def build_request_kwargs(
    request_data: RequestData,
    user_agent: str | None,
    timeout: float,
    stack: ExitStack,
) -> dict[str, Any]:
    """
    Build the keyword arguments for ``requests.Session.request``.

    Files opened from paths are registered on ``stack`` and closed with it.

    Args:
        request_data: The request to send.
        user_agent: User agent to set, replacing any User-Agent header given.
        timeout: Request timeout in seconds.
        stack: ExitStack owning any file opened for a multipart body.

    Returns:
        Keyword arguments for ``Session.request`` (method and url excluded).
    """
    headers = _join_header_values(request_data.headers, user_agent)
    kwargs: dict[str, Any] = {
        "params": request_data.params or None,
        "cookies": request_data.cookies or None,
        "timeout": timeout,
    }

    body = request_data.body
    if isinstance(body, RawBody):
        kwargs["data"] = body.data
        if body.content_type:
            headers["Content-Type"] = body.content_type
    elif isinstance(body, JsonBody):
        kwargs["data"] = json.dumps(body.payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    elif isinstance(body, FormBody):
        kwargs["files"] = _form_files(body, stack)

    kwargs["headers"] = headers
    return kwargs


# =============================================================================
# Execution
# =============================================================================


def raise_for_status(response: ResponseData, request_data: RequestData) -> None:
    """
    Classify a response, raising for anything that is not 2xx.

    Raises:
        ServerSideRateLimitError: For HTTP 429.
        ResponseStatusError: For any other non-2xx status.
    """
    if response.is_success():
        return
    if response.status_code == 429:
        logger.warning(f"⚠️ Server rate limit hit (HTTP 429): {request_data.method} {request_data.url}")
        raise ServerSideRateLimitError(response)
    raise ResponseStatusError(response, request_data)


def send_request(
    session: requests.Session,
    request_data: RequestData,
    user_agent: str | None = None,
    timeout: float = 30,
) -> ResponseData:
    """
    Execute a request on the given session and classify the response.

    Args:
        session: The session (transport) to use.
        request_data: The request to send.
        user_agent: User agent to set on the request.
        timeout: Request timeout in seconds.

    Returns:
        The response data for a 2xx response.

    Raises:
        ServerSideRateLimitError: If the server returns HTTP 429.
        ResponseStatusError: If the server returns any other non-2xx status.
        requests.RequestException: If the HTTP request fails.
    """
    assert session is not None, "Session cannot be None."
    assert timeout is not None, "Timeout cannot be None."
    assert timeout > 0, "Timeout must be greater than 0."

    with ExitStack() as stack:
        kwargs = build_request_kwargs(request_data, user_agent, timeout, stack)
        response = session.request(request_data.method, request_data.url, **kwargs)

    try:
        response_data = ResponseData.from_response(response)
    finally:
        response.close()

    logger.debug(f"{request_data.method} {request_data.url} -> {response_data.status}")
    raise_for_status(response_data, request_data)
    return response_data
