"""
httpool: a pool of rate-limited HTTP clients for Python.

Issue many concurrent HTTP requests through a pool of independent clients,
each optionally bound to its own proxy, while respecting two layered rate
limits: a per-client minimum delay and a pool-wide minimum delay.

Quick Start:
    >>> from httpool import ClientPool, RequestData
    >>> pool = ClientPool(client_delay=1.0, pool_delay=0.1, proxies=["http://10.0.0.1:3128"])
    >>> response = pool.quick_request(RequestData(url="https://example.com"))
    >>> print(response.status_code)

Manual acquisition:
    >>> client = pool.acquire_client(timeout=30)
    >>> try:
    ...     response = client.quick_request(RequestData(url="https://example.com"))
    ... finally:
    ...     pool.release_client(client)

Global Configuration:
    >>> from httpool import HTTPOOL
    >>> HTTPOOL.configure(
    ...     client={"delay": 1.0, "request_timeout": 10},
    ...     pool={"delay": 0.1, "acquire_timeout": 60},
    ... )

Main Classes:
    - Client: One rate-limited HTTP client with its own session and optional proxy.
    - ClientPool: Pool of clients with per-client and pool-wide rate limiting.
    - RequestData: Represents a request to be issued by a client.
    - RawBody / JsonBody / FormBody: Request body variants.
    - ResponseData: Represents the response received by a client.

Errors:
    - InvalidProxyError: Raised when a proxy endpoint cannot be used.
    - PoolWaitError: Base exception for blocking pool calls that gave up.
    - AcquisitionTimeoutError / AcquisitionCancelledError: Raised by acquire_client.
    - DrainTimeoutError / DrainCancelledError: Raised by await_idle.
    - RequestError: Base exception for classified response errors.
    - ServerSideRateLimitError: Raised when the server returns HTTP 429.
    - ResponseStatusError: Raised for any other non-2xx status.
    - ResponseKeyError: Raised when a response payload lacks an expected key.

Configuration:
    - HTTPOOL: Global singleton for configuration.
    - HttpoolConfig / ClientConfig / PoolConfig: Configuration dataclasses.
    - ConfigEnvVarError / ConfigValidationError: Configuration errors.

Utilities:
    - get_random_user_agent, DEFAULT_USER_AGENTS
    - millis_to_seconds, rps_to_delay
    - parse_proxy, proxies_from_file
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("httpool")

from httpool._client import Client
from httpool._config import (
    HTTPOOL,
    ClientConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    HttpoolConfig,
    PoolConfig,
)
from httpool._http import (
    RequestError,
    ResponseKeyError,
    ResponseStatusError,
    ServerSideRateLimitError,
)
from httpool._models import (
    Body,
    FormBody,
    JsonBody,
    RawBody,
    RequestData,
    ResponseData,
)
from httpool._pool import (
    AcquisitionCancelledError,
    AcquisitionTimeoutError,
    ClientPool,
    DrainCancelledError,
    DrainTimeoutError,
    PoolWaitError,
)
from httpool._utils import (
    DEFAULT_USER_AGENTS,
    InvalidProxyError,
    get_random_user_agent,
    millis_to_seconds,
    parse_proxy,
    proxies_from_file,
    rps_to_delay,
)

__all__ = [
    "__version__",
    # Core
    "Client",
    "ClientPool",
    # Models
    "RequestData",
    "ResponseData",
    "Body",
    "RawBody",
    "JsonBody",
    "FormBody",
    # Errors
    "InvalidProxyError",
    "PoolWaitError",
    "AcquisitionTimeoutError",
    "AcquisitionCancelledError",
    "DrainTimeoutError",
    "DrainCancelledError",
    "RequestError",
    "ServerSideRateLimitError",
    "ResponseStatusError",
    "ResponseKeyError",
    # Configuration
    "HTTPOOL",
    "HttpoolConfig",
    "ClientConfig",
    "PoolConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Utilities
    "DEFAULT_USER_AGENTS",
    "get_random_user_agent",
    "millis_to_seconds",
    "rps_to_delay",
    "parse_proxy",
    "proxies_from_file",
]
