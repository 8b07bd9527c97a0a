"""
Rate-limited HTTP client.

A ``Client`` owns one ``requests.Session`` (optionally bound to a proxy),
a user agent, a minimum delay between its own requests and its
availability state (busy flag plus the time its last request started).

Clients can be used on their own or orchestrated by a ``ClientPool``.

Example:
    >>> from httpool import Client, RequestData
    >>> client = Client(proxy="http://10.0.0.1:3128", delay=0.5)
    >>> if client.try_claim():
    ...     try:
    ...         response = client.quick_request(RequestData(url="https://example.com"))
    ...     finally:
    ...         client.mark_idle()
"""

import logging
import math
import threading
import time
from collections.abc import Callable
from typing import Self
from urllib.parse import SplitResult

import requests

from httpool._http import send_request
from httpool._models import RequestData, ResponseData
from httpool._utils import get_random_user_agent, parse_proxy

logger = logging.getLogger(__name__)

# Callback invoked (outside the client lock) every time a client is marked idle
IdleListener = Callable[["Client"], None]


class Client:
    """
    HTTP client with built-in per-client rate limiting.

    The busy flag and the last request time are only read and written under
    the client's own lock, and are set together by ``mark_busy``, so no
    thread can observe one updated without the other.

    A client is *eligible* when it is not busy and at least ``delay``
    seconds have passed since its last request started.

    Args:
        proxy: Proxy endpoint (URL string or split URL). None for no proxy.
        user_agent: User agent sent with every request. If None, one is
            picked from the built-in weighted defaults.
        delay: Minimum seconds between two request starts of this client.
        request_timeout: Timeout in seconds for requests issued by this client.

    Raises:
        InvalidProxyError: If the proxy cannot be used.
    """

    def __init__(
        self,
        proxy: str | SplitResult | None = None,
        user_agent: str | None = None,
        delay: float = 0.0,
        request_timeout: float = 30,
    ):
        assert delay is not None, "delay cannot be None."
        assert delay >= 0, "delay must be >= 0."
        assert request_timeout is not None, "request_timeout cannot be None."
        assert request_timeout > 0, "request_timeout must be greater than 0."

        self._proxy = parse_proxy(proxy) if proxy is not None else None
        self._session = requests.Session()
        if self._proxy is not None:
            proxy_url = self._proxy.geturl()
            self._session.proxies = {"http": proxy_url, "https": proxy_url}

        self._user_agent = user_agent if user_agent is not None else get_random_user_agent()
        self._delay = float(delay)
        self.request_timeout = request_timeout

        # Availability state (guarded by _lock)
        self._busy = False
        self._last_request_time: float | None = None
        self._idle_listeners: list[IdleListener] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    def is_busy(self) -> bool:
        """Returns True while the client is handed out for a request."""
        with self._lock:
            return self._busy

    def mark_busy(self) -> None:
        """
        Mark the client as busy and restart its rate-limit clock.

        Call exactly once per request, before the request starts.
        """
        with self._lock:
            self._busy = True
            self._last_request_time = time.monotonic()

    def mark_idle(self) -> None:
        """
        Mark the client as idle and notify idle listeners.

        Call exactly once per request completion (success, failure or
        abandonment); otherwise the client stays busy forever. Calling it on
        an idle client is harmless.
        """
        with self._lock:
            self._busy = False
            listeners = list(self._idle_listeners)

        for listener in listeners:
            listener(self)

    def is_eligible(self) -> bool:
        """Returns True if the client is neither busy nor rate-limited."""
        with self._lock:
            return self._is_eligible_locked(time.monotonic())

    def try_claim(self) -> bool:
        """
        Atomically check eligibility and mark the client busy.

        The check and the claim happen under the same lock hold, so two
        threads can never both claim the same client.

        Returns:
            True if the client was claimed by the caller, False otherwise.
        """
        with self._lock:
            now = time.monotonic()
            if not self._is_eligible_locked(now):
                return False
            self._busy = True
            self._last_request_time = now
            return True

    def seconds_until_eligible(self) -> float:
        """
        Seconds left until the client's own delay has elapsed.

        Returns:
            0.0 if eligible now, ``math.inf`` while busy, otherwise the
            remaining delay.
        """
        with self._lock:
            if self._busy:
                return math.inf
            if self._last_request_time is None:
                return 0.0
            return max(0.0, self._last_request_time + self._delay - time.monotonic())

    def _is_eligible_locked(self, now: float) -> bool:
        if self._busy:
            return False
        if self._last_request_time is None:
            return True
        return now - self._last_request_time >= self._delay

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def set_delay(self, delay: float) -> None:
        """Set the minimum seconds between two request starts."""
        assert delay is not None, "delay cannot be None."
        assert delay >= 0, "delay must be >= 0."
        with self._lock:
            self._delay = float(delay)

    def get_delay(self) -> float:
        with self._lock:
            return self._delay

    def set_user_agent(self, user_agent: str) -> None:
        assert user_agent, "user_agent cannot be empty."
        with self._lock:
            self._user_agent = user_agent

    def get_user_agent(self) -> str:
        with self._lock:
            return self._user_agent

    def get_last_request_time(self) -> float | None:
        """
        Monotonic timestamp (``time.monotonic()``) of the last request start.

        Returns:
            The timestamp, or None if the client was never used.
        """
        with self._lock:
            return self._last_request_time

    @property
    def proxy(self) -> SplitResult | None:
        """The parsed proxy endpoint, or None."""
        return self._proxy

    @property
    def session(self) -> requests.Session:
        """The underlying transport. Not shared with any other client."""
        return self._session

    # -------------------------------------------------------------------------
    # Idle listeners
    # -------------------------------------------------------------------------

    def add_idle_listener(self, listener: IdleListener) -> None:
        """Register a callback invoked every time the client is marked idle."""
        with self._lock:
            self._idle_listeners.append(listener)

    def remove_idle_listener(self, listener: IdleListener) -> None:
        """Unregister a callback. No-op if it is not registered."""
        with self._lock:
            if listener in self._idle_listeners:
                self._idle_listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def quick_request(self, request_data: RequestData) -> ResponseData:
        """
        Issue a request with this client's session, user agent and timeout.

        This does not touch the busy state: acquire/release the client around
        it (or use ``ClientPool.quick_request``).

        Args:
            request_data: The request to send.

        Returns:
            The response data for a 2xx response.

        Raises:
            ServerSideRateLimitError: If the server returns HTTP 429.
            ResponseStatusError: If the server returns any other non-2xx status.
            requests.RequestException: If the HTTP request fails.
        """
        return send_request(
            self._session,
            request_data,
            user_agent=self.get_user_agent(),
            timeout=self.request_timeout,
        )

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        proxy = self._proxy.geturl() if self._proxy is not None else None
        return f"Client(proxy={proxy!r}, delay={self.get_delay()})"
