"""
Client pool with per-client and pool-wide rate limiting.

A ``ClientPool`` holds an ordered collection of ``Client`` instances and
hands them out to callers, one caller per client at a time, enforcing:

- each client's own minimum delay between its request starts, and
- a pool-wide minimum delay between any two request starts in the pool.

Example:
    >>> from httpool import ClientPool, RequestData
    >>> pool = ClientPool(client_delay=0.5, pool_delay=0.04, proxies=["http://10.0.0.1:3128"])
    >>> with pool.lease(timeout=30) as client:
    ...     response = client.quick_request(RequestData(url="https://example.com"))

Or, acquiring and releasing in one call:
    >>> response = pool.quick_request(RequestData(url="https://example.com"))
"""

import logging
import math
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Self
from urllib.parse import SplitResult

from httpool._client import Client
from httpool._config import HTTPOOL
from httpool._models import RequestData, ResponseData
from httpool._utils import InvalidProxyError, get_random_user_agent, proxies_from_file

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class PoolWaitError(Exception):
    """
    Base exception for a blocking pool call that gave up waiting.

    Attributes:
        waited: Seconds the caller waited before giving up.
    """

    def __init__(self, message: str, waited: float):
        self.waited = waited
        super().__init__(message)


class AcquisitionTimeoutError(PoolWaitError):
    """
    Raised when no client could be acquired within the allowed time.

    Attributes:
        waited: Seconds the caller waited before giving up.
        max_wait_time: The configured maximum wait time.

    Example:
        >>> try:
        ...     client = pool.acquire_client(timeout=5)
        ... except AcquisitionTimeoutError as e:
        ...     print(f"No client after {e.waited:.1f}s")
    """

    def __init__(self, waited: float, max_wait_time: float):
        self.max_wait_time = max_wait_time
        super().__init__(
            f"Client acquisition timeout: waited {waited:.2f}s, max_wait_time={max_wait_time:.2f}s",
            waited=waited,
        )


class AcquisitionCancelledError(PoolWaitError):
    """Raised when the cancel event is set while waiting for a client."""

    def __init__(self, waited: float):
        super().__init__(f"Client acquisition cancelled after {waited:.2f}s", waited=waited)


class DrainTimeoutError(PoolWaitError):
    """
    Raised when the pool did not become idle within the allowed time.

    Attributes:
        waited: Seconds the caller waited before giving up.
        max_wait_time: The configured maximum wait time.
    """

    def __init__(self, waited: float, max_wait_time: float):
        self.max_wait_time = max_wait_time
        super().__init__(
            f"Pool drain timeout: waited {waited:.2f}s, max_wait_time={max_wait_time:.2f}s",
            waited=waited,
        )


class DrainCancelledError(PoolWaitError):
    """Raised when the cancel event is set while waiting for the pool to drain."""

    def __init__(self, waited: float):
        super().__init__(f"Pool drain cancelled after {waited:.2f}s", waited=waited)


# =============================================================================
# Wait budget
# =============================================================================


class _WaitBudget:
    """Tracks the deadline and cancel event of one blocking call."""

    def __init__(self, timeout: float | None, cancel_event: threading.Event | None):
        assert timeout is None or timeout > 0, "timeout must be > 0 or None."

        self.timeout = timeout
        self.cancel_event = cancel_event
        self.start_time = time.monotonic()

    @property
    def waited(self) -> float:
        return time.monotonic() - self.start_time

    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def remaining(self) -> float | None:
        if self.timeout is None:
            return None
        return self.timeout - self.waited


# =============================================================================
# Client Pool
# =============================================================================


class ClientPool:
    """
    Pool of rate-limited clients with a shared pool-wide delay.

    Clients are handed out by ``acquire_client`` (or ``lease``) marked busy;
    the caller must give them back with ``release_client`` once the request
    is done. A client is never held by two callers at once.

    Admission (``acquire_client``), under the pool lock:
        1. Take the most recent request start across all clients.
        2. If the pool delay has not elapsed since then, wait the remainder.
        3. Otherwise claim the first eligible client (not busy, own delay
           elapsed) in collection order and return it.
        4. If none is eligible, wait until a client is released or the
           soonest one becomes eligible (at most ``poll_interval``), then
           start over from step 1.

    The pool gate is re-checked on every iteration, and the gate check and
    the claim happen under the same lock hold, so within one pool two
    claims are never closer than the pool delay.

    Every blocking call accepts ``timeout`` and ``cancel_event``. Without
    them, acquiring from an empty pool (or from clients that never become
    eligible) blocks forever.

    Args:
        client_delay: Delay for each client built by the pool.
            Defaults to HTTPOOL.config.client.delay.
        pool_delay: Minimum seconds between two request starts in the pool.
            Defaults to HTTPOOL.config.pool.delay.
        proxies: One client is built per proxy. None builds a single
            client without proxy.
        user_agents: User agent weights for the weighted random selection of
            each client's user agent. None uses HTTPOOL.config.client.user_agent
            if set, or the built-in defaults.
        request_timeout: Request timeout of each client built by the pool.
            Defaults to HTTPOOL.config.client.request_timeout.
        poll_interval: Upper bound of a single wait while no client is
            eligible. Defaults to HTTPOOL.config.pool.poll_interval.
        acquire_timeout: Default timeout of acquire_client/lease/quick_request.
            Defaults to HTTPOOL.config.pool.acquire_timeout (None = forever).

    Raises:
        InvalidProxyError: If any proxy is invalid. No pool is built.
    """

    def __init__(
        self,
        client_delay: float | None = None,
        pool_delay: float | None = None,
        proxies: Sequence[str | SplitResult] | None = None,
        user_agents: dict[str, float] | None = None,
        *,
        request_timeout: float | None = None,
        poll_interval: float | None = None,
        acquire_timeout: float | None = None,
    ):
        client_cfg = HTTPOOL.config.client
        pool_cfg = HTTPOOL.config.pool

        client_delay = client_delay if client_delay is not None else client_cfg.delay
        pool_delay = pool_delay if pool_delay is not None else pool_cfg.delay
        request_timeout = request_timeout if request_timeout is not None else client_cfg.request_timeout
        poll_interval = poll_interval if poll_interval is not None else pool_cfg.poll_interval
        acquire_timeout = acquire_timeout if acquire_timeout is not None else pool_cfg.acquire_timeout

        assert not isinstance(proxies, (str, SplitResult)), "proxies must be a sequence of endpoints."
        assert pool_delay >= 0, "pool_delay must be >= 0."
        assert poll_interval > 0, "poll_interval must be greater than 0."
        assert acquire_timeout is None or acquire_timeout > 0, "acquire_timeout must be > 0 or None."

        self._delay = float(pool_delay)
        self.poll_interval = poll_interval
        self.acquire_timeout = acquire_timeout

        self._clients: list[Client] = []
        self._condition = threading.Condition()
        self._empty_pool_warned = False

        for client in self._build_clients(client_delay, request_timeout, proxies, user_agents):
            self.add_client(client)

    @classmethod
    def from_config(cls) -> Self:
        """
        Build a pool from HTTPOOL.config alone.

        Loads the proxy list from HTTPOOL.config.pool.proxy_file when set.

        Raises:
            RuntimeError: If the proxy file cannot be read.
            InvalidProxyError: If the proxy file holds an invalid proxy.
        """
        proxy_file = HTTPOOL.config.pool.proxy_file
        proxies = proxies_from_file(proxy_file) if proxy_file else None
        return cls(proxies=proxies)

    @staticmethod
    def _build_clients(
        client_delay: float,
        request_timeout: float,
        proxies: Sequence[str | SplitResult] | None,
        user_agents: dict[str, float] | None,
    ) -> list[Client]:
        fixed_user_agent = HTTPOOL.config.client.user_agent if user_agents is None else None

        def new_client(proxy: str | SplitResult | None) -> Client:
            return Client(
                proxy=proxy,
                user_agent=fixed_user_agent or get_random_user_agent(user_agents),
                delay=client_delay,
                request_timeout=request_timeout,
            )

        if proxies is None:
            return [new_client(None)]

        clients: list[Client] = []
        try:
            for proxy in proxies:
                clients.append(new_client(proxy))
        except InvalidProxyError:
            for client in clients:
                client.close()
            raise
        return clients

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------

    def add_client(self, client: Client) -> None:
        """
        Append a client to the pool.

        The same client may be added more than once.
        """
        assert client is not None, "client cannot be None."

        with self._condition:
            if not any(c is client for c in self._clients):
                client.add_idle_listener(self._on_client_idle)
            self._clients.append(client)
            self._empty_pool_warned = False
            self._condition.notify_all()

        logger.debug(f"Client added to pool: {client!r} (size={len(self)}).")

    def remove_client(self, client: Client) -> None:
        """
        Remove the first occurrence of a client (identity comparison).

        Other occurrences of a duplicated client stay in the pool. No-op if
        the client is not in the pool. The client itself stays usable.
        """
        with self._condition:
            index = next((i for i, c in enumerate(self._clients) if c is client), None)
            if index is None:
                return
            del self._clients[index]
            if not any(c is client for c in self._clients):
                client.remove_idle_listener(self._on_client_idle)

        logger.debug(f"Client removed from pool: {client!r} (size={len(self)}).")

    @property
    def clients(self) -> list[Client]:
        """A snapshot copy of the clients, in pool order."""
        with self._condition:
            return list(self._clients)

    def __len__(self) -> int:
        with self._condition:
            return len(self._clients)

    # -------------------------------------------------------------------------
    # Delays
    # -------------------------------------------------------------------------

    def set_pool_delay(self, delay: float) -> None:
        """Set the minimum seconds between two request starts in the pool."""
        assert delay is not None, "delay cannot be None."
        assert delay >= 0, "delay must be >= 0."

        with self._condition:
            self._delay = float(delay)
            self._condition.notify_all()

    def get_pool_delay(self) -> float:
        with self._condition:
            return self._delay

    def set_client_delay(self, delay: float) -> None:
        """
        Set the delay of every client currently in the pool.

        Clients added afterwards keep their own delay.
        """
        with self._condition:
            for client in self._clients:
                client.set_delay(delay)
            self._condition.notify_all()

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    def acquire_client(
        self,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Client:
        """
        Wait for an eligible client, mark it busy and return it.

        The caller owns the client until it calls ``release_client``.

        Args:
            timeout: Maximum seconds to wait. None uses the pool's
                acquire_timeout (which may itself be None: wait forever).
                Pass ``math.inf`` to wait forever even when the pool has
                an acquire_timeout.
            cancel_event: Optional event; setting it aborts the wait.

        Returns:
            A client marked busy.

        Raises:
            AcquisitionTimeoutError: If the timeout elapsed.
            AcquisitionCancelledError: If cancel_event was set.
        """
        budget = _WaitBudget(timeout if timeout is not None else self.acquire_timeout, cancel_event)

        with self._condition:
            while True:
                if budget.is_cancelled():
                    raise AcquisitionCancelledError(waited=budget.waited)

                wait_time = self._pool_gate_remaining()
                if wait_time <= 0:
                    client = self._claim_first_eligible()
                    if client is not None:
                        logger.debug(f"Client acquired: {client!r} (waited {budget.waited:.3f}s).")
                        return client
                    wait_time = min(self.poll_interval, self._next_eligibility_in())

                remaining = budget.remaining()
                if remaining is not None:
                    if remaining <= 0:
                        raise AcquisitionTimeoutError(waited=budget.waited, max_wait_time=budget.timeout)
                    wait_time = min(wait_time, remaining)
                if cancel_event is not None:
                    wait_time = min(wait_time, self.poll_interval)

                self._condition.wait(wait_time)

    def release_client(self, client: Client) -> None:
        """Give a client obtained by ``acquire_client`` back to the pool."""
        client.mark_idle()
        logger.debug(f"Client released: {client!r}.")

    @contextmanager
    def lease(
        self,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[Client]:
        """
        Acquire a client for the duration of a ``with`` block.

        The client is released on every exit path, exceptions included.
        ``timeout`` and ``cancel_event`` behave as in ``acquire_client``
        (``timeout=math.inf`` waits forever regardless of acquire_timeout).

        Example:
            >>> with pool.lease(timeout=10) as client:
            ...     client.quick_request(RequestData(url="https://example.com"))
        """
        client = self.acquire_client(timeout=timeout, cancel_event=cancel_event)
        try:
            yield client
        finally:
            self.release_client(client)

    def quick_request(
        self,
        request_data: RequestData,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ResponseData:
        """
        Acquire a client, issue the request with it, then release it.

        Args:
            request_data: The request to send.
            timeout: Maximum seconds to wait for a client (not the HTTP timeout).
                None uses acquire_timeout; math.inf waits forever.
            cancel_event: Optional event; setting it aborts the wait for a client.

        Returns:
            The response data for a 2xx response.

        Raises:
            AcquisitionTimeoutError: If no client was acquired in time.
            AcquisitionCancelledError: If cancel_event was set while waiting.
            ServerSideRateLimitError: If the server returns HTTP 429.
            ResponseStatusError: If the server returns any other non-2xx status.
            requests.RequestException: If the HTTP request fails.
        """
        with self.lease(timeout=timeout, cancel_event=cancel_event) as client:
            return client.quick_request(request_data)

    def _pool_gate_remaining(self) -> float:
        if self._delay <= 0:
            return 0.0

        request_times = [
            t for t in (c.get_last_request_time() for c in self._clients) if t is not None
        ]
        if not request_times:
            return 0.0
        return max(request_times) + self._delay - time.monotonic()

    def _claim_first_eligible(self) -> Client | None:
        if not self._clients and not self._empty_pool_warned:
            logger.warning("⚠️ Client pool is empty. Acquisition will block until a client is added.")
            self._empty_pool_warned = True

        for client in self._clients:
            if client.try_claim():
                return client
        return None

    def _next_eligibility_in(self) -> float:
        return min((c.seconds_until_eligible() for c in self._clients), default=math.inf)

    def _on_client_idle(self, client: Client) -> None:
        with self._condition:
            self._condition.notify_all()

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------

    def await_idle(
        self,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Block until no client in the pool is busy.

        Best-effort: new acquisitions may start while waiting, and the pool
        may be busy again right after this returns.

        Args:
            timeout: Maximum seconds to wait. None waits forever.
            cancel_event: Optional event; setting it aborts the wait.

        Raises:
            DrainTimeoutError: If the timeout elapsed.
            DrainCancelledError: If cancel_event was set.
        """
        budget = _WaitBudget(timeout, cancel_event)

        with self._condition:
            while any(c.is_busy() for c in self._clients):
                if budget.is_cancelled():
                    raise DrainCancelledError(waited=budget.waited)

                wait_time = self.poll_interval
                remaining = budget.remaining()
                if remaining is not None:
                    if remaining <= 0:
                        raise DrainTimeoutError(waited=budget.waited, max_wait_time=budget.timeout)
                    wait_time = min(wait_time, remaining)

                self._condition.wait(wait_time)

        logger.debug(f"Client pool drained (waited {budget.waited:.3f}s).")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close the sessions of the clients currently in the pool.

        Also detaches the pool from its clients, so a client that outlives
        the pool no longer notifies (or references) it.
        """
        closed: list[Client] = []
        for client in self.clients:
            if any(c is client for c in closed):
                continue
            client.remove_idle_listener(self._on_client_idle)
            client.close()
            closed.append(client)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ClientPool(size={len(self)}, pool_delay={self.get_pool_delay()})"
