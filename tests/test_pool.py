"""Tests for the ClientPool admission logic."""

import gc
import math
import threading
import time
import weakref
from unittest.mock import patch

import pytest

from httpool import (
    HTTPOOL,
    AcquisitionCancelledError,
    AcquisitionTimeoutError,
    Client,
    ClientPool,
    DrainCancelledError,
    DrainTimeoutError,
    InvalidProxyError,
    PoolWaitError,
    RequestData,
    ResponseData,
    ResponseStatusError,
)

# Note: tests use unrealistically low delays to stay fast.

DUMMY_PROXIES = [f"http://127.0.0.1:{8000 + i}" for i in range(10)]


@pytest.fixture(autouse=True)
def reset_config():
    HTTPOOL.reset()
    yield
    HTTPOOL.reset()


def release_later(pool: ClientPool, client: Client, seconds: float) -> threading.Timer:
    """Simulate a request taking `seconds`, then release the client."""
    timer = threading.Timer(seconds, pool.release_client, args=(client,))
    timer.start()
    return timer


def run_cycles(pool: ClientPool, cycles: int, work: float) -> float:
    """Acquire `cycles` times, each client released after `work` seconds. Returns elapsed time."""
    timers = []
    start = time.monotonic()
    for _ in range(cycles):
        client = pool.acquire_client(timeout=5)
        timers.append(release_later(pool, client, work))
    elapsed = time.monotonic() - start
    for timer in timers:
        timer.join()
    return elapsed


# =============================================================================
# Construction
# =============================================================================


class TestClientPoolInit:
    """Tests for ClientPool construction."""

    def test_without_proxies_builds_single_unproxied_client(self):
        """Should build one client without proxy when no proxies are given."""
        pool = ClientPool(0, 0, None, {"HttpPoolClient": 1})

        assert len(pool) == 1
        assert pool.clients[0].proxy is None
        assert pool.clients[0].get_user_agent() == "HttpPoolClient"

    def test_builds_one_client_per_proxy(self):
        """Should build one client per proxy, each with the client delay."""
        pool = ClientPool(0.5, 0, DUMMY_PROXIES)

        assert len(pool) == 10
        assert [c.proxy.geturl() for c in pool.clients] == DUMMY_PROXIES
        assert all(c.get_delay() == 0.5 for c in pool.clients)
        assert len({id(c) for c in pool.clients}) == 10

    def test_same_proxy_twice_builds_distinct_clients(self):
        """Should build distinct clients for repeated proxies."""
        pool = ClientPool(0, 0, ["127.0.0.1:8080", "127.0.0.1:8080"])

        first, second = pool.clients
        assert first is not second

    def test_empty_proxy_list_builds_empty_pool(self):
        """Should build an empty pool from an empty proxy list."""
        assert len(ClientPool(0, 0, [])) == 0

    def test_invalid_proxy_aborts_construction(self):
        """Should close already-built clients and propagate the proxy error."""
        with patch.object(Client, "close", autospec=True) as mock_close:
            with pytest.raises(InvalidProxyError):
                ClientPool(0, 0, ["http://10.0.0.1:3128", "ftp://10.0.0.2:21"])

        # the client built before the failure is closed
        assert mock_close.call_count == 1

    def test_negative_pool_delay_fails(self):
        """Should reject a negative pool delay."""
        with pytest.raises(AssertionError, match="pool_delay must be >= 0"):
            ClientPool(0, -1)

    def test_single_proxy_string_fails(self):
        """Should reject a bare proxy string instead of iterating its characters."""
        with pytest.raises(AssertionError, match="proxies must be a sequence of endpoints"):
            ClientPool(0, 0, "http://10.0.0.1:3128")  # type: ignore[arg-type]

    def test_defaults_come_from_config(self):
        """Should fall back to HTTPOOL.config for omitted arguments."""
        HTTPOOL.configure(
            client={"delay": 0.3, "request_timeout": 7, "user_agent": "ConfiguredAgent"},
            pool={"delay": 0.2, "poll_interval": 0.5, "acquire_timeout": 9},
        )

        pool = ClientPool()

        client = pool.clients[0]
        assert client.get_delay() == 0.3
        assert client.request_timeout == 7
        assert client.get_user_agent() == "ConfiguredAgent"
        assert pool.get_pool_delay() == 0.2
        assert pool.poll_interval == 0.5
        assert pool.acquire_timeout == 9

    def test_arguments_win_over_config(self):
        """Should prefer explicit arguments over HTTPOOL.config."""
        HTTPOOL.configure(client={"delay": 0.3, "user_agent": "ConfiguredAgent"}, pool={"delay": 0.2})

        pool = ClientPool(0.1, 0.05, None, {"ExplicitAgent": 1})

        assert pool.clients[0].get_delay() == 0.1
        assert pool.clients[0].get_user_agent() == "ExplicitAgent"
        assert pool.get_pool_delay() == 0.05

    def test_from_config_loads_proxy_file(self, tmp_path):
        """Should load proxies from the configured proxy file."""
        proxy_file = tmp_path / "proxies.txt"
        proxy_file.write_text("http://10.0.0.1:3128\nhttp://10.0.0.2:3128\n", encoding="utf-8")
        HTTPOOL.configure(pool={"proxy_file": str(proxy_file)})

        pool = ClientPool.from_config()

        assert [c.proxy.geturl() for c in pool.clients] == [
            "http://10.0.0.1:3128",
            "http://10.0.0.2:3128",
        ]

    def test_from_config_without_proxy_file(self):
        """Should build a single unproxied client when no proxy file is configured."""
        pool = ClientPool.from_config()

        assert len(pool) == 1
        assert pool.clients[0].proxy is None


# =============================================================================
# Collection
# =============================================================================


class TestAddRemoveClients:
    """Tests for add_client()/remove_client()."""

    def test_add_and_remove_clients(self):
        """Should add duplicates and remove one occurrence at a time."""
        pool = ClientPool(0, 0, None, {"HttpPoolClient": 1})
        assert len(pool) == 1

        client = pool.acquire_client()
        pool.release_client(client)
        pool.remove_client(client)
        assert len(pool) == 0

        client = Client(user_agent="TestClient")
        for _ in range(3):
            pool.add_client(client)
        assert len(pool) == 3

        # only one instance is removed
        pool.remove_client(client)
        assert len(pool) == 2
        assert all(c is client for c in pool.clients)

        for c in pool.clients:
            pool.remove_client(c)
        assert len(pool) == 0

    def test_remove_absent_client_is_noop(self):
        """Should ignore removal of a client not in the pool."""
        pool = ClientPool(0, 0)
        pool.remove_client(Client())
        assert len(pool) == 1

    def test_remove_uses_identity_and_first_occurrence(self):
        """Should remove the first identical occurrence only."""
        pool = ClientPool(0, 0, [])
        a, b = Client(user_agent="same"), Client(user_agent="same")
        pool.add_client(a)
        pool.add_client(b)
        pool.add_client(a)

        pool.remove_client(a)

        assert pool.clients == [b, a]
        assert pool.clients[1] is a

    def test_clients_returns_a_snapshot(self):
        """Should return a copy of the client list."""
        pool = ClientPool(0, 0)
        snapshot = pool.clients
        snapshot.clear()
        assert len(pool) == 1

    def test_removed_client_remains_usable(self):
        """Should leave a removed client usable on its own."""
        pool = ClientPool(0, 0)
        client = pool.clients[0]
        pool.remove_client(client)

        assert client.try_claim() is True
        client.mark_idle()
        pool.add_client(client)
        assert pool.acquire_client(timeout=1) is client

    def test_listener_is_unregistered_with_last_occurrence(self):
        """Should keep the idle listener until the last occurrence is removed."""
        pool = ClientPool(0, 0, [])
        client = Client()
        pool.add_client(client)
        pool.add_client(client)

        pool.remove_client(client)
        assert len(client._idle_listeners) == 1

        pool.remove_client(client)
        assert client._idle_listeners == []

    def test_concurrent_add_remove_during_acquisitions(self):
        """Should tolerate add/remove while clients are being acquired."""
        pool = ClientPool(0, 0, [])
        base = [Client() for _ in range(3)]
        for c in base:
            pool.add_client(c)
        extras = [Client() for _ in range(5)]
        errors: list[Exception] = []
        stop = threading.Event()

        def mutate():
            while not stop.is_set():
                for c in extras:
                    pool.add_client(c)
                for c in extras:
                    pool.remove_client(c)

        def acquire():
            try:
                for _ in range(50):
                    client = pool.acquire_client(timeout=5)
                    pool.release_client(client)
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        mutator = threading.Thread(target=mutate)
        workers = [threading.Thread(target=acquire) for _ in range(4)]
        mutator.start()
        for w in workers:
            w.start()
        for w in workers:
            w.join()
        stop.set()
        mutator.join()

        assert errors == []
        assert pool.clients == base


# =============================================================================
# Delays
# =============================================================================


class TestDelaySetters:
    """Tests for set_pool_delay()/set_client_delay()."""

    def test_set_pool_delay(self):
        """Should update the pool delay."""
        pool = ClientPool(0, 0)
        pool.set_pool_delay(0.5)
        assert pool.get_pool_delay() == 0.5

    def test_set_client_delay_applies_to_current_clients_only(self):
        """Should push the delay to current clients only."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])
        pool.set_client_delay(0.25)

        late = Client(delay=0.0)
        pool.add_client(late)

        assert [c.get_delay() for c in pool.clients] == [0.25, 0.25, 0.25, 0.0]


# =============================================================================
# Acquisition timing
# =============================================================================


class TestSingleClientPoolRateLimiting:
    """Timing of a single-client pool."""

    def test_no_delay_round_trips_are_immediate(self):
        """Should hand out the client immediately without delays."""
        pool = ClientPool(0, 0)

        start = time.monotonic()
        client = pool.acquire_client()
        pool.release_client(client)
        client = pool.acquire_client()
        pool.release_client(client)

        assert time.monotonic() - start < 0.05

    def test_client_delay_is_enforced(self):
        """Should wait for the client delay before reusing the client."""
        pool = ClientPool(0.01, 0)

        client = pool.acquire_client()
        first_start = client.get_last_request_time()
        pool.release_client(client)
        client = pool.acquire_client()

        gap = client.get_last_request_time() - first_start
        assert 0.01 <= gap < 0.05

    def test_pool_delay_is_enforced(self):
        """Should wait for the pool delay between two acquisitions."""
        pool = ClientPool(0, 0.02)

        client = pool.acquire_client()
        first_start = client.get_last_request_time()
        pool.release_client(client)
        client = pool.acquire_client()

        gap = client.get_last_request_time() - first_start
        assert 0.02 <= gap < 0.07

    def test_pool_delay_applies_across_clients(self):
        """Should apply the pool delay across different clients."""
        pool = ClientPool(0, 0.02, DUMMY_PROXIES[:2])

        first = pool.acquire_client()
        second = pool.acquire_client()

        assert first is not second
        assert second.get_last_request_time() - first.get_last_request_time() >= 0.02


class TestMultiClientPoolRateLimiting:
    """Throughput of a 10-client pool with 5ms simulated requests."""

    def test_no_delays_runs_clients_in_parallel(self):
        """Should run 100 short requests about 10-way parallel without delays."""
        pool = ClientPool(0, 0, DUMMY_PROXIES)

        elapsed = run_cycles(pool, cycles=100, work=0.005)

        # 10-way parallel: ~50ms, serial would be >= 500ms
        assert 0.04 <= elapsed < 0.4

    def test_client_delay_pipelines_clients(self):
        """Should pace each client to one request per client delay."""
        pool = ClientPool(0.01, 0, DUMMY_PROXIES)

        elapsed = run_cycles(pool, cycles=100, work=0.005)

        # 10 clients each limited to one request per 10ms: ~100ms
        assert 0.09 <= elapsed < 0.5

    def test_pool_delay_caps_throughput(self):
        """Should cap pool throughput at one acquisition per pool delay."""
        pool = ClientPool(0.01, 0.002, DUMMY_PROXIES)

        elapsed = run_cycles(pool, cycles=100, work=0.005)

        # one acquisition every 2ms pool-wide: ~200ms
        assert 0.198 <= elapsed < 0.8


# =============================================================================
# Invariants under concurrency
# =============================================================================


class TestConcurrentAcquisition:
    """Properties checked with concurrent acquirers."""

    def test_no_client_is_held_twice(self):
        """Should never hand the same client to two holders at once."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])
        held: set[int] = set()
        held_lock = threading.Lock()
        violations: list[Client] = []

        def worker():
            for _ in range(30):
                client = pool.acquire_client(timeout=5)
                with held_lock:
                    if id(client) in held:
                        violations.append(client)
                    held.add(id(client))
                time.sleep(0.001)
                with held_lock:
                    held.discard(id(client))
                pool.release_client(client)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert violations == []

    def test_per_client_and_pool_cadence(self):
        """Should keep per-client and pool-wide spacing between request starts."""
        client_delay, pool_delay = 0.01, 0.002
        pool = ClientPool(client_delay, pool_delay, DUMMY_PROXIES[:4])
        starts: list[tuple[int, float]] = []
        starts_lock = threading.Lock()

        def worker():
            for _ in range(10):
                client = pool.acquire_client(timeout=5)
                with starts_lock:
                    starts.append((id(client), client.get_last_request_time()))
                pool.release_client(client)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(starts) == 60

        all_times = sorted(t for _, t in starts)
        assert all(b - a >= pool_delay - 1e-9 for a, b in zip(all_times, all_times[1:]))

        for client_id in {cid for cid, _ in starts}:
            times = sorted(t for cid, t in starts if cid == client_id)
            assert all(b - a >= client_delay - 1e-9 for a, b in zip(times, times[1:]))

    def test_duplicated_client_is_handed_out_once(self):
        """Should hand out a client added twice to one holder only."""
        pool = ClientPool(0, 0, [])
        client = Client()
        pool.add_client(client)
        pool.add_client(client)

        assert pool.acquire_client(timeout=1) is client
        with pytest.raises(AcquisitionTimeoutError):
            pool.acquire_client(timeout=0.05)


# =============================================================================
# Wake-ups, timeouts and cancellation
# =============================================================================


class TestAcquisitionWaits:
    """Tests for blocking behaviour of acquire_client()."""

    def test_release_wakes_waiting_acquirer(self):
        """Should wake a waiting acquirer as soon as a client is released."""
        pool = ClientPool(0, 0, poll_interval=2.0)
        client = pool.acquire_client()
        release_later(pool, client, 0.05)

        start = time.monotonic()
        again = pool.acquire_client(timeout=5)

        assert again is client
        assert time.monotonic() - start < 1.0

    def test_add_client_wakes_acquirer_on_empty_pool(self):
        """Should wake an acquirer on an empty pool when a client is added."""
        pool = ClientPool(0, 0, [], poll_interval=2.0)
        client = Client()
        threading.Timer(0.05, pool.add_client, args=(client,)).start()

        start = time.monotonic()
        acquired = pool.acquire_client(timeout=5)

        assert acquired is client
        assert time.monotonic() - start < 1.0

    def test_empty_pool_times_out(self):
        """Should raise AcquisitionTimeoutError after the timeout on an empty pool."""
        pool = ClientPool(0, 0, [])

        with pytest.raises(AcquisitionTimeoutError) as exc_info:
            pool.acquire_client(timeout=0.05)

        assert exc_info.value.max_wait_time == 0.05
        assert exc_info.value.waited >= 0.05
        assert isinstance(exc_info.value, PoolWaitError)

    def test_pool_acquire_timeout_is_the_default(self):
        """Should use the pool acquire_timeout when no timeout is given."""
        pool = ClientPool(0, 0, [], acquire_timeout=0.05)

        with pytest.raises(AcquisitionTimeoutError):
            pool.acquire_client()

    def test_infinite_timeout_overrides_pool_acquire_timeout(self):
        """Should wait past the pool acquire_timeout when timeout=math.inf is given."""
        pool = ClientPool(0, 0, acquire_timeout=0.05)
        client = pool.acquire_client()

        with pytest.raises(AcquisitionTimeoutError):
            pool.acquire_client()

        release_later(pool, client, 0.1)
        assert pool.acquire_client(timeout=math.inf) is client
        pool.release_client(client)

        release_later(pool, pool.acquire_client(), 0.1)
        with pool.lease(timeout=math.inf) as leased:
            assert leased is client

    def test_rate_limited_client_times_out(self):
        """Should time out while the only client is rate limited."""
        pool = ClientPool(10, 0)
        pool.release_client(pool.acquire_client())

        with pytest.raises(AcquisitionTimeoutError):
            pool.acquire_client(timeout=0.05)

    def test_cancel_event_unblocks_acquirer(self):
        """Should raise AcquisitionCancelledError when the cancel event is set."""
        pool = ClientPool(0, 0, [])
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()

        start = time.monotonic()
        with pytest.raises(AcquisitionCancelledError):
            pool.acquire_client(cancel_event=cancel)

        assert time.monotonic() - start < 1.0

    def test_cancel_event_interrupts_pool_delay_wait(self):
        """Should interrupt a pool-delay wait when the cancel event is set."""
        pool = ClientPool(0, 5.0, poll_interval=0.01)
        pool.release_client(pool.acquire_client())
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()

        start = time.monotonic()
        with pytest.raises(AcquisitionCancelledError):
            pool.acquire_client(cancel_event=cancel)

        assert time.monotonic() - start < 1.0

    def test_already_set_cancel_event_fails_fast(self):
        """Should fail without claiming when the cancel event is already set."""
        pool = ClientPool(0, 0)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(AcquisitionCancelledError):
            pool.acquire_client(cancel_event=cancel)

        assert pool.clients[0].is_busy() is False

    def test_non_positive_timeout_fails(self):
        """Should reject a non-positive timeout."""
        with pytest.raises(AssertionError, match="timeout must be > 0 or None"):
            ClientPool(0, 0).acquire_client(timeout=0)


# =============================================================================
# Release, lease and quick_request
# =============================================================================


class TestRelease:
    """Tests for release_client(), lease() and quick_request()."""

    def test_release_is_idempotent(self):
        """Should tolerate releasing the same client twice."""
        pool = ClientPool(0, 0)
        client = pool.acquire_client()

        pool.release_client(client)
        pool.release_client(client)

        assert client.is_busy() is False
        assert pool.acquire_client(timeout=1) is client

    def test_lease_releases_on_success(self):
        """Should release the leased client after the block."""
        pool = ClientPool(0, 0)

        with pool.lease() as client:
            assert client.is_busy() is True

        assert client.is_busy() is False

    def test_lease_releases_on_exception(self):
        """Should release the leased client when the block raises."""
        pool = ClientPool(0, 0)

        with pytest.raises(RuntimeError):
            with pool.lease() as client:
                raise RuntimeError("boom")

        assert client.is_busy() is False

    def test_quick_request_returns_response_and_releases(self):
        """Should return the response and release the client."""
        pool = ClientPool(0, 0)
        client = pool.clients[0]
        response = ResponseData(status="200 OK", status_code=200, body=b"ok")
        request = RequestData(url="https://example.com")

        with patch.object(Client, "quick_request", return_value=response) as mock_request:
            result = pool.quick_request(request)

        assert result is response
        mock_request.assert_called_once_with(request)
        assert client.is_busy() is False
        assert client.get_last_request_time() is not None

    def test_quick_request_releases_on_error(self):
        """Should release the client when the request fails."""
        pool = ClientPool(0, 0)
        client = pool.clients[0]
        request = RequestData(url="https://example.com")
        error = ResponseStatusError(ResponseData(status="500 Internal Server Error", status_code=500), request)

        with patch.object(Client, "quick_request", side_effect=error):
            with pytest.raises(ResponseStatusError):
                pool.quick_request(request)

        assert client.is_busy() is False

    def test_quick_request_times_out_without_client(self):
        """Should raise AcquisitionTimeoutError when no client is available."""
        pool = ClientPool(0, 0, [])

        with pytest.raises(AcquisitionTimeoutError):
            pool.quick_request(RequestData(url="https://example.com"), timeout=0.05)


# =============================================================================
# Drain
# =============================================================================


class TestAwaitIdle:
    """Tests for await_idle()."""

    def test_returns_immediately_when_idle(self):
        """Should return immediately when no client is busy."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])

        start = time.monotonic()
        pool.await_idle()

        assert time.monotonic() - start < 0.05

    def test_returns_immediately_for_empty_pool(self):
        """Should return immediately for an empty pool."""
        ClientPool(0, 0, []).await_idle(timeout=1)

    def test_waits_for_release(self):
        """Should return only after the busy client is released."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])
        client = pool.acquire_client()

        start = time.monotonic()
        release_later(pool, client, 0.05)
        pool.await_idle(timeout=5)

        assert time.monotonic() - start >= 0.05
        assert not any(c.is_busy() for c in pool.clients)

    def test_waits_for_every_client(self):
        """Should wait for every busy client."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])
        first = pool.acquire_client()
        second = pool.acquire_client()

        start = time.monotonic()
        release_later(pool, first, 0.02)
        release_later(pool, second, 0.06)
        pool.await_idle(timeout=5)

        assert time.monotonic() - start >= 0.06

    def test_times_out_when_client_never_released(self):
        """Should raise DrainTimeoutError when a client stays busy."""
        pool = ClientPool(0, 0)
        pool.acquire_client()

        with pytest.raises(DrainTimeoutError) as exc_info:
            pool.await_idle(timeout=0.05)

        assert exc_info.value.max_wait_time == 0.05

    def test_cancel_event_unblocks_drain(self):
        """Should raise DrainCancelledError when the cancel event is set."""
        pool = ClientPool(0, 0)
        pool.acquire_client()
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()

        with pytest.raises(DrainCancelledError):
            pool.await_idle(cancel_event=cancel)


class TestClientPoolLifecycle:
    """Tests for close() and the context manager."""

    def test_close_closes_every_client(self):
        """Should close every client session."""
        pool = ClientPool(0, 0, DUMMY_PROXIES[:3])

        with patch.object(Client, "close", autospec=True) as mock_close:
            with pool:
                pass

        assert mock_close.call_count == 3

    def test_repr(self):
        assert repr(ClientPool(0, 0.5, DUMMY_PROXIES[:2])) == "ClientPool(size=2, pool_delay=0.5)"

    def test_close_detaches_pool_from_clients(self):
        """Should unregister the idle listener so a long-lived client does not keep closed pools alive."""
        client = Client()
        pool_refs = []

        for _ in range(100):
            pool = ClientPool(0, 0, [])
            pool.add_client(client)
            pool.add_client(client)
            pool.close()
            pool_refs.append(weakref.ref(pool))
            del pool
        gc.collect()

        assert client._idle_listeners == []
        assert all(ref() is None for ref in pool_refs)

    def test_close_keeps_other_pools_attached(self):
        """Should leave the listener of another pool sharing the client in place."""
        client = Client()
        closed_pool = ClientPool(0, 0, [])
        open_pool = ClientPool(0, 0, [], poll_interval=2.0)
        closed_pool.add_client(client)
        open_pool.add_client(client)

        closed_pool.close()

        assert client._idle_listeners == [open_pool._on_client_idle]
        acquired = open_pool.acquire_client(timeout=1)
        release_later(open_pool, acquired, 0.05)
        start = time.monotonic()
        assert open_pool.acquire_client(timeout=5) is client
        assert time.monotonic() - start < 1.0
