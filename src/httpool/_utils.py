"""
Utility functions for the httpool library.

This module provides small helpers used when building clients and pools:
weighted user-agent selection, delay conversions and proxy parsing/loading.
"""

from __future__ import annotations

import logging
import random
from pathlib import Path
from urllib.parse import SplitResult, urlsplit

logger = logging.getLogger(__name__)

# Source for current user agents: https://www.useragents.me/
DEFAULT_USER_AGENTS: dict[str, float] = {
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Safari/605.1.1": 49.09,
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.1": 14.33,
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.3": 13.41,
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.3": 8.54,
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/117.": 3.66,
}

SUPPORTED_PROXY_SCHEMES = ("http", "https", "socks4", "socks5", "socks5h")


class InvalidProxyError(ValueError):
    """
    Raised when a proxy endpoint cannot be used to build a client.

    Attributes:
        proxy: The offending proxy value, as given by the caller.
        reason: Human-readable explanation.
    """

    def __init__(self, proxy: object, reason: str):
        self.proxy = proxy
        self.reason = reason
        super().__init__(f"Invalid proxy {proxy!r}: {reason}")


def get_random_user_agent(
    user_agents: dict[str, float] | None = None,
    rng: random.Random | None = None,
) -> str:
    """
    Pick a user agent using weighted random selection.

    Weights are relative and do not need to add up to 100.

    Args:
        user_agents: Mapping of user-agent string to positive weight.
            If None, DEFAULT_USER_AGENTS is used.
        rng: Optional RNG, mostly for deterministic tests.

    Returns:
        The selected user-agent string.

    Example:
        >>> get_random_user_agent({"my-agent": 1.0})
        'my-agent'
    """
    if user_agents is None:
        user_agents = DEFAULT_USER_AGENTS

    assert user_agents, "user_agents must not be empty."
    assert all(weight > 0 for weight in user_agents.values()), "user agent weights must be greater than 0."

    agents = list(user_agents.keys())
    weights = list(user_agents.values())
    return (rng or random).choices(agents, weights=weights, k=1)[0]


def millis_to_seconds(ms: int | float) -> float:
    """
    Convert milliseconds to a delay in seconds.

    Negative values are clamped to 0.

    Example:
        >>> millis_to_seconds(250)
        0.25
    """
    if isinstance(ms, bool) or not isinstance(ms, (int, float)):
        raise TypeError(f"Expected int or float milliseconds, got {type(ms).__name__}")
    return max(0.0, ms / 1000.0)


def rps_to_delay(rps: float) -> float:
    """
    Convert a requests-per-second rate into the minimum delay between requests.

    A rate <= 0 means "no limit" and returns 0.

    Example:
        >>> rps_to_delay(25)
        0.04
    """
    if rps <= 0:
        return 0.0
    return 1.0 / rps


def parse_proxy(proxy: str | SplitResult) -> SplitResult:
    """
    Parse and validate a proxy endpoint.

    Accepts a URL string or an already-split URL. A string without scheme
    is treated as an HTTP proxy (``"10.0.0.1:3128"`` -> ``"http://10.0.0.1:3128"``).

    Args:
        proxy: The proxy endpoint.

    Returns:
        The parsed proxy URL.

    Raises:
        InvalidProxyError: If the scheme is unsupported, the host is missing
            or the port is not a valid number.
    """
    if isinstance(proxy, SplitResult):
        parsed = proxy
    elif isinstance(proxy, str):
        value = proxy.strip()
        if not value:
            raise InvalidProxyError(proxy, "empty value.")
        if "://" not in value:
            value = f"http://{value}"
        parsed = urlsplit(value)
    else:
        raise InvalidProxyError(proxy, f"expected str or SplitResult, got {type(proxy).__name__}.")

    scheme = parsed.scheme.lower()
    if scheme not in SUPPORTED_PROXY_SCHEMES:
        raise InvalidProxyError(proxy, f"unsupported scheme '{parsed.scheme}'. Must be one of: {SUPPORTED_PROXY_SCHEMES}.")
    if not parsed.hostname:
        raise InvalidProxyError(proxy, "missing host.")
    try:
        parsed.port
    except ValueError as e:
        raise InvalidProxyError(proxy, f"invalid port ({e}).") from e

    return parsed


def proxies_from_file(file_path: str | Path) -> list[SplitResult]:
    """
    Load proxy endpoints from a text file, one URL per line.

    Blank lines and lines starting with ``#`` are ignored.

    Args:
        file_path: Path of the proxy list file.

    Returns:
        The parsed proxies, in file order.

    Raises:
        RuntimeError: If the file cannot be read or is not valid UTF-8
            (wraps the original exception).
        InvalidProxyError: If any line is not a valid proxy.
    """
    path = Path(file_path)
    try:
        with path.open(mode="r", encoding="utf-8") as file:
            lines = file.readlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.error(
            f"❌ Error while reading proxy file from disk ({path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to read the proxy file ({path.name}): {e}") from e

    proxies = []
    for line in lines:
        line = line.strip()
        if line and not line.startswith("#"):
            proxies.append(parse_proxy(line))

    logger.debug(f"Loaded {len(proxies)} proxies from {path}.")
    return proxies
