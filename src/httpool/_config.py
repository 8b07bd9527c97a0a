"""
Global configuration for the httpool library.

Sensible defaults are used unless the application calls HTTPOOL.configure()
at startup or sets HTTPOOL_* environment variables.

Hierarchy of precedence (highest to lowest):
1. Arguments passed to Client/ClientPool constructors
2. Values set via HTTPOOL.configure()
3. Environment variables (HTTPOOL_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from httpool import HTTPOOL
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> delay = HTTPOOL.config.pool.delay
    >>>
    >>> # Custom configuration
    >>> HTTPOOL.configure(
    ...     client={"delay": 0.5, "request_timeout": 10},
    ...     pool={"delay": 0.04, "proxy_file": "proxies.txt"},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from functools import wraps
from typing import Any, ClassVar, Self

CONFIG_SECTIONS = ("client", "pool")

UNLIMITED_VALUES = ("none", "null", "unlimited")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


def _optional_float(raw_value: str) -> float | None:
    if raw_value.lower() in UNLIMITED_VALUES:
        return None
    return float(raw_value)


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("HTTPOOL_POOL_DELAY", type_hint=float)
        0.25
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        # Annotations are strings here (PEP 563)
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides `.with_overrides()` for partial updates and `.with_env_vars()`
    for applying the env vars declared in field metadata.
    """

    # Fields accepting None as a real value ("unlimited", "not set")
    NULLABLE_FIELDS: ClassVar[frozenset[str]] = frozenset()

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are ignored, except for fields listed in NULLABLE_FIELDS.

        Raises:
            ValueError: If overrides contains unknown field names.

        Example:
            >>> PoolConfig().with_overrides({"delay": 0.5}).delay
            0.5
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {
            k: v for k, v in overrides.items()
            if v is not None or k in self.NULLABLE_FIELDS
        }
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if not env_var:
                continue
            raw_value = os.environ.get(env_var)
            if not raw_value:
                continue
            overrides[f.name] = EnvVars.get(
                var_name=env_var,
                type_hint=f.type,
                converter=f.metadata.get("converter"),
            )
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass(frozen=True)
class ClientConfig(OverridableConfig):
    """
    Defaults for Client instances built by a ClientPool.

    Attributes:
        delay: Minimum seconds between two request starts of one client.
            Env var: HTTPOOL_CLIENT_DELAY

        request_timeout: Timeout in seconds for each HTTP request.
            Env var: HTTPOOL_CLIENT_REQUEST_TIMEOUT

        user_agent: Fixed user agent for every client. When None, each
            client picks one by weighted random selection.
            Env var: HTTPOOL_CLIENT_USER_AGENT

    Example:
        >>> from httpool import HTTPOOL
        >>> HTTPOOL.config.client.request_timeout
        30
    """

    NULLABLE_FIELDS = frozenset({"user_agent"})

    delay: float = field(default=0.0, metadata={"env": "HTTPOOL_CLIENT_DELAY"})
    request_timeout: float = field(default=30, metadata={"env": "HTTPOOL_CLIENT_REQUEST_TIMEOUT", "converter": float})
    user_agent: str | None = field(default=None, metadata={"env": "HTTPOOL_CLIENT_USER_AGENT", "converter": str})

    def validate(self) -> Self:
        """Validate client configuration fields."""
        if self.delay < 0:
            raise ConfigValidationError(
                "delay", self.delay,
                "Must be >= 0.", section="client"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="client"
            )
        if self.user_agent is not None and not self.user_agent.strip():
            raise ConfigValidationError(
                "user_agent", self.user_agent,
                "Must not be empty string.", section="client"
            )
        return self


@dataclass(frozen=True)
class PoolConfig(OverridableConfig):
    """
    Defaults for ClientPool instances.

    Attributes:
        delay: Minimum seconds between two request starts across the pool.
            Env var: HTTPOOL_POOL_DELAY

        poll_interval: Maximum seconds a waiting acquirer sleeps before
            re-checking the clients, when no release wakes it earlier.
            Env var: HTTPOOL_POOL_POLL_INTERVAL

        acquire_timeout: Default maximum seconds to wait for a client.
            None means wait indefinitely. Accepts "none"/"null"/"unlimited".
            Env var: HTTPOOL_POOL_ACQUIRE_TIMEOUT

        proxy_file: Proxy list file (one URL per line) used by
            ClientPool.from_config(). None for a single unproxied client.
            Env var: HTTPOOL_POOL_PROXY_FILE

    Example:
        >>> from httpool import HTTPOOL
        >>> HTTPOOL.configure(pool={"delay": 0.04, "acquire_timeout": 30})
    """

    NULLABLE_FIELDS = frozenset({"acquire_timeout", "proxy_file"})

    delay: float = field(default=0.0, metadata={"env": "HTTPOOL_POOL_DELAY"})
    poll_interval: float = field(default=0.01, metadata={"env": "HTTPOOL_POOL_POLL_INTERVAL"})
    acquire_timeout: float | None = field(
        default=None,
        metadata={"env": "HTTPOOL_POOL_ACQUIRE_TIMEOUT", "converter": _optional_float},
    )
    proxy_file: str | None = field(default=None, metadata={"env": "HTTPOOL_POOL_PROXY_FILE", "converter": str})

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """Extends the base implementation to accept "unlimited" for acquire_timeout."""
        if not overrides:
            return self

        processed = dict(overrides)
        value = processed.get("acquire_timeout")
        if isinstance(value, str) and value.lower() in UNLIMITED_VALUES:
            processed["acquire_timeout"] = None

        return super().with_overrides(processed)

    def validate(self) -> Self:
        """Validate pool configuration fields."""
        if self.delay < 0:
            raise ConfigValidationError(
                "delay", self.delay,
                "Must be >= 0.", section="pool"
            )
        if self.poll_interval <= 0:
            raise ConfigValidationError(
                "poll_interval", self.poll_interval,
                "Must be greater than 0.", section="pool"
            )
        if self.acquire_timeout is not None and self.acquire_timeout <= 0:
            raise ConfigValidationError(
                "acquire_timeout", self.acquire_timeout,
                "Must be greater than 0 (or None for unlimited).", section="pool"
            )
        if self.proxy_file is not None and not self.proxy_file.strip():
            raise ConfigValidationError(
                "proxy_file", self.proxy_file,
                "Must not be empty string.", section="pool"
            )
        return self


# =============================================================================
# Source Tracking
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "delay").
        value: The resolved value.
        source: Where the value came from:
            - "default": Hardcoded default value
            - "env:VAR_NAME": Environment variable
            - "user": Set via HTTPOOL.configure()

    Example:
        >>> ConfigEntry("delay", 0.5, "user").formatted_value
        '0.5'
    """

    name: str
    value: Any
    source: str

    MAX_LENGTH = 50

    @property
    def formatted_value(self) -> str:
        """Return value formatted for display, truncating long strings."""
        if self.value is None:
            return "None"

        str_value = str(self.value)
        if len(str_value) > self.MAX_LENGTH:
            return str_value[: self.MAX_LENGTH - 3] + "..."
        return str_value


@dataclass(frozen=True)
class ConfigTracker:
    """
    Tracks the source of config field values.

    Attributes:
        sources: Structure {"section": {"field": "source"}}.
    """

    sources: dict[str, dict[str, str]] = field(default_factory=dict)

    @staticmethod
    def track_changes(
        source_type: str,
    ) -> Callable[[Callable[..., HttpoolConfig]], Callable[..., HttpoolConfig]]:
        """
        Decorator recording which fields the decorated method touched.

        Args:
            source_type: Source label ("env" or "user").
        """

        def decorator(
            method: Callable[..., HttpoolConfig],
        ) -> Callable[..., HttpoolConfig]:
            @wraps(method)
            def wrapper(self: HttpoolConfig, *args: Any, **kwargs: Any) -> HttpoolConfig:
                new_config = method(self, *args, **kwargs)
                new_tracker = self._tracker.with_changes_tracked(
                    new_config, source_type, overrides=kwargs
                )
                return replace(new_config, _tracker=new_tracker)

            return wrapper

        return decorator

    def with_changes_tracked(
        self,
        new_config: HttpoolConfig,
        source_type: str,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigTracker:
        """
        Return new tracker with the fields touched by the source recorded.

        A field counts as touched when its env var is set ("env") or when it
        appears in the overrides of its section ("user"), even if the value
        did not change.
        """
        new_sources = {section: dict(flds) for section, flds in self.sources.items()}

        for section_name in CONFIG_SECTIONS:
            section_config = getattr(new_config, section_name)
            section_overrides = (overrides or {}).get(section_name) or {}

            for f in fields(section_config):
                env_var = f.metadata.get("env")
                if source_type == "env" and env_var and os.environ.get(env_var):
                    new_sources.setdefault(section_name, {})[f.name] = f"env:{env_var}"
                elif source_type == "user" and f.name in section_overrides:
                    new_sources.setdefault(section_name, {})[f.name] = source_type

        return ConfigTracker(sources=new_sources)


# =============================================================================
# Root Configuration
# =============================================================================


@dataclass(frozen=True)
class HttpoolConfig:
    """
    Root configuration: aggregates the client and pool sections.

    Access via the global `HTTPOOL.config` property.

    Example:
        >>> from httpool import HTTPOOL
        >>> HTTPOOL.config.pool.poll_interval
        0.01
    """

    client: ClientConfig = field(default_factory=ClientConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    _tracker: ConfigTracker = field(default_factory=ConfigTracker, repr=False)

    @ConfigTracker.track_changes("env")
    def with_env_vars(self) -> HttpoolConfig:
        """Return a new config with HTTPOOL_* environment variables applied on top."""
        return HttpoolConfig(
            client=self.client.with_env_vars(),
            pool=self.pool.with_env_vars(),
            _tracker=self._tracker,
        )

    @ConfigTracker.track_changes("user")
    def with_section_overrides(
        self,
        *,
        client: dict[str, Any] | None = None,
        pool: dict[str, Any] | None = None,
    ) -> HttpoolConfig:
        """
        Return a new config with overrides merged into each section.

        Example:
            >>> HttpoolConfig().with_section_overrides(pool={"delay": 0.5}).pool.delay
            0.5
        """
        return HttpoolConfig(
            client=self.client.with_overrides(client or {}),
            pool=self.pool.with_overrides(pool or {}),
            _tracker=self._tracker,
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return every config value with its source, per section."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in CONFIG_SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._tracker.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _HTTPOOL:
    """
    Singleton holding the library configuration.

    Use `HTTPOOL.configure()` to customize settings and `HTTPOOL.config`
    to read the current configuration.
    """

    def __init__(self) -> None:
        self._config: HttpoolConfig = HttpoolConfig().with_env_vars()

    def configure(
        self,
        *,
        client: dict[str, Any] | None = None,
        pool: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> HttpoolConfig:
        """
        Configure library defaults.

        Args:
            client: Client config overrides (delay, request_timeout, user_agent).
            pool: Pool config overrides (delay, poll_interval, acquire_timeout, proxy_file).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, env vars are ignored.

        Returns:
            The configured HttpoolConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = HttpoolConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(client=client, pool=pool)
        return self.validate()

    @property
    def config(self) -> HttpoolConfig:
        """Current configuration (read-only)."""
        return self._config

    def reset(self) -> HttpoolConfig:
        """
        Reset configuration to defaults + env vars.

        Useful in tests to ensure clean state.
        """
        self._config = HttpoolConfig().with_env_vars()
        return self.validate()

    def validate(self) -> HttpoolConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.client.validate()
        self._config.pool.validate()
        return self._config

    def explain(
        self,
        output: Callable[[str], None] = print,
    ) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                Can be used with logging: `HTTPOOL.explain(logger.info)`

        Example:
            >>> HTTPOOL.explain()
            httpool Configuration:
            ...
            [pool]
              delay ............. 0.04                  ✎ user
        """
        name_width = 20
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("httpool Configuration:")
        output("=" * total_width)

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"HTTPOOL(config={self._config!r})"


# Global singleton instance - always reflects current configuration
HTTPOOL: _HTTPOOL = _HTTPOOL()
HTTPOOL.validate()
