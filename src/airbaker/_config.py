"""
Configuration for the airbaker client.

Each client owns its configuration: there is no process-wide singleton, so
independently configured clients never interfere with each other.

Hierarchy of precedence (highest to lowest):
1. Values passed to the Airbaker constructor (or via with_overrides())
2. Environment variables (AIRBAKER_*) - when applied via with_env_vars()
3. Hardcoded defaults (in dataclass fields)

Example:
    >>> from airbaker import AirbakerConfig
    >>>
    >>> config = AirbakerConfig(api_key="pat-123").with_env_vars()
    >>> config = config.with_overrides({"request_timeout": 60})
    >>> config.rate_limit.max_requests
    5
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

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


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("AIRBAKER_REQUEST_TIMEOUT", type_hint=int)
        30
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(var_name: str, type_hint: Any = str) -> Any:
        """
        Read an environment variable, converted according to `type_hint`.

        Args:
            var_name: The environment variable name.
            type_hint: Field type (or its PEP 563 string form) selecting the converter.

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        converter = EnvVars._infer_converter(type_hint)
        try:
            return converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=_type_name(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        # Field types are PEP 563 strings here ("int", "str | None", ...)
        return _CONVERTERS.get(_type_name(type_hint), str)


def _type_name(type_hint: Any) -> str:
    return getattr(type_hint, "__name__", str(type_hint))


def _to_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "int": int,
    "float": float,
    "bool": _to_bool,
}


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial
    field updates and `.with_env_vars()` for applying the environment
    variables declared in field metadata.

    Example:
        >>> config = RateLimitConfig()
        >>> custom = config.with_overrides({"max_requests": 3})
        >>> custom.max_requests
        3
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are dropped, so unset constructor arguments keep the
        current value.

        Raises:
            ValueError: If overrides contains unknown field names.
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

        present = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **present) if present else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with the env vars declared in field metadata applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        from_env = {
            f.name: EnvVars.get(f.metadata["env"], type_hint=f.type)
            for f in fields(self)
            if "env" in f.metadata
        }
        return self.with_overrides(from_env)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class RateLimitConfig(OverridableConfig):
    """
    Configuration for the distributed sliding-window rate limiter.

    The defaults mirror the per-base quota of the remote API: at most 5
    requests in any trailing 1 second window, and a 30 seconds denial
    period after the server answers HTTP 429.

    Attributes:
        max_requests: Maximum admissions within one window.
            Env var: AIRBAKER_RATE_LIMIT_MAX_REQUESTS

        window_microseconds: Length of the sliding window in microseconds.
            Env var: AIRBAKER_RATE_LIMIT_WINDOW_MICROSECONDS

        override_ttl: Seconds the "is rate limited" flag lives after a 429.
            Env var: AIRBAKER_RATE_LIMIT_OVERRIDE_TTL

        min_delay: Lower bound (inclusive) of the delay between attempts, in seconds.
            Env var: AIRBAKER_RATE_LIMIT_MIN_DELAY

        max_delay: Upper bound (exclusive) of the delay between attempts, in seconds.
            Env var: AIRBAKER_RATE_LIMIT_MAX_DELAY

        namespace: Prefix of the shared store keys. The braces make it a
            Redis Cluster hash tag, so both keys of one base live on the same slot.
            Env var: AIRBAKER_RATE_LIMIT_NAMESPACE
    """

    max_requests: int = field(default=5, metadata={"env": "AIRBAKER_RATE_LIMIT_MAX_REQUESTS"})
    window_microseconds: int = field(default=1_000_000, metadata={"env": "AIRBAKER_RATE_LIMIT_WINDOW_MICROSECONDS"})
    override_ttl: int = field(default=30, metadata={"env": "AIRBAKER_RATE_LIMIT_OVERRIDE_TTL"})
    min_delay: float = field(default=1.0, metadata={"env": "AIRBAKER_RATE_LIMIT_MIN_DELAY"})
    max_delay: float = field(default=1.5, metadata={"env": "AIRBAKER_RATE_LIMIT_MAX_DELAY"})
    namespace: str = field(default="{airtable}", metadata={"env": "AIRBAKER_RATE_LIMIT_NAMESPACE"})

    def validate(self) -> Self:
        """Validate rate limit configuration fields."""
        if self.max_requests <= 0:
            raise ConfigValidationError(
                "max_requests", self.max_requests,
                "Must be greater than 0.", section="rate_limit"
            )
        if self.window_microseconds <= 0:
            raise ConfigValidationError(
                "window_microseconds", self.window_microseconds,
                "Must be greater than 0.", section="rate_limit"
            )
        if self.override_ttl <= 0:
            raise ConfigValidationError(
                "override_ttl", self.override_ttl,
                "Must be greater than 0.", section="rate_limit"
            )
        if self.min_delay < 0:
            raise ConfigValidationError(
                "min_delay", self.min_delay,
                "Must be >= 0.", section="rate_limit"
            )
        if self.max_delay <= self.min_delay:
            raise ConfigValidationError(
                "max_delay", self.max_delay,
                f"Must be greater than min_delay ({self.min_delay}).", section="rate_limit"
            )
        if not self.namespace:
            raise ConfigValidationError(
                "namespace", self.namespace,
                "Must not be empty.", section="rate_limit"
            )
        return self


@dataclass(frozen=True)
class AirbakerConfig(OverridableConfig):
    """
    Root configuration of an Airbaker client.

    Attributes:
        api_key: Personal access token sent as bearer credential.
            Env var: AIRBAKER_API_KEY

        request_timeout: HTTP request timeout in seconds.
            Env var: AIRBAKER_REQUEST_TIMEOUT

        no_retry_if_rate_limited: Opt out of the managed retry on HTTP 429.
            When True, throttling errors propagate to the caller even if a
            shared store is configured.
            Env var: AIRBAKER_NO_RETRY_IF_RATE_LIMITED

        base_url: Root URL of the records API.
            Env var: AIRBAKER_BASE_URL

        page_size: Page size used when reading every page of a table.
            Env var: AIRBAKER_PAGE_SIZE

        create_batch_size: Records per create request in create_many().
            Env var: AIRBAKER_CREATE_BATCH_SIZE

        update_batch_size: Records per update request in update_many().
            Env var: AIRBAKER_UPDATE_BATCH_SIZE

        rate_limit: Sliding-window rate limiter settings.
    """

    api_key: str | None = field(default=None, metadata={"env": "AIRBAKER_API_KEY"})
    request_timeout: int = field(default=30, metadata={"env": "AIRBAKER_REQUEST_TIMEOUT"})
    no_retry_if_rate_limited: bool = field(default=False, metadata={"env": "AIRBAKER_NO_RETRY_IF_RATE_LIMITED"})
    base_url: str = field(default="https://api.airtable.com", metadata={"env": "AIRBAKER_BASE_URL"})
    page_size: int = field(default=100, metadata={"env": "AIRBAKER_PAGE_SIZE"})
    create_batch_size: int = field(default=10, metadata={"env": "AIRBAKER_CREATE_BATCH_SIZE"})
    update_batch_size: int = field(default=10, metadata={"env": "AIRBAKER_UPDATE_BATCH_SIZE"})
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        `rate_limit` may be given as a dict of partial overrides instead of
        a full RateLimitConfig.
        """
        if not overrides:
            return self

        processed = dict(overrides)
        if isinstance(processed.get("rate_limit"), dict):
            processed["rate_limit"] = self.rate_limit.with_overrides(processed["rate_limit"])

        return super().with_overrides(processed)

    def with_env_vars(self) -> Self:
        """Apply env vars to this section and to the nested rate_limit section."""
        result = super().with_env_vars()
        return replace(result, rate_limit=result.rate_limit.with_env_vars())

    def validate(self) -> Self:
        """Validate client configuration fields (and the nested rate_limit section)."""
        if self.api_key is not None and self.api_key == "":
            raise ConfigValidationError(
                "api_key", self.api_key,
                "Must not be empty string.", section="client"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="client"
            )
        if not (self.base_url.startswith("http://") or self.base_url.startswith("https://")):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'.", section="client"
            )
        if not 0 < self.page_size <= 100:
            raise ConfigValidationError(
                "page_size", self.page_size,
                "Must be between 1 and 100.", section="client"
            )
        if not 0 < self.create_batch_size <= 10:
            raise ConfigValidationError(
                "create_batch_size", self.create_batch_size,
                "Must be between 1 and 10.", section="client"
            )
        if self.update_batch_size <= 0:
            raise ConfigValidationError(
                "update_batch_size", self.update_batch_size,
                "Must be greater than 0.", section="client"
            )
        self.rate_limit.validate()
        return self
