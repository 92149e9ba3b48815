"""
Distributed admission control for the airbaker client.

The remote API throttles each base independently (5 requests per second).
Several processes may share the same base, so the admission state lives in
a shared store and is checked with a single atomic operation using a
sliding-window log:

1. If the base was recently throttled by the server (override flag), deny.
2. Read the store's clock (not the local clock, to avoid skew between hosts).
3. Drop log entries older than the window.
4. Admit and record the call if fewer than `max_requests` entries remain.

Example:
    >>> import redis
    >>> from airbaker._rate_limit import AdmissionController
    >>> from airbaker._store import RedisSharedStore
    >>> controller = AdmissionController(
    ...     enabled=True,
    ...     store=RedisSharedStore(redis.Redis()),
    ... )
    >>> controller.is_allowed("appXXXXXXXXXXXXXX")
    True
"""

import logging

from airbaker._config import RateLimitConfig
from airbaker._store import RATE_LIMITED_SENTINEL, SharedStore

logger = logging.getLogger(__name__)

OVERRIDE_KEY_SUFFIX = "is_rate_limited"


# =============================================================================
# Exceptions
# =============================================================================


class ConfigurationError(RuntimeError):
    """
    Raised when rate limiting is enabled but no shared store is configured.

    This is a programming error: it is raised on the first admission check
    and is never retried.
    """

    pass


# =============================================================================
# Admission Controller
# =============================================================================


class AdmissionController:
    """
    Decides whether a call against a resource (base) may proceed now.

    A disabled controller admits every call without touching the store,
    leaving throttling to the server.

    Args:
        enabled: Whether rate limiting is active.
        store: The shared store. Required when enabled.
        config: Window, limit, override TTL and key namespace.
    """

    def __init__(
        self,
        enabled: bool,
        store: SharedStore | None = None,
        config: RateLimitConfig | None = None,
    ):
        self.enabled = enabled
        self.store = store
        self.config = config or RateLimitConfig()

    def log_key(self, resource_id: str) -> str:
        """Return the key of the admission log for `resource_id`."""
        return f"{self.config.namespace}:{resource_id}"

    def override_key(self, resource_id: str) -> str:
        """Return the key of the "is rate limited" flag for `resource_id`."""
        return f"{self.config.namespace}:{resource_id}:{OVERRIDE_KEY_SUFFIX}"

    def is_allowed(self, resource_id: str) -> bool:
        """
        Check (and record) an admission for `resource_id`.

        Returns:
            True if the call may proceed now, False if it must wait.

        Raises:
            ConfigurationError: If enabled without a shared store.
        """
        assert resource_id, "Resource ID can not be empty."

        if not self.enabled:
            return True

        if self.store is None:
            raise ConfigurationError("A shared store is required to perform rate limiting")

        allowed = self.store.check_and_admit(
            log_key=self.log_key(resource_id),
            override_key=self.override_key(resource_id),
            limit=self.config.max_requests,
            window_microseconds=self.config.window_microseconds,
        )
        if not allowed:
            logger.debug(f"[{resource_id}] Admission denied")
        return allowed

    def mark_throttled(self, resource_id: str) -> None:
        """
        Deny every admission for `resource_id` during the override TTL.

        Called after the server answered HTTP 429. Without a store there is
        nothing to share, so the call is a no-op. The flag is never cleared
        explicitly: it expires on its own.
        """
        if self.store is None:
            return

        self.store.set_with_expiry(
            self.override_key(resource_id),
            self.config.override_ttl,
            RATE_LIMITED_SENTINEL,
        )
        logger.debug(
            f"[{resource_id}] Marked as rate limited for {self.config.override_ttl}s"
        )
