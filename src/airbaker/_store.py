"""
Shared store used to coordinate rate limiting across processes.

The rate limiter keeps no state in process memory: every admission decision
is one atomic operation against a store shared by all callers. This module
defines the store interface and its Redis implementation.

Example:
    >>> import redis
    >>> from airbaker._store import RedisSharedStore
    >>> store = RedisSharedStore(redis.Redis.from_url("redis://localhost:6379/0"))
    >>> store.check_and_admit("{airtable}:app123", "{airtable}:app123:is_rate_limited", 5, 1_000_000)
    True
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, override

if TYPE_CHECKING:
    import redis

logger = logging.getLogger(__name__)

# Sliding log rate limiter.
#
# KEYS[1]: sorted set of admission timestamps (one per base)
# KEYS[2]: override flag, set after the server answered HTTP 429
# ARGV[1]: maximum admissions within a window
# ARGV[2]: window length in MICROseconds (1 second = 1000000)
# ARGV[3]: unique member for this admission; the score alone may repeat
#          when two calls read the same TIME microsecond
#
# Returns 1 when admitted, 0 when denied.
SLIDING_LOG_SCRIPT = """
local log_key = KEYS[1]
local rate_limited_key = KEYS[2]

if rate_limited_key then
   if redis.call('EXISTS', rate_limited_key) == 1 then
      return 0
   end
end

local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

-- TIME returns [ seconds, microseconds ]; the server clock is shared by every caller
local time = redis.call('TIME')
local current_time = tonumber(time[1]) * 1000000 + tonumber(time[2])
local window_start_time = current_time - window

redis.call('ZREMRANGEBYSCORE', log_key, 0, window_start_time)

local count = redis.call('ZCARD', log_key)

if count < limit then
   redis.call('ZADD', log_key, current_time, ARGV[3])
   redis.call('PEXPIRE', log_key, math.ceil(window / 1000) + 1000)
   return 1
end

return 0
"""

# Value stored under the override key. Only its existence is checked.
RATE_LIMITED_SENTINEL = 1


class SharedStore(ABC):
    """
    Atomic key-value store shared by every process using the same quota.

    Implementations must execute `check_and_admit()` as one indivisible
    operation per log key, otherwise two concurrent callers could both see
    `limit - 1` entries and both be admitted.
    """

    @abstractmethod
    def check_and_admit(
        self,
        log_key: str,
        override_key: str,
        limit: int,
        window_microseconds: int,
    ) -> bool:
        """
        Atomically run the sliding-window check-and-insert.

        Args:
            log_key: Key of the admission log.
            override_key: Key of the "is rate limited" flag.
            limit: Maximum admissions within the window.
            window_microseconds: Window length in microseconds.

        Returns:
            True when the call is admitted (and recorded), False otherwise.
        """
        pass

    @abstractmethod
    def set_with_expiry(self, key: str, seconds: int, value: int | str) -> None:
        """Set `key` to `value`, expiring after `seconds`."""
        pass

    @abstractmethod
    def server_time_microseconds(self) -> int:
        """Return the store's clock, in microseconds since the epoch."""
        pass


class RedisSharedStore(SharedStore):
    """
    SharedStore backed by Redis.

    The check-and-insert runs as a Lua script, which Redis executes
    atomically. Keys are expected to share a hash tag (e.g. `{airtable}:`)
    so the script is valid on Redis Cluster too.

    Args:
        client: A connected `redis.Redis` (or `redis.RedisCluster`) client.
        script: Lua source of the admission script. Defaults to SLIDING_LOG_SCRIPT.
    """

    def __init__(self, client: "redis.Redis", script: str = SLIDING_LOG_SCRIPT):
        assert client is not None, "Redis client is required."
        assert script, "Admission script can not be empty."

        self.client = client
        self._script = client.register_script(script)

    @override
    def check_and_admit(
        self,
        log_key: str,
        override_key: str,
        limit: int,
        window_microseconds: int,
    ) -> bool:
        result = self._script(
            keys=[log_key, override_key],
            args=[limit, window_microseconds, uuid.uuid4().hex],
        )
        return int(result) == 1

    @override
    def set_with_expiry(self, key: str, seconds: int, value: int | str) -> None:
        logger.debug(f"Setting {key} for {seconds}s")
        self.client.setex(key, seconds, value)

    @override
    def server_time_microseconds(self) -> int:
        seconds, microseconds = self.client.time()
        return int(seconds) * 1_000_000 + int(microseconds)
