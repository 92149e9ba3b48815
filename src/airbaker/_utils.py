"""
Internal helper functions used throughout the airbaker client.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any


def sleep_with_jitter(
    min_seconds: float,
    max_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """
    Sleep for a random duration drawn uniformly from [min_seconds, max_seconds).

    Randomizing every delay prevents callers that were denied together from
    retrying together (thundering herd).

    Args:
        min_seconds: Lower bound of the delay (inclusive).
        max_seconds: Upper bound of the delay (exclusive).
        rng: Optional RNG, for deterministic tests.

    Returns:
        The number of seconds slept.

    Example:
        >>> sleep_with_jitter(1.0, 1.5)  # Sleeps between 1.0 and 1.5 seconds
    """
    assert 0 <= min_seconds < max_seconds, "Expected 0 <= min_seconds < max_seconds."

    source = rng or random
    sleep_time = min_seconds + (max_seconds - min_seconds) * source.random()
    time.sleep(sleep_time)
    return sleep_time


def generate_correlation_id() -> str:
    """Return a short random id used to tag every log line of one logical call."""
    return uuid.uuid4().hex[:8]


def omit_none(options: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `options` without the keys whose value is None."""
    return {key: value for key, value in options.items() if value is not None}


def chunked(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    """
    Split `items` into consecutive lists of at most `size` elements.

    Example:
        >>> list(chunked([1, 2, 3, 4, 5], 2))
        [[1, 2], [3, 4], [5]]
    """
    assert size > 0, "Chunk size must be greater than 0."
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _noop(*args: Any, **kwargs: Any) -> None:
    return None


class DiagnosticLogger:
    """
    Forwards messages to a module logger and to an optional per-instance sink.

    The sink receives exactly the message logged, so applications that do not
    configure `logging` can still observe what a client is doing.

    Example:
        >>> log = DiagnosticLogger(logging.getLogger("airbaker"), sink=print)
        >>> log("[1a2b3c4d] Page 1 records fetched")
        [1a2b3c4d] Page 1 records fetched
    """

    def __init__(self, logger: logging.Logger, sink: Callable[..., Any] | None = None):
        self.logger = logger
        self.sink = sink if callable(sink) else _noop

    def __call__(self, message: str, level: int = logging.DEBUG) -> None:
        self.logger.log(level, message)
        self.sink(message)
