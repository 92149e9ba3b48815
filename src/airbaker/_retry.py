"""
Retry until admitted.

Every outbound call goes through `RetryOrchestrator.run_when_allowed()`,
which loops over attempts until one is admitted by the admission controller
and completes without being throttled by the server. There is no attempt cap:
callers that need bounded latency must impose their own timeout.

Each attempt produces an explicit AttemptOutcome:

- RETRY: denied by the admission controller, or throttled by the server
  while rate limiting is active. The loop sleeps and tries again.
- SUCCEED: the operation returned; its value is returned to the caller.
- FAIL: any other error. Transport errors are raised unchanged; anything
  else is wrapped in a TransportError keeping the original as `__cause__`.

Example:
    >>> orchestrator = RetryOrchestrator(admission=controller)
    >>> page = orchestrator.run_when_allowed(
    ...     "appXXXXXXXXXXXXXX",
    ...     lambda: transport.select_page(table, {"page_size": 100}),
    ... )
"""

from __future__ import annotations

import enum
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from airbaker._rate_limit import AdmissionController
from airbaker._transport import ServerSideRateLimitError, TransportError
from airbaker._utils import DiagnosticLogger, generate_correlation_id, sleep_with_jitter

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class AttemptStatus(enum.StrEnum):
    """
    Result kind of a single attempt.

    Attributes:
        RETRY: Wait and try again.
        SUCCEED: Return the operation's value.
        FAIL: Raise the error to the caller.
    """
    RETRY = "RETRY"
    SUCCEED = "SUCCEED"
    FAIL = "FAIL"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AttemptOutcome:
    """
    Outcome of a single attempt.

    Attributes:
        status: What the loop does next.
        value: The operation's return value (SUCCEED only).
        error: The error to raise (FAIL only).
        reason: Why the attempt must be retried (RETRY only).
    """

    status: AttemptStatus
    value: Any = None
    error: Exception | None = None
    reason: str | None = None

    @classmethod
    def retry(cls, reason: str) -> AttemptOutcome:
        return cls(status=AttemptStatus.RETRY, reason=reason)

    @classmethod
    def succeed(cls, value: Any) -> AttemptOutcome:
        return cls(status=AttemptStatus.SUCCEED, value=value)

    @classmethod
    def fail(cls, error: Exception) -> AttemptOutcome:
        return cls(status=AttemptStatus.FAIL, error=error)


class RetryOrchestrator:
    """
    Runs operations once they are admitted, retrying forever on backoff.

    Delays between attempts are flat (not exponential) and fully jittered
    in [min_delay, max_delay), so the extra latency of each retry is bounded
    and callers denied together do not retry together.

    When rate limiting is disabled the admission controller admits every
    call and HTTP 429 errors are not retried here: they reach the caller as
    any other error.

    Args:
        admission: The admission controller gating every attempt.
        min_delay: Lower bound (inclusive) of the delay between attempts, in seconds.
        max_delay: Upper bound (exclusive) of the delay between attempts, in seconds.
        log: Diagnostic logger. Defaults to this module's logger with no sink.
        rng: Optional RNG for the jitter, for deterministic tests.
    """

    def __init__(
        self,
        admission: AdmissionController,
        min_delay: float = 1.0,
        max_delay: float = 1.5,
        log: DiagnosticLogger | None = None,
        rng: random.Random | None = None,
    ):
        assert admission is not None, "Admission controller is required."
        assert 0 <= min_delay < max_delay, "Expected 0 <= min_delay < max_delay."

        self.admission = admission
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.log = log or DiagnosticLogger(logger)
        self._rng = rng

    @property
    def rate_limited(self) -> bool:
        return self.admission.enabled

    def run_when_allowed(
        self,
        resource_id: str,
        operation: Callable[[], _T],
        correlation_id: str | None = None,
    ) -> _T:
        """
        Run `operation` as soon as it is admitted for `resource_id`.

        Args:
            resource_id: The rate limit key (the base id).
            operation: Zero-argument callable issuing one request.
            correlation_id: Id tagging the log lines of this logical call.
                A new one is generated when omitted.

        Returns:
            The operation's return value.

        Raises:
            ConfigurationError: If rate limiting is enabled without a shared store.
            TransportError: If the call fails for any reason other than a
                managed throttle. Never retried. Errors that are not
                transport errors are wrapped, with the original as `__cause__`.
        """
        cid = correlation_id or generate_correlation_id()
        attempt_number = 0

        while True:
            attempt_number += 1
            outcome = self.attempt(resource_id, operation, cid)

            if outcome.status is AttemptStatus.SUCCEED:
                return outcome.value
            if outcome.status is AttemptStatus.FAIL:
                assert outcome.error is not None
                raise outcome.error

            delay = sleep_with_jitter(self.min_delay, self.max_delay, self._rng)
            self.log(
                f"[{cid}] Backoff triggered for {resource_id} ({outcome.reason}); "
                f"attempt {attempt_number} waited {delay:.3f}s"
            )

    def attempt(
        self,
        resource_id: str,
        operation: Callable[[], Any],
        correlation_id: str,
    ) -> AttemptOutcome:
        """
        Run a single attempt and classify its outcome.

        Raises:
            ConfigurationError: If rate limiting is enabled without a shared store.
        """
        if not self.admission.is_allowed(resource_id):
            return AttemptOutcome.retry("admission denied")

        try:
            return AttemptOutcome.succeed(operation())
        except ServerSideRateLimitError as e:
            self.log(f"[{correlation_id}] Base {resource_id} rate limit reached", level=logging.WARNING)
            if not self.rate_limited:
                return AttemptOutcome.fail(e)
            self.admission.mark_throttled(resource_id)
            return AttemptOutcome.retry("server rate limit")
        except TransportError as e:
            return AttemptOutcome.fail(e)
        except Exception as e:
            error = TransportError(f"Call for {resource_id} failed: {e}", error=type(e).__name__)
            error.__cause__ = e
            return AttemptOutcome.fail(error)
