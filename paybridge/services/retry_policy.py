"""Retry/backoff controller.

One stateless policy function used everywhere something is retried:

- the scheduler, for declined recurring charges (schedule policy),
- the scheduler, for transient gateway errors on one charge (charge policy),
- the webhook dispatcher, for handler failures (webhook policy).

next_attempt() is deterministic given its arguments. Jitter, when enabled,
is derived from (jitter_key, attempt_number) rather than a global RNG so
that the same schedule always gets the same retry time for the same attempt.
"""

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: timedelta
    multiplier: float = 2.0
    jitter: float = 0.0  # fraction of the delay, e.g. 0.1 = +/-10%
    cap: Optional[timedelta] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def with_max_attempts(self, max_attempts):
        return replace(self, max_attempts=max_attempts)

    @classmethod
    def from_config(cls, config, prefix, max_attempts=None):
        """Build a policy from <PREFIX>_RETRY_* config keys.

        Example: RetryPolicy.from_config(app.config, "WEBHOOK")
        """
        cap_seconds = config.get(f"{prefix}_RETRY_CAP_SECONDS")
        return cls(
            max_attempts=max_attempts or config[f"{prefix}_RETRY_MAX_ATTEMPTS"],
            base_delay=timedelta(seconds=config[f"{prefix}_RETRY_BASE_DELAY_SECONDS"]),
            multiplier=config.get(f"{prefix}_RETRY_MULTIPLIER", 2.0),
            jitter=config.get(f"{prefix}_RETRY_JITTER", 0.0),
            cap=timedelta(seconds=cap_seconds) if cap_seconds else None,
        )


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    not_before: Optional[datetime]
    delay: Optional[timedelta] = None


def backoff_delay(attempt_number, policy, jitter_key=None):
    """Delay before the retry that follows failed attempt `attempt_number` (1-based)."""
    if attempt_number < 1:
        raise ValueError("attempt_number is 1-based")

    seconds = policy.base_delay.total_seconds() * (policy.multiplier ** (attempt_number - 1))
    if policy.cap is not None:
        seconds = min(seconds, policy.cap.total_seconds())

    if policy.jitter:
        seconds += seconds * policy.jitter * _unit_jitter(jitter_key, attempt_number)
        if policy.cap is not None:
            seconds = min(seconds, policy.cap.total_seconds())

    return timedelta(seconds=max(seconds, 0))


def next_attempt(attempt_number, policy, now, jitter_key=None):
    """Decide whether a failed operation is retried, and not before when.

    Args:
        attempt_number: How many attempts have failed so far (1 after the
            first failure).
        policy: RetryPolicy.
        now: Aware datetime the failure was observed at.
        jitter_key: Optional stable key (schedule id, event id) for jitter.

    Returns:
        RetryDecision. should_retry is False once attempt_number reaches
        policy.max_attempts; not_before is then None.
    """
    if attempt_number >= policy.max_attempts:
        return RetryDecision(should_retry=False, not_before=None)

    delay = backoff_delay(attempt_number, policy, jitter_key=jitter_key)
    return RetryDecision(should_retry=True, not_before=now + delay, delay=delay)


def _unit_jitter(key, attempt_number):
    """Deterministic value in [-1, 1) for (key, attempt)."""
    digest = hashlib.sha256(f"{key or ''}:{attempt_number}".encode()).digest()
    return int.from_bytes(digest[:8], "big") / 2**63 - 1
