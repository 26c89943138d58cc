"""
Retry policy and rate-limit header parsing for Resource Graph calls.

The policy is a pure value object: it decides whether an error is worth
another attempt and how long to wait, but never sleeps or performs I/O
itself. That keeps it testable without a network and lets the query client
own the actual loop.
"""

import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional

from ..errors import RemoteQueryError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter.

    Attributes
    ----------
    max_attempts : int
        Total attempts including the first one (>= 1).
    base_delay : float
        Delay in seconds before the second attempt.
    multiplier : float
        Growth factor per further attempt.
    max_delay : float
        Upper bound for a single delay, also caps ``Retry-After``.
    jitter : float
        Fraction (0.0-1.0) of the delay randomly added or removed.
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within 0.0-1.0")

    @classmethod
    def from_settings(
        cls,
        max_retries: int,
        backoff_initial_ms: int,
        backoff_multiplier: float,
        backoff_max_seconds: float,
        backoff_jitter: float,
    ) -> "RetryPolicy":
        """Build a policy from the flat retry settings."""
        return cls(
            max_attempts=max_retries + 1,
            base_delay=backoff_initial_ms / 1000.0,
            multiplier=backoff_multiplier,
            max_delay=backoff_max_seconds,
            jitter=backoff_jitter,
        )

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Return True if another attempt should follow failed ``attempt``.

        ``attempt`` is 1-based: after the first failure pass ``1``.
        """
        if attempt >= self.max_attempts:
            return False
        return is_transient(error)

    def delay(
        self,
        attempt: int,
        retry_after: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> float:
        """Return the wait in seconds after failed ``attempt`` (1-based).

        A server-provided ``retry_after`` wins over the computed backoff,
        capped at ``max_delay``.
        """
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        raw = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        raw = min(raw, self.max_delay)
        if self.jitter and raw > 0:
            spread = raw * self.jitter
            raw += (rng or random).uniform(-spread, spread)
        return max(0.0, min(raw, self.max_delay))


def is_transient(error: BaseException) -> bool:
    """Classify an error as transient (retryable) or permanent."""
    if isinstance(error, RemoteQueryError):
        if error.transient:
            return True
        return error.status_code in TRANSIENT_STATUS_CODES
    return isinstance(error, (TimeoutError, ConnectionError))


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """
    Extract the retry delay in seconds from response headers.

    Understands ``Retry-After`` as seconds or HTTP date, and Azure's
    ``x-ms-user-quota-resets-after`` (``hh:mm:ss``) sent by Resource Graph
    when the per-user quota is exhausted.

    Parameters
    ----------
    headers : Mapping[str, str]
        Response headers (case-insensitive mapping, e.g. ``httpx.Headers``).

    Returns
    -------
    Optional[float]
        Seconds to wait, or None when no usable header is present.
    """
    retry_value = headers.get("retry-after")
    if retry_value:
        try:
            return max(0.0, float(retry_value))
        except ValueError:
            try:
                retry_date = parsedate_to_datetime(retry_value)
                return max(0.0, retry_date.timestamp() - time.time())
            except (TypeError, ValueError):
                logger.warning(
                    "rate_limit.parse_retry_after_failed",
                    extra={"value": retry_value},
                )
    resets_after = headers.get("x-ms-user-quota-resets-after")
    if resets_after:
        try:
            hours, minutes, seconds = resets_after.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            logger.warning(
                "rate_limit.parse_quota_reset_failed",
                extra={"value": resets_after},
            )
    return None
