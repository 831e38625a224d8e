"""Retry policies for failed workflow actions.

Retries are never slept on in-process. The engine records
``next_retry_at`` on the execution and suspends it in ``retrying``;
the resume scheduler re-enqueues it once that time has passed.

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=30.0, max_delay=3600.0)
    if strategy.should_retry(retry_count, error):
        next_retry_at = strategy.next_retry_at(retry_count)
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from app.config import get_settings
from core.utils import utc_now


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Backoff schedule for retryable action failures."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 30.0
    max_delay: float = 3600.0
    jitter: bool = False
    jitter_range: float = 0.5

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries — fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 30.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        jitter: bool = False,
    ) -> 'RetryStrategy':
        """Exponential backoff: delay = base_delay * 2^(retry_count - 1), capped."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 3,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * retry_count."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False,
        )

    @classmethod
    def from_settings(cls) -> 'RetryStrategy':
        """Exponential strategy built from the configured defaults."""
        settings = get_settings()
        return cls.exponential(
            max_retries=settings.DEFAULT_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    @classmethod
    def from_dict(cls, config: Optional[dict], default: Optional['RetryStrategy'] = None) -> 'RetryStrategy':
        """Create a strategy from a workflow's ``settings.retry`` block.

        Missing keys fall back to ``default`` (or the configured defaults).
        """
        base = default or cls.from_settings()
        config = config or {}
        return cls(
            policy=RetryPolicy(config.get('policy', base.policy.value)),
            max_retries=config.get('max_retries', base.max_retries),
            base_delay=config.get('base_delay', base.base_delay),
            max_delay=config.get('max_delay', base.max_delay),
            jitter=config.get('jitter', base.jitter),
            jitter_range=config.get('jitter_range', base.jitter_range),
        )

    def to_dict(self) -> dict:
        """Serialize for storage in a workflow definition."""
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'jitter': self.jitter,
            'jitter_range': self.jitter_range,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay in seconds before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        # Apply max cap
        delay = min(delay, self.max_delay)

        # Apply jitter
        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def next_retry_at(self, retry_count: int, now: Optional[datetime] = None) -> datetime:
        """Wall-clock time at which retry number ``retry_count`` becomes due."""
        return (now or utc_now()) + timedelta(seconds=self.compute_delay(retry_count))

    def should_retry(self, retry_count: int, max_retries: int, error: Optional[Exception] = None) -> bool:
        """Whether a failure that brought the count to ``retry_count`` gets another attempt."""
        if self.policy == RetryPolicy.NONE:
            return False
        if error is not None and not getattr(error, 'retryable', False):
            return False
        return retry_count < max_retries
