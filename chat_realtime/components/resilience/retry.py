"""
Reconnect backoff.

Exponential backoff with jitter for re-establishing the realtime
connection. Jitter spreads reconnect storms when many clients lose the
same backend node at once.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Final

from chat_common.config.settings import Settings, settings as default_settings


# =============================================================================
# Constants
# =============================================================================


# Default jitter range: ±25% of calculated delay
DEFAULT_JITTER_FACTOR: Final[float] = 0.25

# Default exponential backoff base
DEFAULT_BACKOFF_BASE: Final[float] = 2.0

# Default first delay in seconds
DEFAULT_INITIAL_DELAY: Final[float] = 0.5


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_base: Exponential multiplier between attempts.
        jitter_factor: Random jitter range as fraction (0.25 = ±25%).
        max_attempts: Attempts before giving up; None retries forever.
    """

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = 30.0
    backoff_base: float = DEFAULT_BACKOFF_BASE
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")

    @property
    def unbounded(self) -> bool:
        return self.max_attempts is None


# =============================================================================
# Retry Functions
# =============================================================================


def calculate_delay_with_jitter(
    attempt: int,
    config: RetryConfig | None = None,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Calculate retry delay with exponential backoff and jitter.

    The delay is calculated as:
        base_delay = initial_delay * (backoff_base ^ attempt)
        capped_delay = min(base_delay, max_delay)
        final_delay = capped_delay * (1 ± jitter_factor), never above max_delay

    Args:
        attempt: Retry number, 0 for the first retry.
        config: Retry configuration (uses defaults if None).
        rand: Source of jitter, injectable for deterministic tests.

    Returns:
        Delay in seconds.
    """
    if config is None:
        config = RetryConfig()

    base_delay = config.initial_delay * (config.backoff_base ** attempt)
    capped_delay = min(base_delay, config.max_delay)

    jitter_range = capped_delay * config.jitter_factor
    jitter = rand(-jitter_range, jitter_range) if jitter_range else 0.0

    return min(config.max_delay, max(0.0, capped_delay + jitter))


def should_retry(attempt: int, max_attempts: int | None) -> bool:
    """
    Determine if another attempt should be made.

    Args:
        attempt: Attempts already made.
        max_attempts: Attempt budget, None for unlimited.
    """
    return max_attempts is None or attempt < max_attempts


class Backoff:
    """
    Stateful attempt counter over a RetryConfig.

    Usage:
        backoff = Backoff(config)
        while backoff.can_retry:
            await asyncio.sleep(backoff.next_delay())
            ...
        backoff.reset()  # after a successful connect
    """

    def __init__(
        self,
        config: RetryConfig,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._config = config
        self._rand = rand
        self._attempt = 0

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def attempt(self) -> int:
        """Attempts handed out since the last reset."""
        return self._attempt

    @property
    def can_retry(self) -> bool:
        return should_retry(self._attempt, self._config.max_attempts)

    def next_delay(self) -> float:
        """Delay before the next attempt; advances the counter."""
        delay = calculate_delay_with_jitter(self._attempt, self._config, self._rand)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0


# =============================================================================
# Factory Functions
# =============================================================================


def create_reconnect_retry_config(settings: Settings | None = None) -> RetryConfig:
    """Retry config for reconnecting after an unexpected transport loss."""
    settings = settings or default_settings
    return RetryConfig(
        initial_delay=settings.reconnect_initial_delay,
        max_delay=settings.reconnect_max_delay,
        backoff_base=settings.reconnect_backoff_base,
        jitter_factor=settings.reconnect_jitter_factor,
        max_attempts=settings.reconnect_max_attempts,
    )


def create_connect_retry_config(settings: Settings | None = None) -> RetryConfig:
    """
    Retry config for an explicit connect().

    Same curve as reconnects but always bounded, so the caller gets a
    NetworkError instead of waiting forever.
    """
    settings = settings or default_settings
    return RetryConfig(
        initial_delay=settings.reconnect_initial_delay,
        max_delay=settings.reconnect_max_delay,
        backoff_base=settings.reconnect_backoff_base,
        jitter_factor=settings.reconnect_jitter_factor,
        max_attempts=settings.connect_max_attempts,
    )
