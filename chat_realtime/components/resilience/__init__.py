"""
Resilience components.

Reconnect backoff with jitter.
"""

from chat_realtime.components.resilience.retry import (
    Backoff,
    RetryConfig,
    calculate_delay_with_jitter,
    create_connect_retry_config,
    create_reconnect_retry_config,
    should_retry,
)

__all__ = [
    "Backoff",
    "RetryConfig",
    "calculate_delay_with_jitter",
    "create_connect_retry_config",
    "create_reconnect_retry_config",
    "should_retry",
]
