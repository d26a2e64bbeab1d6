"""Retry policies for control-plane calls."""

from wavefleet.infrastructure.retry.policy import RetryCategory, RetryConfig, RetryPolicy

__all__ = ["RetryCategory", "RetryConfig", "RetryPolicy"]
