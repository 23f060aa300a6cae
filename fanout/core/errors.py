from __future__ import annotations

from typing import Any


class FanoutError(Exception):
    """Base error for the fan-out engine."""


class ConfigError(FanoutError):
    """Missing or inconsistent engine configuration."""


class JobValidationError(FanoutError):
    """Malformed job request rejected before any key is reserved."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AudienceResolutionError(FanoutError):
    """The recipient directory could not produce a snapshot."""


class StoreUnavailableError(FanoutError):
    """The backing store for jobs and delivery units is unreachable."""


class JobNotFoundError(FanoutError):
    """No job exists for the requested id."""


class DeadLetterNotFoundError(FanoutError):
    """No dead-letter record exists for the requested id."""


class DeadLetterStateError(FanoutError):
    """Dead-letter record is not in a state that allows the operation."""


class DeliveryError(FanoutError):
    """Delivery transport failure."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransientDeliveryError(DeliveryError):
    """Retryable transport failure (timeout, 5xx, throttling)."""


class PermanentDeliveryError(DeliveryError):
    """Non-retryable transport failure (invalid recipient, bounced address)."""
