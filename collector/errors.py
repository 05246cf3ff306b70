"""Exception taxonomy shared by the recorders, the rate limiter and the HTTP layer."""
from __future__ import annotations


class CollectorError(Exception):
    """Base class for collector failures."""


class ValidationError(CollectorError):
    """Raised when client input is malformed or incomplete.

    The message is meant for logs only; the HTTP layer answers with a generic
    text so the schema is not disclosed to callers.
    """


class RateLimitExceeded(CollectorError):
    """Raised when an IP has used up its window for an endpoint type."""

    def __init__(self, endpoint_type: str) -> None:
        super().__init__(f"Rate limit exceeded for endpoint '{endpoint_type}'")
        self.endpoint_type = endpoint_type


class StoreError(CollectorError):
    """Raised when the backing relational store fails."""


__all__ = ["CollectorError", "RateLimitExceeded", "StoreError", "ValidationError"]
