"""Convenience exports for the generation service client."""

from .generation import (
    BreakerState,
    CircuitBreaker,
    GenerationClient,
    GenerationError,
    GenerationResponseError,
    GenerationTransportError,
    RetryPolicy,
)

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "GenerationClient",
    "GenerationError",
    "GenerationResponseError",
    "GenerationTransportError",
    "RetryPolicy",
]
