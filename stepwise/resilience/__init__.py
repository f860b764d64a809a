"""Rate limiting and circuit breaking around module invocations."""

from .breaker import CircuitBreaker, CircuitState
from .guard import IntegrationGuard, ResilienceService
from .limiter import ReservoirLimiter

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "IntegrationGuard",
    "ReservoirLimiter",
    "ResilienceService",
]
