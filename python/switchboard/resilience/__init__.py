from .circuit_breaker import (
    BreakerStateStore,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitBreakerStats,
    CircuitState,
    InMemoryBreakerStore,
    JsonFileBreakerStore,
)
from .degradation import (
    DegradationLevel,
    DegradationManager,
    get_degradation_manager,
    reset_degradation_manager,
)
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult, with_rate_limit

__all__ = [
    "BreakerStateStore",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerManager",
    "CircuitBreakerStats",
    "CircuitState",
    "DegradationLevel",
    "DegradationManager",
    "InMemoryBreakerStore",
    "JsonFileBreakerStore",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimiter",
    "get_degradation_manager",
    "reset_degradation_manager",
    "with_rate_limit",
]
