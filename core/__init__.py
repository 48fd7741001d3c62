"""
Clip batch core components

Foundational infrastructure shared by every service:
- Configuration loaded from the environment
- Circuit breaker for provider resilience
- Error taxonomy
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from .config import Config, get_config
from .errors import OrchestrationError

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    "Config",
    "get_config",
    "OrchestrationError",
]
