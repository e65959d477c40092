"""
shared/utils/resilience.py
Circuit breakers for downstream services (payment gateway, messaging providers).
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener

from config.settings import settings

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Log breaker state changes so an open circuit is visible in the JSON logs."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed from {getattr(old_state, 'name', old_state)} "
            f"to {getattr(new_state, 'name', new_state)}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str, exclude=None) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=settings.PAYMENT_BREAKER_FAIL_MAX,
                reset_timeout=settings.PAYMENT_BREAKER_RESET_SECONDS,
                exclude=list(exclude or []),
                listeners=[LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]

    def states(self) -> dict[str, str]:
        return {name: breaker.current_state for name, breaker in self.breakers.items()}


circuit_breaker_manager = CircuitBreakerManager()
