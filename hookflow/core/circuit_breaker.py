"""
Circuit Breaker Pattern for outbound calls

Prevents cascading failures when a downstream service (agent service,
messaging API, tenant HTTP endpoint) is down by failing fast
after too many consecutive failures. One breaker per service name.

States:
- CLOSED: Normal operation, requests go through
- OPEN: Too many failures, blocking requests (fast-fail)
- HALF_OPEN: Testing if service recovered (allows 1 request)

Example:
    breakers = CircuitBreakerRegistry()
    breaker = breakers.get("agent-service")

    if breaker.is_open():
        raise ExecutorUnavailableError("agent-service circuit breaker is OPEN")

    try:
        result = await call_agent(...)
        breaker.record_success()
    except Exception:
        breaker.record_failure()
        raise
"""

import threading
import logging
from typing import Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    """Circuit breaker states"""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Circuit breaker for one downstream service.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,  # Open after 5 consecutive failures
        timeout: int = 60,  # Retry after 1 minute
        half_open_max_calls: int = 1  # Allow 1 test call in HALF_OPEN state
    ):
        """
        Args:
            name: Service name (used in logs and health output)
            failure_threshold: Number of consecutive failures before opening
            timeout: Seconds to wait before attempting recovery (HALF_OPEN)
            half_open_max_calls: Number of test calls allowed in HALF_OPEN state
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._half_open_calls = 0

        # Thread lock for state changes
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def is_open(self) -> bool:
        """
        Check if the circuit blocks the next call.

        Moves OPEN -> HALF_OPEN once the timeout has passed and counts the
        call as a test call while HALF_OPEN.
        """
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                elapsed = (datetime.utcnow() - self._last_failure_time).total_seconds() \
                    if self._last_failure_time else self.timeout
                if elapsed < self.timeout:
                    return True
                logger.info(f"CircuitBreaker[{self.name}]: OPEN -> HALF_OPEN (timeout passed)")
                self._state = CircuitBreakerState.HALF_OPEN
                self._half_open_calls = 0

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    return True
                self._half_open_calls += 1

            return False

    def is_closed(self) -> bool:
        return self.state == CircuitBreakerState.CLOSED

    def record_success(self):
        """Record successful call (reset failure counter)"""
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info(f"CircuitBreaker[{self.name}]: {self._state} -> CLOSED (success)")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0

    def record_failure(self):
        """Record failed call (increment failure counter)"""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.utcnow()

            # If HALF_OPEN, one failure immediately opens the circuit
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.OPEN
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN -> OPEN "
                    f"(test call failed, will retry in {self.timeout}s)"
                )
            elif (
                self._state == CircuitBreakerState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitBreakerState.OPEN
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED -> OPEN "
                    f"({self._failure_count} consecutive failures, will retry in {self.timeout}s)"
                )

    def reset(self):
        """Manually reset circuit breaker to CLOSED state"""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0

    def get_status(self) -> dict:
        """Get circuit breaker status (for monitoring)"""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "timeout_seconds": self.timeout,
            }


class CircuitBreakerRegistry:
    """Lazily creates one breaker per service name."""

    def __init__(self, failure_threshold: int = 5, timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name,
                    failure_threshold=self.failure_threshold,
                    timeout=self.timeout,
                )
                self._breakers[name] = breaker
            return breaker

    def get_status(self) -> Dict[str, dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_status() for breaker in breakers}
