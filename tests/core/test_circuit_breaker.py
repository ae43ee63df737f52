"""
Unit Tests for Circuit Breaker

Tests cover:
- State transitions (CLOSED → OPEN → HALF_OPEN → CLOSED)
- Failure threshold behavior
- Registry (one breaker per service)
"""

import time

import pytest

from hookflow.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)


@pytest.mark.unit
def test_circuit_breaker_initial_state():
    breaker = CircuitBreaker(failure_threshold=3, timeout=60)

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.is_closed()
    assert not breaker.is_open()


@pytest.mark.unit
def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=3, timeout=60)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.is_closed()

    breaker.record_failure()
    assert breaker.is_open()
    assert breaker.state == CircuitBreakerState.OPEN


@pytest.mark.unit
def test_circuit_breaker_success_resets_failures():
    breaker = CircuitBreaker(failure_threshold=3, timeout=60)

    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.is_closed()


@pytest.mark.unit
def test_circuit_breaker_half_open_recovery():
    """OPEN -> HALF_OPEN after the timeout, one test call, success closes it"""
    breaker = CircuitBreaker(failure_threshold=1, timeout=1, half_open_max_calls=1)
    breaker.record_failure()
    assert breaker.is_open()

    time.sleep(1.1)

    assert not breaker.is_open()  # test call allowed
    assert breaker.state == CircuitBreakerState.HALF_OPEN
    assert breaker.is_open()  # second call blocked while testing

    breaker.record_success()
    assert breaker.is_closed()


@pytest.mark.unit
def test_circuit_breaker_half_open_failure_reopens():
    breaker = CircuitBreaker(failure_threshold=1, timeout=1)
    breaker.record_failure()
    time.sleep(1.1)
    assert not breaker.is_open()

    breaker.record_failure()

    assert breaker.state == CircuitBreakerState.OPEN


@pytest.mark.unit
def test_circuit_breaker_reset_and_status():
    breaker = CircuitBreaker(name="agent-service", failure_threshold=1)
    breaker.record_failure()

    status = breaker.get_status()
    assert status["name"] == "agent-service"
    assert status["state"] == "open"
    assert status["failure_count"] == 1

    breaker.reset()
    assert breaker.is_closed()


@pytest.mark.unit
def test_registry_returns_one_breaker_per_service():
    registry = CircuitBreakerRegistry(failure_threshold=2)

    assert registry.get("agent-service") is registry.get("agent-service")
    assert registry.get("agent-service") is not registry.get("send:whatsapp")

    registry.get("send:whatsapp").record_failure()
    registry.get("send:whatsapp").record_failure()

    status = registry.get_status()
    assert status["send:whatsapp"]["state"] == "open"
    assert status["agent-service"]["state"] == "closed"
