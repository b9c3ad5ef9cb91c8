"""
Named pybreaker circuit breakers for the engine's external APIs.

A degraded calendar, payment or LLM API should fail fast instead of adding a
timeout to every inbound message. pybreaker only guards synchronous calls
(its async support needs Tornado), so ``call_with_breaker`` drives the
breaker from asyncio through its public state methods:

    CLOSED     -> OPEN       after ``fail_max`` consecutive system errors
    OPEN       -> HALF_OPEN  on the first call after ``reset_timeout`` seconds
    HALF_OPEN  -> CLOSED     on success, back to OPEN on failure

Usage:
    try:
        slots = await call_with_breaker(calendar_breaker, client.get_free_slots, cal_id, start, end)
    except pybreaker.CircuitBreakerError:
        slots = []
"""

import logging
import time
from typing import Any, Awaitable, Callable

import pybreaker

logger = logging.getLogger(__name__)


class BreakerStateLogger(pybreaker.CircuitBreakerListener):
    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        old_name = old_state.name if old_state else "none"
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(
                f"Circuit breaker opened | name={cb.name} | fail_fast_for={cb.reset_timeout}s"
            )
        else:
            logger.info(
                f"Circuit breaker state changed | name={cb.name} | {old_name} -> {new_state.name}"
            )


_breakers: dict[str, pybreaker.CircuitBreaker] = {}
_failures: dict[str, int] = {}
_opened_at: dict[str, float] = {}
_listener = BreakerStateLogger()


def get_circuit_breaker(name: str, fail_max: int = 5, reset_timeout: int = 30) -> pybreaker.CircuitBreaker:
    """Return the breaker registered under ``name``, creating it on first use."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            name=name, fail_max=fail_max, reset_timeout=reset_timeout, listeners=[_listener]
        )
        _breakers[name] = breaker
        _failures[name] = 0
    return breaker


# (name, fail_max, reset_timeout)
openrouter_breaker = get_circuit_breaker("openrouter", 5, 30)
calendar_breaker = get_circuit_breaker("calendar", 5, 15)
payment_breaker = get_circuit_breaker("payments", 3, 60)


def _trip(breaker: pybreaker.CircuitBreaker) -> None:
    _opened_at[breaker.name] = time.monotonic()
    breaker.open()


def _record_failure(breaker: pybreaker.CircuitBreaker, exc: Exception) -> None:
    name = breaker.name
    _failures[name] = _failures.get(name, 0) + 1
    logger.warning(
        f"Circuit breaker failure | name={name} | consecutive={_failures[name]} | "
        f"error={type(exc).__name__}: {exc}"
    )
    if breaker.current_state == pybreaker.STATE_HALF_OPEN or _failures[name] >= breaker.fail_max:
        _trip(breaker)


def _record_success(breaker: pybreaker.CircuitBreaker) -> None:
    _failures[breaker.name] = 0
    if breaker.current_state != pybreaker.STATE_CLOSED:
        breaker.close()


async def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable[..., Awaitable[Any]],
    *args,
    **kwargs,
) -> Any:
    """
    Await ``func(*args, **kwargs)`` under ``breaker``.

    Raises:
        pybreaker.CircuitBreakerError: Breaker is open and still cooling down
        Exception: Whatever ``func`` raised (after being counted)
    """
    if breaker.current_state == pybreaker.STATE_OPEN:
        opened = _opened_at.get(breaker.name, 0.0)
        if time.monotonic() - opened < breaker.reset_timeout:
            raise pybreaker.CircuitBreakerError(f"Circuit breaker '{breaker.name}' is open")
        breaker.half_open()

    try:
        result = await func(*args, **kwargs)
    except Exception as e:
        if breaker.is_system_error(e):
            _record_failure(breaker, e)
        raise

    _record_success(breaker)
    return result


def get_breaker_status() -> dict[str, dict[str, Any]]:
    """Per-breaker state for /health."""
    return {
        name: {
            "state": breaker.current_state,
            "consecutive_failures": _failures.get(name, 0),
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in _breakers.items()
    }


def reset_circuit_breakers() -> None:
    """Close every breaker and forget failure history."""
    for name, breaker in _breakers.items():
        _failures[name] = 0
        _opened_at.pop(name, None)
        if breaker.current_state != pybreaker.STATE_CLOSED:
            breaker.close()
