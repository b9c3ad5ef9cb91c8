"""
Resilient API helpers: error classification and ordered fallback strategies.

Used for:
- tenacity retry predicates in the CRM, calendar and payment clients
- primary/legacy endpoint fallbacks (appointment cancel and reschedule)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is retryable.

    Retryable errors:
    - HTTP 429 (rate limit), 500, 502, 503, 504
    - httpx transport errors (connect/read failures, timeouts)
    - Generic network errors
    """
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES

    if isinstance(error, httpx.TransportError):
        return True

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    return False


@dataclass
class StrategyAttempt:
    """Tagged outcome of a single strategy."""

    name: str
    ok: bool
    error: str | None = None


@dataclass
class StrategyResult:
    """Aggregated outcome of an ordered strategy list."""

    attempts: list[StrategyAttempt] = field(default_factory=list)
    value: Any = None

    @property
    def succeeded(self) -> bool:
        return any(attempt.ok for attempt in self.attempts)

    @property
    def strategy(self) -> str | None:
        """Name of the strategy that succeeded, if any."""
        for attempt in self.attempts:
            if attempt.ok:
                return attempt.name
        return None


async def try_strategies(
    strategies: list[tuple[str, Callable[[], Awaitable[Any]]]],
) -> StrategyResult:
    """
    Try named async callables in order until one succeeds.

    Each strategy produces a tagged StrategyAttempt. Failures are recorded,
    never raised; the caller inspects ``result.succeeded``.

    Example:
        >>> result = await try_strategies([
        ...     ("primary", lambda: client.update_appointment_status(apt_id, "cancelled")),
        ...     ("legacy", lambda: client.update_appointment_status_legacy(apt_id, "cancelled")),
        ... ])
        >>> result.strategy
        'primary'
    """
    result = StrategyResult()

    for name, strategy in strategies:
        try:
            result.value = await strategy()
            result.attempts.append(StrategyAttempt(name=name, ok=True))
            if len(result.attempts) > 1:
                logger.info(
                    f"Fallback strategy succeeded | strategy={name} | "
                    f"attempts={len(result.attempts)}"
                )
            return result
        except Exception as e:
            logger.warning(f"Strategy failed | strategy={name} | error={e}")
            result.attempts.append(
                StrategyAttempt(name=name, ok=False, error=f"{type(e).__name__}: {e}")
            )

    return result
