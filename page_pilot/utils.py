from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Coroutine, ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec('P')
R = TypeVar('R')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule: ``max_attempts`` tries with a fixed or growing delay between them."""

    max_attempts: int
    delay: float = 0.0
    backoff: float = 1.0
    max_delay: float | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the 0-based ``attempt`` failed."""
        delay = self.delay * (self.backoff**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


async def poll_until(check: Callable[[], Awaitable[bool]], policy: RetryPolicy) -> bool:
    """Run ``check`` until it returns True or the policy is exhausted.

    Exceptions raised by ``check`` count as a failed attempt.
    """
    for attempt in range(policy.max_attempts):
        try:
            if await check():
                return True
        except Exception as e:
            logger.debug(f'Poll attempt {attempt + 1}/{policy.max_attempts} raised: {type(e).__name__}: {e}')
        if attempt < policy.max_attempts - 1:
            await asyncio.sleep(policy.delay_for(attempt))
    return False


def time_execution_async(
    additional_text: str = '',
) -> Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
    def decorator(func: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, Coroutine[Any, Any, R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start_time = time.time()
            result = await func(*args, **kwargs)
            execution_time = time.time() - start_time
            if execution_time > 0.25:
                logger.debug(f'⏳ {additional_text.strip("-")}() took {execution_time:.2f}s')
            return result

        return wrapper

    return decorator


def truncate(text: str, limit: int, suffix: str = '...') -> str:
    """Cut ``text`` to ``limit`` characters, the suffix included."""
    if len(text) <= limit:
        return text
    return text[: limit - len(suffix)] + suffix
