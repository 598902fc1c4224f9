from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

LOGGER = logging.getLogger('solver.settlement_sync.retry')

T = TypeVar('T')

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int
    base_delay: float
    multiplier: float = 2.0
    growth: Literal['linear', 'exponential'] = 'linear'

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        if attempt < 1 or self.base_delay <= 0:
            return 0.0
        if self.growth == 'linear':
            return self.base_delay * attempt
        return self.base_delay * (self.multiplier ** (attempt - 1))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    label: str = '',
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Sleep = asyncio.sleep
) -> T:
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts:
                raise
            if should_retry is not None and not should_retry(exc):
                raise
            delay = policy.delay_for(attempt)
            LOGGER.warning(
                'retry attempt=%s/%s label=%s delay=%.2fs error=%s',
                attempt,
                attempts,
                label or '-',
                delay,
                exc
            )
            await sleep(delay)
    raise AssertionError('unreachable')
