"""Exponential backoff with jitter, shared by the stage executor and the chain poller."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable


def backoff_delay(attempt: int, base: float, cap: float, jitter: float = 0.5) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``base * 2**(attempt-1)``, capped at ``cap``, then scaled by a random
    factor in ``[1 - jitter, 1]`` so concurrent retries spread out.
    """
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    return delay * (1 - jitter * random.random())


@dataclass
class RetryPolicy:
    """How many times a stage is attempted and how long to wait in between."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.5
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter)

    async def wait(self, attempt: int) -> None:
        await self.sleep(self.delay_for(attempt))
