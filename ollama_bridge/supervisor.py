"""Time budget enforcement for completion requests."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .exceptions import CompletionTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestSupervisor:
    """Bound one logical completion request by wall-clock time."""

    def __init__(self, timeout: float) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()``; cancel it once the budget is exhausted.

        ``operation`` is a factory so every call gets a fresh awaitable and the
        deadline covers connection setup as well as reading the reply.
        """

        try:
            return await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Completion cancelled after %.1fs", self.timeout)
            raise CompletionTimeoutError(self.timeout) from exc
