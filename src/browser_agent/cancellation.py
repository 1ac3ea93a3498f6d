"""Explicit cancellation token threaded through every suspending call.

The CLI creates one token per program run and fires it from the SIGINT
handler. Components never look at global state: they receive the token and
race their awaitables against it with `CancellationToken.guard()`, so tests
can simulate an operator interrupt by calling `cancel()` directly.

Example:
    token = CancellationToken()
    text = await token.guard(session.run_task("open example.com"))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from browser_agent.errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal.

    >>> token = CancellationToken()
    >>> token.cancelled
    False
    >>> token.cancel("operator interrupt")
    >>> token.cancelled, token.reason
    (True, 'operator interrupt')
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        logger.info(f"Cancellation requested: {reason}")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise CancellationError if the token has fired."""
        if self._event.is_set():
            raise CancellationError(self.reason or "cancelled")

    async def wait(self) -> None:
        """Suspend until the token fires."""
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first.

        When the token wins, the work is cancelled and awaited to completion
        (so its own cleanup runs) before CancellationError is raised. The
        partial result, if any, is discarded.

        Raises:
            CancellationError: If the token fires before the work finishes
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            logger.debug("Cancelled work finished unwinding")
        except Exception as exc:
            logger.debug(f"Cancelled work raised while unwinding: {exc!r}")
        raise CancellationError(self.reason or "cancelled")
