"""Cooperative cancellation shared by every suspension point of a request.

The caller owns the token and calls ``cancel()``; adapters race each read
against it with ``run()`` so cancellation is observed within one read
cycle instead of after the next chunk arrives.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCancelled(Exception):
    """Internal signal that unwinds an in-flight read after ``cancel()``.

    Adapters convert it into a ``Cancelled`` stream event; it never reaches
    the gateway's caller.
    """

    def __init__(self, reason: str = ""):
        super().__init__(reason or "cancelled")
        self.reason = reason


class CancellationToken:
    """A one-shot cancellation flag awaitable from asyncio code."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled(self.reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending operation is cancelled and
        ``RequestCancelled`` is raised. A result that is already available
        wins over a simultaneous cancellation; the next ``run`` observes it.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise RequestCancelled(self.reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelled(self.reason)
