"""
Cooperative cancellation shared by every suspending call of a run
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from .errors import RunCancelled

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ConfirmCallback = Callable[[], Awaitable[bool]]


class CancellationToken:
    """
    Cancellation signal passed explicitly into HTTP calls, buffer operations and timers.

    A first request asks ``confirm`` (when given) before the token fires; while the
    confirmation is pending, work keeps running. A second request fires the token
    immediately and marks it as forced.
    """

    def __init__(self, confirm: Optional[ConfirmCallback] = None):
        self._confirm = confirm
        self._event = asyncio.Event()
        self._requests = 0
        self._forced = False
        self._confirming: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def forced(self) -> bool:
        return self._forced

    @property
    def pending_confirmation(self) -> bool:
        return self._confirming is not None and not self._confirming.done()

    def request(self) -> None:
        """Register a user cancellation request (e.g. from a signal handler)"""
        self._requests += 1
        if self._event.is_set():
            self._forced = True
            return
        if self._requests > 1 or self._confirm is None:
            self._forced = self._requests > 1
            logger.warning("Cancellation requested", forced=self._forced)
            self._event.set()
            return
        self._confirming = asyncio.ensure_future(self._ask())

    def cancel(self) -> None:
        """Fire the token without confirmation"""
        self._event.set()

    async def _ask(self) -> None:
        try:
            confirmed = await self._confirm()
        except Exception as e:
            logger.warning("Cancellation confirmation failed, cancelling", error=str(e))
            confirmed = True
        if self._event.is_set():
            return
        if confirmed:
            logger.warning("Cancellation confirmed")
            self._event.set()
        else:
            logger.info("Cancellation dismissed, continuing")
            self._requests = 0

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("Run cancelled by user")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case it is cancelled"""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Cancelled call finished with error", error=str(e))
        raise RunCancelled("Run cancelled by user")

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early with RunCancelled when the token fires"""
        await self.run(asyncio.sleep(seconds))

