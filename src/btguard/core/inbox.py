"""
Pairing notification inbox.

Serializes notifications from the OS collaborator (possibly delivered
from another thread) onto the engine's event loop.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Callable, Coroutine

from btguard.bluetooth.adapter import PairingNotification


logger = logging.getLogger(__name__)


class InboxClosed(RuntimeError):
    """Raised when submitting to a closed inbox."""


class PairingInbox:
    """
    FIFO queue of pairing notifications.

    Notifications are delivered in arrival order. Producers outside the
    event loop use submit_threadsafe(). A full inbox makes producers wait;
    notifications are never dropped.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        """
        Initialize the inbox.

        Args:
            maxsize: Maximum queue size (0 for unlimited)
        """
        self._queue: asyncio.Queue[PairingNotification | None] = asyncio.Queue(
            maxsize=maxsize
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False
        # Producers blocked on a full queue; their notifications still count
        self._waiting_puts = 0

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind to the loop that consumes the inbox."""
        self._loop = loop

    async def put(self, notification: PairingNotification) -> None:
        if self._closed:
            raise InboxClosed("Inbox is closed")
        self._waiting_puts += 1
        try:
            await self._queue.put(notification)
        finally:
            self._waiting_puts -= 1

    def submit_threadsafe(
        self,
        notification: PairingNotification,
    ) -> concurrent.futures.Future:
        """
        Submit from any thread.

        Returns:
            Future completed once the notification is queued; it carries
            InboxClosed if the inbox closed first

        Raises:
            InboxClosed: If the inbox is closed or not bound to a loop
        """
        if self._closed or self._loop is None:
            raise InboxClosed("Inbox is not accepting notifications")
        return asyncio.run_coroutine_threadsafe(self.put(notification), self._loop)

    async def get(self) -> PairingNotification | None:
        """Next notification, or None once the inbox is closed and drained."""
        while True:
            if self._closed and self._queue.empty() and not self._waiting_puts:
                return None
            notification = await self._queue.get()
            # The close marker only wakes a consumer; producers may still be waiting
            if notification is not None:
                return notification

    def close(self) -> None:
        """Stop accepting notifications and wake the consumer."""
        if self._closed:
            return
        self._closed = True
        # A full queue has no idle consumer to wake; get() sees the flag
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            logger.debug("Inbox full while closing, %d queued", self._queue.qsize())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def qsize(self) -> int:
        return self._queue.qsize()


NotificationHandler = Callable[[PairingNotification], Coroutine[Any, Any, Any]]


class InboxProcessor:
    """
    Drains the inbox, one task per notification.

    Tasks are started in arrival order; per-identity ordering is kept by
    the handler's identity locks.
    """

    def __init__(
        self,
        inbox: PairingInbox,
        handler: NotificationHandler,
        on_result: Callable[[Any], None] | None = None,
    ) -> None:
        self.inbox = inbox
        self.handler = handler
        self.on_result = on_result
        self._running = False
        self._tasks: set[asyncio.Task] = set()
        self._processed = 0
        self._errors = 0

    async def run(self) -> None:
        """Process notifications until the inbox is closed."""
        self._running = True
        logger.info("Pairing inbox processor started")

        while True:
            notification = await self.inbox.get()
            if notification is None:
                break
            task = asyncio.create_task(self._process(notification))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        # Notifications dequeued before close still run to completion
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._running = False

    async def stop(self) -> None:
        """Close the inbox; queued notifications are still processed by run()."""
        self.inbox.close()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("Pairing inbox processor stopped")

    async def _process(self, notification: PairingNotification) -> Any:
        try:
            result = await self.handler(notification)
            self._processed += 1
            if self.on_result is not None:
                self.on_result(result)
            return result
        except Exception as e:
            self._errors += 1
            logger.error("Error handling pairing notification: %s", e)
            return None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "processed": self._processed,
            "errors": self._errors,
            "in_flight": self.in_flight,
            "queued": self.inbox.qsize,
        }
