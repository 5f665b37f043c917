"""Bounded background delivery of notifications.

Request handlers call ``submit`` and return immediately; a single worker
task drains the queue, looks up the organizer's webhook and calls the
sender. Lookup and delivery failures are logged and counted, never
propagated to the code that submitted the event.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sponsorpay.notifications.slack import NotificationSender, SponsorshipEvent

logger = logging.getLogger(__name__)

# organizer_id -> webhook URL, or None when the organizer has none configured
WebhookResolver = Callable[[str], Awaitable[Optional[str]]]


class NotificationDispatcher:
    """Single-worker queue in front of a NotificationSender."""

    def __init__(
        self,
        sender: NotificationSender,
        resolve_webhook: WebhookResolver,
        maxsize: int = 100,
    ):
        self.sender = sender
        self.resolve_webhook = resolve_webhook
        self._queue: asyncio.Queue[SponsorshipEvent] = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self.sent = 0
        self.failed = 0
        self.skipped = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task on the running event loop."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info("Notification dispatcher started")

    def submit(self, event: SponsorshipEvent) -> bool:
        """
        Queue an event without waiting.

        Returns:
            False when the queue is full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Notification queue full, dropping event for sponsorship {event.sponsorship_id}"
            )
            return False
        return True

    async def _deliver(self, event: SponsorshipEvent) -> None:
        webhook_url = await self.resolve_webhook(event.organizer_id)
        if not webhook_url:
            self.skipped += 1
            return
        await self.sender.send(webhook_url, event)
        self.sent += 1

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(f"Notification for sponsorship {event.sponsorship_id} failed: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been attempted."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Give queued events up to ``timeout`` seconds, then cancel the worker."""
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Stopping dispatcher with {self._queue.qsize()} undelivered event(s)")

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(
            f"Notification dispatcher stopped (sent={self.sent}, failed={self.failed}, "
            f"skipped={self.skipped}, dropped={self.dropped})"
        )
