"""
Outbox relay: re-publishes change events whose external delivery has not
been confirmed yet.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from shopcore.infrastructure.database.outbox import OutboxStore
from shopcore.infrastructure.messaging.event_notifier import EventNotifier
from shopcore.logging import get_logger

logger = get_logger(__name__)


class OutboxRelay:
    def __init__(self, outbox: OutboxStore, notifier: EventNotifier, *, batch_size: int = 100) -> None:
        self._outbox = outbox
        self._notifier = notifier
        self._batch_size = batch_size
        self._stopped = asyncio.Event()

    async def redeliver_pending(self) -> int:
        """
        Deliver one batch of pending events to external subscribers.

        Returns:
            Number of events delivered successfully
        """
        events = await self._outbox.fetch_pending(self._batch_size)
        delivered = 0
        for event in events:
            if await self._notifier.redeliver(event):
                delivered += 1
        if events:
            logger.info("Outbox batch relayed", fetched=len(events), delivered=delivered)
        return delivered

    async def run(self, interval_seconds: float = 5.0, *, max_cycles: Optional[int] = None) -> None:
        """Poll until `stop()` is called (or `max_cycles` batches ran)."""
        cycles = 0
        while not self._stopped.is_set():
            try:
                await self.redeliver_pending()
            except Exception as e:
                logger.error("Outbox relay cycle failed", error=str(e))
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stopped.set()
