"""
Ledger Event Subscription

Polls the ledger for Registered / InactivityPeriodUpdated / BeneficiaryUpdated
and hands each event to a handler (the relay's cache upsert). On failure the
poll backs off exponentially (1s doubling, capped at 60s) and resumes from the
last block it fully processed, so a reconnect never skips events.

With from_block=None the cursor is set to the chain head on the first poll,
so startup never replays the whole ledger history.
"""

import asyncio
import logging
from typing import Callable, Optional

from .chain import LedgerClient
from .ledger import LedgerEvent

logger = logging.getLogger("lazarus.subscription")

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0


class LedgerEventSubscription:
    def __init__(
        self,
        ledger_client: LedgerClient,
        handler: Callable[[LedgerEvent], None],
        poll_seconds: float = 15.0,
        from_block: Optional[int] = 0,
    ):
        self._client = ledger_client
        self._handler = handler
        self._poll_seconds = poll_seconds
        self._cursor = from_block
        self._backoff = INITIAL_BACKOFF_SECONDS
        self._task: Optional[asyncio.Task] = None
        self.events_applied = 0
        self.failures = 0

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Fetch and apply one batch. Returns the number of events applied."""
        if self._cursor is None:
            self._cursor = await self._client.latest_block()
            logger.info(f"Event subscription starting at block {self._cursor}")
        events, next_block = await self._client.fetch_events(self._cursor)
        for event in events:
            try:
                self._handler(event)
                self.events_applied += 1
            except Exception as e:
                logger.error(f"Failed to apply {event.name} for {event.user[:10]}...: {e}")
        self._cursor = max(self._cursor, next_block)
        return len(events)

    async def _loop(self):
        logger.info(f"Event subscription started (poll every {self._poll_seconds}s)")
        while True:
            try:
                applied = await self.poll_once()
                if applied:
                    logger.debug(f"Applied {applied} ledger events (cursor={self._cursor})")
                self._backoff = INITIAL_BACKOFF_SECONDS
                delay = self._poll_seconds
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                delay = self._backoff
                logger.warning(f"Event poll failed, retrying in {delay:.0f}s: {e}")
                self._backoff = min(self._backoff * 2, MAX_BACKOFF_SECONDS)
            await asyncio.sleep(delay)

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Event subscription stopped (cursor={self._cursor}, applied={self.events_applied})")

    @property
    def next_backoff(self) -> float:
        return self._backoff
