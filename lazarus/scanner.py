"""
Inactivity Scanner

Scheduled sweep over the heartbeat cache:
1. Candidates = cache rows past their cached deadline
2. Reconfirm each candidate against the ledger (checkUserStatus)
3. Hand eligible users to the LiquidationExecutor

Guards:
- single-flight: a tick (or manual trigger) while a scan runs is skipped
- bounded concurrency across users (semaphore)
- per-user in-flight set: the same user is never processed twice at once

stop() stops ticking and waits for a running scan to finish.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .heartbeat_store import HeartbeatRecord, HeartbeatStore
from .liquidator import LiquidationExecutor, LiquidationResult

logger = logging.getLogger("lazarus.scanner")


@dataclass
class BatchReport:
    started_at: float
    finished_at: float = 0.0
    candidates: int = 0
    not_eligible: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    in_flight_skipped: list[str] = field(default_factory=list)
    results: list[LiquidationResult] = field(default_factory=list)

    @property
    def settled(self) -> list[LiquidationResult]:
        return [r for r in self.results if r.success]

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "candidates": self.candidates,
            "notEligible": self.not_eligible,
            "errors": self.errors,
            "inFlightSkipped": self.in_flight_skipped,
            "settled": len(self.settled),
            "results": [r.to_dict() for r in self.results],
        }


class InactivityScanner:
    def __init__(
        self,
        store: HeartbeatStore,
        executor: LiquidationExecutor,
        interval_seconds: float = 3600,
        max_concurrency: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._executor = executor
        self._interval = interval_seconds
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight: set[str] = set()

        self._scanning = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.scan_count = 0
        self.last_report: Optional[BatchReport] = None

    @property
    def scan_in_progress(self) -> bool:
        return self._scanning

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ============================================================
    # ONE SCAN
    # ============================================================

    async def run_once(self) -> Optional[BatchReport]:
        """One full pass. Returns None if another pass is already running."""
        if self._scanning:
            logger.warning("Scan already in progress, skipping")
            return None
        self._scanning = True
        report = BatchReport(started_at=self._clock())
        try:
            candidates = self._store.get_inactive_users(int(self._clock() * 1000))
            report.candidates = len(candidates)
            if not candidates:
                logger.info("No inactive users found")
            else:
                logger.info(f"Found {len(candidates)} inactive users, reconfirming on ledger")
                await asyncio.gather(*(self._process(c, report) for c in candidates))
        finally:
            report.finished_at = self._clock()
            self._scanning = False
            self.scan_count += 1
            self.last_report = report

        logger.info(
            f"Scan #{self.scan_count} done: candidates={report.candidates} "
            f"settled={len(report.settled)} attempts={len(report.results)} "
            f"not_eligible={len(report.not_eligible)} errors={len(report.errors)}"
        )
        return report

    async def _process(self, record: HeartbeatRecord, report: BatchReport):
        user = record.user_address
        if user in self._in_flight:
            report.in_flight_skipped.append(user)
            return
        self._in_flight.add(user)
        try:
            async with self._semaphore:
                if not await self._executor.check_user(user):
                    report.not_eligible.append(user)
                    return
                report.results.extend(await self._executor.liquidate_user(user))
        except Exception as e:
            # Ledger read failures end this user's attempt; retried next cycle.
            logger.warning(f"Error processing {user[:10]}...: {e}")
            report.errors[user] = str(e)
        finally:
            self._in_flight.discard(user)

    # ============================================================
    # SCHEDULER
    # ============================================================

    async def _loop(self):
        logger.info(f"Scanner started (every {self._interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduled liquidation check failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scanner stopped")

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """No new ticks; a scan already running is allowed to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
