"""
Daily reconciliation sweep scheduler.

Runs ``ReconciliationAggregator.sweep`` for the previous day once the clock
passes SWEEP_HOUR:SWEEP_MINUTE.  The sweep itself is synchronous SQLAlchemy
work, so it is pushed to a worker thread and never blocks the event loop.
Scheduled and on-demand sweeps share one lock and never overlap.
"""
from datetime import date, datetime, timedelta
from typing import Callable, Optional
import asyncio
import logging
import threading

from sqlalchemy.orm import Session

from database import SessionLocal
from services.reconciliation_aggregator import ReconciliationAggregator, SweepResult

logger = logging.getLogger(__name__)

_sweep_lock = threading.Lock()


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def sweep_day(db: Session, day: date) -> Optional[SweepResult]:
    """Sweep *day* unless another sweep is running (then None)."""
    if not _sweep_lock.acquire(blocking=False):
        logger.warning(f"[SWEEP] Already running, skipped request for {day}")
        return None
    try:
        return ReconciliationAggregator(db).sweep(day)
    finally:
        _sweep_lock.release()


def run_sweep(day: date, session_factory: Callable = SessionLocal) -> Optional[SweepResult]:
    db = session_factory()
    try:
        return sweep_day(db, day)
    finally:
        db.close()


class DailySweepScheduler:
    def __init__(
        self,
        hour: int = 0,
        minute: int = 15,
        session_factory: Callable = SessionLocal,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.hour = hour
        self.minute = minute
        self.session_factory = session_factory
        self.clock = clock
        self.last_run_for: Optional[date] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, day: Optional[date] = None) -> Optional[SweepResult]:
        """Sweep *day* (default: yesterday) in a worker thread."""
        day = day or (self.clock().date() - timedelta(days=1))
        logger.info(f"[SWEEP] Started for {day}")
        result = await asyncio.to_thread(run_sweep, day, self.session_factory)
        if result is not None:
            self.last_run_for = day
            logger.info(f"[SWEEP] Completed for {day}: {result.to_dict()}")
        return result

    async def _loop(self):
        while True:
            delay = seconds_until_next_run(self.clock(), self.hour, self.minute)
            logger.info(f"[SWEEP] Next run in {int(delay)}s")
            await asyncio.sleep(delay)
            try:
                await self.run_once()
            except Exception as e:
                # keep the loop alive; tomorrow's run retries
                logger.error(f"[SWEEP] Failed: {e}", exc_info=True)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"✅ Daily reconciliation sweep scheduled at {self.hour:02d}:{self.minute:02d}")

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Daily reconciliation sweep stopped")
