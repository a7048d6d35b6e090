"""
Poller: runs the batch processor on an interval.

- start() is idempotent; the first cycle runs immediately.
- stop() is idempotent; a cycle already in flight finishes before it returns.
- Cycles never overlap. A manual run_once() while a cycle is running
  raises PollerBusyError.
- A failed cycle is logged and remembered in last_error; the schedule
  carries on.

With adaptive polling on, the interval grows by half after enough
consecutive empty checks (capped), and snaps back on the first cycle that
finds new mail.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from mailpilot.logging.config import cycle_id_var, mailbox_var
from mailpilot.pipeline.processor import BatchProcessor
from mailpilot.pipeline.schemas import CycleReport, PollerConfig, PollerStatus

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 1.5


class PollerBusyError(Exception):
    """A cycle is already running."""


class Poller:
    def __init__(
        self,
        processor: BatchProcessor,
        interval_seconds: float = 120.0,
        adaptive: bool = True,
        max_interval_seconds: float = 900.0,
        empty_checks_before_backoff: int = 10,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        self._processor = processor
        self._config = PollerConfig(
            interval_seconds=interval_seconds,
            adaptive=adaptive,
            max_interval_seconds=max(max_interval_seconds, interval_seconds),
            empty_checks_before_backoff=empty_checks_before_backoff,
        )

        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._current_interval = interval_seconds
        self._consecutive_empty = 0
        self._processed_count = 0
        self._last_check_time: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        if self.running:
            logger.debug("poller.start.ignored", extra={"action": "poller.start.ignored"})
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="mailpilot-poller")
        logger.info(
            "poller.started",
            extra={
                "action": "poller.started",
                "interval_seconds": self._config.interval_seconds,
                "adaptive": self._config.adaptive,
            },
        )

    async def stop(self) -> None:
        if not self.running:
            return

        self._stop_event.set()
        task = self._task
        await task
        self._task = None
        logger.info(
            "poller.stopped",
            extra={"action": "poller.stopped", "processed_count": self._processed_count},
        )

    async def run_once(self) -> CycleReport:
        """
        Run a single cycle now.

        Raises:
            PollerBusyError: if a cycle is already in progress.
            Exception: whatever the cycle raised.
        """
        if self._cycle_lock.locked():
            raise PollerBusyError("A processing cycle is already running")
        return await self._run_cycle(raise_errors=True)

    def get_status(self) -> PollerStatus:
        return PollerStatus(
            running=self.running,
            last_check_time=self._last_check_time,
            processed_count=self._processed_count,
            config=self._config.model_copy(),
            current_interval_seconds=self._current_interval,
            consecutive_empty_checks=self._consecutive_empty,
            cycle_in_progress=self._cycle_lock.locked(),
            last_error=self._last_error,
        )

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._cycle_lock.locked():
                await self._run_cycle(raise_errors=False)
            else:
                logger.info("poller.cycle.skipped", extra={"action": "poller.cycle.skipped"})

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._current_interval)
            except asyncio.TimeoutError:
                pass

    async def _run_cycle(self, raise_errors: bool) -> Optional[CycleReport]:
        async with self._cycle_lock:
            token = cycle_id_var.set(uuid.uuid4().hex[:8])
            mailbox_token = mailbox_var.set(getattr(self._processor, "owner_address", None) or "-")
            try:
                report = await self._processor.run_cycle()
            except Exception as e:
                self._last_error = f"{type(e).__name__}: {e}"
                self._last_check_time = datetime.now(timezone.utc)
                logger.error(
                    "poller.cycle.failed",
                    extra={
                        "action": "poller.cycle.failed",
                        "error_type": type(e).__name__,
                        "error": str(e)[:500],
                    },
                )
                if raise_errors:
                    raise
                return None
            finally:
                cycle_id_var.reset(token)
                mailbox_var.reset(mailbox_token)

        self._last_error = None
        self._last_check_time = datetime.now(timezone.utc)
        self._processed_count += report.newly_processed
        self._adjust_interval(report)
        return report

    def _adjust_interval(self, report: CycleReport) -> None:
        if not self._config.adaptive:
            return

        if report.newly_processed > 0:
            if self._current_interval != self._config.interval_seconds:
                logger.info(
                    "poller.interval.reset",
                    extra={
                        "action": "poller.interval.reset",
                        "interval_seconds": self._config.interval_seconds,
                    },
                )
            self._consecutive_empty = 0
            self._current_interval = self._config.interval_seconds
            return

        self._consecutive_empty += 1
        if self._consecutive_empty >= self._config.empty_checks_before_backoff:
            widened = min(
                self._current_interval * BACKOFF_FACTOR,
                self._config.max_interval_seconds,
            )
            if widened != self._current_interval:
                self._current_interval = widened
                logger.info(
                    "poller.interval.backoff",
                    extra={
                        "action": "poller.interval.backoff",
                        "interval_seconds": widened,
                        "empty_checks": self._consecutive_empty,
                    },
                )
            self._consecutive_empty = 0
