"""
PeriodicRunner - drives the aggregator on a fixed interval.

Each run executes in a worker thread so the event loop (and with it the
/metrics endpoint) stays responsive while a large log is scanned.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("squid_log_exporter.scheduler")


class PeriodicRunner:
    def __init__(self, run: Callable[[], object], interval: float):
        self._run = run
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def _loop(self) -> None:
        while True:
            logger.info("parsing log file...")
            await asyncio.to_thread(self._run)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Run immediately, then every interval seconds"""
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self, final_run: bool = True) -> None:
        """Stop the loop and, by default, do one last pass to persist the position"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if final_run:
            logger.info("final log parse before shutdown...")
            # an in-flight run keeps its thread; the aggregator's run lock orders us after it
            await asyncio.to_thread(self._run)
