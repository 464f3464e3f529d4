"""
Migration Worker
================
Background loop that runs ``Lakehouse.migrate()`` on a fixed interval.

The interval is re-read from the lakehouse config before every sleep, so
``Lakehouse.update_config(interval_ms=...)`` reschedules the next run.
A failed pass is logged and the loop keeps scheduling.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from loguru import logger

from vectorlake.core._utils import now_ms
from vectorlake.core.lakehouse import Lakehouse, MigrationResult


class MigrationWorker:
    def __init__(self, lakehouse: Lakehouse, interval_ms: Optional[int] = None):
        self.lakehouse = lakehouse
        self._interval_override = interval_ms
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self.last_run: Optional[int] = None
        self.last_result: Optional[MigrationResult] = None
        self.last_error: Optional[str] = None
        self.runs = 0
        self.failures = 0

    @property
    def interval_ms(self) -> int:
        if self._interval_override is not None:
            return self._interval_override
        return self.lakehouse.get_config().migration.interval_ms

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Launch the background migration loop."""
        if self._running:
            return
        if not self.lakehouse.get_config().migration.enabled:
            logger.info("MigrationWorker disabled by config.")
            return

        self._running = True
        self._task = asyncio.create_task(self._migration_loop(), name="migration_worker")
        logger.info(f"MigrationWorker started, interval={self.interval_ms}ms")

    async def stop(self) -> None:
        """Gracefully stop the worker."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("MigrationWorker stopped.")

    async def _migration_loop(self) -> None:
        """Main loop: sleep → run_once → repeat."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_ms / 1000.0)
                if self._running:
                    await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.failures += 1
                self.last_error = str(exc)
                logger.error(f"MigrationWorker pass failed: {exc}")

    async def run_once(self) -> MigrationResult:
        """Run one migration pass immediately."""
        t0 = time.monotonic()
        result = await self.lakehouse.migrate()
        self.runs += 1
        self.last_run = now_ms()
        self.last_result = result
        self.last_error = None
        logger.debug(f"MigrationWorker pass done in {(time.monotonic() - t0) * 1000:.1f}ms")
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_ms": self.interval_ms,
            "last_run": self.last_run,
            "last_error": self.last_error,
            "runs": self.runs,
            "failures": self.failures,
        }
