"""Periodic housekeeping of the in-memory state maps.

Each sweep runs in isolation: a failing sweep is logged and the remaining
sweeps of the cycle still run. A health snapshot is logged after every
cycle.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from mancy.app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Sweep:
    """A named cleanup step returning the number of items it removed."""
    name: str
    run: Callable[[], Awaitable[int]]


class MaintenanceScheduler:
    """Runs registered sweeps on a fixed interval in a background task.

    Usage:
        scheduler = MaintenanceScheduler(interval=300)
        scheduler.register("response_cache", response_cache.cleanup)
        await scheduler.start()
        ...
        await scheduler.stop()

    Tests call ``run_once()`` directly instead of waiting on the interval.
    """

    def __init__(
        self,
        interval: float = 300.0,
        metrics: Optional[Callable[[], dict]] = None,
    ):
        self.interval = interval
        self._sweeps: List[Sweep] = []
        self._metrics = metrics
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.cycles = 0
        self.last_results: Dict[str, Optional[int]] = {}

    @property
    def running(self) -> bool:
        return self._task is not None

    def register(self, name: str, run: Callable[[], Awaitable[int]]) -> None:
        self._sweeps.append(Sweep(name, run))
        logger.debug(f"Registered sweep '{name}'")

    async def run_once(self) -> Dict[str, Optional[int]]:
        """Run every sweep once.

        Returns:
            Items removed per sweep; None for a sweep that failed.
        """
        results: Dict[str, Optional[int]] = {}
        for sweep in self._sweeps:
            try:
                results[sweep.name] = await sweep.run()
            except Exception as e:
                logger.error(f"Sweep '{sweep.name}' failed: {e}")
                results[sweep.name] = None

        self.cycles += 1
        self.last_results = results
        self._log_health(results)
        return results

    def _log_health(self, results: Dict[str, Optional[int]]) -> None:
        snapshot: dict = {"sweeps": results, "cycle": self.cycles}
        if self._metrics is not None:
            try:
                snapshot.update(self._metrics())
            except Exception as e:
                logger.warning(f"Collecting health metrics failed: {e}")
        logger.info("Health metrics", extra=snapshot)

    async def start(self) -> None:
        """Start the background maintenance task."""
        if self._task is not None:
            logger.debug("Maintenance scheduler already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started maintenance scheduler (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background task, cancelling it if it does not finish."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Maintenance task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped maintenance scheduler")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            # Wait for the interval first; startup state is already clean
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error during maintenance cycle: {e}")
