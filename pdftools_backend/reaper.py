from __future__ import annotations

import asyncio
import logging

from .jobs import JobNotFound, JobRegistry


logger = logging.getLogger(__name__)


class Reaper:
    """Deletes expired jobs and their files on a fixed interval.

    `sweep()` does one pass and can be called directly; `start()`/`stop()` own
    the background task and are wired to the app lifespan.
    """

    def __init__(self, registry: JobRegistry, interval_seconds: float = 60.0):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def sweep(self) -> int:
        """Remove every job with now > expires_at. Returns the number removed.

        Unreadable records are removed as well. A file that cannot be deleted
        never keeps its record alive or stops the pass.
        """
        now = self.registry.now()
        removed = 0
        for job_id in self.registry.job_ids():
            try:
                record = self.registry.lookup(job_id)
            except JobNotFound:
                record = None
            except OSError as e:
                # Cannot tell whether it expired; try again next tick.
                logger.warning("Could not read job record %s: %s", job_id, e)
                continue
            if record is not None and not self.registry.is_expired(record, now):
                continue
            if self.registry.remove(job_id):
                removed += 1
        if removed:
            logger.info("Reaper removed %d expired job(s)", removed)
        return removed

    async def _run(self) -> None:
        while True:
            try:
                self.sweep()
            except Exception:
                logger.exception("Reaper sweep failed")
            await asyncio.sleep(self.interval_seconds)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
