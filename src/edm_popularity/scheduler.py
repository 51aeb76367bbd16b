"""Pipeline refresh scheduler.

Runs the ingestion pipeline once on start, then again on a configurable
schedule. Uses plain asyncio tasks.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_HOURS = 6


class PipelineScheduler:
    """Manages periodic pipeline runs.

    ``on_complete`` is called after every successful run, e.g. to drop
    cached lookup results.
    """

    def __init__(self, on_complete: Optional[Callable[[], None]] = None):
        self._task: asyncio.Task | None = None
        self._running = False
        self._on_complete = on_complete
        self._interval_seconds = float(os.environ.get(
            "REFRESH_INTERVAL_HOURS",
            str(DEFAULT_REFRESH_INTERVAL_HOURS),
        )) * 3600

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background refresh loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Pipeline scheduler started (interval: %.1f hours)", self._interval_seconds / 3600)

    async def stop(self):
        """Stop the background refresh loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Pipeline scheduler stopped")

    async def run_once(self):
        from .ingestors import run_pipeline

        try:
            return await run_pipeline()
        finally:
            # a failed run may still have committed ingestion
            if self._on_complete:
                self._on_complete()

    async def _run_loop(self):
        """Run immediately, then refresh periodically."""
        try:
            await self.run_once()
        except Exception as exc:
            logger.error("Initial pipeline run failed: %s", exc, exc_info=True)

        while self._running:
            try:
                await asyncio.sleep(self._interval_seconds)
                if not self._running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Scheduled pipeline run failed: %s", exc, exc_info=True)
                await asyncio.sleep(60)
