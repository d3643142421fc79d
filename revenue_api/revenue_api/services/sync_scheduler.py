"""Background scheduler for periodic sync passes.

Runs as an ``asyncio`` background task: one pass shortly after startup,
then one pass every ``interval_seconds`` measured from the start of the
previous pass.  A pass that overruns its interval delays the next one; two
passes never overlap.

On shutdown the timer is cancelled immediately, while an in-flight pass is
given ``shutdown_grace_seconds`` to finish before it is cancelled.  Snapshot
upserts are idempotent, so a cancelled pass is corrected by the next one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

from sqlalchemy.exc import InterfaceError, OperationalError

from revenue_engine.models import SyncResult
from revenue_engine.sync import SyncOrchestrator, summarize

logger = logging.getLogger(__name__)


class SyncScheduler:
    """AsyncIO background task driving :meth:`SyncOrchestrator.run_pass`.

    Parameters
    ----------
    orchestrator:
        The orchestrator whose passes are scheduled.
    interval_seconds:
        Cadence between pass starts.
    initial_delay_seconds:
        Delay before the startup pass.
    shutdown_grace_seconds:
        How long :meth:`stop` waits for an in-flight pass.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_seconds: float,
        initial_delay_seconds: float = 5.0,
        shutdown_grace_seconds: float = 30.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._grace = shutdown_grace_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pass_task: asyncio.Task[list[SyncResult]] | None = None
        self._last_pass_at: datetime | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    @property
    def pass_in_progress(self) -> bool:
        return self._pass_task is not None and not self._pass_task.done()

    @property
    def last_pass_at(self) -> datetime | None:
        return self._last_pass_at

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("SyncScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "SyncScheduler started (first pass in %.0fs, then every %.0fs)",
            self._initial_delay,
            self._interval,
        )

    async def stop(self) -> None:
        """Stop the timer, then let an in-flight pass finish within the grace period."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("SyncScheduler loop had already failed", exc_info=True)
            self._task = None

        pass_task = self._pass_task
        if pass_task is not None and not pass_task.done():
            logger.info("Waiting up to %.0fs for the in-flight sync pass", self._grace)
            try:
                await asyncio.wait_for(asyncio.shield(pass_task), timeout=self._grace)
            except TimeoutError:
                logger.warning("Sync pass did not finish within %.0fs; cancelling", self._grace)
                pass_task.cancel()
                try:
                    await pass_task
                except asyncio.CancelledError:
                    pass
            except Exception:
                logger.exception("In-flight sync pass failed during shutdown")
        logger.info("SyncScheduler stopped")

    async def run_once(self) -> list[SyncResult] | None:
        """Run one pass now; ``None`` if a pass is already running."""
        if self.pass_in_progress:
            logger.info("Sync pass already in progress; tick skipped")
            return None
        self._pass_task = asyncio.create_task(self._orchestrator.run_pass())
        # Shielded so cancelling the loop leaves the pass to stop().
        results = await asyncio.shield(self._pass_task)
        self._last_pass_at = datetime.now(UTC)
        logger.info("Scheduled sync pass complete", extra={"sync": summarize(results)})
        return results

    async def _run_loop(self) -> None:
        delay = self._initial_delay
        while self._running:
            await asyncio.sleep(delay)
            started = time.monotonic()
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("SyncScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.error("SyncScheduler pass failed; retrying next interval: %s", exc, exc_info=True)
            delay = max(0.0, self._interval - (time.monotonic() - started))
