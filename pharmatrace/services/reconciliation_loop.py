# pharmatrace/services/reconciliation_loop.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from pharmatrace.services.chain_adapter import ChainAdapter
from pharmatrace.services.confirmation_service import ConfirmationService

logger = logging.getLogger(__name__)


class ReconciliationLoop:
    """
    Background poller: after an initial delay, runs one confirmation cycle
    every `interval_seconds` until stopped.

    A cycle is blocking (database + HTTP), so it runs in a worker thread
    with its own session. An error in one cycle is logged and the loop
    keeps going.
    """

    def __init__(
        self,
        *,
        adapter: ChainAdapter,
        session_factory: Callable[[], Session],
        interval_seconds: float = 30.0,
        initial_delay_seconds: float = 5.0,
    ):
        self.service = ConfirmationService(adapter)
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_cycle(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return self.service.check_pending(db)
        finally:
            db.close()

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await asyncio.to_thread(self.run_cycle)
            except Exception:
                logger.exception("reconciliation cycle failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reconciliation-loop")
        logger.info(
            "reconciliation loop started",
            extra={"interval_seconds": self.interval_seconds, "initial_delay_seconds": self.initial_delay_seconds},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciliation loop stopped")
