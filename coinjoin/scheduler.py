"""
Background trigger for CoinJoin batches.

Every interval, each active CoinJoin-enabled election is checked for enough
pending votes; a ready batch is closed into a session and run. Sessions that
already have a run in the registry are skipped.
"""

import asyncio
import logging
from typing import List, Optional

from utils.errors import VotingSystemError
from utils.utils import short_id

from .engine import CoinJoinEngine
from .session import SessionCoordinator
from .store import VotingStore

logger = logging.getLogger(__name__)


class CoinJoinTriggerScheduler:

    def __init__(self, store: VotingStore, coordinator: SessionCoordinator,
                 engine: CoinJoinEngine, interval: float = 30.0):
        self.store = store
        self.coordinator = coordinator
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> List[str]:
        """One pass over all elections; returns the session ids that were run"""
        self.ticks += 1
        started = []
        for election in await self.store.list_elections():
            if not election.is_collecting:
                continue
            try:
                session_id = await self.coordinator.prepare_retry_batch(election.id)
            except VotingSystemError as e:
                logger.error(f"Could not prepare batch for election {election.id}: {e}")
                continue
            if session_id is None:
                continue
            if self.engine.registry.is_active(session_id):
                logger.debug(f"Session {short_id(session_id)} already running")
                continue

            logger.info(
                f"Threshold reached for election {election.id}, "
                f"running session {short_id(session_id)}")
            run = await self.engine.run(session_id)
            if run is not None:
                started.append(session_id)
        return started

    async def _loop(self):
        logger.info(f"CoinJoin scheduler started (interval {self.interval}s)")
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("CoinJoin scheduler tick failed")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if not self.is_running:
            self._task = asyncio.create_task(self._loop(), name="coinjoin-scheduler")
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("CoinJoin scheduler stopped")
