"""
Confirmation tracking for broadcast transactions.

One asyncio task per transaction polls the gateway at a fixed interval,
persists the latest depth and stops at the finality threshold or when the
attempt budget runs out. Tasks can be cancelled individually or all at once.
"""

import asyncio
import logging
from typing import Dict, Optional

from config.config import MonitorConfig
from utils.errors import NetworkError
from utils.utils import short_id

from .broadcast import BroadcastGateway, ConfirmationStatus

logger = logging.getLogger(__name__)


class ConfirmationMonitor:

    def __init__(self, gateway: BroadcastGateway, store, config: Optional[MonitorConfig] = None):
        self.gateway = gateway
        self.store = store
        self.config = config or MonitorConfig()
        self._tasks: Dict[str, asyncio.Task] = {}
        self.finalized: Dict[str, ConfirmationStatus] = {}

    def track(self, tx_id: str) -> asyncio.Task:
        existing = self._tasks.get(tx_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._poll(tx_id), name=f"confirm-{tx_id[:12]}")
        self._tasks[tx_id] = task
        logger.info(f"Tracking confirmations for {short_id(tx_id, 16)}")
        return task

    def is_tracking(self, tx_id: str) -> bool:
        task = self._tasks.get(tx_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def _poll(self, tx_id: str) -> Optional[ConfirmationStatus]:
        finality = self.config.finality_confirmations
        try:
            for attempt in range(1, self.config.max_attempts + 1):
                try:
                    status = await self.gateway.get_confirmations(tx_id)
                except NetworkError as e:
                    logger.warning(
                        f"Confirmation check {attempt} for {short_id(tx_id, 16)} failed: {e}")
                else:
                    await self._persist(status)
                    logger.debug(
                        f"{short_id(tx_id, 16)}: {status.confirmations}/{finality} confirmations")
                    if status.confirmations >= finality:
                        self.finalized[tx_id] = status
                        logger.info(
                            f"Transaction {short_id(tx_id, 16)} final at "
                            f"{status.confirmations} confirmations")
                        return status

                if attempt < self.config.max_attempts:
                    await asyncio.sleep(self.config.poll_interval)

            logger.warning(
                f"Stopped tracking {short_id(tx_id, 16)} after "
                f"{self.config.max_attempts} attempts without finality")
            return None
        finally:
            if self._tasks.get(tx_id) is asyncio.current_task():
                del self._tasks[tx_id]

    async def _persist(self, status: ConfirmationStatus):
        async with self.store.atomic():
            record = await self.store.get_transaction(status.tx_id)
            if record is None:
                return
            record.confirmations = status.confirmations
            if status.block_height is not None:
                record.block_height = status.block_height
            if status.block_hash:
                record.block_hash = status.block_hash
            await self.store.save_transaction(record)

    def cancel(self, tx_id: str) -> bool:
        task = self._tasks.get(tx_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Cancelled confirmation tracking for {short_id(tx_id, 16)}")
        return True

    async def stop(self):
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
