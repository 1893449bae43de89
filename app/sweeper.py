import asyncio
import logging
from datetime import datetime
from typing import Callable

from app.errors import StorageIOError
from app.models import utc_now
from app.repository import Snapshot, TransferRepository
from app.storage import BlobStorage

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60


class ExpirySweeper:
    def __init__(
        self,
        repository: TransferRepository,
        storage: BlobStorage,
        clock: Callable[[], datetime] = utc_now,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.repository = repository
        self.storage = storage
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> list[str]:
        """Remove every expired transfer. Returns the removed transfer ids."""
        removed: list[str] = []

        async def drop_expired(snapshot: Snapshot) -> Snapshot | None:
            now = self.clock()
            expired = [tid for tid, transfer in snapshot.items() if transfer.is_expired(now)]
            if not expired:
                return None

            for transfer_id in expired:
                try:
                    await self.storage.remove_transfer_dir(transfer_id)
                except StorageIOError as e:
                    # metadata stays so the next sweep retries the directory
                    logger.error(f"Failed to remove blobs of expired transfer {transfer_id}: {e}")
                    continue
                del snapshot[transfer_id]
                removed.append(transfer_id)

            return snapshot if removed else None

        await self.repository.run_exclusive(drop_expired)
        if removed:
            logger.info(f"Swept {len(removed)} expired transfer(s)")
        return removed

    async def reclaim_orphans(self) -> list[str]:
        # only safe while no upload is in flight, i.e. at startup
        reclaimed: list[str] = []
        known = self.repository.snapshot()
        for name in self.storage.list_transfer_dirs():
            if name in known:
                continue
            try:
                await self.storage.remove_transfer_dir(name)
            except StorageIOError as e:
                logger.warning(f"Failed to reclaim orphaned directory {name}: {e}")
                continue
            reclaimed.append(name)

        if reclaimed:
            logger.info(f"Reclaimed {len(reclaimed)} orphaned transfer directories")
        return reclaimed

    async def start(self) -> None:
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started expiry sweeper (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped expiry sweeper")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self._running:
                    break

                await self.sweep_once()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}", exc_info=True)
