import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence

from app.errors import (
    BlobSourceError,
    EmptyUploadError,
    StorageIOError,
    TooManyFilesError,
    TransferNotFoundError,
)
from app.models import BlobSource, FileHandle, FileRecord, Transfer, utc_now
from app.repository import TransferRepository
from app.storage import BlobStorage, new_id
from app.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

MIN_TTL = timedelta(microseconds=1)


class TransferService:
    """Creates transfers and resolves them for download."""

    def __init__(
        self,
        repository: TransferRepository,
        storage: BlobStorage,
        sweeper: ExpirySweeper,
        *,
        ttl: timedelta,
        clock: Callable[[], datetime] = utc_now,
        max_files: int | None = None,
    ):
        self.repository = repository
        self.storage = storage
        self.sweeper = sweeper
        self.ttl = max(ttl, MIN_TTL)
        self.clock = clock
        self.max_files = max_files

    async def create_transfer(self, sources: Sequence[BlobSource]) -> Transfer:
        """Store every source as a blob and commit one transfer for them.

        Sources whose stream fails are skipped. Raises ``EmptyUploadError``
        when nothing was stored; on a storage failure the transfer directory
        is removed before the error propagates.
        """
        if self.max_files is not None and len(sources) > self.max_files:
            raise TooManyFilesError(self.max_files)

        transfer_id = new_id()
        await self.storage.create_transfer_dir(transfer_id)

        try:
            files: list[FileRecord] = []
            for source in sources:
                try:
                    blob = await self.storage.write_blob(transfer_id, source)
                except BlobSourceError as exc:
                    logger.warning("Skipping file %r of transfer %s: %s", source.filename, transfer_id, exc)
                    continue
                files.append(
                    FileRecord(
                        id=blob.file_id,
                        name=blob.name,
                        stored_name=blob.stored_name,
                        size=blob.size,
                        mime_type=source.mime_type or None,
                    )
                )

            if not files:
                await self.storage.remove_transfer_dir(transfer_id)
                raise EmptyUploadError()

            created_at = self.clock()
            transfer = Transfer(
                id=transfer_id,
                created_at=created_at,
                expires_at=created_at + self.ttl,
                files=files,
            )
            await self.repository.insert(transfer)
        except StorageIOError:
            logger.exception("Storage failure while creating transfer %s", transfer_id)
            await self.storage.remove_transfer_dir(transfer_id)
            raise

        logger.info("Created transfer %s with %d file(s)", transfer_id, len(files))
        return transfer

    async def get_transfer(self, transfer_id: str) -> Transfer:
        transfer = self.repository.get(transfer_id)
        if transfer is None:
            raise TransferNotFoundError()
        if transfer.is_expired(self.clock()):
            try:
                await self.sweeper.sweep_once()
            except StorageIOError:
                logger.exception("Inline sweep after expired lookup of %s failed", transfer_id)
            raise TransferNotFoundError()
        return transfer

    async def get_file(self, transfer_id: str, file_id: str) -> FileHandle:
        transfer = await self.get_transfer(transfer_id)
        record = transfer.find_file(file_id)
        if record is None:
            raise TransferNotFoundError("file not found")

        if not self.storage.blob_exists(transfer.id, record.stored_name):
            logger.error("Blob %s of live transfer %s is missing", record.stored_name, transfer.id)
            raise TransferNotFoundError("file not found")
        return FileHandle(record=record, path=self.storage.blob_path(transfer.id, record.stored_name))
