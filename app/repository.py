import asyncio
import inspect
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from app.errors import MetadataCorruptError, StorageIOError
from app.models import Transfer

logger = logging.getLogger(__name__)

Snapshot = dict[str, Transfer]
Mutation = Callable[[Snapshot], "Snapshot | None | Awaitable[Snapshot | None]"]

T = TypeVar("T")


class WriteSerializer:
    # asyncio.Lock wakes waiters in FIFO order
    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run_exclusive(self, fn: Callable[[], T | Awaitable[T]]) -> T:
        async with self._lock:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result


class TransferRepository:
    def __init__(self, mirror_path: str | Path, serializer: WriteSerializer | None = None):
        self.mirror_path = Path(mirror_path)
        self.serializer = serializer or WriteSerializer()
        self._transfers: Snapshot = {}

    async def load(self) -> Snapshot:
        self.mirror_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.mirror_path.exists():
            await self.save({})
            return self.snapshot()

        try:
            raw = await asyncio.to_thread(self.mirror_path.read_bytes)
            snapshot = self._parse(raw)
        except (OSError, MetadataCorruptError) as exc:
            logger.error("Metadata mirror %s is unreadable, starting empty: %s", self.mirror_path, exc)
            snapshot = {}

        self._transfers = snapshot
        logger.info("Loaded %d transfers from %s", len(snapshot), self.mirror_path)
        return self.snapshot()

    def _parse(self, raw: bytes) -> Snapshot:
        try:
            document = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise MetadataCorruptError(f"invalid JSON: {exc}") from exc
        if not isinstance(document, dict) or not isinstance(document.get("transfers"), dict):
            raise MetadataCorruptError("expected an object with a 'transfers' mapping")

        snapshot: Snapshot = {}
        for transfer_id, entry in document["transfers"].items():
            try:
                transfer = Transfer.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Dropping invalid transfer record %s: %s", transfer_id, exc)
                continue
            if transfer.id != transfer_id:
                logger.warning("Dropping transfer record %s stored under mismatched key", transfer_id)
                continue
            snapshot[transfer_id] = transfer
        return snapshot

    def snapshot(self) -> Snapshot:
        return dict(self._transfers)

    def get(self, transfer_id: str) -> Transfer | None:
        return self._transfers.get(transfer_id)

    def __len__(self) -> int:
        return len(self._transfers)

    async def save(self, snapshot: Snapshot) -> None:
        document = {
            "transfers": {tid: transfer.model_dump(mode="json") for tid, transfer in snapshot.items()}
        }
        payload = json.dumps(document, indent=2)
        await asyncio.to_thread(self._write_atomic, payload)
        self._transfers = dict(snapshot)

    def _write_atomic(self, payload: str) -> None:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self.mirror_path.parent),
                prefix=f".{self.mirror_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.mirror_path)
        except OSError as exc:
            if tmp_path is not None:
                try:
                    Path(tmp_path).unlink(missing_ok=True)
                except OSError:
                    logger.warning("Could not remove temporary mirror file %s", tmp_path)
            raise StorageIOError(f"could not write metadata mirror {self.mirror_path}") from exc

    async def run_exclusive(self, mutation: Mutation) -> Snapshot:
        # mutation returns the new snapshot, or None to skip the write
        async def apply() -> Snapshot:
            result: Any = mutation(self.snapshot())
            if inspect.isawaitable(result):
                result = await result
            if result is None:
                return self.snapshot()
            await self.save(result)
            return self.snapshot()

        return await self.serializer.run_exclusive(apply)

    async def insert(self, transfer: Transfer) -> None:
        def add(snapshot: Snapshot) -> Snapshot:
            snapshot[transfer.id] = transfer
            return snapshot

        await self.run_exclusive(add)
