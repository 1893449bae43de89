import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

from app.errors import BlobSourceError, InvalidIdentifierError, StorageIOError
from app.models import BlobSource, StoredBlob

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_FILENAME_LENGTH = 180
# stored names are "{32 hex}-{name}" and must fit a 255 byte filesystem limit
MAX_FILENAME_BYTES = 200

_SEPARATORS = re.compile(r"[\\/]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def new_id() -> str:
    return uuid4().hex


def sanitize_filename(name: str | None) -> str:
    cleaned = _SEPARATORS.sub("_", name or "")
    cleaned = _CONTROL_CHARS.sub("", cleaned)[:MAX_FILENAME_LENGTH]
    encoded = cleaned.encode("utf-8", "ignore")[:MAX_FILENAME_BYTES]
    cleaned = encoded.decode("utf-8", "ignore")
    if cleaned in ("", ".", ".."):
        return "file"
    return cleaned


class BlobStorage:
    def __init__(self, root_dir: str | Path, max_blob_bytes: int | None = None):
        self.root = Path(root_dir)
        self.max_blob_bytes = max_blob_bytes

    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def transfer_dir(self, transfer_id: str) -> Path:
        if not _SAFE_ID.match(transfer_id):
            raise InvalidIdentifierError(f"invalid transfer id: {transfer_id!r}")
        return self.root / transfer_id

    async def create_transfer_dir(self, transfer_id: str) -> Path:
        path = self.transfer_dir(transfer_id)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError(f"could not create directory for transfer {transfer_id}") from exc
        return path

    def blob_path(self, transfer_id: str, stored_name: str) -> Path:
        if Path(stored_name).name != stored_name:
            raise InvalidIdentifierError(f"invalid blob name: {stored_name!r}")
        return self.transfer_dir(transfer_id) / stored_name

    def blob_exists(self, transfer_id: str, stored_name: str) -> bool:
        return self.blob_path(transfer_id, stored_name).is_file()

    def list_transfer_dirs(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir() if entry.is_dir() and _SAFE_ID.match(entry.name)
        )

    async def write_blob(self, transfer_id: str, source: BlobSource) -> StoredBlob:
        file_id = new_id()
        name = sanitize_filename(source.filename)
        stored_name = f"{file_id}-{name}"
        target = self.transfer_dir(transfer_id) / stored_name

        size = await asyncio.to_thread(self._copy, source.stream, target)
        logger.debug("Stored blob %s (%d bytes) for transfer %s", stored_name, size, transfer_id)
        return StoredBlob(file_id=file_id, name=name, stored_name=stored_name, size=size)

    def _copy(self, stream: BinaryIO, target: Path) -> int:
        total = 0
        try:
            with target.open("wb") as f:
                while True:
                    try:
                        chunk = stream.read(CHUNK_SIZE)
                    except (OSError, ValueError) as exc:
                        raise BlobSourceError(f"could not read upload: {exc}") from exc
                    if not chunk:
                        break
                    total += len(chunk)
                    if self.max_blob_bytes is not None and total > self.max_blob_bytes:
                        raise BlobSourceError("file exceeds max upload size")
                    f.write(chunk)
        except BlobSourceError:
            self._discard(target)
            raise
        except OSError as exc:
            self._discard(target)
            raise StorageIOError(f"could not write blob {target.name}") from exc
        return total

    def _discard(self, target: Path) -> None:
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove partial blob %s: %s", target, exc)

    async def remove_transfer_dir(self, transfer_id: str) -> None:
        path = self.transfer_dir(transfer_id)
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageIOError(f"could not remove directory for transfer {transfer_id}") from exc
