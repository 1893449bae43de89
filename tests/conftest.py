import io
from datetime import datetime, timedelta, timezone

import pytest

from app.models import BlobSource
from app.repository import TransferRepository
from app.service import TransferService
from app.storage import BlobStorage
from app.sweeper import ExpirySweeper


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStream:
    def read(self, size: int = -1) -> bytes:
        raise OSError("connection reset")


def source(name: str, data: bytes, mime_type: str | None = "application/octet-stream") -> BlobSource:
    return BlobSource(filename=name, stream=io.BytesIO(data), mime_type=mime_type)


class Store:
    def __init__(self, tmp_path, clock: FakeClock, *, ttl=timedelta(hours=1), max_files=None, max_blob_bytes=None):
        self.clock = clock
        self.storage_dir = tmp_path / "storage"
        self.mirror_path = tmp_path / "data" / "transfers.json"
        self.mirror_path.parent.mkdir(parents=True, exist_ok=True)

        self.storage = BlobStorage(self.storage_dir, max_blob_bytes=max_blob_bytes)
        self.storage.init()
        self.repository = TransferRepository(self.mirror_path)
        self.sweeper = ExpirySweeper(self.repository, self.storage, clock=clock, interval_seconds=0.01)
        self.service = TransferService(
            self.repository,
            self.storage,
            self.sweeper,
            ttl=ttl,
            clock=clock,
            max_files=max_files,
        )

    def transfer_dirs(self) -> list[str]:
        return self.storage.list_transfer_dirs()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_store(tmp_path, clock):
    def build(**kwargs) -> Store:
        return Store(tmp_path, clock, **kwargs)

    return build


@pytest.fixture
def store(make_store) -> Store:
    return make_store()
