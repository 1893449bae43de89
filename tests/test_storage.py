import io

import pytest

from app.errors import BlobSourceError, InvalidIdentifierError, StorageIOError
from app.models import BlobSource
from app.storage import MAX_FILENAME_BYTES, MAX_FILENAME_LENGTH, BlobStorage, sanitize_filename


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("report.pdf", "report.pdf"),
        ("../etc/passwd", ".._etc_passwd"),
        ("dir\\file.txt", "dir_file.txt"),
        ("a\x00b\nc\x7f.txt", "abc.txt"),
        ("", "file"),
        (None, "file"),
        ("..", "file"),
        ("\x01\x02", "file"),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_sanitize_filename_caps_length():
    assert len(sanitize_filename("x" * 500)) == MAX_FILENAME_LENGTH


def test_transfer_dir_rejects_path_components(tmp_path):
    storage = BlobStorage(tmp_path)
    for bad in ("../escape", "a/b", "", "."):
        with pytest.raises(InvalidIdentifierError):
            storage.transfer_dir(bad)


@pytest.mark.asyncio
async def test_create_transfer_dir_is_idempotent(tmp_path):
    storage = BlobStorage(tmp_path)
    first = await storage.create_transfer_dir("abc123")
    second = await storage.create_transfer_dir("abc123")
    assert first == second
    assert first.is_dir()


@pytest.mark.asyncio
async def test_write_blob_counts_bytes_written(tmp_path):
    storage = BlobStorage(tmp_path)
    await storage.create_transfer_dir("abc123")

    blob = await storage.write_blob("abc123", BlobSource(filename="../notes.txt", stream=io.BytesIO(b"z" * 3000)))

    assert blob.name == ".._notes.txt"
    assert blob.stored_name == f"{blob.file_id}-.._notes.txt"
    assert blob.size == 3000
    assert storage.blob_path("abc123", blob.stored_name).read_bytes() == b"z" * 3000


@pytest.mark.asyncio
async def test_write_blob_over_limit_leaves_nothing(tmp_path):
    storage = BlobStorage(tmp_path, max_blob_bytes=5)
    transfer_dir = await storage.create_transfer_dir("abc123")

    with pytest.raises(BlobSourceError):
        await storage.write_blob("abc123", BlobSource(filename="big.bin", stream=io.BytesIO(b"123456")))
    assert list(transfer_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_remove_transfer_dir_is_idempotent(tmp_path):
    storage = BlobStorage(tmp_path)
    await storage.create_transfer_dir("abc123")
    await storage.write_blob("abc123", BlobSource(filename="a.txt", stream=io.BytesIO(b"a")))

    await storage.remove_transfer_dir("abc123")
    await storage.remove_transfer_dir("abc123")
    assert storage.list_transfer_dirs() == []


def test_sanitize_filename_caps_multibyte_names_by_bytes():
    name = sanitize_filename("文" * 80 + ".txt")

    assert len(name.encode("utf-8")) <= MAX_FILENAME_BYTES
    assert name == "文" * (MAX_FILENAME_BYTES // 3)


@pytest.mark.asyncio
async def test_write_blob_accepts_long_multibyte_name(tmp_path):
    storage = BlobStorage(tmp_path)
    await storage.create_transfer_dir("abc123")

    blob = await storage.write_blob("abc123", BlobSource(filename="文" * 80, stream=io.BytesIO(b"hello")))

    assert len(blob.stored_name.encode("utf-8")) <= 255
    assert storage.blob_path("abc123", blob.stored_name).read_bytes() == b"hello"


@pytest.mark.asyncio
async def test_failed_disk_write_raises_storage_error(tmp_path):
    storage = BlobStorage(tmp_path)

    with pytest.raises(StorageIOError):
        await storage.write_blob("missing", BlobSource(filename="a.txt", stream=io.BytesIO(b"hello")))
