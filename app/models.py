from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    stored_name: str
    size: int | None = None
    mime_type: str | None = None


class Transfer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: AwareDatetime
    expires_at: AwareDatetime
    download_count: int = Field(default=0, ge=0)
    files: list[FileRecord] = Field(min_length=1)

    @model_validator(mode="after")
    def check_expiry_after_creation(self) -> "Transfer":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        stored_names = [f.stored_name for f in self.files]
        if len(set(stored_names)) != len(stored_names):
            raise ValueError("stored file names must be unique within a transfer")
        return self

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def find_file(self, file_id: str) -> FileRecord | None:
        for record in self.files:
            if record.id == file_id:
                return record
        return None


@dataclass(frozen=True)
class BlobSource:
    """One file of an upload: its client-supplied name and byte stream."""

    filename: str | None
    stream: BinaryIO
    mime_type: str | None = None


@dataclass(frozen=True)
class StoredBlob:
    file_id: str
    name: str
    stored_name: str
    size: int


@dataclass(frozen=True)
class FileHandle:
    record: FileRecord
    path: Path

    def open(self) -> BinaryIO:
        return self.path.open("rb")


class FileSummary(BaseModel):
    id: str
    name: str
    size: int | None
    download_url: str


class TransferResponse(BaseModel):
    id: str
    url: str
    created_at: datetime
    expires_at: datetime
    files: list[FileSummary]
