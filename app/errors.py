class TransferError(Exception):
    pass


class EmptyUploadError(TransferError):
    def __init__(self, message: str = "no files were uploaded"):
        super().__init__(message)


class TooManyFilesError(TransferError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"at most {limit} files may be uploaded per transfer")


class TransferNotFoundError(TransferError):
    """The transfer or file is unknown, expired, or its blob is gone."""

    def __init__(self, message: str = "transfer not found or expired"):
        super().__init__(message)


class InvalidIdentifierError(TransferNotFoundError):
    pass


class MetadataCorruptError(TransferError):
    """Only raised inside the repository; loading recovers with an empty snapshot."""


class StorageIOError(TransferError):
    pass


class BlobSourceError(TransferError):
    """Reading one uploaded file failed or it exceeded the size limit."""
