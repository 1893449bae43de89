import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse

from app.config import Settings, get_settings
from app.errors import EmptyUploadError, StorageIOError, TooManyFilesError, TransferNotFoundError
from app.logging_config import setup_logging
from app.models import BlobSource, FileSummary, Transfer, TransferResponse
from app.repository import TransferRepository
from app.service import TransferService
from app.storage import BlobStorage
from app.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    repository = TransferRepository(settings.metadata_path)
    storage = BlobStorage(settings.storage_dir, max_blob_bytes=settings.max_upload_size_bytes)
    sweeper = ExpirySweeper(repository, storage, interval_seconds=settings.sweep_interval_seconds)
    service = TransferService(
        repository,
        storage,
        sweeper,
        ttl=timedelta(seconds=settings.ttl_seconds),
        max_files=settings.max_files,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        storage.init()
        await repository.load()
        await sweeper.sweep_once()
        await sweeper.reclaim_orphans()
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.service = service

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(EmptyUploadError)
    async def empty_upload_handler(_: Request, exc: EmptyUploadError):
        return error_response(400, str(exc), "bad_request")

    @app.exception_handler(TooManyFilesError)
    async def too_many_files_handler(_: Request, exc: TooManyFilesError):
        return error_response(400, str(exc), "bad_request")

    @app.exception_handler(TransferNotFoundError)
    async def not_found_handler(_: Request, exc: TransferNotFoundError):
        return error_response(404, str(exc), "not_found")

    @app.exception_handler(StorageIOError)
    async def storage_error_handler(_: Request, exc: StorageIOError):
        logger.error("Request failed with storage error: %s", exc)
        return error_response(500, "storage failure", "storage_error")

    def base_url(request: Request) -> str:
        return (settings.public_base_url or str(request.base_url)).rstrip("/")

    def describe(transfer: Transfer, request: Request) -> TransferResponse:
        root = base_url(request)
        return TransferResponse(
            id=transfer.id,
            url=f"{root}/v1/transfers/{transfer.id}",
            created_at=transfer.created_at,
            expires_at=transfer.expires_at,
            files=[
                FileSummary(
                    id=f.id,
                    name=f.name,
                    size=f.size,
                    download_url=f"{root}/v1/transfers/{transfer.id}/files/{f.id}",
                )
                for f in transfer.files
            ],
        )

    @app.get("/")
    def root() -> dict:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env}

    @app.post("/v1/transfers", response_model=TransferResponse, status_code=201)
    async def upload_transfer(request: Request, files: list[UploadFile] | None = File(default=None)):
        sources = [
            BlobSource(filename=upload.filename, stream=upload.file, mime_type=upload.content_type)
            for upload in files or []
        ]
        transfer = await service.create_transfer(sources)
        return describe(transfer, request)

    @app.get("/v1/transfers/{transfer_id}", response_model=TransferResponse)
    async def get_transfer(transfer_id: str, request: Request):
        transfer = await service.get_transfer(transfer_id)
        return describe(transfer, request)

    @app.get("/v1/transfers/{transfer_id}/files/{file_id}")
    async def download_file(transfer_id: str, file_id: str):
        handle = await service.get_file(transfer_id, file_id)
        return FileResponse(
            path=handle.path,
            filename=handle.record.name,
            media_type=handle.record.mime_type or "application/octet-stream",
        )

    return app


app = create_app()
