import os
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from flat_file_server import mime_types
from flat_file_server.app.services.storage_manager import DownloadStream, StorageManager
from flat_file_server.config import Settings, load_settings
from flat_file_server.logger_config import setup_logger

# Logger setup
logger = setup_logger()

# Nothing listens any more; only shows up in logs
CLIENT_CLOSED_REQUEST = 499

router = APIRouter()


class FileStreamResponse(StreamingResponse):
    """Streaming response that always releases the file it reads from."""

    def __init__(self, download: DownloadStream, media_type: str):
        super().__init__(download, media_type=media_type)
        self.download = download

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.download.aclose()


def is_valid_name(file_name: str) -> bool:
    """A name must stay inside the flat storage directory."""
    if "/" in file_name or ".." in file_name or "\0" in file_name:
        return False
    if os.sep in file_name or (os.altsep and os.altsep in file_name):
        return False
    return True


def validated_file_name(file_name: str) -> str:
    """Check the percent-decoded name taken from the path after the leading "/"."""
    if not is_valid_name(file_name):
        logger.info(f"Rejected nested file name: {file_name!r}")
        raise HTTPException(status_code=400, detail="File name should not include nesting")
    return file_name


def required_file_name(file_name: str = Depends(validated_file_name)) -> str:
    if not file_name:
        raise HTTPException(status_code=404, detail="File name should not be empty")
    return file_name


def get_storage(request: Request) -> StorageManager:
    return request.app.state.storage_manager


@router.get("/{file_name:path}")
async def download_file(
    request: Request,
    file_name: str = Depends(validated_file_name),
    storage: StorageManager = Depends(get_storage),
):
    """Serve the index page for "/" and a stored file otherwise."""
    path = storage.file_path(file_name) if file_name else storage.index_path()
    logger.info(f"Receiving download request for: {path.name}")

    download = await storage.open_download(path)
    mime_lookup = request.app.state.mime_lookup
    return FileStreamResponse(download, media_type=mime_lookup(path.name))


@router.post("/{file_name:path}")
async def upload_file(
    request: Request,
    file_name: str = Depends(required_file_name),
    storage: StorageManager = Depends(get_storage),
):
    """Store the request body as a new file, never overwriting."""
    logger.info(f"Receiving upload request for: {file_name}")

    storage.check_declared_length(request.headers.get("content-length"))

    try:
        session = await storage.receive_upload(storage.file_path(file_name), request.stream())
    except ClientDisconnect:
        return PlainTextResponse("Client closed request", status_code=CLIENT_CLOSED_REQUEST)

    logger.info(f"Stored {file_name} ({session.bytes_received} bytes)")
    return PlainTextResponse("OK")


@router.delete("/{file_name:path}")
async def delete_file(
    file_name: str = Depends(required_file_name),
    storage: StorageManager = Depends(get_storage),
):
    logger.info(f"Receiving delete request for: {file_name}")

    await storage.delete_file(storage.file_path(file_name))

    logger.info(f"Successfully deleted file: {file_name}")
    return PlainTextResponse("OK")


async def plain_text_error(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)


def create_app(settings: Settings, mime_lookup: Callable[[str], str] = mime_types.lookup) -> FastAPI:
    storage_manager = StorageManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.storage_manager.initialize()
        yield

    app = FastAPI(title="Flat File Server", lifespan=lifespan, openapi_url=None)
    app.state.settings = settings
    app.state.storage_manager = storage_manager
    app.state.mime_lookup = mime_lookup
    app.add_exception_handler(StarletteHTTPException, plain_text_error)
    app.include_router(router)
    return app


app = create_app(load_settings())


def run():
    settings = app.state.settings
    logger.info("Starting flat file server...")
    logger.info(f"Public directory: {settings.public_dir}")
    logger.info(f"Files directory: {settings.files_dir}")
    logger.info(f"Maximum file size: {settings.max_file_size} bytes")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
