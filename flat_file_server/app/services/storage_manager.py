import asyncio
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os
from fastapi import HTTPException
from starlette.requests import ClientDisconnect

from flat_file_server.config import Settings
from flat_file_server.logger_config import setup_logger

logger = setup_logger()

INDEX_FILE = "index.html"

# Sent with every response after which the connection must not be reused
CLOSE_CONNECTION = {"Connection": "close"}


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


def internal_error(close_connection: bool = False) -> HTTPException:
    headers = CLOSE_CONNECTION if close_connection else None
    return HTTPException(status_code=500, detail="Internal server error", headers=headers)


def too_big() -> HTTPException:
    return HTTPException(status_code=413, detail="File is too big", headers=CLOSE_CONNECTION)


async def remove_quietly(path: Path) -> None:
    """Best-effort unlink of a partial upload; failures are only logged."""
    try:
        await aiofiles.os.unlink(path)
        logger.debug(f"Removed partial file: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial file {path}: {e}")


class DownloadStream:
    """Async iterator over an opened file; releases the handle in every terminal state."""

    def __init__(self, path: Path, handle, chunk_size: int, first_chunk: Optional[bytes] = None):
        self.path = path
        self.chunk_size = chunk_size
        self.bytes_sent = 0
        self.state = StreamState.STREAMING
        self._file = handle
        # Read before the response starts, so its failure can still be a 500
        self._pending = first_chunk

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.state is not StreamState.STREAMING:
            raise StopAsyncIteration

        if self._pending is not None:
            chunk, self._pending = self._pending, None
            return await self._emit(chunk)

        try:
            chunk = await self._file.read(self.chunk_size)
        except OSError as e:
            # Headers are already out, so the body just ends here
            logger.error(f"Read failed for {self.path} after {self.bytes_sent} bytes: {e}", exc_info=True)
            await self._finish(StreamState.FAILED)
            raise StopAsyncIteration

        return await self._emit(chunk)

    async def _emit(self, chunk: bytes) -> bytes:
        if not chunk:
            await self._finish(StreamState.COMPLETED)
            raise StopAsyncIteration

        self.bytes_sent += len(chunk)
        return chunk

    @property
    def released(self) -> bool:
        return self._file is None

    async def aclose(self) -> None:
        """Stop streaming early, e.g. when the client went away."""
        if self.state is StreamState.STREAMING:
            logger.warning(f"Download of {self.path} aborted after {self.bytes_sent} bytes")
            await self._finish(StreamState.ABORTED)

    async def _finish(self, state: StreamState) -> None:
        self.state = state
        handle, self._file = self._file, None
        if handle is not None:
            await handle.close()


class UploadSession:
    """Streams a request body into a new file created in exclusive mode.

    The file survives only if the session reaches COMPLETED. Any other
    terminal state closes the handle and unlinks what was written.
    """

    def __init__(self, path: Path, max_size: int):
        self.path = path
        self.max_size = max_size
        self.bytes_received = 0
        self.state = StreamState.IDLE
        self._file = None

    async def run(self, chunks: AsyncIterator[bytes]) -> None:
        opening = asyncio.ensure_future(self._open_exclusive())
        try:
            self._file = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The executor may still create the file after the cancel
            await asyncio.shield(self._abandon(opening))
            raise
        except FileExistsError:
            self.state = StreamState.FAILED
            logger.info(f"Refusing to overwrite existing file: {self.path}")
            raise HTTPException(status_code=409, detail="File with this name already exists")
        except OSError as e:
            self.state = StreamState.FAILED
            logger.error(f"Cannot create {self.path}: {e}", exc_info=True)
            raise internal_error(close_connection=True)

        self.state = StreamState.STREAMING
        try:
            async for chunk in chunks:
                self.bytes_received += len(chunk)
                if self.bytes_received > self.max_size:
                    logger.warning(
                        f"Upload to {self.path} exceeded {self.max_size} bytes, discarding"
                    )
                    await self._discard(StreamState.ABORTED)
                    raise too_big()
                await self._file.write(chunk)

            handle, self._file = self._file, None
            await handle.close()
            self.state = StreamState.COMPLETED
        except HTTPException:
            raise
        except ClientDisconnect:
            logger.warning(f"Client disconnected during upload to {self.path} after {self.bytes_received} bytes")
            await self._discard(StreamState.ABORTED)
            raise
        except Exception as e:
            logger.error(f"Upload to {self.path} failed: {e}", exc_info=True)
            await self._discard(StreamState.FAILED)
            raise internal_error(close_connection=True)
        finally:
            if self.state is StreamState.STREAMING:
                # Cancelled while streaming
                await asyncio.shield(self._discard(StreamState.ABORTED))

    async def _open_exclusive(self):
        return await aiofiles.open(self.path, "xb")

    async def _abandon(self, opening: asyncio.Future) -> None:
        """Wait out an interrupted open and remove the file if it got created."""
        try:
            self._file = await opening
        except OSError:
            self.state = StreamState.FAILED
            return
        logger.warning(f"Upload to {self.path} cancelled while opening")
        await self._discard(StreamState.ABORTED)

    async def _discard(self, state: StreamState) -> None:
        self.state = state
        handle, self._file = self._file, None
        if handle is not None:
            try:
                await handle.close()
            except OSError as e:
                logger.warning(f"Could not close {self.path}: {e}")
        await remove_quietly(self.path)


class StorageManager:
    def __init__(self, settings: Settings):
        self.public_dir = settings.public_dir
        self.files_dir = settings.files_dir
        self.max_file_size = settings.max_file_size
        self.chunk_size = settings.chunk_size

    async def initialize(self):
        """Create the storage directory and check the public one."""
        logger.info("Initializing storage manager...")

        await aiofiles.os.makedirs(self.files_dir, exist_ok=True)
        logger.debug(f"Storage directory created/verified: {self.files_dir}")

        if not await aiofiles.os.path.isfile(self.index_path()):
            logger.warning(f"Index file is missing: {self.index_path()}")

    def file_path(self, file_name: str) -> Path:
        return self.files_dir / file_name

    def index_path(self) -> Path:
        return self.public_dir / INDEX_FILE

    async def open_download(self, path: Path) -> DownloadStream:
        try:
            handle = await aiofiles.open(path, "rb")
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="File not found")
        except OSError as e:
            logger.error(f"Cannot open {path}: {e}", exc_info=True)
            raise internal_error()

        try:
            first_chunk = await handle.read(self.chunk_size)
        except OSError as e:
            logger.error(f"Cannot read {path}: {e}", exc_info=True)
            await handle.close()
            raise internal_error()
        return DownloadStream(path, handle, self.chunk_size, first_chunk)

    def check_declared_length(self, content_length: Optional[str]) -> None:
        """Reject an upload up front when its declared length is over the limit."""
        if content_length is None:
            return
        try:
            declared = int(content_length)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid Content-Length header")
        if declared > self.max_file_size:
            logger.warning(f"Declared length {declared} exceeds limit {self.max_file_size}")
            raise too_big()

    async def receive_upload(self, path: Path, chunks: AsyncIterator[bytes]) -> UploadSession:
        session = UploadSession(path, self.max_file_size)
        await session.run(chunks)
        return session

    async def delete_file(self, path: Path) -> None:
        try:
            await aiofiles.os.unlink(path)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="File not found")
        except OSError as e:
            logger.error(f"Cannot delete {path}: {e}", exc_info=True)
            raise internal_error()
