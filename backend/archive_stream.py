"""Single-file tar streams for the engine's put_archive/get_archive endpoints.

Uploads never hold the whole file: a producer thread writes the tar into one
end of an OS pipe while the HTTP request body is read from the other end.
"""
import io
import logging
import os
import posixpath
import tarfile
import threading
import time
from typing import BinaryIO, Iterable, Iterator, Optional

from errors import InternalError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
FILE_MODE = 0o644
DOWNLOAD_MEDIA_TYPE = "application/octet-stream"


def base_name(filename: str) -> str:
    return posixpath.basename((filename or "").replace("\\", "/"))


class ArchiveUpload:
    """Iterable of tar bytes wrapping ``source`` as the only archive entry.

    ``size`` must be the exact number of bytes ``source`` will yield.
    """

    def __init__(self, filename: str, size: int, source: BinaryIO, chunk_size: int = CHUNK_SIZE):
        self.filename = base_name(filename)
        self.size = int(size)
        self._source = source
        self._chunk_size = chunk_size
        self._error: Optional[BaseException] = None

        read_fd, write_fd = os.pipe()
        self._reader = os.fdopen(read_fd, "rb")
        self._writer = os.fdopen(write_fd, "wb")
        self._thread = threading.Thread(
            target=self._produce,
            name=f"archive-upload-{self.filename}",
            daemon=True,
        )
        self._thread.start()

    def _produce(self) -> None:
        try:
            with tarfile.open(fileobj=self._writer, mode="w|") as tar:
                info = tarfile.TarInfo(name=self.filename)
                info.size = self.size
                info.mode = FILE_MODE
                info.mtime = int(time.time())
                tar.addfile(info, self._source)
        except Exception as exc:
            # BrokenPipeError here means the consumer stopped reading
            self._error = exc
        finally:
            try:
                self._writer.close()
            except OSError as exc:
                if self._error is None:
                    self._error = exc

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self._reader.read(self._chunk_size)
            if not chunk:
                break
            yield chunk

    def raise_for_error(self) -> None:
        self._thread.join()
        if self._error is not None:
            raise InternalError(f"failed to build archive for {self.filename}: {self._error}")

    def close(self) -> None:
        if not self._reader.closed:
            self._reader.close()
        self._thread.join()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class _ChunkReader(io.RawIOBase):
    """File-like view over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        # a generator from get_archive owns the engine's HTTP response
        if not self.closed:
            close = getattr(self._chunks, "close", None)
            if close is not None:
                close()
        super().close()

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


class ArchiveDownload:
    """First regular file of a tar stream returned by the engine.

    Any further entries are ignored.
    """

    media_type = DOWNLOAD_MEDIA_TYPE

    def __init__(self, chunks: Iterable[bytes], chunk_size: int = CHUNK_SIZE):
        self._chunk_size = chunk_size
        self._stream = io.BufferedReader(_ChunkReader(chunks))
        self._tar: Optional[tarfile.TarFile] = None
        try:
            self._tar = tarfile.open(fileobj=self._stream, mode="r|")
            member = self._tar.next()
        except (tarfile.TarError, OSError) as exc:
            self.close()
            raise InternalError(f"failed to read archive: {exc}") from exc
        if member is None:
            self.close()
            raise InternalError("archive is empty")
        if not member.isfile():
            self.close()
            raise InternalError(f"{member.name} is not a regular file")

        self.filename = base_name(member.name.rstrip("/"))
        self.size = member.size
        self._payload = self._tar.extractfile(member)

    def iter_bytes(self) -> Iterator[bytes]:
        try:
            while True:
                chunk = self._payload.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self.iter_bytes())

    def close(self) -> None:
        # r| mode leaves the fileobj open, so the chunk source is closed here
        if self._tar is not None:
            self._tar.close()
        self._stream.close()

    @property
    def headers(self) -> dict:
        return {"Content-Disposition": f'attachment; filename="{self.filename}"'}
