"""Incremental ZIP encoding bridged to a streaming HTTP response body.

The encoder is :class:`zipfile.ZipFile` writing to a sink that cannot seek, so
every entry is emitted as local header, data and data descriptor in one pass.
Encoded bytes go through a bounded :class:`asyncio.Queue`; the response body
pulls from that queue, which makes a slow client slow down the producer.
"""

from __future__ import annotations

import asyncio
import logging
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any, AsyncIterator, Awaitable, Callable, List, Optional

from ..errors import InvalidStateError

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

COMPRESSION_METHODS = {
    "stored": zipfile.ZIP_STORED,
    "deflated": zipfile.ZIP_DEFLATED,
}


class ArchiveState(str, Enum):
    """Lifecycle of a :class:`StreamingArchiveWriter`."""

    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"


class _EndOfArchive:
    pass


@dataclass(slots=True)
class _Failure:
    error: BaseException


_END = _EndOfArchive()


class _ChunkSink:
    """Write-only file object collecting what the encoder produces."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []

    def write(self, data: Any) -> int:
        if data:
            self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def take(self) -> List[bytes]:
        chunks, self._chunks = self._chunks, []
        return chunks


class ArchiveEntry:
    """Named slot in the archive; written once, closed once."""

    def __init__(self, writer: "StreamingArchiveWriter", name: str) -> None:
        self.name = name
        self.closed = False
        self.bytes_written = 0
        self._writer = writer
        self._handle: Optional[IO[bytes]] = None

    async def push(self, data: bytes, final: bool = False) -> None:
        """Append ``data``; ``final=True`` closes the entry afterwards."""

        await self._writer._write(self, data, final)

    def __repr__(self) -> str:
        return f"ArchiveEntry(name={self.name!r}, closed={self.closed})"


class StreamingArchiveWriter:
    """Push side: entries in, ZIP bytes out through :meth:`chunks`."""

    def __init__(
        self,
        *,
        queue_size: int = 16,
        compression: int = zipfile.ZIP_STORED,
    ) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._sink = _ChunkSink()
        self._zip = zipfile.ZipFile(self._sink, mode="w", compression=compression)
        self._state = ArchiveState.IDLE
        self._current: Optional[ArchiveEntry] = None
        self._detached = False
        self.entry_names: List[str] = []

    @property
    def state(self) -> ArchiveState:
        return self._state

    @property
    def entries_written(self) -> int:
        return len(self.entry_names)

    @property
    def detached(self) -> bool:
        return self._detached

    # --- Producer API ---------------------------------------------------------
    async def open_entry(self, name: str) -> ArchiveEntry:
        """Reserve the next entry. Only one entry may be open at a time."""

        self._ensure_writable()
        if self._current is not None:
            raise InvalidStateError(
                f"Cannot open {name!r} while {self._current.name!r} is still open"
            )
        entry = ArchiveEntry(self, name)
        self._current = entry
        self._state = ArchiveState.STREAMING
        return entry

    async def add(self, name: str, data: bytes) -> ArchiveEntry:
        """Write a complete entry in one call."""

        entry = await self.open_entry(name)
        await entry.push(data, final=True)
        return entry

    async def abandon_entry(self) -> None:
        """Settle the open entry, if any, so the archive can be closed.

        An entry that never received bytes is dropped; a partially written one
        is closed with what it has.
        """

        self._ensure_writable()
        self._settle_current()
        await self._drain()

    async def finalize(self) -> None:
        """Write the central directory and end the byte stream."""

        self._ensure_writable()
        try:
            self._settle_current()
            self._zip.close()
        except (OSError, ValueError, zipfile.LargeZipFile) as exc:
            await self.abort(exc)
            raise
        self._state = ArchiveState.FINALIZED
        await self._drain()
        await self._put(_END)
        LOGGER.debug("Archive finalized with %d entries", self.entries_written)

    async def abort(self, error: BaseException) -> None:
        """End the stream with ``error``; the consumer re-raises it."""

        if self._state is ArchiveState.FINALIZED:
            LOGGER.debug("Ignoring abort on a finalized archive: %s", error)
            return
        self._state = ArchiveState.FINALIZED
        self._current = None
        self._sink.take()
        await self._put(_Failure(error))

    # --- Consumer API ---------------------------------------------------------
    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield encoded bytes until the archive is finalized or aborted."""

        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item

    def detach(self) -> None:
        """Stop delivering bytes; called when nobody reads the stream anymore."""

        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    # --- Internals ------------------------------------------------------------
    def _ensure_writable(self) -> None:
        if self._state is ArchiveState.FINALIZED:
            raise InvalidStateError("Archive is already finalized")

    async def _write(self, entry: ArchiveEntry, data: bytes, final: bool) -> None:
        self._ensure_writable()
        if entry is not self._current or entry.closed:
            raise InvalidStateError(f"Entry {entry.name!r} is not the open entry")
        try:
            if entry._handle is None:
                entry._handle = self._zip.open(entry.name, mode="w")
            if data:
                entry._handle.write(data)
                entry.bytes_written += len(data)
            if final:
                self._close_entry(entry)
        except (OSError, ValueError, zipfile.LargeZipFile) as exc:
            await self.abort(exc)
            raise
        await self._drain()

    def _close_entry(self, entry: ArchiveEntry) -> None:
        if entry._handle is not None:
            entry._handle.close()
            entry._handle = None
        entry.closed = True
        self._current = None
        self.entry_names.append(entry.name)

    def _settle_current(self) -> None:
        entry = self._current
        if entry is None:
            return
        if entry._handle is None:
            LOGGER.info("Dropping archive entry %s: no bytes were written", entry.name)
            entry.closed = True
            self._current = None
            return
        LOGGER.warning(
            "Closing truncated archive entry %s after %d bytes",
            entry.name,
            entry.bytes_written,
        )
        self._close_entry(entry)

    async def _drain(self) -> None:
        for chunk in self._sink.take():
            for start in range(0, len(chunk), CHUNK_SIZE):
                await self._put(chunk[start : start + CHUNK_SIZE])

    async def _put(self, item: Any) -> None:
        if self._detached:
            return
        await self._queue.put(item)


Producer = Callable[[StreamingArchiveWriter], Awaitable[Any]]


async def _supervise(writer: StreamingArchiveWriter, producer: Producer) -> Any:
    """Run ``producer``; whichever way it exits, the byte stream is ended."""

    try:
        result = await producer(writer)
    except Exception as exc:
        if writer.state is not ArchiveState.FINALIZED:
            LOGGER.error("Archive producer failed before finalizing: %s", exc)
            await writer.abort(exc)
        raise
    if writer.state is not ArchiveState.FINALIZED:
        LOGGER.warning("Archive producer returned without finalizing; closing archive")
        await writer.finalize()
    return result


async def stream_archive(
    writer: StreamingArchiveWriter, producer: Producer
) -> AsyncIterator[bytes]:
    """Response body: start ``producer`` and relay the bytes it encodes.

    The producer only starts once the body is iterated, i.e. after the status
    line and headers have been sent. If the client goes away the producer is
    cancelled and the writer stops queueing bytes.
    """

    task = asyncio.create_task(_supervise(writer, producer))
    completed = False
    try:
        async for chunk in writer.chunks():
            yield chunk
        completed = True
    finally:
        if not completed:
            writer.detach()
            if not task.done():
                LOGGER.info("Archive consumer went away; cancelling render run")
                task.cancel()
            elif not task.cancelled():
                # Already re-raised by chunks() when the producer aborted.
                task.exception()
    await task


__all__ = [
    "ArchiveEntry",
    "ArchiveState",
    "CHUNK_SIZE",
    "COMPRESSION_METHODS",
    "StreamingArchiveWriter",
    "stream_archive",
]
