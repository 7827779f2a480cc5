# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Duplex Bridge

A writable end and a readable end joined by a buffer holding at most one
chunk. Each end is attached (claimed) independently, so an Invocation can
hand out its stdin/stdout/stderr before the child process exists.

Flow control:
    write() returns an acknowledgment future that resolves once the reader
    has drained the chunk. A second write while the acknowledgment is still
    pending is a BridgeProtocolError: producers must await each write.

End of stream:
    close() ends the input. Readers see EOF only after the buffered chunk
    has been drained. abort() is the reader walking away: the pending
    acknowledgment fails with BridgeClosedError instead of succeeding.
"""

import asyncio
from typing import Any, AsyncIterator, Optional

from .exceptions import BridgeClosedError, BridgeProtocolError, StreamClaimedError

DEFAULT_CHUNK_SIZE = 65536


class DuplexBridge:
    """Single-chunk channel between one producer and one consumer"""

    def __init__(self, name: str = "bridge"):
        self.name = name
        self._buffer = bytearray()
        self._ack: Optional[asyncio.Future] = None
        self._waiter: Optional[asyncio.Future] = None
        self._eof = False
        self._aborted = False

        self._reader_owner: Any = None
        self._writer_owner: Any = None
        self._reader_sealed: Optional[str] = None
        self._writer_sealed: Optional[str] = None

    def __repr__(self) -> str:
        state = "aborted" if self._aborted else "closed" if self._eof else "open"
        return f"<DuplexBridge {self.name} {state} buffered={len(self._buffer)}>"

    # ==========================================================================
    # Attachment
    # ==========================================================================

    @property
    def reader_claimed(self) -> bool:
        return self._reader_owner is not None or self._reader_sealed is not None

    @property
    def writer_claimed(self) -> bool:
        return self._writer_owner is not None or self._writer_sealed is not None

    @property
    def reader_owner(self) -> Any:
        return self._reader_owner

    @property
    def writer_owner(self) -> Any:
        return self._writer_owner

    def claim_reader(self, owner: Any = "reader") -> None:
        """Attach the one consumer of this bridge"""
        if self._reader_sealed is not None:
            raise StreamClaimedError(
                f"{self.name} cannot be read: {self._reader_sealed}", stream=self.name
            )
        if self._reader_owner is not None:
            raise StreamClaimedError(
                f"{self.name} already has a reader ({self._reader_owner!r})",
                stream=self.name,
            )
        self._reader_owner = owner

    def claim_writer(self, owner: Any = "writer") -> None:
        """Attach the one producer of this bridge"""
        if self._writer_sealed is not None:
            raise StreamClaimedError(
                f"{self.name} cannot be written: {self._writer_sealed}", stream=self.name
            )
        if self._writer_owner is not None:
            raise StreamClaimedError(
                f"{self.name} already has a writer ({self._writer_owner!r})",
                stream=self.name,
            )
        self._writer_owner = owner

    def seal_reader(self, reason: str) -> None:
        """Make the readable end permanently unavailable"""
        self._reader_sealed = reason

    def seal_writer(self, reason: str) -> None:
        """Make the writable end permanently unavailable"""
        self._writer_sealed = reason

    # ==========================================================================
    # Writable end
    # ==========================================================================

    @property
    def closed(self) -> bool:
        """True once the writable end has been closed"""
        return self._eof

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def write_pending(self) -> bool:
        return self._ack is not None and not self._ack.done()

    def write(self, data: bytes) -> asyncio.Future:
        """
        Hand one chunk to the reader.

        Returns:
            Future resolved once the reader drained the chunk

        Raises:
            BridgeProtocolError: previous write unacknowledged, or end closed
            BridgeClosedError: the reader aborted
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"{self.name} carries bytes, not {type(data).__name__}")
        if self._aborted:
            raise BridgeClosedError(f"{self.name} reader went away", stream=self.name)
        if self._eof:
            raise BridgeProtocolError(f"write to {self.name} after close", stream=self.name)
        if self.write_pending:
            raise BridgeProtocolError(
                f"write to {self.name} while the previous write is unacknowledged",
                stream=self.name,
            )

        ack = asyncio.get_running_loop().create_future()
        if not data:
            ack.set_result(None)
            return ack

        self._buffer.extend(data)
        self._ack = ack
        self._wakeup()
        return ack

    def close(self) -> None:
        """End the input; idempotent"""
        if self._eof:
            return
        self._eof = True
        self._wakeup()

    # ==========================================================================
    # Readable end
    # ==========================================================================

    def at_eof(self) -> bool:
        """True when nothing is buffered and nothing more can arrive"""
        return not self._buffer and (self._eof or self._aborted)

    def abort(self, exc: Optional[BaseException] = None) -> None:
        """
        Stop reading. Undelivered data is discarded and the producer's
        pending acknowledgment fails.
        """
        if self._aborted:
            return
        self._aborted = True
        self._buffer.clear()
        if self._ack is not None and not self._ack.done():
            error = BridgeClosedError(
                f"{self.name} reader went away before the data was delivered",
                stream=self.name,
                cause=exc,
            )
            self._ack.set_exception(error)
            # the producer may already be gone; do not report it as unretrieved
            self._ack.add_done_callback(_retrieve)
        self._wakeup()

    async def read(self, n: int = -1) -> bytes:
        """
        Read up to n bytes, or everything until EOF when n is negative.
        Returns b"" at end of stream.
        """
        if n == 0:
            return b""

        if n < 0:
            parts = []
            while True:
                await self._wait_for_data()
                if not self._buffer:
                    return b"".join(parts)
                parts.append(self._take(len(self._buffer)))

        await self._wait_for_data()
        return self._take(min(n, len(self._buffer)))

    async def readline(self) -> bytes:
        """Read through the next b"\\n"; the last line may lack it"""
        line = bytearray()
        while True:
            await self._wait_for_data()
            if not self._buffer:
                return bytes(line)
            end = self._buffer.find(b"\n")
            if end >= 0:
                line.extend(self._take(end + 1))
                return bytes(line)
            # drain so the producer can send the rest of the line
            line.extend(self._take(len(self._buffer)))

    async def chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Iterate over the stream in chunks of at most chunk_size"""
        while True:
            chunk = await self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        line = await self.readline()
        if not line:
            raise StopAsyncIteration
        return line

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _take(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        if not self._buffer and self._ack is not None and not self._ack.done():
            self._ack.set_result(None)
        return data

    async def _wait_for_data(self) -> None:
        while not self._buffer and not self._eof and not self._aborted:
            if self._waiter is not None:
                raise RuntimeError(f"{self.name} is already being read by another task")
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None

    def _wakeup(self) -> None:
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(None)


def _retrieve(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
