# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Channel wiring between Duplex Bridges and OS pipes.

    child stdout ──pipe──> BridgeFeeder ──> DuplexBridge      (output)
    DuplexBridge ──> pump_to_pipe ──pipe──> child stdin       (input)
    DuplexBridge ──> connect() ──> DuplexBridge               (pipeline link)

Backpressure follows the bridge rule: the read pipe is paused while the
bridge holds an unacknowledged chunk. When a consumer aborts, the pipe end
is closed so the child sees EPIPE/SIGPIPE on its next write.
"""

import asyncio
import collections
import logging
import os
from typing import Deque, Optional

from .bridge import DEFAULT_CHUNK_SIZE, DuplexBridge
from .exceptions import BridgeClosedError, StreamClaimedError

logger = logging.getLogger("procshell.channels")


# ============================================================================
# Pipe -> Bridge
# ============================================================================


class BridgeFeeder(asyncio.Protocol):
    """Read-pipe protocol delivering the pipe's bytes into a bridge"""

    def __init__(self, bridge: DuplexBridge, loop: asyncio.AbstractEventLoop):
        self.bridge = bridge
        self.finished: asyncio.Future = loop.create_future()
        self._transport: Optional[asyncio.ReadTransport] = None
        self._backlog: Deque[bytes] = collections.deque()
        self._writing = False
        self._eof = False

    def connection_made(self, transport):
        self._transport = transport

    def data_received(self, data: bytes):
        self._backlog.append(data)
        self._transport.pause_reading()
        self._pump()

    def eof_received(self):
        self._eof = True
        self._pump()

    def connection_lost(self, exc):
        if exc is not None:
            logger.debug(f"{self.bridge.name} pipe lost: {exc}")
        self._eof = True
        self._pump()

    def _pump(self) -> None:
        if self._writing or self.finished.done():
            return

        if self._backlog:
            chunk = self._backlog.popleft()
            try:
                ack = self.bridge.write(chunk)
            except BridgeClosedError:
                self._abandon()
                return
            self._writing = True
            ack.add_done_callback(self._on_ack)
        elif self._eof:
            self.bridge.close()
            self.finished.set_result(None)
        elif self._transport is not None:
            self._transport.resume_reading()

    def _on_ack(self, ack: asyncio.Future) -> None:
        self._writing = False
        if ack.cancelled() or ack.exception() is not None:
            self._abandon()
            return
        self._pump()

    def _abandon(self) -> None:
        """The consumer went away: drop the pipe so the writer gets EPIPE"""
        self._backlog.clear()
        if self._transport is not None:
            self._transport.close()
        if not self.finished.done():
            self.finished.set_result(None)


# ============================================================================
# Bridge -> Pipe
# ============================================================================


class PipeWriterProtocol(asyncio.BaseProtocol):
    """Write-pipe protocol with drain() support"""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.lost: asyncio.Future = loop.create_future()
        self._loop = loop
        self._paused = False
        self._drain_waiter: Optional[asyncio.Future] = None

    def pause_writing(self):
        self._paused = True

    def resume_writing(self):
        self._paused = False
        self._wake(None)

    def connection_lost(self, exc):
        if not self.lost.done():
            self.lost.set_result(exc)
        self._wake(exc or BrokenPipeError("pipe closed"))

    async def drain(self) -> None:
        if self.lost.done():
            raise BrokenPipeError("pipe closed")
        if not self._paused:
            return
        self._drain_waiter = self._loop.create_future()
        try:
            await self._drain_waiter
        finally:
            self._drain_waiter = None

    def _wake(self, exc: Optional[BaseException]) -> None:
        waiter = self._drain_waiter
        if waiter is None or waiter.done():
            return
        if exc is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(exc)


async def pump_to_pipe(
    bridge: DuplexBridge,
    transport: asyncio.WriteTransport,
    protocol: PipeWriterProtocol,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """
    Copy a bridge into a write pipe until the bridge ends or the pipe breaks.

    A broken pipe aborts the bridge, which in turn fails the upstream
    producer's pending write.
    """
    try:
        while True:
            read = asyncio.ensure_future(bridge.read(chunk_size))
            done, _ = await asyncio.wait(
                {read, protocol.lost}, return_when=asyncio.FIRST_COMPLETED
            )
            if read not in done:
                read.cancel()
                bridge.abort()
                return
            chunk = read.result()
            if not chunk:
                break
            transport.write(chunk)
            await protocol.drain()
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.debug(f"{bridge.name} pipe broke: {e}")
        bridge.abort(e)
        if not transport.is_closing():
            transport.abort()
        return
    except asyncio.CancelledError:
        bridge.abort()
        # the pipe may already be gone with the child
        if not transport.is_closing():
            transport.abort()
        raise
    transport.close()


# ============================================================================
# Bridge -> Bridge
# ============================================================================


async def _relay(source: DuplexBridge, sink: DuplexBridge, chunk_size: int) -> None:
    try:
        async for chunk in source.chunks(chunk_size):
            await sink.write(chunk)
    except BridgeClosedError:
        source.abort()
        return
    sink.close()


def connect(
    source: DuplexBridge,
    sink: DuplexBridge,
    owner: object = "pipeline",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> asyncio.Task:
    """
    Link source's readable end to sink's writable end.

    Both ends are claimed immediately; bytes keep their order.

    Returns:
        The relay task
    """
    if sink.writer_claimed:
        raise StreamClaimedError(f"{sink.name} already has a writer", stream=sink.name)
    source.claim_reader(owner)
    sink.claim_writer(owner)
    return asyncio.ensure_future(_relay(source, sink, chunk_size))


# ============================================================================
# Pipe helpers
# ============================================================================


async def open_feeder(
    bridge: DuplexBridge, fd: int, loop: asyncio.AbstractEventLoop
) -> BridgeFeeder:
    """Wrap the read end of a pipe so it feeds a bridge"""
    pipe = os.fdopen(fd, "rb", buffering=0)
    _, feeder = await loop.connect_read_pipe(lambda: BridgeFeeder(bridge, loop), pipe)
    return feeder


async def open_writer(fd: int, loop: asyncio.AbstractEventLoop):
    """Wrap the write end of a pipe; returns (transport, protocol)"""
    pipe = os.fdopen(fd, "wb", buffering=0)
    return await loop.connect_write_pipe(lambda: PipeWriterProtocol(loop), pipe)
