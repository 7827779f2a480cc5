# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Controlling terminal: the default source and sinks of an Invocation.

An Invocation whose stdin, stdout or stderr has no attached producer or
consumer when it is about to spawn is connected to the host's own stream.
Host streams backed by a real descriptor are handed to the child directly
(the child sees the actual tty). Streams without a descriptor, such as
io.BytesIO, are served by copying through the Invocation's bridge.

The host stdin is leased to one running Invocation at a time.
"""

import asyncio
import io
import logging
import sys
from typing import IO, Any, Dict, Optional

from .bridge import DEFAULT_CHUNK_SIZE, DuplexBridge
from .exceptions import BridgeClosedError

logger = logging.getLogger("procshell.terminal")


class Terminal:
    """The host process's standard streams, shared by all invocations"""

    def __init__(
        self,
        stdin: Optional[IO[Any]] = None,
        stdout: Optional[IO[Any]] = None,
        stderr: Optional[IO[Any]] = None,
    ):
        # None means "whatever sys.<name> is at the time of use"
        self._streams: Dict[str, Optional[IO[Any]]] = {
            "stdin": stdin,
            "stdout": stdout,
            "stderr": stderr,
        }
        self._stdin_owner: Any = None
        # read of host stdin still running after its copier was cancelled
        self._pending_read: Optional[asyncio.Future] = None

    def stream(self, name: str) -> IO[Any]:
        stream = self._streams[name]
        if stream is None:
            stream = getattr(sys, name)
        return stream

    def fileno(self, name: str) -> Optional[int]:
        """Descriptor behind a host stream, or None when it has none"""
        stream = self.stream(name)
        if stream is None:
            return None
        try:
            return stream.fileno()
        except (AttributeError, OSError, ValueError):
            return None

    def flush(self, name: str) -> None:
        """Flush pending host output before a child writes to the same fd"""
        stream = self.stream(name)
        try:
            stream.flush()
        except (AttributeError, OSError, ValueError):
            pass

    # ==========================================================================
    # stdin lease
    # ==========================================================================

    @property
    def stdin_owner(self) -> Any:
        return self._stdin_owner

    def acquire_stdin(self, owner: Any) -> bool:
        """Lease the host stdin; False while another invocation holds it"""
        if self._stdin_owner is not None and self._stdin_owner is not owner:
            return False
        self._stdin_owner = owner
        return True

    def release(self, owner: Any) -> None:
        """Disconnect everything leased to owner"""
        if self._stdin_owner is owner:
            self._stdin_owner = None

    # ==========================================================================
    # Copying for streams without a descriptor
    # ==========================================================================

    async def copy_to_host(
        self, bridge: DuplexBridge, name: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> None:
        """Drain a bridge into host stdout/stderr"""
        stream = self.stream(name)
        try:
            async for chunk in bridge.chunks(chunk_size):
                _write_host(stream, chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"host {name} unwritable, dropping output: {e}")
            bridge.abort(e)

    async def copy_from_host(
        self, bridge: DuplexBridge, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> None:
        """Feed host stdin into a bridge until EOF or until the reader aborts"""
        loop = asyncio.get_running_loop()
        stream = self.stream("stdin")
        try:
            while True:
                chunk = await asyncio.shield(self._read_stdin(loop, stream, chunk_size))
                self._pending_read = None
                if not chunk:
                    break
                await bridge.write(chunk)
        except BridgeClosedError:
            return
        except (OSError, ValueError) as e:
            self._pending_read = None
            logger.debug(f"host stdin unreadable, sending EOF: {e}")
        bridge.close()

    def _read_stdin(
        self, loop: asyncio.AbstractEventLoop, stream: IO[Any], chunk_size: int
    ) -> asyncio.Future:
        """
        Next chunk of host stdin.

        A blocking read cannot be interrupted, so a read left behind by a
        cancelled copier is handed to the next one instead of being lost.
        """
        pending = self._pending_read
        if pending is None or pending.get_loop() is not loop:
            pending = loop.run_in_executor(None, _read_host, stream, chunk_size)
            pending.add_done_callback(_consume)
            self._pending_read = pending
        return pending


def _consume(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _write_host(stream: IO[Any], chunk: bytes) -> None:
    if isinstance(stream, io.TextIOBase):
        buffer = getattr(stream, "buffer", None)
        if buffer is None:
            stream.write(chunk.decode(stream.encoding or "utf-8", errors="replace"))
            stream.flush()
            return
        stream.flush()
        buffer.write(chunk)
        buffer.flush()
        return
    stream.write(chunk)
    stream.flush()


def _read_host(stream: IO[Any], size: int) -> bytes:
    if isinstance(stream, io.TextIOBase):
        buffer = getattr(stream, "buffer", None)
        if buffer is None:
            return stream.read(size).encode(stream.encoding or "utf-8")
        stream = buffer
    read1 = getattr(stream, "read1", None)
    if read1 is not None:
        return read1(size)
    return stream.read(size)


_default_terminal: Optional[Terminal] = None


def get_terminal() -> Terminal:
    """The terminal of this process; created on first use"""
    global _default_terminal

    if _default_terminal is None:
        _default_terminal = Terminal()

    return _default_terminal
