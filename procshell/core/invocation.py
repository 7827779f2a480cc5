# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Invocation: one external command as an awaitable value.

Lifecycle (like a process in an OS):
    PENDING    arguments are being resolved, nothing runs yet
    RUNNING    the child has been spawned
    SUCCEEDED  exit code 0
    FAILED     non-zero exit, spawn failure or unusable argument

Usage:
    env = Environment()

    await env["echo"]("hi").string()            # "hi"
    await env["false"]().code()                 # 1

    # pipeline: cat's stdout feeds grep's stdin
    cat = env["cat"]("notes.txt")
    matches = await cat.dispatch("grep")("needle").lines()

    # command substitution: the argument becomes echo's captured output
    await env["echo"](env["pwd"]()).string()

    # process substitution: the argument becomes /dev/fd/3
    await env["diff"](env["ls"]("a").stdout, env["ls"]("b").stdout).code()

The stdin/stdout/stderr bridges exist as soon as the Invocation is built.
Whatever is still unattached when the child is about to start gets the
host's own stream instead.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from .bridge import DuplexBridge
from .channels import connect, open_feeder, open_writer, pump_to_pipe
from .exceptions import (
    ArgumentError,
    ErrorHandler,
    InvocationError,
    ProcessExitError,
    ProcShellError,
    SpawnError,
    StreamClaimedError,
)
from .resolver import find_executable
from .spawn import signal_name, spawn_process, wait_for_exit

logger = logging.getLogger("procshell.invocation")

# keeps in-flight invocations reachable until they settle
_running: Set["Invocation"] = set()

FIRST_AUXILIARY_FD = 3


class InvocationState(Enum):
    """Invocation status"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (InvocationState.SUCCEEDED, InvocationState.FAILED)


@dataclass
class AuxChannel:
    """A stream-valued argument, seen by the child as /dev/fd/N"""

    source: Any
    bridge: Optional[DuplexBridge] = None
    fd: Optional[int] = None
    child_reads: bool = True


class Invocation:
    """
    One prospective or running child process.

    Await it for completion: returns None on exit code 0, raises
    ProcessExitError (with .code) otherwise and SpawnError when the OS
    refused to start it.
    """

    def __init__(
        self,
        executable: str,
        args: Sequence[Any] = (),
        *,
        predecessor: Optional["Invocation"] = None,
        environment: Optional[Any] = None,
    ):
        if environment is None:
            from .dispatch import Environment

            environment = Environment()

        self._loop = asyncio.get_running_loop()
        self.environment = environment
        self.executable = executable
        self.args = list(args)
        self.state = InvocationState.PENDING
        self.pid: Optional[int] = None
        self.exit_code: Optional[int] = None
        self.error: Optional[InvocationError] = None

        streams = environment.config.streams
        self._chunk_size = streams.chunk_size
        self._encoding = streams.encoding
        self._errors = streams.errors
        self._terminal = environment.terminal

        self.stdin = DuplexBridge(f"{self.name}.stdin")
        self.stdout = DuplexBridge(f"{self.name}.stdout")
        self.stderr = DuplexBridge(f"{self.name}.stderr")
        self.stdin.claim_reader(self)
        self.stdout.claim_writer(self)
        self.stderr.claim_writer(self)

        self._lines: Optional[asyncio.Future] = None
        self._string: Optional[asyncio.Future] = None
        self._code: Optional[asyncio.Future] = None
        self._done: asyncio.Future = self._loop.create_future()
        self._tasks: List[asyncio.Task] = []
        self._input_tasks: List[asyncio.Task] = []
        self._aux: List[AuxChannel] = []

        self._plan = self._plan_arguments(predecessor)
        if predecessor is not None:
            self._tasks.append(
                connect(predecessor.stdout, self.stdin, owner=self, chunk_size=self._chunk_size)
            )

        _running.add(self)
        self._task = self._loop.create_task(self._run())

    def __repr__(self) -> str:
        pid = f" pid={self.pid}" if self.pid is not None else ""
        return f"<Invocation {self.name}{pid} {self.state.value}>"

    @property
    def name(self) -> str:
        return os.path.basename(self.executable)

    # ==========================================================================
    # Result
    # ==========================================================================

    def __await__(self):
        yield from self._done.__await__()
        if self.error is not None:
            raise self.error

    def done(self) -> bool:
        return self._done.done()

    def add_done_callback(self, fn: Callable[["Invocation"], Any]) -> None:
        """Call fn(invocation) once the invocation has settled"""
        self._done.add_done_callback(lambda _: fn(self))

    def code(self) -> "asyncio.Future[int]":
        """
        Exit code as an awaitable that never raises for a failed command.

        Spawn failures report 126 (not executable) or 127 (other).
        """
        if self._code is None:
            self._code = asyncio.ensure_future(self._exit_status())
        return self._code

    async def _exit_status(self) -> int:
        await asyncio.shield(self._done)
        if self.error is None:
            return 0
        return ErrorHandler.to_exit_code(self.error)

    # ==========================================================================
    # Output
    # ==========================================================================

    def lines(self) -> "asyncio.Future[List[str]]":
        """
        All stdout lines, once stdout has ended.

        Claims stdout immediately. Repeated calls return the same result
        without running anything again.
        """
        if self._lines is None:
            self.stdout.claim_reader(self)
            self._lines = asyncio.ensure_future(self._collect_lines())
        return self._lines

    def string(self) -> "asyncio.Future[str]":
        """stdout lines joined with "\\n"; cached like lines()"""
        if self._string is None:
            self._string = asyncio.ensure_future(self._join(self.lines()))
        return self._string

    def iter_lines(self):
        """
        Lazy async iterator over stdout lines.

        Not restartable, and exclusive with lines()/string().
        """
        self.stdout.claim_reader(self)
        return self._decoded_lines()

    async def _collect_lines(self) -> List[str]:
        return [line async for line in self._decoded_lines()]

    async def _decoded_lines(self):
        async for raw in self.stdout:
            if raw.endswith(b"\n"):
                raw = raw[:-1]
                if raw.endswith(b"\r"):
                    raw = raw[:-1]
            yield raw.decode(self._encoding, self._errors)

    @staticmethod
    async def _join(lines: "asyncio.Future[List[str]]") -> str:
        return "\n".join(await lines)

    def _substitute(self, owner: Any) -> "asyncio.Future[str]":
        """Capture stdout for command substitution in owner's arguments"""
        self.stdout.claim_reader(owner)
        self._lines = asyncio.ensure_future(self._collect_lines())
        return self.string()

    # ==========================================================================
    # Dispatch (commands fed by this invocation's stdout)
    # ==========================================================================

    def dispatch(self, name: str):
        """
        Command whose stdin is this invocation's stdout, or None.

        Example:
            await env["cat"]("log.txt").dispatch("grep")("ERROR").lines()
        """
        from .dispatch import Command

        executable = find_executable(name, self.environment.search_path)
        if executable is None:
            return None
        return Command(executable, name=name, predecessor=self, environment=self.environment)

    def has(self, name: str) -> bool:
        return find_executable(name, self.environment.search_path) is not None

    # ==========================================================================
    # Arguments
    # ==========================================================================

    def _plan_arguments(self, predecessor: Optional["Invocation"]) -> List[Tuple[str, Any]]:
        """
        Validate every argument, then claim the streams they need.

        Claim conflicts raise here, before anything has been claimed.
        """
        seen: Set[int] = set()
        if predecessor is not None:
            if predecessor.stdout.reader_claimed:
                raise StreamClaimedError(
                    f"{predecessor.stdout.name} is already consumed",
                    stream=predecessor.stdout.name,
                )
            seen.add(id(predecessor.stdout))

        for arg in self.args:
            stream = arg.stdout if isinstance(arg, Invocation) else arg
            if not isinstance(stream, DuplexBridge):
                continue
            if id(stream) in seen:
                raise StreamClaimedError(f"{stream.name} is used twice", stream=stream.name)
            seen.add(id(stream))
            if isinstance(arg, Invocation):
                if stream.reader_claimed:
                    raise StreamClaimedError(
                        f"{stream.name} is already consumed", stream=stream.name
                    )
            elif stream.reader_claimed and stream.writer_claimed:
                raise StreamClaimedError(
                    f"both ends of {stream.name} are attached", stream=stream.name
                )

        plan: List[Tuple[str, Any]] = []
        for arg in self.args:
            if isinstance(arg, Invocation):
                plan.append(("substitution", arg._substitute(self)))
            elif isinstance(arg, DuplexBridge):
                channel = AuxChannel(source=arg, bridge=arg, child_reads=not arg.reader_claimed)
                if channel.child_reads:
                    arg.claim_reader(self)
                else:
                    arg.claim_writer(self)
                self._aux.append(channel)
                plan.append(("aux", channel))
            elif _has_fileno(arg):
                try:
                    channel = AuxChannel(source=arg, fd=arg.fileno())
                except (OSError, ValueError) as e:
                    plan.append(("error", self._argument_error(arg, e)))
                    continue
                self._aux.append(channel)
                plan.append(("aux", channel))
            else:
                try:
                    plan.append(("text", self._text(arg)))
                except ArgumentError as e:
                    plan.append(("error", e))
        return plan

    def _text(self, arg: Any) -> str:
        if isinstance(arg, str):
            return arg
        if isinstance(arg, os.PathLike):
            arg = os.fspath(arg)
            if isinstance(arg, str):
                return arg
        if isinstance(arg, (bytes, bytearray)):
            return bytes(arg).decode(self._encoding, self._errors)
        if arg is None:
            raise self._argument_error(arg)
        return str(arg)

    def _argument_error(self, arg: Any, cause: Optional[BaseException] = None) -> ArgumentError:
        return ArgumentError(
            f"Unsupported argument for {self.name}: {arg!r}",
            executable=self.executable,
            cause=cause,
        )

    async def _resolve_arguments(self) -> List[str]:
        """Final argv: substitutions awaited, stream arguments numbered"""
        argv = [self.executable]
        next_fd = FIRST_AUXILIARY_FD
        for kind, value in self._plan:
            if kind == "text":
                argv.append(value)
            elif kind == "substitution":
                argv.append(await value)
            elif kind == "aux":
                argv.append(f"/dev/fd/{next_fd}")
                next_fd += 1
            else:
                raise value
        return argv

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def _run(self) -> None:
        try:
            argv = await self._resolve_arguments()
            exit_code = await self._spawn_and_wait(argv)
        except ProcShellError as e:
            logger.debug(f"{self.name} failed before running: {e}")
            self._fail(e)
        except asyncio.CancelledError:
            self._fail(InvocationError(f"{self.name} was cancelled", executable=self.executable))
            raise
        except Exception as e:
            logger.error(f"{self.name} failed unexpectedly: {e}", exc_info=True)
            self._fail(
                InvocationError(f"{self.name} failed: {e}", executable=self.executable, cause=e)
            )
        else:
            self._exit(exit_code)

    async def _spawn_and_wait(self, argv: List[str]) -> int:
        child_fds: List[int] = []
        close_after: List[int] = []
        readers: List[Tuple[DuplexBridge, int]] = []
        writers: List[Tuple[DuplexBridge, int]] = []

        try:
            child_fds.append(self._stdin_descriptor(writers, close_after))
            child_fds.append(self._output_descriptor(self.stdout, "stdout", readers, close_after))
            child_fds.append(self._output_descriptor(self.stderr, "stderr", readers, close_after))
            for channel in self._aux:
                child_fds.append(self._aux_descriptor(channel, readers, writers, close_after))

            self.pid = spawn_process(
                self.executable, argv, child_fds, self.environment.env
            )
        except OSError as e:
            raise SpawnError(
                f"Cannot start {self.executable}: {e.strerror or e}",
                errno_code=e.errno,
                executable=self.executable,
                cause=e,
            )
        finally:
            for fd in close_after:
                os.close(fd)
            if self.pid is None:
                for _, fd in readers + writers:
                    os.close(fd)

        self.state = InvocationState.RUNNING
        logger.debug(f"Started {self.name} pid={self.pid} argv={argv[1:]}")

        feeders = []
        for bridge, fd in readers:
            feeders.append(await open_feeder(bridge, fd, self._loop))
        for bridge, fd in writers:
            transport, protocol = await open_writer(fd, self._loop)
            self._input_tasks.append(
                asyncio.ensure_future(
                    pump_to_pipe(bridge, transport, protocol, self._chunk_size)
                )
            )

        exit_code = await wait_for_exit(self.pid)
        # like a shell, completion also waits for the output pipes to drain
        await asyncio.gather(*(feeder.finished for feeder in feeders))
        return exit_code

    def _stdin_descriptor(self, writers: list, close_after: list) -> int:
        if not self.stdin.writer_claimed:
            if not self._terminal.acquire_stdin(self):
                logger.debug(f"{self.name}: host stdin is leased, using /dev/null")
                self.stdin.seal_writer("the host stdin is leased to another invocation")
                self.stdin.close()
                fd = os.open(os.devnull, os.O_RDONLY)
                close_after.append(fd)
                return fd

            fd = self._terminal.fileno("stdin")
            if fd is not None:
                self.stdin.seal_writer("connected to the terminal")
                self.stdin.close()
                return fd

            self.stdin.claim_writer(self._terminal)
            self._input_tasks.append(
                asyncio.ensure_future(
                    self._terminal.copy_from_host(self.stdin, self._chunk_size)
                )
            )

        read_end, write_end = os.pipe()
        close_after.append(read_end)
        writers.append((self.stdin, write_end))
        return read_end

    def _output_descriptor(
        self, bridge: DuplexBridge, name: str, readers: list, close_after: list
    ) -> int:
        if not bridge.reader_claimed:
            fd = self._terminal.fileno(name)
            if fd is not None:
                self._terminal.flush(name)
                bridge.seal_reader("connected to the terminal")
                bridge.close()
                return fd

            bridge.claim_reader(self._terminal)
            self._tasks.append(
                asyncio.ensure_future(
                    self._terminal.copy_to_host(bridge, name, self._chunk_size)
                )
            )

        read_end, write_end = os.pipe()
        close_after.append(write_end)
        readers.append((bridge, read_end))
        return write_end

    def _aux_descriptor(
        self, channel: AuxChannel, readers: list, writers: list, close_after: list
    ) -> int:
        if channel.fd is not None:
            return channel.fd

        read_end, write_end = os.pipe()
        if channel.child_reads:
            close_after.append(read_end)
            writers.append((channel.bridge, write_end))
            return read_end
        close_after.append(write_end)
        readers.append((channel.bridge, read_end))
        return write_end

    # ==========================================================================
    # Settlement
    # ==========================================================================

    def _exit(self, exit_code: int) -> None:
        self.exit_code = exit_code
        if exit_code == 0:
            self.state = InvocationState.SUCCEEDED
        else:
            self.state = InvocationState.FAILED
            self.error = ProcessExitError(exit_code, executable=self.executable)
            signame = signal_name(exit_code)
            logger.debug(
                f"{self.name} pid={self.pid} exited with {exit_code}"
                + (f" ({signame})" if signame else "")
            )
        self._settle()

    def _fail(self, error: ProcShellError) -> None:
        if not isinstance(error, InvocationError):
            error = InvocationError(str(error), executable=self.executable, cause=error)
        self.state = InvocationState.FAILED
        self.error = error
        # nothing will ever be written to these ends
        self.stdout.close()
        self.stderr.close()
        for channel in self._aux:
            if channel.bridge is None:
                continue
            if channel.child_reads:
                channel.bridge.abort()
            else:
                channel.bridge.close()
        self._settle()

    def _settle(self) -> None:
        """Disconnect the terminal fallbacks and resolve the result"""
        self._terminal.release(self)
        for task in self._input_tasks:
            task.cancel()
        if not self.stdin.at_eof():
            self.stdin.abort()
        _running.discard(self)
        if not self._done.done():
            self._done.set_result(None)


def _has_fileno(arg: Any) -> bool:
    return callable(getattr(arg, "fileno", None)) and not isinstance(arg, (str, bytes))
