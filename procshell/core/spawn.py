# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Process spawning with an exact descriptor table.

The child receives descriptors[i] at fd i: 0, 1, 2 for the standard
streams and 3, 4, ... for auxiliary channels, so "/dev/fd/3" names the
first auxiliary channel. posix_spawn file actions do the placement; the
sources are first duplicated above the target range so no dup2 clobbers
a source that is still needed.
"""

import asyncio
import fcntl
import logging
import os
import signal
from typing import Mapping, Optional, Sequence

logger = logging.getLogger("procshell.spawn")

# asyncio reports an unknown child the same way
UNKNOWN_EXIT_CODE = 255

# ignored by the interpreter at startup; children get the default action
RESTORED_SIGNALS = (signal.SIGPIPE, signal.SIGXFSZ)


def spawn_process(
    executable: str,
    argv: Sequence[str],
    descriptors: Sequence[int],
    env: Mapping[str, str],
) -> int:
    """
    Start a process with descriptors placed at 0..len(descriptors)-1.

    Returns:
        The child's pid

    Raises:
        OSError: the process could not be started
    """
    floor = max(len(descriptors), 3)
    moved = []
    try:
        for fd in descriptors:
            moved.append(fcntl.fcntl(fd, fcntl.F_DUPFD_CLOEXEC, floor))
        file_actions = [
            (os.POSIX_SPAWN_DUP2, source, target) for target, source in enumerate(moved)
        ]
        pid = os.posix_spawn(
            executable,
            list(argv),
            dict(env),
            file_actions=file_actions,
            setsigdef=RESTORED_SIGNALS,
        )
    finally:
        for fd in moved:
            os.close(fd)

    return pid


def exit_code_from_status(status: int) -> int:
    """Decode a wait status; death by signal N becomes 128 + N"""
    code = os.waitstatus_to_exitcode(status)
    if code < 0:
        return 128 - code
    return code


def _reap(pid: int) -> int:
    try:
        _, status = os.waitpid(pid, 0)
    except ChildProcessError:
        logger.warning(f"Unknown child process pid {pid}, reporting {UNKNOWN_EXIT_CODE}")
        return UNKNOWN_EXIT_CODE
    return exit_code_from_status(status)


def _open_pidfd(pid: int) -> Optional[int]:
    if not hasattr(os, "pidfd_open"):
        return None
    try:
        return os.pidfd_open(pid)
    except OSError as e:
        logger.debug(f"pidfd_open unavailable ({e}), waiting in a thread")
        return None


async def wait_for_exit(pid: int) -> int:
    """
    Wait for a child without blocking the event loop.

    Uses a pidfd registered with the loop where the kernel supports it,
    otherwise a blocking waitpid in the default executor.

    Returns:
        Exit code, 128 + N for a child killed by signal N
    """
    loop = asyncio.get_running_loop()
    pidfd = _open_pidfd(pid)

    if pidfd is None:
        return await loop.run_in_executor(None, _reap, pid)

    exited = loop.create_future()

    def _ready():
        if not exited.done():
            exited.set_result(None)

    loop.add_reader(pidfd, _ready)
    try:
        await exited
    finally:
        loop.remove_reader(pidfd)
        os.close(pidfd)
    return _reap(pid)


def signal_name(code: int) -> Optional[str]:
    """Name of the signal behind a 128 + N exit code, if any"""
    if code <= 128:
        return None
    try:
        return signal.Signals(code - 128).name
    except ValueError:
        return None
