# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Tests for invocations

Tests:
- Completion, exit codes and spawn failures
- lines()/string()/iter_lines() extraction
- Pipelines and command substitution
- Auxiliary /dev/fd channels
- Terminal fallback for unconsumed streams
"""

import asyncio
import gc
import io
import logging
import os
import sys
from pathlib import Path

import pytest

# Add procshell to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from procshell.core.bridge import DuplexBridge
from procshell.core.dispatch import Environment
from procshell.core.exceptions import (
    ArgumentError,
    ProcessExitError,
    SpawnError,
    StreamClaimedError,
)
from procshell.core.invocation import Invocation, InvocationState
from procshell.core.terminal import Terminal


@pytest.fixture
def terminal():
    """Terminal backed by in-memory streams"""
    return Terminal(stdin=io.BytesIO(b""), stdout=io.BytesIO(), stderr=io.BytesIO())


@pytest.fixture
def env(terminal):
    return Environment(terminal=terminal)


# =============================================================================
# Completion
# =============================================================================


@pytest.mark.asyncio
async def test_echo_string(env):
    assert await env["echo"]("hi").string() == "hi"


@pytest.mark.asyncio
async def test_success_resolves_to_none(env):
    invocation = env["true"]()
    assert await invocation is None
    assert invocation.state == InvocationState.SUCCEEDED
    assert invocation.exit_code == 0
    assert invocation.pid is not None
    assert invocation.done()


@pytest.mark.asyncio
async def test_failure_raises_with_code(env):
    invocation = env["false"]()
    with pytest.raises(ProcessExitError) as exc_info:
        await invocation
    assert exc_info.value.code == 1
    assert invocation.state == InvocationState.FAILED


@pytest.mark.asyncio
async def test_code_never_raises(env):
    assert await env["false"]().code() == 1
    assert await env["true"]().code() == 0
    assert await env["sh"]("-c", "exit 7").code() == 7


@pytest.mark.asyncio
async def test_code_is_cached(env):
    invocation = env["sh"]("-c", "exit 3")
    assert invocation.code() is invocation.code()
    assert await invocation.code() == 3


@pytest.mark.asyncio
async def test_killed_by_signal(env):
    assert await env["sh"]("-c", "kill -TERM $$").code() == 128 + 15


@pytest.mark.asyncio
async def test_missing_executable_is_spawn_error(env, tmp_path):
    invocation = Invocation(str(tmp_path / "missing"), environment=env)
    with pytest.raises(SpawnError):
        await invocation
    assert await invocation.code() == 127
    assert invocation.pid is None
    assert invocation.state == InvocationState.FAILED


@pytest.mark.asyncio
async def test_non_executable_is_126(env, tmp_path):
    script = tmp_path / "script"
    script.write_text("#!/bin/sh\n")
    script.chmod(0o644)
    assert await Invocation(str(script), environment=env).code() == 126


@pytest.mark.asyncio
async def test_done_callback(env):
    seen = []
    invocation = env["true"]()
    invocation.add_done_callback(seen.append)
    await invocation
    await asyncio.sleep(0)
    assert seen == [invocation]


# =============================================================================
# Output extraction
# =============================================================================


@pytest.mark.asyncio
async def test_lines(env):
    assert await env["printf"]("a\\nb\\r\\nc\\n").lines() == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_last_line_without_newline(env):
    assert await env["printf"]("a\\nb").lines() == ["a", "b"]


@pytest.mark.asyncio
async def test_no_output(env):
    assert await env["true"]().lines() == []
    assert await env["true"]().string() == ""


@pytest.mark.asyncio
async def test_string_is_cached(env):
    invocation = env["echo"]("once")
    first = invocation.string()
    assert invocation.string() is first
    assert await first == "once"
    assert await invocation.string() == "once"
    assert invocation.lines() is invocation.lines()


@pytest.mark.asyncio
async def test_lines_of_failed_command(env):
    invocation = env["sh"]("-c", "echo partial; exit 2")
    assert await invocation.lines() == ["partial"]
    assert await invocation.code() == 2


@pytest.mark.asyncio
async def test_iter_lines(env):
    invocation = env["printf"]("x\\ny\\n")
    assert [line async for line in invocation.iter_lines()] == ["x", "y"]
    await invocation


@pytest.mark.asyncio
async def test_stdout_has_one_consumer(env):
    invocation = env["echo"]("x")
    await invocation.string()
    with pytest.raises(StreamClaimedError):
        invocation.iter_lines()


@pytest.mark.asyncio
async def test_large_output_is_complete(env):
    invocation = env["sh"]("-c", "i=0; while [ $i -lt 5000 ]; do echo line$i; i=$((i+1)); done")
    lines = await invocation.lines()
    assert len(lines) == 5000
    assert lines[0] == "line0"
    assert lines[-1] == "line4999"


@pytest.mark.asyncio
async def test_read_stdout_bridge_directly(env):
    invocation = env["echo"]("raw")
    invocation.stdout.claim_reader("test")
    assert await invocation.stdout.read() == b"raw\n"
    await invocation


# =============================================================================
# Arguments
# =============================================================================


@pytest.mark.asyncio
async def test_scalar_arguments(env, tmp_path):
    args = await env["printf"]("%s|%s|%s|%s\\n", 42, 1.5, b"raw", tmp_path).string()
    assert args == f"42|1.5|raw|{tmp_path}"


@pytest.mark.asyncio
async def test_none_argument_fails_through_result(env):
    invocation = env["echo"](None)
    with pytest.raises(ArgumentError):
        await invocation
    assert invocation.pid is None
    assert await invocation.code() == 1


@pytest.mark.asyncio
async def test_command_substitution(env):
    inner = env["printf"]("a\\nb\\n")
    assert await env["echo"](inner).string() == "a\nb"


@pytest.mark.asyncio
async def test_substitution_as_single_argument(env):
    inner = env["echo"]("two words")
    assert await env["printf"]("[%s]", inner).string() == "[two words]"


@pytest.mark.asyncio
async def test_failed_substitution_does_not_fail_outer(env):
    inner = env["sh"]("-c", "echo got; exit 4")
    outer = env["echo"](inner)
    assert await outer.string() == "got"
    assert await outer.code() == 0
    assert await inner.code() == 4


@pytest.mark.asyncio
async def test_substitution_used_once(env):
    inner = env["echo"]("x")
    outer = env["echo"](inner)
    with pytest.raises(StreamClaimedError):
        env["echo"](inner)
    await outer


@pytest.mark.asyncio
async def test_same_stream_twice_is_rejected(env):
    bridge = DuplexBridge("twice")
    with pytest.raises(StreamClaimedError):
        env["cat"](bridge, bridge)
    assert not bridge.reader_claimed


# =============================================================================
# Pipelines
# =============================================================================


@pytest.mark.asyncio
async def test_pipeline(env, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("one needle\ntwo\nthree needle\nfour\n")

    cat = env["cat"](str(notes))
    grep = cat.dispatch("grep")
    assert grep is not None
    assert await grep("needle").lines() == ["one needle", "three needle"]
    await cat


@pytest.mark.asyncio
async def test_pipeline_preserves_bytes(env):
    upstream = env["sh"]("-c", "i=0; while [ $i -lt 2000 ]; do echo row$i; i=$((i+1)); done")
    downstream = upstream.dispatch("cat")()
    lines = await downstream.lines()
    assert lines == [f"row{i}" for i in range(2000)]


@pytest.mark.asyncio
async def test_three_stage_pipeline(env):
    source = env["printf"]("b\\na\\nc\\n")
    sort = source.dispatch("sort")()
    head = sort.dispatch("head")("-n", "2")
    assert await head.lines() == ["a", "b"]


@pytest.mark.asyncio
async def test_dispatch_from_invocation(env):
    invocation = env["true"]()
    assert invocation.has("cat")
    assert invocation.dispatch("definitely-not-a-command-xyz") is None
    await invocation


@pytest.mark.asyncio
async def test_predecessor_linked_once(env):
    upstream = env["echo"]("x")
    downstream = Invocation(upstream.dispatch("cat").executable, predecessor=upstream, environment=env)
    with pytest.raises(StreamClaimedError):
        Invocation(downstream.executable, predecessor=upstream, environment=env)
    assert await downstream.string() == "x"


@pytest.mark.asyncio
async def test_write_to_stdin(env):
    invocation = env["cat"]()
    invocation.stdin.claim_writer("test")

    async def feed():
        await invocation.stdin.write(b"typed\n")
        invocation.stdin.close()

    feeder = asyncio.ensure_future(feed())
    assert await invocation.string() == "typed"
    await feeder


# =============================================================================
# Early exit downstream
# =============================================================================


@pytest.mark.asyncio
async def test_upstream_dies_of_sigpipe(env, terminal):
    yes = env["yes"]()
    head = yes.dispatch("head")("-n", "1")
    assert await head.lines() == ["y"]
    assert await yes.code() == 128 + 13
    assert terminal.stream("stderr").getvalue() == b""


@pytest.mark.asyncio
async def test_large_upstream_into_early_exit(env, terminal, caplog):
    upstream = env["sh"]("-c", "i=0; while [ $i -lt 2000 ]; do echo row$i; i=$((i+1)); done")
    downstream = upstream.dispatch("true")()

    with caplog.at_level(logging.ERROR, logger="asyncio"):
        assert await downstream.code() == 0
        assert await upstream.code() in (0, 128 + 13)
        for _ in range(5):
            await asyncio.sleep(0)
        gc.collect()

    assert terminal.stream("stderr").getvalue() == b""
    assert not [r for r in caplog.records if r.name == "asyncio"]


# =============================================================================
# Auxiliary channels
# =============================================================================


@pytest.mark.asyncio
async def test_stream_argument_becomes_dev_fd(env):
    first = DuplexBridge("first")
    second = DuplexBridge("second")
    invocation = env["sh"]("-c", 'echo "$1 $2"', "sh", first, second)
    assert await invocation.string() == "/dev/fd/3 /dev/fd/4"


@pytest.mark.asyncio
async def test_child_reads_auxiliary_channel(env):
    bridge = DuplexBridge("input")
    invocation = env["sh"]("-c", 'cat "$1"', "sh", bridge)

    async def feed():
        await bridge.write(b"from the host\n")
        bridge.close()

    feeder = asyncio.ensure_future(feed())
    assert await invocation.string() == "from the host"
    await feeder


@pytest.mark.asyncio
async def test_child_writes_auxiliary_channel(env):
    bridge = DuplexBridge("output")
    bridge.claim_reader("test")
    invocation = env["sh"]("-c", 'echo side >"$1"; echo main', "sh", bridge)
    text = invocation.string()
    side = await bridge.read()
    assert await text == "main"
    assert side == b"side\n"


@pytest.mark.asyncio
async def test_process_substitution(env):
    left = env["printf"]("a\\nb\\n")
    right = env["printf"]("a\\nc\\n")
    paste = env["paste"](left.stdout, right.stdout)
    assert await paste.lines() == ["a\ta", "b\tc"]
    assert await paste.code() == 0


@pytest.mark.asyncio
async def test_file_argument(env, tmp_path):
    data = tmp_path / "data.txt"
    data.write_text("file body\n")
    with open(data, "rb") as f:
        assert await env["cat"](f).string() == "file body"


# =============================================================================
# Terminal fallback
# =============================================================================


@pytest.mark.asyncio
async def test_unconsumed_stdout_goes_to_terminal(env, terminal):
    await env["echo"]("visible")
    assert terminal.stream("stdout").getvalue() == b"visible\n"


@pytest.mark.asyncio
async def test_unconsumed_stderr_goes_to_terminal(env, terminal):
    await env["sh"]("-c", "echo oops >&2")
    assert terminal.stream("stderr").getvalue() == b"oops\n"


@pytest.mark.asyncio
async def test_terminal_stdin_feeds_unclaimed_stdin():
    terminal = Terminal(stdin=io.BytesIO(b"typed\n"), stdout=io.BytesIO(), stderr=io.BytesIO())
    env = Environment(terminal=terminal)
    assert await env["cat"]().string() == "typed"
    assert terminal.stdin_owner is None


@pytest.mark.asyncio
async def test_terminal_stdin_leased_to_one_invocation():
    terminal = Terminal(stdin=io.BytesIO(b"data\n"), stdout=io.BytesIO(), stderr=io.BytesIO())
    env = Environment(terminal=terminal)
    first = env["cat"]().lines()
    second = env["cat"]().lines()
    assert await first == ["data"]
    assert await second == []


@pytest.mark.asyncio
async def test_terminal_with_descriptor_is_passed_through(tmp_path):
    out_path = tmp_path / "out.txt"
    with open(out_path, "wb") as out:
        terminal = Terminal(stdin=io.BytesIO(b""), stdout=out, stderr=io.BytesIO())
        env = Environment(terminal=terminal)
        invocation = env["echo"]("direct")
        await invocation
        with pytest.raises(StreamClaimedError):
            invocation.lines()
    assert out_path.read_bytes() == b"direct\n"


class NoDescriptorStream:
    """Host stdin without a usable fileno()"""

    def __init__(self, raw):
        self._raw = raw

    def read(self, size):
        return self._raw.read(size)


@pytest.mark.asyncio
async def test_cancelled_stdin_copy_keeps_unread_input():
    read_fd, write_fd = os.pipe()
    with os.fdopen(read_fd, "rb", buffering=0) as raw:
        terminal = Terminal(
            stdin=NoDescriptorStream(raw), stdout=io.BytesIO(), stderr=io.BytesIO()
        )
        env = Environment(terminal=terminal)

        # true exits without reading; its copy of host stdin is cancelled
        await env["true"]()

        os.write(write_fd, b"kept\n")
        os.close(write_fd)
        assert await env["cat"]().string() == "kept"
