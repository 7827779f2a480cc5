# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
procshell Core - Init file

Exports the invocation engine: resolution, bridges, invocations and the
dispatch surface.
"""

from .bridge import DuplexBridge
from .channels import connect
from .config import ProcShellConfig, get_config, load_config, reload_config
from .dispatch import Command, Environment, dispatch
from .exceptions import (
    ArgumentError,
    BridgeClosedError,
    BridgeProtocolError,
    CommandNotFoundError,
    ConfigError,
    ErrorHandler,
    InvocationError,
    ProcessExitError,
    ProcShellError,
    ResolutionError,
    SpawnError,
    StreamClaimedError,
    StreamError,
)
from .invocation import Invocation, InvocationState
from .logger import configure_logging, get_logger
from .resolver import (
    default_search_path,
    find_executable,
    is_direct_path,
    is_executable,
    list_executables,
)
from .terminal import Terminal, get_terminal

__all__ = [
    # Resolution
    "find_executable",
    "is_executable",
    "is_direct_path",
    "default_search_path",
    "list_executables",
    # Streams
    "DuplexBridge",
    "connect",
    "Terminal",
    "get_terminal",
    # Invocations
    "Invocation",
    "InvocationState",
    "Command",
    "Environment",
    "dispatch",
    # Configuration and logging
    "ProcShellConfig",
    "get_config",
    "load_config",
    "reload_config",
    "get_logger",
    "configure_logging",
    # Errors
    "ProcShellError",
    "ConfigError",
    "ResolutionError",
    "CommandNotFoundError",
    "InvocationError",
    "SpawnError",
    "ProcessExitError",
    "ArgumentError",
    "StreamError",
    "BridgeProtocolError",
    "BridgeClosedError",
    "StreamClaimedError",
    "ErrorHandler",
]
