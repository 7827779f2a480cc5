# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
procshell Exception Hierarchy

Exception Hierarchy:
    ProcShellError (base)
    ├── ConfigError
    ├── ResolutionError
    │   └── CommandNotFoundError
    ├── InvocationError
    │   ├── SpawnError
    │   ├── ProcessExitError
    │   └── ArgumentError
    └── StreamError
        ├── BridgeProtocolError
        ├── BridgeClosedError
        └── StreamClaimedError

Resolution failures and stream errors are raised synchronously. Invocation
errors only ever travel through the awaitable result of an Invocation.
"""

import errno
from typing import Any, Dict, Optional

# ============================================================================
# Base Exceptions
# ============================================================================


class ProcShellError(Exception):
    """Base exception for all procshell errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigError(ProcShellError):
    """Configuration could not be loaded or failed validation"""


# ============================================================================
# Resolution Errors
# ============================================================================


class ResolutionError(ProcShellError):
    """Command name could not be resolved"""

    def __init__(self, message: str, name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.name = name

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["name"] = self.name
        return result


class CommandNotFoundError(ResolutionError, KeyError):
    """No defined value and no executable on the search path for a name"""

    def __str__(self):
        return ProcShellError.__str__(self)


# ============================================================================
# Invocation Errors
# ============================================================================


class InvocationError(ProcShellError):
    """Errors delivered through an Invocation's result"""

    def __init__(self, message: str, executable: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.executable = executable

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["executable"] = self.executable
        return result


class SpawnError(InvocationError):
    """The operating system refused to start the process"""

    def __init__(self, message: str, errno_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errno = errno_code

    @property
    def code(self) -> int:
        """Shell-style status: 126 when not executable, 127 otherwise"""
        if self.errno in (errno.EACCES, errno.EPERM, errno.ENOEXEC):
            return 126
        return 127

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errno"] = self.errno
        return result


class ProcessExitError(InvocationError):
    """The process exited with a non-zero status"""

    def __init__(self, code: int, executable: Optional[str] = None, **kwargs):
        super().__init__(
            f"{executable or 'process'} exited with code {code}",
            executable=executable,
            **kwargs,
        )
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["code"] = self.code
        return result


class ArgumentError(InvocationError):
    """An argument could not be converted for the child process"""


# ============================================================================
# Stream Errors
# ============================================================================


class StreamError(ProcShellError):
    """Errors raised by bridges and channel wiring"""

    def __init__(self, message: str, stream: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.stream = stream

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["stream"] = self.stream
        return result


class BridgeProtocolError(StreamError):
    """Fatal misuse of a bridge: a write while another is unacknowledged"""


class BridgeClosedError(StreamError):
    """The reading side went away before the written data was delivered"""


class StreamClaimedError(StreamError):
    """A bridge half already has a producer or consumer attached"""


# ============================================================================
# Error Handler
# ============================================================================


class ErrorHandler:
    """Centralised helpers for front ends"""

    @staticmethod
    def to_exit_code(error: BaseException) -> int:
        """Map an error to the status a command-line front end exits with"""
        if isinstance(error, ProcessExitError):
            return error.code
        if isinstance(error, SpawnError):
            return error.code
        if isinstance(error, ResolutionError):
            return 127
        return 1
