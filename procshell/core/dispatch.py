# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Command Dispatch Surface

Resolves names to callables that start invocations:

    ┌──────────────────────────────────────────────┐
    │                 Environment                   │
    │                                               │
    │   env["name"]                                 │
    │      │                                        │
    │      ├─> defined value (set by the host)      │
    │      └─> Command for the resolved executable  │
    │              │                                │
    │              └─> command(*args) -> Invocation │
    └──────────────────────────────────────────────┘

Defined values win over executables of the same name. Lookups are not
cached: an executable installed after the Environment was created is
found on the next lookup.
"""

import logging
import os
import weakref
from collections.abc import MutableMapping
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .config import ProcShellConfig, get_config
from .exceptions import CommandNotFoundError
from .invocation import Invocation
from .resolver import find_executable, list_executables
from .terminal import Terminal, get_terminal

logger = logging.getLogger("procshell.dispatch")


class Command:
    """
    A resolved executable, callable like a function.

    Example:
        grep = Command("/usr/bin/grep")
        matches = await grep("-c", "needle", "notes.txt").string()
    """

    def __init__(
        self,
        executable: str,
        name: Optional[str] = None,
        predecessor: Optional[Invocation] = None,
        environment: Optional["Environment"] = None,
    ):
        self.executable = executable
        self.name = name or os.path.basename(executable)
        self.predecessor = predecessor
        self.environment = environment

    def __call__(self, *args: Any) -> Invocation:
        environment = self.environment if self.environment is not None else Environment()
        invocation = Invocation(
            self.executable,
            args,
            predecessor=self.predecessor,
            environment=environment,
        )
        environment._track(invocation)
        return invocation

    def __repr__(self) -> str:
        return f"<Command {self.name} -> {self.executable}>"


def dispatch(name: str, search_path: Optional[Sequence[str]] = None) -> Optional[Command]:
    """Command for an executable on the search path, or None"""
    executable = find_executable(name, search_path)
    if executable is None:
        return None
    return Command(executable, name=name)


class Environment(MutableMapping):
    """
    Evaluation environment: name -> bound value.

    Holds the values a host program defines plus everything it needs to
    start commands: search path, terminal, configuration and the
    environment variables handed to children.

    Example:
        async with Environment() as env:
            env["greeting"] = "hello"
            await env["echo"](env["greeting"]).string()   # "hello"
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        search_path: Optional[Sequence[str]] = None,
        terminal: Optional[Terminal] = None,
        config: Optional[ProcShellConfig] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.config = config if config is not None else get_config()
        self._values: Dict[str, Any] = dict(values or {})
        self._search_path = list(search_path) if search_path is not None else None
        self.terminal = terminal if terminal is not None else get_terminal()
        self._env = dict(env) if env is not None else None
        self._invocations: "weakref.WeakSet[Invocation]" = weakref.WeakSet()
        self._closed = False

    def __repr__(self) -> str:
        return f"<Environment values={len(self._values)} closed={self._closed}>"

    @property
    def search_path(self) -> List[str]:
        if self._search_path is not None:
            return list(self._search_path)
        return list(self.config.resolver.search_path)

    @property
    def env(self) -> Mapping[str, str]:
        """Environment variables for child processes"""
        if self._env is not None:
            return self._env
        return os.environ

    # ==========================================================================
    # Lookup
    # ==========================================================================

    def has(self, name: str) -> bool:
        """True for a defined value or a resolvable executable"""
        return name in self._values or find_executable(name, self.search_path) is not None

    def get(self, name: str, default: Any = None) -> Any:
        """Defined value, else a Command for the executable, else default"""
        if name in self._values:
            return self._values[name]
        command = self.dispatch(name)
        if command is None:
            return default
        return command

    def dispatch(self, name: str) -> Optional[Command]:
        """Command for an executable, ignoring defined values"""
        executable = find_executable(name, self.search_path)
        if executable is None:
            logger.debug(f"No executable named {name!r} on the search path")
            return None
        return Command(executable, name=name, environment=self)

    def commands(self) -> Dict[str, str]:
        """Executables on the search path, name -> path"""
        return list_executables(self.search_path)

    # ==========================================================================
    # Mapping protocol (defined values)
    # ==========================================================================

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __getitem__(self, name: str) -> Any:
        value = self.get(name, _MISSING)
        if value is _MISSING:
            raise CommandNotFoundError(f"Command not found: {name}", name=name)
        return value

    def __setitem__(self, name: str, value: Any) -> None:
        self._values[name] = value

    def __delitem__(self, name: str) -> None:
        del self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    # ==========================================================================
    # Teardown
    # ==========================================================================

    def _track(self, invocation: Invocation) -> None:
        self._invocations.add(invocation)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Discard defined values and give the terminal back"""
        if self._closed:
            return
        self._closed = True
        self._values.clear()
        for invocation in list(self._invocations):
            self.terminal.release(invocation)
        self._invocations.clear()

    async def __aenter__(self) -> "Environment":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


_MISSING = object()
