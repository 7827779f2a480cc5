# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Executable Resolver

Maps a command name to a runnable file. Names that look like paths are
checked directly; everything else is looked up in the search directories
in order. Nothing is cached, every lookup rescans the filesystem.
"""

import logging
import os
from typing import Dict, List, Optional, Sequence

from .config import get_config

logger = logging.getLogger("procshell.resolver")


def default_search_path() -> List[str]:
    """Search directories captured from PATH when the configuration loaded"""
    return list(get_config().resolver.search_path)


def is_executable(path: str) -> bool:
    """True for a regular file the current user may execute"""
    return os.path.isfile(path) and os.access(path, os.X_OK)


def is_direct_path(name: str) -> bool:
    """Names containing a separator, or starting with "." or "/", are paths"""
    return os.sep in name or name.startswith((".", "/"))


def find_executable(name: str, search_path: Optional[Sequence[str]] = None) -> Optional[str]:
    """
    Resolve a command name to an executable path.

    Args:
        name: Command name ("grep") or path ("./script.sh", "/bin/ls")
        search_path: Directories to scan; defaults to the configured PATH

    Returns:
        The path, or None when nothing executable matches
    """
    if not name:
        return None

    if is_direct_path(name):
        if is_executable(name):
            return name
        logger.debug(f"Not executable: {name}")
        return None

    if search_path is None:
        search_path = default_search_path()

    for directory in search_path:
        # an empty entry means the current directory, as in POSIX PATH
        full_path = os.path.abspath(os.path.join(directory, name))
        if is_executable(full_path):
            return full_path

    logger.debug(f"Command not found on search path: {name}")
    return None


def list_executables(search_path: Optional[Sequence[str]] = None) -> Dict[str, str]:
    """
    List every executable reachable through the search path.

    Returns:
        Mapping of command name to the path find_executable() would return
    """
    if search_path is None:
        search_path = default_search_path()

    found: Dict[str, str] = {}
    for directory in search_path:
        directory = os.path.abspath(directory)
        try:
            entries = sorted(os.listdir(directory))
        except OSError:
            continue
        for entry in entries:
            if entry in found:
                continue
            full_path = os.path.join(directory, entry)
            if is_executable(full_path):
                found[entry] = full_path
    return found
