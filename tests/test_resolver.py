# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Tests for the executable resolver

Tests:
- First-match order over the search path
- Direct paths
- Non-executable files and directories
- Listing executables
"""

import os
import sys
from pathlib import Path

import pytest

# Add procshell to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from procshell.core.resolver import (
    find_executable,
    is_direct_path,
    is_executable,
    list_executables,
)


def make_script(directory: Path, name: str, mode: int = 0o755) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\necho " + name + "\n")
    path.chmod(mode)
    return path


@pytest.fixture
def bins(tmp_path):
    """Two search directories with overlapping names"""
    first = tmp_path / "first"
    second = tmp_path / "second"
    make_script(first, "tool")
    make_script(second, "tool")
    make_script(second, "other")
    make_script(first, "plain", mode=0o644)
    make_script(second, "plain")
    return first, second


def test_first_directory_wins(bins):
    first, second = bins
    assert find_executable("tool", [str(first), str(second)]) == str(first / "tool")
    assert find_executable("tool", [str(second), str(first)]) == str(second / "tool")


def test_non_executable_is_skipped(bins):
    first, second = bins
    assert find_executable("plain", [str(first), str(second)]) == str(second / "plain")


def test_missing_name_returns_none(bins):
    first, second = bins
    assert find_executable("does-not-exist", [str(first), str(second)]) is None


def test_empty_name_returns_none(bins):
    first, _ = bins
    assert find_executable("", [str(first)]) is None


def test_directory_is_not_executable(tmp_path):
    (tmp_path / "tool").mkdir()
    assert not is_executable(str(tmp_path / "tool"))
    assert find_executable("tool", [str(tmp_path)]) is None


def test_direct_path(bins):
    first, _ = bins
    script = str(first / "tool")
    assert is_direct_path(script)
    assert find_executable(script, []) == script
    assert find_executable(str(first / "plain"), []) is None


def test_relative_direct_path(bins, monkeypatch):
    first, _ = bins
    monkeypatch.chdir(first)
    assert find_executable("./tool", []) == "./tool"


def test_is_direct_path():
    assert is_direct_path("/bin/sh")
    assert is_direct_path("./script")
    assert is_direct_path("dir/script")
    assert is_direct_path(".hidden")
    assert not is_direct_path("grep")


def test_result_is_absolute(bins, monkeypatch):
    first, _ = bins
    monkeypatch.chdir(first.parent)
    found = find_executable("tool", ["first"])
    assert os.path.isabs(found)
    assert os.path.realpath(found) == os.path.realpath(first / "tool")


def test_no_caching(tmp_path):
    assert find_executable("late", [str(tmp_path)]) is None
    make_script(tmp_path, "late")
    assert find_executable("late", [str(tmp_path)]) == str(tmp_path / "late")


def test_list_executables(bins):
    first, second = bins
    found = list_executables([str(first), str(second)])
    assert found["tool"] == str(first / "tool")
    assert found["other"] == str(second / "other")
    assert found["plain"] == str(second / "plain")


def test_list_executables_skips_missing_directories(bins, tmp_path):
    first, _ = bins
    found = list_executables([str(tmp_path / "nope"), str(first)])
    assert set(found) == {"tool"}


def test_default_search_path_is_used(monkeypatch, tmp_path):
    from procshell.core import config

    make_script(tmp_path, "only-here")
    monkeypatch.setenv("PROCSHELL_PATH", str(tmp_path))
    config.reload_config()
    try:
        assert find_executable("only-here") == str(tmp_path / "only-here")
    finally:
        monkeypatch.delenv("PROCSHELL_PATH")
        config.reload_config()


def test_system_shell_resolves():
    path = find_executable("sh", os.environ.get("PATH", "").split(os.pathsep))
    assert path is not None
    assert os.path.isabs(path)
