# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
procshell: external programs as awaitable Python values.

    from procshell import Environment

    async with Environment() as env:
        print(await env["echo"]("hi").string())
"""

from .core import *  # noqa: F401,F403
from .core import __all__

__version__ = "0.1.0"
