# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""procshell CLI - run and compose external programs from the command line"""

import asyncio
import logging
import shlex
import sys
from typing import List, Tuple

import click
import yaml

from procshell.core.config import ProcShellConfig, get_config, load_config
from procshell.core.dispatch import Command, Environment
from procshell.core.exceptions import ConfigError, ErrorHandler, ProcShellError
from procshell.core.logger import configure_logging
from procshell.core.resolver import find_executable

logger = logging.getLogger("procshell.cli")

NOT_FOUND = 127


def _config(ctx: click.Context) -> ProcShellConfig:
    return ctx.obj if ctx.obj is not None else get_config()


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Extra YAML config file",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, config_file: str):
    """procshell - external programs as composable values.

    Core commands:
        procshell run      - Run one command on the terminal
        procshell pipe     - Chain commands stdout -> stdin
        procshell capture  - Print a command's output as captured text
        procshell which    - Show where commands resolve
    """
    try:
        config = load_config(config_file) if config_file else get_config()
    except ConfigError as e:
        click.echo(f"[-] {e}", err=True)
        sys.exit(2)

    ctx.obj = config
    configure_logging(config, level=log_level)


# =============================================================================
# Resolution
# =============================================================================


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def which(ctx: click.Context, names: Tuple[str, ...]):
    """Print the executable each NAME resolves to.

    Examples:
        procshell which grep
        procshell which ls ./build.sh
    """
    search_path = _config(ctx).resolver.search_path
    missing = False
    for name in names:
        path = find_executable(name, search_path)
        if path is None:
            click.echo(f"{name}: not found", err=True)
            missing = True
        else:
            click.echo(path)
    if missing:
        sys.exit(1)


@cli.command()
@click.option("--paths", "-p", is_flag=True, help="Show full paths")
@click.pass_context
def commands(ctx: click.Context, paths: bool):
    """List executables on the search path."""
    env = Environment(config=_config(ctx))
    for name, path in sorted(env.commands().items()):
        click.echo(f"{name}\t{path}" if paths else name)


# =============================================================================
# Execution
# =============================================================================


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("name")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx: click.Context, name: str, args: Tuple[str, ...]):
    """Run NAME with ARGS attached to this terminal; exit with its code.

    Examples:
        procshell run ls -la
        procshell run grep -r TODO src
    """

    async def _run() -> int:
        async with Environment(config=_config(ctx)) as env:
            command = env.dispatch(name)
            if command is None:
                click.echo(f"[-] Command not found: {name}", err=True)
                return NOT_FOUND
            return await command(*args).code()

    sys.exit(asyncio.run(_run()))


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("stages", nargs=-1, required=True)
@click.pass_context
def pipe(ctx: click.Context, stages: Tuple[str, ...]):
    """Chain STAGES, each a quoted command line, stdout -> stdin.

    Exits with the last stage's code.

    Examples:
        procshell pipe "cat notes.txt" "grep -i todo" "wc -l"
    """
    parsed: List[List[str]] = []
    for stage in stages:
        try:
            words = shlex.split(stage)
        except ValueError as e:
            click.echo(f"[-] Cannot parse stage {stage!r}: {e}", err=True)
            sys.exit(2)
        if not words:
            click.echo("[-] Empty pipeline stage", err=True)
            sys.exit(2)
        parsed.append(words)

    async def _pipe() -> int:
        async with Environment(config=_config(ctx)) as env:
            resolved = []
            for words in parsed:
                command = env.dispatch(words[0])
                if command is None:
                    click.echo(f"[-] Command not found: {words[0]}", err=True)
                    return NOT_FOUND
                resolved.append((command, words[1:]))

            invocations = []
            previous = None
            for command, args in resolved:
                stage = Command(
                    command.executable,
                    name=command.name,
                    predecessor=previous,
                    environment=env,
                )
                previous = stage(*args)
                invocations.append(previous)

            codes = await asyncio.gather(*(invocation.code() for invocation in invocations))
            for invocation, code in zip(invocations, codes):
                if code != 0:
                    logger.info(f"{invocation.name} exited with {code}")
            return codes[-1]

    sys.exit(asyncio.run(_pipe()))


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("name")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def capture(ctx: click.Context, name: str, args: Tuple[str, ...]):
    """Print NAME's output the way string() returns it.

    Lines are rejoined with newlines and the trailing newline is dropped,
    as in shell command substitution.

    Examples:
        procshell capture date +%Y
    """

    async def _capture() -> Tuple[str, int]:
        async with Environment(config=_config(ctx)) as env:
            invocation = env[name](*args)
            text = await invocation.string()
            return text, await invocation.code()

    try:
        text, code = asyncio.run(_capture())
    except ProcShellError as e:
        click.echo(f"[-] {e}", err=True)
        sys.exit(ErrorHandler.to_exit_code(e))

    click.echo(text)
    sys.exit(code)


# =============================================================================
# Configuration
# =============================================================================


@cli.command("config")
@click.pass_context
def show_config(ctx: click.Context):
    """Print the effective configuration as YAML."""
    data = _config(ctx).model_dump(mode="json")
    click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


if __name__ == "__main__":
    cli()
