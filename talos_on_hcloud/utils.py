import asyncio
import logging
import os
from asyncio.subprocess import Process
from datetime import timedelta
from pathlib import Path
from shlex import quote
from typing import Dict, Mapping, Optional, Sequence, Union

import aiohttp
from yarl import URL

from talos_on_hcloud.exceptions import CommandError, TalosOnHcloudError

logger = logging.getLogger(__name__)

CommandArg = Union[str, Path]


async def run_subprocess(
    *args: CommandArg,
    stderr=asyncio.subprocess.DEVNULL,
    stdout=asyncio.subprocess.DEVNULL,
    env: Optional[Mapping[str, str]] = None,
) -> Process:
    process_env: Optional[Dict[str, str]] = None
    if env:
        process_env = {**os.environ, **env}

    return await asyncio.create_subprocess_exec(
        *[str(arg) for arg in args],
        stderr=stderr,
        stdout=stdout,
        env=process_env,
    )


async def run_subprocess_output(
    *args: CommandArg,
    timeout: Optional[timedelta] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """Run given command and return its decoded stdout.

    `CommandError` with both output streams attached is raised on non-zero exit code, on timeout
    and when the executable can't be started at all.
    """

    logger.debug("Running command: %s", format_command(args))

    try:
        process = await run_subprocess(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        raise CommandError(f"Can't run `{args[0]}`: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout.total_seconds() if timeout else None,
        )
    except asyncio.TimeoutError as e:
        if process.returncode is None:
            process.kill()
            await process.wait()

        raise CommandError(
            f"`{args[0]}` could not finish in timeout of {timeout}!", stderr="timeout"
        ) from e

    stdout_text = stdout.decode(errors="replace")
    stderr_text = stderr.decode(errors="replace")

    if process.returncode != 0:
        raise CommandError(
            f"`{format_command(args)}` exited with code `{process.returncode}`\n"
            f"stderr:\n{stderr_text.strip()}",
            returncode=process.returncode,
            stdout=stdout_text,
            stderr=stderr_text,
        )

    return stdout_text


def format_command(args: Sequence[CommandArg]) -> str:
    return " ".join(quote(str(arg)) for arg in args)


async def check_tool_installed(path: Path, version_args: Sequence[str], install_url: str) -> None:
    """Raise `CommandError` with an install hint if given tool can't be executed."""

    try:
        await run_subprocess_output(path, *version_args, timeout=timedelta(seconds=30))
    except CommandError as e:
        raise CommandError(
            f"`{path}` is not installed or not in PATH",
            hint=f"Install it from {install_url}",
        ) from e


def is_not_found_error(error: CommandError) -> bool:
    return "NotFound" in error.stderr or "not found" in error.stderr


async def get_public_ipv4_address(url: URL) -> str:
    """Ask an external echo service for the address our requests come from."""

    logger.debug("Detecting public address using `%s`...", url)

    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                address = (await response.text()).strip()
    except aiohttp.ClientError as e:
        raise TalosOnHcloudError(
            f"Can't detect public address using `{url}`: {e}",
            hint="Set `PUBLIC_ADDRESS_URL` to a reachable service returning your IPv4 address",
        ) from e

    logger.debug("Detecting public address done: `%s`", address)

    return address
