"""
Execution of external commands (mostly ``git``) on the event loop.
"""

import asyncio
import shlex
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Sequence

from .error_handler import GitCommandError
from .logger import logger


CHUNK_SIZE = 65536


@dataclass
class ExecResult:
    return_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.return_code == 0


def with_ssh_key(args: Sequence[str], private_key: str) -> List[str]:
    """Run ``args`` through an ssh-agent that holds ``private_key`` for this call only."""

    script = f"ssh-add {shlex.quote(private_key)}; {shlex.join(args)}"
    return ["ssh-agent", "bash", "-c", script]


async def execute_command(
    args: Sequence[str],
    timeout: float,
    allow_fail: bool = False,
) -> ExecResult:
    """
    Run a command and collect its combined output.

    Args:
        args: Command and arguments, executed without a shell
        timeout: Seconds after which the process is killed
        allow_fail: Return a failed ``ExecResult`` instead of raising

    Raises:
        GitCommandError: The command failed and ``allow_fail`` is not set
    """
    command = shlex.join(args)
    logger.debug(f"Executing {command}")

    before = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        if allow_fail:
            return ExecResult(1, str(e))
        raise GitCommandError(f"Failed to start {command}", e)

    try:
        out, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        result = ExecResult(1, f"timed out after {timeout}s")
    else:
        result = ExecResult(process.returncode, out.decode("utf-8", errors="replace"))

    duration = time.monotonic() - before
    logger.debug(f"Executing {command} took {duration:.5f}s")

    if not result.ok and not allow_fail:
        raise GitCommandError(f"Failed to execute command: {command} Output: {result.output.strip()}")
    return result


async def stream_command(
    args: Sequence[str],
    timeout: float,
) -> AsyncIterator[bytes]:
    """Yield the stdout of a command in chunks; raises if it exits non-zero."""

    command = shlex.join(args)
    logger.debug(f"Streaming output of {command}")
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    # stderr is drained alongside stdout so a chatty command cannot fill the pipe
    stderr_reader = asyncio.ensure_future(process.stderr.read())
    try:
        while True:
            chunk = await asyncio.wait_for(process.stdout.read(CHUNK_SIZE), timeout=timeout)
            if not chunk:
                break
            yield chunk
        return_code = await process.wait()
        stderr = await stderr_reader
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
        if not stderr_reader.done():
            stderr_reader.cancel()

    if return_code != 0:
        raise GitCommandError(
            f"Failed to execute command: {command} Output: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )


__all__ = ["ExecResult", "execute_command", "stream_command", "with_ssh_key"]
