"""Shell command execution with incremental output capture.

Commands run as asyncio subprocesses in their own session so that a
timeout or shutdown can kill the whole process group (npm, bun and pip
all spawn children). stdout and stderr are merged and handed to the
caller's ``on_output`` callback as soon as they are read, decoded with an
incremental UTF-8 decoder so multi-byte characters split across reads
are not mangled.
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Union

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

_READ_SIZE = 4096

# Seconds between SIGTERM and SIGKILL when a command is being stopped.
KILL_GRACE_SECONDS = 5.0


@dataclass
class CommandResult:
    """Outcome of one command."""
    command: str
    exit_code: Optional[int]
    output: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def tail(self, max_chars: int = 2000) -> str:
        return self.output[-max_chars:]


def build_env(env: Optional[Dict[str, str]], inherit: bool = True) -> Dict[str, str]:
    """Overlay *env* on the current process environment."""
    merged = dict(os.environ) if inherit else {}
    merged.update({k: str(v) for k, v in (env or {}).items()})
    return merged


async def run_command(
    command: str,
    cwd: Union[str, Path],
    env: Optional[Dict[str, str]] = None,
    on_output: Optional[OutputCallback] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a shell command line, streaming its combined output.

    Never raises for a non-zero exit or a timeout; inspect the result.
    """
    async def spawn() -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=build_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    return await _run(command, spawn, on_output, timeout)


async def run_exec(
    args: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    on_output: Optional[OutputCallback] = None,
    timeout: Optional[float] = None,
    display: Optional[str] = None,
) -> CommandResult:
    """Run a program without a shell (arguments are never re-parsed).

    *display* replaces the command text in the result, e.g. to hide
    credentials embedded in a repository URL.
    """
    async def spawn() -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd is not None else None,
            env=build_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    return await _run(display or " ".join(args), spawn, on_output, timeout)


async def _run(command, spawn, on_output, timeout) -> CommandResult:
    start = time.monotonic()
    chunks: list[str] = []

    def emit(text: str) -> None:
        if not text:
            return
        chunks.append(text)
        if on_output is not None:
            on_output(text)

    try:
        process = await spawn()
    except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
        # Same convention as a shell: 127 = command could not be started
        emit(f"{e}\n")
        return CommandResult(command, 127, "".join(chunks), time.monotonic() - start)

    async def pump() -> int:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        assert process.stdout is not None
        while True:
            data = await process.stdout.read(_READ_SIZE)
            if not data:
                break
            emit(decoder.decode(data))
        emit(decoder.decode(b"", final=True))
        return await process.wait()

    timed_out = False
    try:
        exit_code: Optional[int] = await asyncio.wait_for(pump(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning(f"Command timed out after {timeout}s: {command}")
        await terminate(process)
        exit_code = process.returncode
        emit(f"\nCommand timed out after {timeout}s and was killed\n")
    except asyncio.CancelledError:
        await terminate(process)
        raise

    return CommandResult(
        command=command,
        exit_code=exit_code,
        output="".join(chunks),
        duration_seconds=time.monotonic() - start,
        timed_out=timed_out,
    )


async def terminate(process: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group, then SIGKILL it after a grace period."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
    except ProcessLookupError:
        # Group already gone
        await process.wait()
